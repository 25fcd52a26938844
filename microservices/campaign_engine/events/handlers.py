"""
Campaign Event Handlers

Handles domain events arriving on the event bus.
"""

import logging
from typing import Optional

from core.nats_client import Event
from .models import (
    AppointmentEventData,
    CampaignSubscribedEventType,
    NotificationBouncedEventData,
)
from ..models import AppointmentReminderRequest

logger = logging.getLogger(__name__)


OWN_EVENT_PREFIX = "campaign."


class CampaignEventHandler:
    """Handler for campaign engine subscribed events"""

    def __init__(
        self,
        trigger_evaluator=None,
        reminder_scheduler=None,
        tracking_collector=None,
    ):
        self.trigger_evaluator = trigger_evaluator
        self.reminder_scheduler = reminder_scheduler
        self.tracking_collector = tracking_collector

    async def handle_event(self, event: Event) -> None:
        """Route event to appropriate handler, then evaluate event triggers"""
        if event.name.startswith(OWN_EVENT_PREFIX):
            return

        handlers = {
            CampaignSubscribedEventType.APPOINTMENT_CREATED.value: self.handle_appointment_scheduled,
            CampaignSubscribedEventType.APPOINTMENT_RESCHEDULED.value: self.handle_appointment_scheduled,
            CampaignSubscribedEventType.APPOINTMENT_CANCELLED.value: self.handle_appointment_cancelled,
            CampaignSubscribedEventType.NOTIFICATION_BOUNCED.value: self.handle_notification_bounced,
        }

        handler = handlers.get(event.name)
        if handler:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Error handling event {event.name}: {e}", exc_info=True)

        if event.name == CampaignSubscribedEventType.NOTIFICATION_BOUNCED.value:
            return

        if self.trigger_evaluator:
            try:
                await self.trigger_evaluator.handle_domain_event(event)
            except Exception as e:
                logger.error(f"Error evaluating triggers for {event.name}: {e}", exc_info=True)

    async def handle_appointment_scheduled(self, event: Event) -> None:
        """
        Handle appointment.created / appointment.rescheduled

        Schedules (or replaces) reminder jobs when the payload carries a
        start time and some way to reach the customer.
        """
        if not self.reminder_scheduler:
            return

        request = self._reminder_request(event)
        if not request:
            return

        if event.name == CampaignSubscribedEventType.APPOINTMENT_RESCHEDULED.value:
            await self.reminder_scheduler.reschedule_reminders(request)
        else:
            await self.reminder_scheduler.schedule_appointment_reminders(request)

    async def handle_appointment_cancelled(self, event: Event) -> None:
        """Handle appointment.cancelled: drop pending reminders"""
        if not self.reminder_scheduler:
            return

        appointment_id = event.payload.get("appointmentId") or event.payload.get("appointment_id")
        if not appointment_id:
            logger.warning("appointment.cancelled missing appointment id")
            return

        await self.reminder_scheduler.cancel_reminders(str(appointment_id))

    async def handle_notification_bounced(self, event: Event) -> None:
        """Handle notification.bounced: count the bounce on its campaign"""
        if not self.tracking_collector:
            return

        data = NotificationBouncedEventData.model_validate(event.payload)
        await self.tracking_collector.record_bounce(data.campaign_id, data.recipient_id)

    def _reminder_request(self, event: Event) -> Optional[AppointmentReminderRequest]:
        data = AppointmentEventData.model_validate(event.payload)

        if not data.start_time:
            logger.debug(f"{event.name} for {data.appointment_id} has no start time; no reminders")
            return None
        if not (data.customer_email or data.customer_phone or data.customer_id):
            logger.debug(f"{event.name} for {data.appointment_id} has no contact data; no reminders")
            return None
        if not event.tenant_id:
            logger.warning(f"{event.name} for {data.appointment_id} has no tenant; no reminders")
            return None

        return AppointmentReminderRequest(
            appointment_id=data.appointment_id,
            tenant_id=event.tenant_id,
            customer_id=data.customer_id or data.customer_email or data.customer_phone,
            customer_name=data.customer_name,
            customer_email=data.customer_email,
            customer_phone=data.customer_phone,
            start_time=data.start_time,
            service_name=data.service_name or "appointment",
            staff_name=data.staff_name,
        )


__all__ = ["CampaignEventHandler"]

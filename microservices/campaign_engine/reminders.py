"""
Appointment Reminders

Schedules one reminder job per configured interval before an appointment.
Jobs are keyed by appointmentId:intervalMinutes so scheduling the same
appointment twice never creates two queue entries.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from .models import (
    AppointmentReminderRequest,
    CampaignType,
    DispatchJob,
    JobKind,
    RetryPolicy,
)
from .protocols import TaskQueueProtocol
from .triggers import ensure_aware

logger = logging.getLogger(__name__)


DEFAULT_INTERVALS_MINUTES = (1440, 60, 15)

REMINDER_SUBJECT = "Reminder: your {{serviceName}} is coming up"
REMINDER_CONTENT = (
    "Hi {{customerName}}, this is a reminder that your {{serviceName}} "
    "is scheduled for {{startTime}}."
)
REMINDER_CONTENT_WITH_STAFF = (
    "Hi {{customerName}}, this is a reminder that your {{serviceName}} "
    "with {{staffName}} is scheduled for {{startTime}}."
)


def reminder_key(appointment_id: str, interval_minutes: int) -> str:
    return f"{appointment_id}:{interval_minutes}"


def format_interval(minutes: int) -> str:
    if minutes % 1440 == 0:
        days = minutes // 1440
        return f"{days} day{'s' if days != 1 else ''}"
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class ReminderScheduler:
    """Enqueues and cancels appointment reminder jobs"""

    def __init__(
        self,
        task_queue: TaskQueueProtocol,
        intervals_minutes: Sequence[int] = DEFAULT_INTERVALS_MINUTES,
        channel: CampaignType = CampaignType.EMAIL,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.task_queue = task_queue
        self.intervals_minutes = list(intervals_minutes)
        self.channel = channel
        self.retry_policy = retry_policy or RetryPolicy()

    async def schedule_appointment_reminders(
        self,
        appointment: AppointmentReminderRequest,
        now: Optional[datetime] = None,
    ) -> List[DispatchJob]:
        """Schedule a reminder for every interval still in the future"""
        now = ensure_aware(now or datetime.now(timezone.utc))
        scheduled = []
        for interval in self.intervals_minutes:
            job = await self.schedule_reminder(appointment, interval, now)
            if job:
                scheduled.append(job)
        logger.info(
            f"Scheduled {len(scheduled)} reminder(s) for appointment {appointment.appointment_id}"
        )
        return scheduled

    async def schedule_reminder(
        self,
        appointment: AppointmentReminderRequest,
        interval_minutes: int,
        now: Optional[datetime] = None,
    ) -> Optional[DispatchJob]:
        """
        Enqueue the reminder for one interval.

        Returns:
            The queued job, or None when the send time has passed or the same
            reminder is already pending
        """
        now = ensure_aware(now or datetime.now(timezone.utc))
        send_at = ensure_aware(appointment.start_time) - timedelta(minutes=interval_minutes)
        if send_at <= now:
            logger.debug(
                f"Reminder {reminder_key(appointment.appointment_id, interval_minutes)} "
                f"send time has passed; skipping"
            )
            return None

        delay_ms = max(0, int((send_at - now).total_seconds() * 1000))
        job = self.build_reminder_job(appointment, interval_minutes)
        return await self.task_queue.enqueue(job, delay_ms, self.retry_policy)

    async def cancel_reminders(self, appointment_id: str) -> int:
        """Remove every pending reminder of an appointment"""
        removed = 0
        for job in await self.task_queue.list_pending_for_reference(appointment_id):
            if job.kind != JobKind.REMINDER:
                continue
            if await self.task_queue.remove(job.job_id):
                removed += 1
        logger.info(f"Cancelled {removed} reminder(s) for appointment {appointment_id}")
        return removed

    async def reschedule_reminders(
        self,
        appointment: AppointmentReminderRequest,
        now: Optional[datetime] = None,
    ) -> List[DispatchJob]:
        await self.cancel_reminders(appointment.appointment_id)
        return await self.schedule_appointment_reminders(appointment, now)

    def build_reminder_job(
        self, appointment: AppointmentReminderRequest, interval_minutes: int
    ) -> DispatchJob:
        channel = self._pick_channel(appointment)
        start_time = ensure_aware(appointment.start_time)
        return DispatchJob(
            kind=JobKind.REMINDER,
            idempotency_key=reminder_key(appointment.appointment_id, interval_minutes),
            tenant_id=appointment.tenant_id,
            recipient_id=appointment.customer_id,
            reference_id=appointment.appointment_id,
            channel=channel,
            recipient_email=appointment.customer_email,
            recipient_phone=appointment.customer_phone,
            recipient_user_id=appointment.customer_id,
            recipient_name=appointment.customer_name,
            subject=REMINDER_SUBJECT,
            content=REMINDER_CONTENT_WITH_STAFF if appointment.staff_name else REMINDER_CONTENT,
            template_data={
                "appointmentId": appointment.appointment_id,
                "customerName": appointment.customer_name or "there",
                "serviceName": appointment.service_name,
                "staffName": appointment.staff_name,
                "startTime": start_time.strftime("%Y-%m-%d %H:%M %Z").strip(),
                "reminderInterval": format_interval(interval_minutes),
            },
        )

    def _pick_channel(self, appointment: AppointmentReminderRequest) -> CampaignType:
        channel = appointment.channel or self.channel
        if channel == CampaignType.EMAIL and not appointment.customer_email:
            return CampaignType.SMS if appointment.customer_phone else CampaignType.IN_APP
        if channel == CampaignType.SMS and not appointment.customer_phone:
            return CampaignType.EMAIL if appointment.customer_email else CampaignType.IN_APP
        return channel


__all__ = [
    "DEFAULT_INTERVALS_MINUTES",
    "ReminderScheduler",
    "format_interval",
    "reminder_key",
]

"""
Channel Delivery Processor

Consumes one dispatch job: renders per-recipient content, sends it over
the job's channel and records the outcome on the campaign counters.
Failures are re-raised so the worker's retry policy decides what happens
next.
"""

import asyncio
import logging
from typing import Optional

from .models import (
    CampaignType,
    DispatchJob,
    JobKind,
    TrackingSettings,
)
from .protocols import (
    CampaignRepositoryProtocol,
    ChannelSenderProtocol,
    MessageDeliveryError,
)
from .rendering import (
    DEFAULT_SMS_LIMIT,
    TrackingUrlBuilder,
    generate_html_from_text,
    inject_open_pixel,
    render_template,
    rewrite_links,
    truncate_sms,
)

logger = logging.getLogger(__name__)


class ChannelDeliveryProcessor:
    """Delivers dispatch jobs through the channel senders"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        channel_sender: ChannelSenderProtocol,
        url_builder: TrackingUrlBuilder,
        sms_max_length: int = DEFAULT_SMS_LIMIT,
        send_timeout: float = 20.0,
    ):
        self.repository = repository
        self.channel_sender = channel_sender
        self.url_builder = url_builder
        self.sms_max_length = sms_max_length
        self.send_timeout = send_timeout

    async def process(self, job: DispatchJob) -> bool:
        """
        Deliver one job.

        Returns:
            True when delivered, False when the job no longer applies
            (its campaign was deleted)

        Raises:
            MessageDeliveryError: If the sender rejected, timed out or the
                recipient has no address for the channel
        """
        if job.kind == JobKind.REMINDER:
            await self._deliver(job, tracking=None, fallback_title="Appointment reminder")
            logger.info(f"Reminder {job.idempotency_key} delivered to {job.recipient_id}")
            return True

        campaign = await self.repository.get_campaign(job.campaign_id)
        if not campaign:
            logger.warning(f"Campaign {job.campaign_id} no longer exists; dropping job {job.job_id}")
            return False

        try:
            await self._deliver(job, tracking=campaign.settings.tracking, fallback_title=campaign.name)
        except Exception as e:
            if job.is_final_attempt:
                await self.repository.increment_counters(campaign.campaign_id, failed_count=1)
            logger.warning(
                f"Delivery of campaign {campaign.campaign_id} to {job.recipient_id} failed "
                f"(attempt {job.attempts_made + 1}/{job.max_attempts}): {e}"
            )
            raise

        await self.repository.increment_counters(campaign.campaign_id, delivered_count=1)
        logger.debug(f"Campaign {campaign.campaign_id} delivered to {job.recipient_id}")
        return True

    async def _deliver(
        self,
        job: DispatchJob,
        tracking: Optional[TrackingSettings],
        fallback_title: str,
    ) -> None:
        subject = render_template(job.subject, job.template_data) or fallback_title
        body = render_template(job.content, job.template_data)

        channel = job.channel
        if channel == CampaignType.PUSH:
            logger.warning(f"Push channel not available; delivering job {job.job_id} in-app")
            channel = CampaignType.IN_APP

        if channel == CampaignType.EMAIL:
            if not job.recipient_email:
                raise MessageDeliveryError(f"Recipient {job.recipient_id} has no email address")
            html = self._build_email_html(job, body, tracking)
            sent = self.channel_sender.send_email(job.recipient_email, subject, html)
        elif channel == CampaignType.SMS:
            if not job.recipient_phone:
                raise MessageDeliveryError(f"Recipient {job.recipient_id} has no phone number")
            sent = self.channel_sender.send_sms(
                job.recipient_phone, truncate_sms(body, self.sms_max_length)
            )
        else:
            user_id = job.recipient_user_id or job.recipient_id
            sent = self.channel_sender.send_in_app(user_id, subject, body)

        try:
            delivered = await asyncio.wait_for(sent, timeout=self.send_timeout)
        except asyncio.TimeoutError:
            raise MessageDeliveryError(
                f"{channel.value} sender timed out after {self.send_timeout}s"
            )

        if not delivered:
            raise MessageDeliveryError(f"{channel.value} sender reported failure")

    def _build_email_html(
        self, job: DispatchJob, body: str, tracking: Optional[TrackingSettings]
    ) -> str:
        if tracking is None:
            if job.html_content:
                return render_template(job.html_content, job.template_data)
            return generate_html_from_text(body)

        campaign_id, recipient_id = job.campaign_id, job.recipient_id
        unsubscribe_url = None
        if tracking.unsubscribe_tracking:
            unsubscribe_url = self.url_builder.unsubscribe_url(campaign_id, recipient_id)

        if job.html_content:
            html = render_template(job.html_content, job.template_data)
        else:
            html = generate_html_from_text(body, unsubscribe_url)

        if tracking.click_tracking:
            html = rewrite_links(
                html,
                lambda target: self.url_builder.click_url(campaign_id, recipient_id, target),
                exclude_prefix=self.url_builder.track_prefix,
            )
        if tracking.open_tracking:
            html = inject_open_pixel(html, self.url_builder.open_url(campaign_id, recipient_id))
        return html


__all__ = ["ChannelDeliveryProcessor"]

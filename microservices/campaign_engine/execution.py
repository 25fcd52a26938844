"""
Campaign Execution

Turns one campaign execution into dispatch jobs: resolve the audience,
allocate variants, enqueue one throttled job per (variant, recipient),
then record counters and the outcome on the campaign.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from .audience import AudienceResolver
from .events.publishers import CampaignEventPublisher
from .models import (
    Campaign,
    CampaignStatus,
    DispatchJob,
    ExecutionLogEntry,
    ExecutionResult,
    JobKind,
    Recipient,
    RecipientError,
    RetryPolicy,
    ThrottlingSettings,
    TriggerType,
    VariantPlan,
)
from .protocols import (
    AudienceResolutionError,
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    ExecutionClaimError,
    InvalidCampaignStateError,
    TaskQueueProtocol,
)
from .variants import VariantAllocator

logger = logging.getLogger(__name__)


MS_PER_HOUR = 3_600_000
CANCELLABLE_STATUSES = [CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE, CampaignStatus.PAUSED]


def throttle_delay_ms(index: int, throttling: ThrottlingSettings) -> int:
    """Delay for the index-th job of an execution; 0 when throttling is off"""
    if not throttling.enabled or not throttling.max_per_hour:
        return 0
    return int(index * (MS_PER_HOUR / throttling.max_per_hour))


def build_template_data(campaign: Campaign, recipient: Recipient) -> Dict[str, Any]:
    """Per-recipient substitution data, campaign defaults first"""
    return {
        **campaign.template_data,
        **recipient.attributes,
        "customerName": recipient.display_name,
        "customerEmail": recipient.email,
        "firstName": recipient.first_name,
        "lastName": recipient.last_name,
        "email": recipient.email,
    }


def build_dispatch_job(
    campaign: Campaign,
    variant: VariantPlan,
    recipient: Recipient,
    execution_id: str,
) -> DispatchJob:
    return DispatchJob(
        kind=JobKind.CAMPAIGN,
        idempotency_key=f"{campaign.campaign_id}:{variant.variant_id}:{recipient.id}",
        execution_id=execution_id,
        campaign_id=campaign.campaign_id,
        tenant_id=campaign.tenant_id,
        variant_id=variant.variant_id,
        recipient_id=recipient.id,
        channel=campaign.campaign_type,
        recipient_email=recipient.email,
        recipient_phone=recipient.phone,
        recipient_user_id=recipient.user_id,
        recipient_name=recipient.display_name,
        subject=variant.subject,
        content=variant.content or "",
        html_content=variant.html_content,
        template_data=build_template_data(campaign, recipient),
    )


class CampaignExecutor:
    """Executes campaigns by populating the dispatch queue"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        audience_resolver: AudienceResolver,
        task_queue: TaskQueueProtocol,
        variant_allocator: Optional[VariantAllocator] = None,
        event_publisher: Optional[CampaignEventPublisher] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.repository = repository
        self.audience_resolver = audience_resolver
        self.task_queue = task_queue
        self.variant_allocator = variant_allocator or VariantAllocator()
        self.event_publisher = event_publisher
        self.retry_policy = retry_policy or RetryPolicy()

    async def execute_campaign(
        self,
        campaign_id: str,
        expected_from: Sequence[CampaignStatus] = (CampaignStatus.ACTIVE,),
        campaign: Optional[Campaign] = None,
    ) -> ExecutionResult:
        """
        Run one delivery wave for a campaign.

        The wave is claimed with a compare-and-set on status and
        last_executed_at before any job is enqueued, so concurrent callers
        (ticks on several replicas, duplicate events) produce one wave.
        Timer ticks pass the status they found (scheduled or active); the
        launch path passes the campaign it just moved to active.

        Audience resolution failures abort before anything changes. Once the
        wave is claimed, per-recipient enqueue failures are counted and
        skipped; any other failure cancels the campaign, records an
        execution_failed log entry and is re-raised.

        Args:
            campaign_id: Campaign to execute
            expected_from: Statuses the campaign may be claimed from
            campaign: Snapshot the caller already holds; skips the re-read

        Raises:
            CampaignNotFoundError: If the campaign does not exist
            InvalidCampaignStateError: If the campaign is not in expected_from
            ExecutionClaimError: If another execution claimed it first
            AudienceResolutionError: If the audience cannot be resolved
        """
        expected_from = list(expected_from)
        if campaign is None:
            campaign = await self.repository.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status not in expected_from:
            raise InvalidCampaignStateError(
                f"Cannot execute campaign in {campaign.status.value} status",
                current_status=campaign.status,
            )

        execution_id = f"exe_{uuid.uuid4().hex[:16]}"
        logger.info(f"Executing campaign {campaign_id} (execution {execution_id})")

        try:
            recipients = await self.audience_resolver.resolve(
                campaign.tenant_id, campaign.target_audience
            )
        except AudienceResolutionError as e:
            logger.error(f"Audience resolution failed for campaign {campaign_id}: {e}")
            await self.repository.append_execution_log(
                campaign_id,
                ExecutionLogEntry(action="resolution_failed", error=str(e)),
            )
            raise

        now = datetime.now(timezone.utc)
        activated = await self.repository.claim_execution(
            campaign_id, expected_from, campaign.last_executed_at, now
        )
        if not activated:
            logger.info(f"Campaign {campaign_id} already claimed; skipping execution {execution_id}")
            raise ExecutionClaimError(
                f"Campaign {campaign_id} was claimed by another execution or changed status",
                current_status=campaign.status,
            )

        try:
            result = await self._enqueue_wave(activated, recipients, execution_id)
        except Exception as e:
            logger.error(f"Execution of campaign {campaign_id} failed: {e}", exc_info=True)
            await self.repository.transition_status(
                campaign_id, CANCELLABLE_STATUSES, CampaignStatus.CANCELLED
            )
            await self.repository.append_execution_log(
                campaign_id,
                ExecutionLogEntry(action="execution_failed", error=str(e)),
            )
            if self.event_publisher:
                await self.event_publisher.publish_execution_failed(activated, str(e))
            raise

        if activated.trigger_type != TriggerType.RECURRING:
            completed = await self.repository.transition_status(
                campaign_id,
                [CampaignStatus.ACTIVE],
                CampaignStatus.COMPLETED,
                completed_at=datetime.now(timezone.utc),
            )
            if not completed:
                logger.info(f"Campaign {campaign_id} left active state during execution; not completing")

        if self.event_publisher:
            await self.event_publisher.publish_campaign_executed(activated, result)

        logger.info(
            f"Campaign {campaign_id} executed: {result.enqueued} enqueued, "
            f"{result.failed} failed, {result.unassigned} unassigned"
        )
        return result

    async def _enqueue_wave(
        self, campaign: Campaign, recipients: list, execution_id: str
    ) -> ExecutionResult:
        plan = self.variant_allocator.allocate(campaign, recipients)
        result = ExecutionResult(
            campaign_id=campaign.campaign_id,
            execution_id=execution_id,
            total_recipients=len(recipients),
            unassigned=len(plan.unassigned),
        )

        index = 0
        for variant in plan.variants:
            for recipient in variant.recipients:
                job = build_dispatch_job(campaign, variant, recipient, execution_id)
                delay = throttle_delay_ms(index, campaign.settings.throttling)
                index += 1
                try:
                    stored = await self.task_queue.enqueue(job, delay, self.retry_policy)
                except Exception as e:
                    logger.error(
                        f"Failed to enqueue campaign {campaign.campaign_id} job for recipient {recipient.id}: {e}"
                    )
                    result.failed += 1
                    result.errors.append(RecipientError(recipient_id=recipient.id, error=str(e)))
                    continue
                if stored is None:
                    logger.warning(f"Duplicate job skipped: {job.idempotency_key}")
                    continue
                result.enqueued += 1

        await self.repository.increment_counters(
            campaign.campaign_id,
            sent_count=result.enqueued,
            failed_count=result.failed,
        )
        await self.repository.set_estimated_recipients(campaign.campaign_id, len(recipients))

        if plan.unassigned:
            await self.repository.append_execution_log(
                campaign.campaign_id,
                ExecutionLogEntry(
                    action="variant_remainder_unassigned",
                    details={
                        "execution_id": execution_id,
                        "recipient_ids": [r.id for r in plan.unassigned],
                    },
                ),
            )

        await self.repository.append_execution_log(
            campaign.campaign_id,
            ExecutionLogEntry(
                action="executed",
                details={
                    "execution_id": execution_id,
                    "total_recipients": result.total_recipients,
                    "enqueued": result.enqueued,
                    "failed": result.failed,
                    "unassigned": result.unassigned,
                },
            ),
        )
        return result

    async def schedule_execution(
        self, campaign: Campaign, delay_ms: int, reason_key: str
    ) -> Optional[DispatchJob]:
        """
        Persist a delayed execution as a queue job.

        A worker runs it once due; pausing or cancelling the campaign before
        then removes it with the other pending jobs.

        Returns:
            The queued job, or None when the same execution is already queued
        """
        job = DispatchJob(
            kind=JobKind.EXECUTION,
            idempotency_key=f"{campaign.campaign_id}:execute:{reason_key}",
            campaign_id=campaign.campaign_id,
            tenant_id=campaign.tenant_id,
        )
        stored = await self.task_queue.enqueue(job, delay_ms, self.retry_policy)
        if stored is None:
            logger.info(f"Execution {job.idempotency_key} already queued")
        else:
            logger.info(f"Execution of campaign {campaign.campaign_id} queued in {delay_ms}ms")
        return stored

    async def remove_pending_jobs(self, campaign_id: str) -> int:
        """Remove every not-yet-picked-up job of a campaign"""
        removed = 0
        for job in await self.task_queue.list_pending(campaign_id):
            if await self.task_queue.remove(job.job_id):
                removed += 1
        logger.info(f"Removed {removed} pending job(s) for campaign {campaign_id}")
        return removed


__all__ = [
    "CampaignExecutor",
    "build_dispatch_job",
    "build_template_data",
    "throttle_delay_ms",
]

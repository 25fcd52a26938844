"""
Campaign Service Business Logic

Campaign lifecycle: create, update, launch, pause, resume and delete,
guarded by the status transition table, plus analytics reads.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from .audience import AudienceResolver
from .events.models import CampaignEventType
from .events.publishers import CampaignEventPublisher
from .execution import CampaignExecutor
from .metrics import CampaignMetricsAggregator
from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignCreateRequest,
    CampaignStatus,
    CampaignSummary,
    CampaignType,
    CampaignUpdateRequest,
    ExecutionLogEntry,
    TargetAudience,
    TriggerType,
)
from .protocols import (
    AudienceResolutionError,
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    CampaignValidationError,
    InvalidCampaignStateError,
)
from .triggers import ensure_aware
from .variants import percentages_total

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = {CampaignStatus.COMPLETED, CampaignStatus.CANCELLED}
IMMEDIATE_TRIGGERS = {TriggerType.MANUAL, TriggerType.SCHEDULED}


class CampaignService:
    """Campaign service business logic layer"""

    # Valid state transitions
    VALID_TRANSITIONS = {
        CampaignStatus.DRAFT: [CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE],
        CampaignStatus.SCHEDULED: [CampaignStatus.ACTIVE, CampaignStatus.CANCELLED],
        CampaignStatus.ACTIVE: [CampaignStatus.PAUSED, CampaignStatus.COMPLETED, CampaignStatus.CANCELLED],
        CampaignStatus.PAUSED: [CampaignStatus.ACTIVE, CampaignStatus.CANCELLED],
        CampaignStatus.COMPLETED: [],  # Terminal state
        CampaignStatus.CANCELLED: [],  # Terminal state
    }

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        audience_resolver: AudienceResolver,
        executor: CampaignExecutor,
        metrics: Optional[CampaignMetricsAggregator] = None,
        event_publisher: Optional[CampaignEventPublisher] = None,
    ):
        self.repository = repository
        self.audience_resolver = audience_resolver
        self.executor = executor
        self.metrics = metrics or CampaignMetricsAggregator(repository)
        self.event_publisher = event_publisher or CampaignEventPublisher()

    @classmethod
    def can_transition(cls, from_status: CampaignStatus, to_status: CampaignStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    # ====================
    # Campaign CRUD
    # ====================

    async def create_campaign(
        self,
        request: CampaignCreateRequest,
        tenant_id: str,
        created_by: str,
    ) -> Campaign:
        """
        Create a new campaign in draft status.

        Raises:
            CampaignValidationError: If the definition is invalid
        """
        now = datetime.now(timezone.utc)
        campaign = Campaign(
            campaign_id=f"cmp_{uuid.uuid4().hex[:16]}",
            tenant_id=tenant_id,
            status=CampaignStatus.DRAFT,
            created_by=created_by,
            updated_by=created_by,
            created_at=now,
            updated_at=now,
            **request.model_dump(exclude_none=True),
        )
        self._validate_campaign(campaign)

        campaign.estimated_recipients = await self._estimate_recipients(
            tenant_id, campaign.target_audience, default=0
        )

        campaign = await self.repository.save_campaign(campaign)
        await self.event_publisher.publish_lifecycle(
            CampaignEventType.CREATED, campaign, changed_by=created_by
        )

        logger.info(f"Campaign created: {campaign.campaign_id}")
        return campaign

    async def get_campaign(
        self,
        campaign_id: str,
        tenant_id: Optional[str] = None,
    ) -> Campaign:
        """Get campaign by ID"""
        campaign = await self.repository.get_campaign(campaign_id, tenant_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        return campaign

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters"""
        return await self.repository.list_campaigns(
            tenant_id=tenant_id,
            status=status,
            trigger_type=trigger_type,
            limit=limit,
            offset=offset,
        )

    async def update_campaign(
        self,
        campaign_id: str,
        request: CampaignUpdateRequest,
        tenant_id: str,
        updated_by: str,
    ) -> Campaign:
        """
        Update definition fields and, optionally, the status.

        Raises:
            CampaignNotFoundError: If the campaign does not exist
            InvalidCampaignStateError: If a completed/cancelled campaign is edited
            CampaignValidationError: If the merged definition is invalid or the
                requested status is not reachable from the current one
        """
        campaign = await self.get_campaign(campaign_id, tenant_id)

        changes = request.model_dump(exclude_none=True, exclude={"status"})
        target_status = request.status

        if changes and campaign.status in TERMINAL_STATUSES:
            raise InvalidCampaignStateError(
                f"{campaign.status.value.capitalize()} campaigns cannot be modified",
                current_status=campaign.status,
            )

        if target_status and target_status != campaign.status:
            if not self.can_transition(campaign.status, target_status):
                raise CampaignValidationError(
                    f"Invalid status transition: {campaign.status.value} -> {target_status.value}",
                    field="status",
                )

        updated = campaign
        changed_fields = list(changes)
        if changes:
            merged = Campaign.model_validate({**campaign.model_dump(), **changes})
            self._validate_campaign(merged)

            updates = {key: getattr(merged, key) for key in changes}
            if "target_audience" in changes:
                updates["estimated_recipients"] = await self._estimate_recipients(
                    tenant_id, merged.target_audience, default=campaign.estimated_recipients
                )
            updates["updated_by"] = updated_by
            updated = await self.repository.update_campaign(campaign_id, updates)
            if not updated:
                raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        if target_status and target_status != campaign.status:
            updated = await self._apply_status(updated, target_status)
            changed_fields.append("status")

        if changed_fields:
            await self.event_publisher.publish_lifecycle(
                CampaignEventType.UPDATED, updated,
                changed_by=updated_by, changed_fields=changed_fields,
            )

        logger.info(f"Campaign updated: {campaign_id} ({', '.join(changed_fields) or 'no changes'})")
        return await self.get_campaign(campaign_id, tenant_id)

    async def delete_campaign(self, campaign_id: str, tenant_id: str, deleted_by: str) -> bool:
        """Cancel a running campaign, then soft delete it"""
        campaign = await self.get_campaign(campaign_id, tenant_id)

        if campaign.status in (CampaignStatus.ACTIVE, CampaignStatus.SCHEDULED, CampaignStatus.PAUSED):
            cancelled = await self.repository.transition_status(
                campaign_id, [campaign.status], CampaignStatus.CANCELLED
            )
            if cancelled:
                campaign = cancelled
            await self.executor.remove_pending_jobs(campaign_id)

        deleted = await self.repository.soft_delete(campaign_id)
        if deleted:
            await self.event_publisher.publish_lifecycle(
                CampaignEventType.DELETED, campaign, changed_by=deleted_by
            )
            logger.info(f"Campaign deleted: {campaign_id}")
        return deleted

    # ====================
    # Lifecycle Operations
    # ====================

    async def launch_campaign(
        self,
        campaign_id: str,
        tenant_id: str,
        launched_by: str,
    ) -> Campaign:
        """
        Launch a draft campaign.

        Scheduled campaigns with a future time wait in scheduled status;
        everything else becomes active. Manual campaigns, and scheduled ones
        whose time has passed, execute immediately.
        """
        campaign = await self.get_campaign(campaign_id, tenant_id)
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidCampaignStateError(
                f"Cannot launch campaign: invalid transition {campaign.status.value} -> active",
                current_status=campaign.status,
                target_status=CampaignStatus.ACTIVE,
            )
        self._validate_campaign(campaign)

        now = datetime.now(timezone.utc)
        wait_for_schedule = (
            campaign.trigger_type == TriggerType.SCHEDULED
            and campaign.scheduled_at is not None
            and ensure_aware(campaign.scheduled_at) > now
        )

        if wait_for_schedule:
            launched = await self.repository.transition_status(
                campaign_id, [CampaignStatus.DRAFT], CampaignStatus.SCHEDULED
            )
        else:
            launched = await self.repository.transition_status(
                campaign_id, [CampaignStatus.DRAFT], CampaignStatus.ACTIVE, started_at=now
            )
        if not launched:
            raise InvalidCampaignStateError(
                f"Campaign {campaign_id} changed status during launch",
                current_status=campaign.status,
            )

        await self.repository.append_execution_log(
            campaign_id,
            ExecutionLogEntry(
                action="launched",
                details={"status": launched.status.value, "launched_by": launched_by},
            ),
        )
        await self.event_publisher.publish_lifecycle(
            CampaignEventType.LAUNCHED, launched, changed_by=launched_by
        )
        logger.info(f"Campaign launched: {campaign_id} -> {launched.status.value}")

        if not wait_for_schedule and launched.trigger_type in IMMEDIATE_TRIGGERS:
            await self._execute_activated(launched, CampaignStatus.DRAFT)

        return await self.get_campaign(campaign_id, tenant_id)

    async def pause_campaign(
        self,
        campaign_id: str,
        tenant_id: str,
        paused_by: str,
    ) -> Campaign:
        """
        Pause an active campaign and drop its not-yet-picked-up jobs.

        Jobs already claimed by a worker still complete.
        """
        campaign = await self.get_campaign(campaign_id, tenant_id)
        paused = await self.repository.transition_status(
            campaign_id, [CampaignStatus.ACTIVE], CampaignStatus.PAUSED
        )
        if not paused:
            raise InvalidCampaignStateError(
                f"Cannot pause campaign: invalid transition {campaign.status.value} -> paused",
                current_status=campaign.status,
                target_status=CampaignStatus.PAUSED,
            )

        removed = await self.executor.remove_pending_jobs(campaign_id)
        await self.repository.append_execution_log(
            campaign_id,
            ExecutionLogEntry(
                action="paused",
                details={"removed_jobs": removed, "paused_by": paused_by},
            ),
        )
        await self.event_publisher.publish_lifecycle(
            CampaignEventType.PAUSED, paused, changed_by=paused_by
        )

        logger.info(f"Campaign paused: {campaign_id} ({removed} pending job(s) removed)")
        return await self.get_campaign(campaign_id, tenant_id)

    async def resume_campaign(
        self,
        campaign_id: str,
        tenant_id: str,
        resumed_by: str,
    ) -> Campaign:
        """Flip a paused campaign back to active; removed jobs are not re-enqueued"""
        campaign = await self.get_campaign(campaign_id, tenant_id)
        resumed = await self.repository.transition_status(
            campaign_id, [CampaignStatus.PAUSED], CampaignStatus.ACTIVE
        )
        if not resumed:
            raise InvalidCampaignStateError(
                f"Cannot resume campaign: invalid transition {campaign.status.value} -> active",
                current_status=campaign.status,
                target_status=CampaignStatus.ACTIVE,
            )

        await self.repository.append_execution_log(
            campaign_id,
            ExecutionLogEntry(action="resumed", details={"resumed_by": resumed_by}),
        )
        await self.event_publisher.publish_lifecycle(
            CampaignEventType.RESUMED, resumed, changed_by=resumed_by
        )

        logger.info(f"Campaign resumed: {campaign_id}")
        return resumed

    # ====================
    # Analytics
    # ====================

    async def get_analytics(self, campaign_id: str, tenant_id: str) -> CampaignAnalytics:
        return await self.metrics.get_analytics(campaign_id, tenant_id)

    async def get_summary(self, tenant_id: str) -> CampaignSummary:
        return await self.metrics.get_summary(tenant_id)

    # ====================
    # Helpers
    # ====================

    async def _apply_status(self, campaign: Campaign, target: CampaignStatus) -> Campaign:
        now = datetime.now(timezone.utc)
        fields = {}
        if target == CampaignStatus.ACTIVE and not campaign.started_at:
            fields["started_at"] = now
        if target == CampaignStatus.COMPLETED:
            fields["completed_at"] = now

        moved = await self.repository.transition_status(
            campaign.campaign_id, [campaign.status], target, **fields
        )
        if not moved:
            raise InvalidCampaignStateError(
                f"Campaign {campaign.campaign_id} changed status during update",
                current_status=campaign.status,
                target_status=target,
            )

        if target in (CampaignStatus.PAUSED, CampaignStatus.CANCELLED):
            await self.executor.remove_pending_jobs(campaign.campaign_id)
        elif (
            target == CampaignStatus.ACTIVE
            and campaign.status != CampaignStatus.PAUSED
            and moved.trigger_type == TriggerType.MANUAL
        ):
            await self._execute_activated(moved, campaign.status)

        return moved

    async def _execute_activated(self, activated: Campaign, previous_status: CampaignStatus) -> None:
        """
        Execute a campaign this call just moved to active.

        When the audience cannot be resolved nothing was sent, so the
        campaign goes back to previous_status and can be launched again.
        """
        try:
            await self.executor.execute_campaign(
                activated.campaign_id,
                expected_from=[CampaignStatus.ACTIVE],
                campaign=activated,
            )
        except AudienceResolutionError as e:
            reverted = await self.repository.transition_status(
                activated.campaign_id,
                [CampaignStatus.ACTIVE],
                previous_status,
                started_at=None,
            )
            if reverted:
                await self.repository.append_execution_log(
                    activated.campaign_id,
                    ExecutionLogEntry(
                        action="activation_reverted",
                        error=str(e),
                        details={"status": previous_status.value},
                    ),
                )
                logger.warning(
                    f"Campaign {activated.campaign_id} returned to {previous_status.value}: {e}"
                )
            raise

    async def _estimate_recipients(
        self, tenant_id: str, target_audience: TargetAudience, default: int
    ) -> int:
        try:
            return await self.audience_resolver.estimate(tenant_id, target_audience)
        except AudienceResolutionError as e:
            logger.warning(f"Could not estimate audience for tenant {tenant_id}: {e}")
            return default

    @staticmethod
    def _validate_campaign(campaign: Campaign) -> None:
        """
        Validate a campaign definition.

        Raises:
            CampaignValidationError: Naming the offending field
        """
        if not campaign.name or not campaign.name.strip():
            raise CampaignValidationError("Campaign name is required", field="name")

        if campaign.campaign_type == CampaignType.EMAIL and not (campaign.subject or "").strip():
            raise CampaignValidationError("Email campaigns require a subject", field="subject")

        if not (campaign.content or campaign.html_content):
            raise CampaignValidationError("Campaign content is required", field="content")

        if campaign.trigger_type == TriggerType.SCHEDULED and not campaign.scheduled_at:
            raise CampaignValidationError(
                "Scheduled campaigns require scheduled_at", field="scheduled_at"
            )

        if campaign.trigger_type == TriggerType.RECURRING and not campaign.recurring_config:
            raise CampaignValidationError(
                "Recurring campaigns require recurring_config", field="recurring_config"
            )

        if campaign.trigger_type == TriggerType.EVENT_BASED:
            events = campaign.event_triggers.events if campaign.event_triggers else []
            if not any(name.strip() for name in events):
                raise CampaignValidationError(
                    "Event-based campaigns require at least one event", field="event_triggers"
                )

        ab_test = campaign.ab_test_config
        if ab_test.enabled:
            if not ab_test.variants:
                raise CampaignValidationError(
                    "A/B testing requires at least one variant", field="ab_test_config"
                )
            total = percentages_total([v.percentage for v in ab_test.variants])
            if total != Decimal(100):
                raise CampaignValidationError(
                    f"Variant percentages must sum to 100, got {total}",
                    field="ab_test_config",
                )
            variant_ids = [v.id for v in ab_test.variants]
            if len(set(variant_ids)) != len(variant_ids):
                raise CampaignValidationError(
                    "Variant ids must be unique", field="ab_test_config"
                )


__all__ = ["CampaignService"]

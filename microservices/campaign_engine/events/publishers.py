"""
Campaign Event Publishers

Publishes campaign lifecycle events to the domain event bus.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.nats_client import Event
from .models import (
    CampaignEventType,
    CampaignExecutedEventData,
    CampaignExecutionFailedEventData,
    CampaignLifecycleEventData,
)
from ..models import Campaign, ExecutionResult

logger = logging.getLogger(__name__)


class CampaignEventPublisher:
    """Publisher for campaign engine events"""

    def __init__(self, event_bus=None):
        self.event_bus = event_bus
        self.source = "campaign_engine"

    async def publish(
        self,
        event_type: CampaignEventType,
        tenant_id: str,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to the bus.

        Args:
            event_type: The event type enum
            tenant_id: Owning tenant
            data: Event data payload

        Returns:
            True if published successfully, False otherwise
        """
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = Event(
                name=event_type.value,
                tenant_id=tenant_id,
                payload=data,
                source=self.source,
            )
            await self.event_bus.publish_event(event)
            logger.debug(f"Published event: {event_type.value}")
            return True

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_lifecycle(
        self,
        event_type: CampaignEventType,
        campaign: Campaign,
        changed_by: Optional[str] = None,
        changed_fields: Optional[List[str]] = None,
    ) -> bool:
        """Publish created/updated/launched/paused/resumed/deleted events"""
        data = CampaignLifecycleEventData(
            campaign_id=campaign.campaign_id,
            tenant_id=campaign.tenant_id,
            name=campaign.name,
            status=campaign.status.value,
            trigger_type=campaign.trigger_type.value,
            changed_by=changed_by,
            changed_fields=changed_fields or [],
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(event_type, campaign.tenant_id, data.model_dump(mode="json"))

    async def publish_campaign_executed(
        self, campaign: Campaign, result: ExecutionResult
    ) -> bool:
        """Publish campaign.executed event"""
        data = CampaignExecutedEventData(
            campaign_id=campaign.campaign_id,
            tenant_id=campaign.tenant_id,
            execution_id=result.execution_id,
            total_recipients=result.total_recipients,
            enqueued=result.enqueued,
            failed=result.failed,
            unassigned=result.unassigned,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(
            CampaignEventType.EXECUTED, campaign.tenant_id, data.model_dump(mode="json")
        )

    async def publish_execution_failed(
        self, campaign: Campaign, error: str
    ) -> bool:
        """Publish campaign.execution_failed event"""
        data = CampaignExecutionFailedEventData(
            campaign_id=campaign.campaign_id,
            tenant_id=campaign.tenant_id,
            error=error,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(
            CampaignEventType.EXECUTION_FAILED, campaign.tenant_id, data.model_dump(mode="json")
        )


__all__ = ["CampaignEventPublisher"]

"""
Tracking Collector

Turns open/click/unsubscribe signals and bounce notifications into atomic
counter increments. Collection never raises: a failed or rate-limited
signal is logged and dropped so the pixel/redirect response still goes out.
"""

import logging
from typing import Optional

from .models import TrackingKind
from .protocols import CampaignRepositoryProtocol
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


TRACKING_COUNTERS = {
    TrackingKind.OPEN: "opened_count",
    TrackingKind.CLICK: "clicked_count",
    TrackingKind.UNSUBSCRIBE: "unsubscribed_count",
}


class TrackingCollector:
    """Records engagement signals on campaign counters"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.repository = repository
        self.rate_limiter = rate_limiter

    async def record_event(
        self,
        campaign_id: str,
        recipient_id: str,
        kind: TrackingKind,
        client_key: Optional[str] = None,
    ) -> bool:
        """
        Count one tracking signal. Duplicates are counted (at-least-once).

        Returns:
            True if the counter was incremented
        """
        try:
            if self.rate_limiter and client_key:
                if not await self.rate_limiter.allow(f"track:{client_key}"):
                    logger.info(f"Tracking rate limit exceeded for {client_key}; {kind.value} not counted")
                    return False

            counter = TRACKING_COUNTERS[kind]
            updated = await self.repository.increment_counters(campaign_id, **{counter: 1})
            if not updated:
                logger.warning(f"Tracking {kind.value} for unknown campaign {campaign_id}")
                return False

            logger.debug(f"Tracked {kind.value}: campaign={campaign_id} recipient={recipient_id}")
            return True

        except Exception as e:
            logger.error(f"Failed to record {kind.value} for campaign {campaign_id}: {e}")
            return False

    async def record_bounce(self, campaign_id: str, recipient_id: str) -> bool:
        try:
            updated = await self.repository.increment_counters(campaign_id, bounced_count=1)
            if updated:
                logger.info(f"Bounce recorded: campaign={campaign_id} recipient={recipient_id}")
            return bool(updated)
        except Exception as e:
            logger.error(f"Failed to record bounce for campaign {campaign_id}: {e}")
            return False


__all__ = ["TrackingCollector", "TRACKING_COUNTERS"]

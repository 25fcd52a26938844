"""
Metrics Aggregator

Derived delivery and engagement rates for one campaign and totals across
a tenant's campaigns.
"""

import logging
from typing import Dict

from .models import Campaign, CampaignAnalytics, CampaignSummary
from .protocols import CampaignNotFoundError, CampaignRepositoryProtocol

logger = logging.getLogger(__name__)


def safe_rate(numerator: int, denominator: int) -> float:
    """numerator/denominator in [0, 1]; 0 when the denominator is 0"""
    if not denominator or denominator <= 0:
        return 0.0
    return min(1.0, max(0.0, numerator / denominator))


def build_campaign_analytics(campaign: Campaign) -> CampaignAnalytics:
    return CampaignAnalytics(
        campaign_id=campaign.campaign_id,
        name=campaign.name,
        status=campaign.status,
        estimated_recipients=campaign.estimated_recipients,
        sent_count=campaign.sent_count,
        delivered_count=campaign.delivered_count,
        opened_count=campaign.opened_count,
        clicked_count=campaign.clicked_count,
        unsubscribed_count=campaign.unsubscribed_count,
        bounced_count=campaign.bounced_count,
        failed_count=campaign.failed_count,
        delivery_rate=safe_rate(campaign.delivered_count, campaign.sent_count),
        open_rate=safe_rate(campaign.opened_count, campaign.delivered_count),
        click_rate=safe_rate(campaign.clicked_count, campaign.opened_count),
        unsubscribe_rate=safe_rate(campaign.unsubscribed_count, campaign.delivered_count),
        bounce_rate=safe_rate(campaign.bounced_count, campaign.sent_count),
        started_at=campaign.started_at,
        completed_at=campaign.completed_at,
        timeline=list(campaign.execution_log),
    )


def build_campaign_summary(tenant_id: str, totals: Dict[str, int]) -> CampaignSummary:
    sent = totals.get("total_sent", 0)
    opened = totals.get("total_opened", 0)
    clicked = totals.get("total_clicked", 0)
    return CampaignSummary(
        tenant_id=tenant_id,
        total_campaigns=totals.get("total_campaigns", 0),
        active_campaigns=totals.get("active_campaigns", 0),
        total_sent=sent,
        total_delivered=totals.get("total_delivered", 0),
        total_opened=opened,
        total_clicked=clicked,
        average_open_rate=safe_rate(opened, sent),
        average_click_rate=safe_rate(clicked, opened),
    )


class CampaignMetricsAggregator:
    """Serves analytics reads from campaign counters"""

    def __init__(self, repository: CampaignRepositoryProtocol):
        self.repository = repository

    async def get_analytics(self, campaign_id: str, tenant_id: str = None) -> CampaignAnalytics:
        campaign = await self.repository.get_campaign(campaign_id, tenant_id)
        if not campaign:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return build_campaign_analytics(campaign)

    async def get_summary(self, tenant_id: str) -> CampaignSummary:
        totals = await self.repository.get_tenant_totals(tenant_id)
        return build_campaign_summary(tenant_id, totals)


__all__ = [
    "CampaignMetricsAggregator",
    "build_campaign_analytics",
    "build_campaign_summary",
    "safe_rate",
]

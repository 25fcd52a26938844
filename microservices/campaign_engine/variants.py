"""
Variant Allocator

Partitions a resolved recipient list across A/B variants. Slices are
contiguous and assigned in declaration order, so the same audience always
produces the same split.
"""

import logging
from decimal import Decimal, ROUND_FLOOR
from typing import List, Sequence

from .models import (
    AllocationPlan,
    Campaign,
    Recipient,
    RemainderStrategy,
    VariantPlan,
)
from .protocols import VariantAllocationError

logger = logging.getLogger(__name__)


DEFAULT_VARIANT_ID = "default"
HUNDRED = Decimal(100)


def percentages_total(percentages: Sequence[Decimal]) -> Decimal:
    return sum((Decimal(str(p)) for p in percentages), Decimal(0))


def variant_slice_sizes(total: int, percentages: Sequence[Decimal]) -> List[int]:
    """floor(total * p / 100) for each percentage"""
    return [
        int((Decimal(total) * Decimal(str(p)) / HUNDRED).to_integral_value(rounding=ROUND_FLOOR))
        for p in percentages
    ]


def largest_index(percentages: Sequence[Decimal]) -> int:
    """Index of the largest percentage; first declared wins ties"""
    best = 0
    for i, p in enumerate(percentages):
        if Decimal(str(p)) > Decimal(str(percentages[best])):
            best = i
    return best


class VariantAllocator:
    """Splits recipients into per-variant plans"""

    def allocate(self, campaign: Campaign, recipients: List[Recipient]) -> AllocationPlan:
        """
        Build the recipient/variant plan for one execution.

        Without A/B testing every recipient goes to a single "default" variant
        carrying the campaign's base content. With A/B testing each variant
        receives floor(N * percentage / 100) recipients; the leftover is
        either held out and reported as unassigned, or appended to the
        largest variant, per ab_test_config.remainder_strategy.

        Raises:
            VariantAllocationError: If variants are missing or do not sum to 100
        """
        ab_test = campaign.ab_test_config
        if not ab_test.enabled:
            return AllocationPlan(variants=[
                VariantPlan(
                    variant_id=DEFAULT_VARIANT_ID,
                    name="Default",
                    subject=campaign.subject,
                    content=campaign.content,
                    html_content=campaign.html_content,
                    recipients=list(recipients),
                )
            ])

        if not ab_test.variants:
            raise VariantAllocationError("A/B testing is enabled but no variants are configured")

        percentages = [v.percentage for v in ab_test.variants]
        total_pct = percentages_total(percentages)
        if total_pct != HUNDRED:
            raise VariantAllocationError(
                f"Variant percentages must sum to 100, got {total_pct}"
            )

        sizes = variant_slice_sizes(len(recipients), percentages)
        remainder = len(recipients) - sum(sizes)

        if remainder and ab_test.remainder_strategy == RemainderStrategy.LARGEST_VARIANT:
            target = largest_index(percentages)
            sizes[target] += remainder
            logger.info(
                f"Campaign {campaign.campaign_id}: assigned {remainder} remainder recipient(s) "
                f"to variant {ab_test.variants[target].id}"
            )
            remainder = 0

        plans = []
        start = 0
        for variant, size in zip(ab_test.variants, sizes):
            plans.append(VariantPlan(
                variant_id=variant.id,
                name=variant.name,
                subject=variant.subject or campaign.subject,
                content=variant.content or campaign.content,
                html_content=variant.html_content or campaign.html_content,
                recipients=recipients[start:start + size],
            ))
            start += size

        unassigned = list(recipients[start:])
        if unassigned:
            logger.warning(
                f"Campaign {campaign.campaign_id}: {len(unassigned)} recipient(s) left unassigned "
                f"by variant rounding (held out)"
            )

        return AllocationPlan(variants=plans, unassigned=unassigned)


__all__ = [
    "DEFAULT_VARIANT_ID",
    "VariantAllocator",
    "largest_index",
    "percentages_total",
    "variant_slice_sizes",
]

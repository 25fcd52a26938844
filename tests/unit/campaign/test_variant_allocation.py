"""
Unit Tests for A/B Test Variant Allocation

Tests contiguous, floor-based slicing of a recipient list across variants.
"""

import pytest
from decimal import Decimal

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_engine.protocols import VariantAllocationError
from microservices.campaign_engine.variants import (
    DEFAULT_VARIANT_ID,
    VariantAllocator,
    largest_index,
    percentages_total,
    variant_slice_sizes,
)
from tests.contracts.campaign.data_contract import (
    ABTestConfig,
    RemainderStrategy,
    CampaignTestDataFactory,
)


@pytest.fixture
def allocator():
    return VariantAllocator()


class TestSliceSizes:
    """Tests for per-variant slice size arithmetic"""

    def test_even_split(self):
        """50/50 of 10 gives 5 and 5"""
        assert variant_slice_sizes(10, [Decimal(50), Decimal(50)]) == [5, 5]

    def test_sizes_are_floored(self):
        """33/33/34 of 10 floors every slice"""
        assert variant_slice_sizes(10, [Decimal(33), Decimal(33), Decimal(34)]) == [3, 3, 3]

    def test_fractional_percentages(self):
        """Decimal percentages are not subject to float rounding"""
        sizes = variant_slice_sizes(1000, [Decimal("33.3"), Decimal("33.3"), Decimal("33.4")])
        assert sizes == [333, 333, 334]

    def test_zero_recipients(self):
        assert variant_slice_sizes(0, [Decimal(50), Decimal(50)]) == [0, 0]

    def test_percentages_total(self):
        assert percentages_total([Decimal("33.3"), Decimal("33.3"), Decimal("33.4")]) == Decimal(100)

    def test_largest_index_first_wins_ties(self):
        assert largest_index([Decimal(40), Decimal(40), Decimal(20)]) == 0
        assert largest_index([Decimal(20), Decimal(50), Decimal(30)]) == 1


class TestVariantAllocator:
    """Tests for VariantAllocator.allocate"""

    def test_no_ab_test_uses_default_variant(self, allocator, factory):
        """Without A/B testing every recipient gets the base content"""
        # Given: A campaign without A/B testing
        campaign = factory.make_campaign()
        recipients = factory.make_recipients(3)

        # When: Allocating
        plan = allocator.allocate(campaign, recipients)

        # Then: A single default variant holds everyone
        assert len(plan.variants) == 1
        assert plan.variants[0].variant_id == DEFAULT_VARIANT_ID
        assert plan.variants[0].subject == campaign.subject
        assert [r.id for r in plan.variants[0].recipients] == ["r1", "r2", "r3"]
        assert plan.unassigned == []

    def test_ten_recipients_three_way_split_holds_out_remainder(self, allocator, factory):
        """33/33/34 over 10 recipients: slices of 3, recipient 10 unassigned"""
        # Given: A/B test with three variants
        campaign = factory.make_campaign(ab_test_config=factory.make_ab_test([33, 33, 34]))
        recipients = factory.make_recipients(10)

        # When: Allocating
        plan = allocator.allocate(campaign, recipients)

        # Then: Contiguous slices in declaration order, remainder held out
        assert [r.id for r in plan.variants[0].recipients] == ["r1", "r2", "r3"]
        assert [r.id for r in plan.variants[1].recipients] == ["r4", "r5", "r6"]
        assert [r.id for r in plan.variants[2].recipients] == ["r7", "r8", "r9"]
        assert [r.id for r in plan.unassigned] == ["r10"]
        assert plan.assigned_count == 9

    def test_largest_variant_strategy_absorbs_remainder(self, allocator, factory):
        """The remainder goes to the variant with the largest percentage"""
        # Given: A/B test configured to assign the remainder
        ab_test = factory.make_ab_test([33, 33, 34], RemainderStrategy.LARGEST_VARIANT)
        campaign = factory.make_campaign(ab_test_config=ab_test)
        recipients = factory.make_recipients(10)

        # When: Allocating
        plan = allocator.allocate(campaign, recipients)

        # Then: Every recipient is assigned, the 34% variant gets 4
        assert [len(v.recipients) for v in plan.variants] == [3, 3, 4]
        assert plan.unassigned == []

    def test_variants_are_disjoint(self, allocator, factory):
        """No recipient appears in two variants"""
        campaign = factory.make_campaign(ab_test_config=factory.make_ab_test([25, 25, 50]))
        recipients = factory.make_recipients(37)

        plan = allocator.allocate(campaign, recipients)

        assigned = [r.id for v in plan.variants for r in v.recipients]
        assert len(assigned) == len(set(assigned))
        assert len(assigned) + len(plan.unassigned) == 37

    def test_allocation_is_deterministic(self, allocator, factory):
        """The same audience always produces the same split"""
        campaign = factory.make_campaign(ab_test_config=factory.make_ab_test([50, 50]))
        recipients = factory.make_recipients(7)

        first = allocator.allocate(campaign, recipients)
        second = allocator.allocate(campaign, recipients)

        assert [[r.id for r in v.recipients] for v in first.variants] == \
            [[r.id for r in v.recipients] for v in second.variants]

    def test_variant_content_overrides_campaign_content(self, allocator, factory):
        """Variant subject wins; missing variant content falls back to the campaign"""
        campaign = factory.make_campaign(ab_test_config=factory.make_ab_test([50, 50]))

        plan = allocator.allocate(campaign, factory.make_recipients(2))

        assert plan.variants[0].subject == "Subject A"
        assert plan.variants[1].subject == "Subject B"
        assert plan.variants[0].content == campaign.content

    def test_percentages_not_summing_to_100_rejected(self, allocator, factory):
        """Allocation refuses variants that do not cover 100%"""
        campaign = factory.make_campaign(ab_test_config=factory.make_ab_test([50, 40]))

        with pytest.raises(VariantAllocationError):
            allocator.allocate(campaign, factory.make_recipients(4))

    def test_enabled_without_variants_rejected(self, allocator, factory):
        campaign = factory.make_campaign(ab_test_config=ABTestConfig(enabled=True, variants=[]))

        with pytest.raises(VariantAllocationError):
            allocator.allocate(campaign, factory.make_recipients(4))

    def test_empty_audience(self, allocator, factory):
        campaign = factory.make_campaign(ab_test_config=factory.make_ab_test([50, 50]))

        plan = allocator.allocate(campaign, [])

        assert plan.assigned_count == 0
        assert plan.unassigned == []

"""
Audience Resolver

Turns a campaign's targeting definition into a concrete, deduplicated
recipient list for one tenant.
"""

import logging
from typing import Any, Dict, Iterable, List

from .models import Recipient, RecipientFilter, TargetAudience
from .protocols import AudienceResolutionError, RecipientSourceProtocol

logger = logging.getLogger(__name__)


_TOP_LEVEL_FIELDS = ("id", "email", "phone", "push_token", "user_id", "display_name")


def restrict_to_ids(recipients: Iterable[Recipient], customer_ids: List[str]) -> List[Recipient]:
    """Keep recipients whose id is listed; an empty list means no restriction."""
    if not customer_ids:
        return list(recipients)
    wanted = set(customer_ids)
    return [r for r in recipients if r.id in wanted]


def matches_filters(recipient: Recipient, filters: Dict[str, Any]) -> bool:
    """
    Exact key/value match against recipient fields and attributes.

    Filters whose value is None are ignored.
    """
    for key, expected in filters.items():
        if expected is None:
            continue
        if key in _TOP_LEVEL_FIELDS:
            actual = getattr(recipient, key)
        else:
            actual = recipient.attributes.get(key)
        if actual != expected:
            return False
    return True


def deduplicate(recipients: Iterable[Recipient]) -> List[Recipient]:
    """Drop repeated recipient ids, keeping the first occurrence."""
    seen = set()
    unique = []
    for recipient in recipients:
        if recipient.id in seen:
            continue
        seen.add(recipient.id)
        unique.append(recipient)
    return unique


class AudienceResolver:
    """Resolves targetAudience into recipients via the recipient source"""

    def __init__(self, recipient_source: RecipientSourceProtocol):
        self.recipient_source = recipient_source

    async def resolve(self, tenant_id: str, target_audience: TargetAudience) -> List[Recipient]:
        """
        Resolve a targeting definition.

        Starts from the tenant's recipients, restricts to explicit ids,
        applies attribute filters, then deduplicates. Segment filters are
        accepted but not evaluated.

        Raises:
            AudienceResolutionError: If the recipient source fails
        """
        recipient_filter = RecipientFilter(
            customer_ids=target_audience.customer_ids or None,
            attributes=dict(target_audience.filters),
        )

        try:
            recipients = await self.recipient_source.list_recipients(tenant_id, recipient_filter)
        except AudienceResolutionError:
            raise
        except Exception as e:
            logger.error(f"Recipient lookup failed for tenant {tenant_id}: {e}")
            raise AudienceResolutionError(f"Failed to resolve audience: {e}") from e

        if target_audience.segments or target_audience.exclude_segments:
            logger.warning(
                f"Segment filters are not evaluated (segments={target_audience.segments}, "
                f"exclude={target_audience.exclude_segments}); using ids and attribute filters only"
            )

        resolved = restrict_to_ids(recipients, target_audience.customer_ids)
        if target_audience.filters:
            resolved = [r for r in resolved if matches_filters(r, target_audience.filters)]
        resolved = deduplicate(resolved)

        logger.debug(f"Resolved {len(resolved)} recipients for tenant {tenant_id}")
        return resolved

    async def estimate(self, tenant_id: str, target_audience: TargetAudience) -> int:
        """Size of the resolved audience"""
        return len(await self.resolve(tenant_id, target_audience))


__all__ = ["AudienceResolver", "restrict_to_ids", "matches_filters", "deduplicate"]

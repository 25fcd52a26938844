"""
Customer Service Client

Recipient source backed by customer_service.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..models import Recipient, RecipientFilter
from ..protocols import AudienceResolutionError

logger = logging.getLogger(__name__)


CONTACT_FIELDS = {
    "id", "customer_id", "email", "phone", "push_token", "user_id",
    "name", "display_name", "tenant_id", "attributes",
}


def customer_to_recipient(customer: Dict[str, Any]) -> Recipient:
    """Map a customer_service record onto a Recipient"""
    first_name = customer.get("first_name") or ""
    last_name = customer.get("last_name") or ""
    display_name = (
        customer.get("display_name")
        or customer.get("name")
        or f"{first_name} {last_name}".strip()
    )
    attributes = {k: v for k, v in customer.items() if k not in CONTACT_FIELDS}
    attributes.update(customer.get("attributes") or {})

    return Recipient(
        id=str(customer.get("customer_id") or customer["id"]),
        email=customer.get("email"),
        phone=customer.get("phone"),
        push_token=customer.get("push_token"),
        user_id=customer.get("user_id"),
        display_name=display_name,
        attributes=attributes,
    )


class CustomerClient:
    """Client for customer_service"""

    def __init__(self, base_url: str, timeout: float = 30.0, page_size: int = 500):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size

    async def list_recipients(
        self, tenant_id: str, recipient_filter: Optional[RecipientFilter] = None
    ) -> List[Recipient]:
        """
        Fetch every customer of a tenant, page by page.

        Raises:
            AudienceResolutionError: If customer_service cannot be queried
        """
        params: Dict[str, Any] = {"tenant_id": tenant_id, "limit": self.page_size}
        if recipient_filter and recipient_filter.customer_ids:
            params["ids"] = ",".join(recipient_filter.customer_ids)

        recipients: List[Recipient] = []
        offset = 0
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                while True:
                    response = await client.get(
                        f"{self.base_url}/api/v1/customers",
                        params={**params, "offset": offset},
                        headers={"X-Tenant-ID": tenant_id},
                    )
                    response.raise_for_status()
                    data = response.json()
                    customers = data.get("customers", []) if isinstance(data, dict) else data
                    recipients.extend(customer_to_recipient(c) for c in customers)
                    if len(customers) < self.page_size:
                        break
                    offset += self.page_size

        except httpx.HTTPStatusError as e:
            logger.error(f"Error listing customers for tenant {tenant_id}: {e.response.status_code}")
            raise AudienceResolutionError(
                f"customer_service returned {e.response.status_code}"
            ) from e

        except httpx.HTTPError as e:
            logger.error(f"Error listing customers for tenant {tenant_id}: {e}")
            raise AudienceResolutionError(f"customer_service unavailable: {e}") from e

        return recipients


__all__ = ["CustomerClient", "customer_to_recipient"]

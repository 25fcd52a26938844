"""
Campaign Engine Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .models import (
    Campaign,
    CampaignStatus,
    DispatchJob,
    ExecutionLogEntry,
    Recipient,
    RecipientFilter,
    RetryPolicy,
    TriggerType,
)


# ====================
# Repository Protocol
# ====================


class CampaignRepositoryProtocol(Protocol):
    """Protocol for the campaign store"""

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert a new campaign"""
        ...

    async def get_campaign(
        self, campaign_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Campaign]:
        """Get a non-deleted campaign, optionally scoped to a tenant"""
        ...

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns for a tenant with total count"""
        ...

    async def update_campaign(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        """Update definition fields"""
        ...

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        """Set status only if the current status is one of from_statuses"""
        ...

    async def claim_execution(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        seen_last_executed_at: Optional[datetime],
        executed_at: datetime,
    ) -> Optional[Campaign]:
        """Move to active and stamp last_executed_at, only if status and
        last_executed_at still match what the caller read"""
        ...

    async def increment_counters(self, campaign_id: str, **deltas: int) -> bool:
        """Atomically add deltas to counter columns"""
        ...

    async def set_estimated_recipients(self, campaign_id: str, count: int) -> None:
        """Cache the resolved audience size"""
        ...

    async def append_execution_log(
        self, campaign_id: str, entry: ExecutionLogEntry
    ) -> None:
        """Append an entry to the campaign execution log"""
        ...

    async def soft_delete(self, campaign_id: str) -> bool:
        """Soft delete a campaign"""
        ...

    async def find_due_scheduled(self, now: datetime) -> List[Campaign]:
        """Scheduled campaigns whose scheduled_at has passed"""
        ...

    async def find_active_by_trigger(
        self, trigger_type: TriggerType, tenant_id: Optional[str] = None
    ) -> List[Campaign]:
        """Active campaigns with the given trigger type"""
        ...

    async def get_tenant_totals(self, tenant_id: str) -> Dict[str, int]:
        """Campaign counts and summed counters for a tenant"""
        ...


# ====================
# Task Queue Protocol
# ====================


class TaskQueueProtocol(Protocol):
    """Protocol for the delayed, retryable dispatch queue"""

    async def enqueue(
        self,
        job: DispatchJob,
        delay_ms: int = 0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Optional[DispatchJob]:
        """Add a job; returns None when a pending job holds the same idempotency key"""
        ...

    async def list_pending(self, campaign_id: str) -> List[DispatchJob]:
        """Jobs of a campaign not yet picked up by a worker"""
        ...

    async def list_pending_for_reference(self, reference_id: str) -> List[DispatchJob]:
        """Pending jobs attached to an external entity (e.g. appointment)"""
        ...

    async def remove(self, job_id: str) -> bool:
        """Remove a pending job"""
        ...

    async def claim_due(self, limit: int = 1) -> List[DispatchJob]:
        """Mark up to `limit` due jobs as running and return them"""
        ...

    async def complete(self, job_id: str) -> None:
        ...

    async def retry(
        self, job_id: str, attempts_made: int, error: str, delay_ms: int
    ) -> None:
        ...

    async def dead_letter(self, job_id: str, attempts_made: int, error: str) -> None:
        ...

    async def list_dead_letters(self, tenant_id: str, limit: int = 100) -> List[DispatchJob]:
        """Terminal-failed jobs of a tenant"""
        ...


# ====================
# Collaborator Protocols
# ====================


class RecipientSourceProtocol(Protocol):
    """Protocol for the tenant recipient source"""

    async def list_recipients(
        self, tenant_id: str, recipient_filter: Optional[RecipientFilter] = None
    ) -> List[Recipient]:
        ...


class ChannelSenderProtocol(Protocol):
    """Protocol for channel transports; each call returns delivered or not"""

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        ...

    async def send_sms(self, to: str, body: str) -> bool:
        ...

    async def send_in_app(self, user_id: str, title: str, message: str) -> bool:
        ...


class EventBusProtocol(Protocol):
    """Protocol for the domain event bus"""

    is_connected: bool

    async def publish_event(self, event: Any) -> bool:
        ...

    async def subscribe_to_events(
        self, pattern: str, handler: Any, predicate: Any = None
    ) -> str:
        ...

    async def drain(self) -> None:
        ...

    async def close(self) -> None:
        ...


class WindowCounterStoreProtocol(Protocol):
    """Protocol for keyed, time-windowed counters"""

    async def hit(self, key: str, window_seconds: int) -> int:
        """Increment the counter for key in the current window and return it"""
        ...


# ====================
# Custom Exceptions
# ====================


class CampaignServiceError(Exception):
    """Base exception for campaign engine errors"""
    pass


class CampaignNotFoundError(CampaignServiceError):
    """Raised when campaign is not found"""
    pass


class InvalidCampaignStateError(CampaignServiceError):
    """Raised when a status transition is not allowed"""

    def __init__(
        self,
        message: str,
        current_status: Optional[CampaignStatus] = None,
        target_status: Optional[CampaignStatus] = None,
    ):
        super().__init__(message)
        self.current_status = current_status
        self.target_status = target_status


class ExecutionClaimError(InvalidCampaignStateError):
    """Raised when another execution already claimed the campaign"""
    pass


class CampaignValidationError(CampaignServiceError):
    """Raised when campaign validation fails"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class AudienceResolutionError(CampaignServiceError):
    """Raised when audience resolution fails"""
    pass


class VariantAllocationError(CampaignServiceError):
    """Raised when variant allocation is invalid"""
    pass


class EnqueueError(CampaignServiceError):
    """Raised when a job cannot be added to the queue"""
    pass


class MessageDeliveryError(CampaignServiceError):
    """Raised when message delivery fails"""
    pass


__all__ = [
    "CampaignRepositoryProtocol",
    "TaskQueueProtocol",
    "RecipientSourceProtocol",
    "ChannelSenderProtocol",
    "EventBusProtocol",
    "WindowCounterStoreProtocol",
    "CampaignServiceError",
    "CampaignNotFoundError",
    "InvalidCampaignStateError",
    "ExecutionClaimError",
    "CampaignValidationError",
    "AudienceResolutionError",
    "VariantAllocationError",
    "EnqueueError",
    "MessageDeliveryError",
]

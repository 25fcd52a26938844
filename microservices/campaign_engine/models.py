"""
Campaign Engine Data Models

Pydantic models for campaign definitions, recipients, dispatch jobs,
tracking events, analytics and API requests/responses.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class CampaignType(str, Enum):
    """Delivery channel of a campaign"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TriggerType(str, Enum):
    """Activation mode of a campaign"""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"
    EVENT_BASED = "event_based"


class RecurringFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class WinnerCriteria(str, Enum):
    OPEN_RATE = "open_rate"
    CLICK_RATE = "click_rate"
    CONVERSION_RATE = "conversion_rate"


class RemainderStrategy(str, Enum):
    """What happens to recipients left over by per-variant flooring"""
    HOLD_OUT = "hold_out"
    LARGEST_VARIANT = "largest_variant"


class TrackingKind(str, Enum):
    OPEN = "open"
    CLICK = "click"
    UNSUBSCRIBE = "unsubscribe"


class JobKind(str, Enum):
    CAMPAIGN = "campaign"
    REMINDER = "reminder"
    EXECUTION = "execution"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# =============================================================================
# CAMPAIGN DEFINITION
# =============================================================================

class TargetAudience(BaseModel):
    """Targeting rules resolved into recipients at execution time"""
    customer_ids: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)
    segments: List[str] = Field(default_factory=list)
    exclude_segments: List[str] = Field(default_factory=list)


class RecurringConfig(BaseModel):
    frequency: RecurringFrequency
    interval: int = Field(1, ge=1)
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(None, ge=1)


class EventTriggerConfig(BaseModel):
    events: List[str] = Field(default_factory=list)
    conditions: Dict[str, Any] = Field(default_factory=dict)
    delay: Optional[int] = Field(None, ge=0, description="Delay in minutes")


class ThrottlingSettings(BaseModel):
    enabled: bool = False
    max_per_hour: Optional[int] = Field(None, ge=1)
    max_per_day: Optional[int] = Field(None, ge=1)


class TrackingSettings(BaseModel):
    open_tracking: bool = True
    click_tracking: bool = True
    unsubscribe_tracking: bool = True


class CampaignSettings(BaseModel):
    send_time: Optional[str] = None
    timezone: str = "UTC"
    throttling: ThrottlingSettings = Field(default_factory=ThrottlingSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)


class ABTestVariant(BaseModel):
    """One content slice of an A/B tested campaign"""
    id: str
    name: str
    percentage: Decimal = Field(..., ge=0, le=100)
    subject: Optional[str] = None
    content: Optional[str] = None
    html_content: Optional[str] = None


class ABTestConfig(BaseModel):
    enabled: bool = False
    variants: List[ABTestVariant] = Field(default_factory=list)
    winner_criteria: Optional[WinnerCriteria] = None
    test_duration: Optional[int] = Field(None, ge=1, description="Test duration in hours")
    remainder_strategy: RemainderStrategy = RemainderStrategy.HOLD_OUT


class ExecutionLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class Campaign(BaseModel):
    """Campaign definition, state and counters"""
    campaign_id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    campaign_type: CampaignType
    status: CampaignStatus = CampaignStatus.DRAFT
    trigger_type: TriggerType = TriggerType.MANUAL

    # Content
    subject: Optional[str] = None
    content: Optional[str] = None
    html_content: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)

    # Targeting and triggers
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    scheduled_at: Optional[datetime] = None
    recurring_config: Optional[RecurringConfig] = None
    event_triggers: Optional[EventTriggerConfig] = None
    ab_test_config: ABTestConfig = Field(default_factory=ABTestConfig)
    settings: CampaignSettings = Field(default_factory=CampaignSettings)

    # Counters
    estimated_recipients: int = Field(0, ge=0)
    sent_count: int = Field(0, ge=0)
    delivered_count: int = Field(0, ge=0)
    opened_count: int = Field(0, ge=0)
    clicked_count: int = Field(0, ge=0)
    unsubscribed_count: int = Field(0, ge=0)
    bounced_count: int = Field(0, ge=0)
    failed_count: int = Field(0, ge=0)

    # Execution
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    execution_log: List[ExecutionLogEntry] = Field(default_factory=list)

    # Audit
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None


# =============================================================================
# RECIPIENTS AND DISPATCH
# =============================================================================

class Recipient(BaseModel):
    """A resolved delivery target"""
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    user_id: Optional[str] = None
    display_name: str = ""
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def first_name(self) -> str:
        parts = self.display_name.split(" ", 1)
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        parts = self.display_name.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""


class RecipientFilter(BaseModel):
    customer_ids: Optional[List[str]] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class VariantPlan(BaseModel):
    """Recipients assigned to one variant, with resolved content"""
    variant_id: str
    name: str
    subject: Optional[str] = None
    content: Optional[str] = None
    html_content: Optional[str] = None
    recipients: List[Recipient] = Field(default_factory=list)


class AllocationPlan(BaseModel):
    variants: List[VariantPlan] = Field(default_factory=list)
    unassigned: List[Recipient] = Field(default_factory=list)

    @property
    def assigned_count(self) -> int:
        return sum(len(v.recipients) for v in self.variants)


class RetryPolicy(BaseModel):
    """Retry policy applied by the worker pool to failed jobs"""
    max_attempts: int = Field(3, ge=1)
    backoff: BackoffType = BackoffType.EXPONENTIAL
    base_delay_ms: int = Field(2000, ge=0)

    def delay_for(self, attempts_made: int) -> int:
        """Delay in ms before the next attempt, after `attempts_made` failures"""
        if attempts_made < 1:
            return 0
        if self.backoff == BackoffType.FIXED:
            return self.base_delay_ms
        return self.base_delay_ms * (2 ** (attempts_made - 1))

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


class DispatchJob(BaseModel):
    """One message to one recipient over one channel"""
    job_id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:16]}")
    kind: JobKind = JobKind.CAMPAIGN
    idempotency_key: str
    execution_id: Optional[str] = None
    campaign_id: Optional[str] = None
    tenant_id: str
    variant_id: Optional[str] = None
    recipient_id: Optional[str] = None
    reference_id: Optional[str] = None
    channel: Optional[CampaignType] = None

    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_user_id: Optional[str] = None
    recipient_name: Optional[str] = None

    subject: Optional[str] = None
    content: str = ""
    html_content: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)

    status: JobStatus = JobStatus.PENDING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffType = BackoffType.EXPONENTIAL
    backoff_delay_ms: int = 2000
    run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def dedupe_key(self) -> str:
        """Scope within which the idempotency key must be unique among pending jobs"""
        if self.execution_id:
            return f"{self.execution_id}/{self.idempotency_key}"
        return self.idempotency_key

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            base_delay_ms=self.backoff_delay_ms,
        )

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts


class RecipientError(BaseModel):
    recipient_id: str
    error: str


class ExecutionResult(BaseModel):
    campaign_id: str
    execution_id: str
    total_recipients: int = 0
    enqueued: int = 0
    failed: int = 0
    unassigned: int = 0
    errors: List[RecipientError] = Field(default_factory=list)


# =============================================================================
# REMINDERS
# =============================================================================

class AppointmentReminderRequest(BaseModel):
    """Appointment data needed to schedule reminder jobs"""
    appointment_id: str
    tenant_id: str
    customer_id: str
    customer_name: str = ""
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    start_time: datetime
    service_name: str = "appointment"
    staff_name: Optional[str] = None
    channel: Optional[CampaignType] = None


# =============================================================================
# ANALYTICS
# =============================================================================

class CampaignAnalytics(BaseModel):
    campaign_id: str
    name: str
    status: CampaignStatus
    estimated_recipients: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    unsubscribed_count: int = 0
    bounced_count: int = 0
    failed_count: int = 0
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    unsubscribe_rate: float = 0.0
    bounce_rate: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    timeline: List[ExecutionLogEntry] = Field(default_factory=list)


class CampaignSummary(BaseModel):
    tenant_id: str
    total_campaigns: int = 0
    active_campaigns: int = 0
    total_sent: int = 0
    total_delivered: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    average_open_rate: float = 0.0
    average_click_rate: float = 0.0


# =============================================================================
# REQUESTS / RESPONSES
# =============================================================================

class CampaignCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    campaign_type: CampaignType
    trigger_type: TriggerType = TriggerType.MANUAL
    subject: Optional[str] = None
    content: Optional[str] = None
    html_content: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)
    target_audience: TargetAudience = Field(default_factory=TargetAudience)
    scheduled_at: Optional[datetime] = None
    recurring_config: Optional[RecurringConfig] = None
    event_triggers: Optional[EventTriggerConfig] = None
    ab_test_config: ABTestConfig = Field(default_factory=ABTestConfig)
    settings: CampaignSettings = Field(default_factory=CampaignSettings)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class CampaignUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[CampaignStatus] = None
    trigger_type: Optional[TriggerType] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    html_content: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None
    target_audience: Optional[TargetAudience] = None
    scheduled_at: Optional[datetime] = None
    recurring_config: Optional[RecurringConfig] = None
    event_triggers: Optional[EventTriggerConfig] = None
    ab_test_config: Optional[ABTestConfig] = None
    settings: Optional[CampaignSettings] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v is not None else v


class CampaignResponse(BaseModel):
    campaign: Campaign
    message: Optional[str] = None


class CampaignListResponse(BaseModel):
    campaigns: List[Campaign]
    total: int
    limit: int
    offset: int
    has_more: bool


class DomainEventRequest(BaseModel):
    name: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class DomainEventAccepted(BaseModel):
    accepted: bool = True
    event_id: str
    name: str


class UnsubscribeResponse(BaseModel):
    message: str = "You have been successfully unsubscribed"


class HealthResponse(BaseModel):
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ReadinessResponse(BaseModel):
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    alive: bool
    uptime_seconds: float


__all__ = [
    # Enums
    "CampaignType",
    "CampaignStatus",
    "TriggerType",
    "RecurringFrequency",
    "WinnerCriteria",
    "RemainderStrategy",
    "TrackingKind",
    "JobKind",
    "JobStatus",
    "BackoffType",
    # Campaign
    "TargetAudience",
    "RecurringConfig",
    "EventTriggerConfig",
    "ThrottlingSettings",
    "TrackingSettings",
    "CampaignSettings",
    "ABTestVariant",
    "ABTestConfig",
    "ExecutionLogEntry",
    "Campaign",
    # Dispatch
    "Recipient",
    "RecipientFilter",
    "VariantPlan",
    "AllocationPlan",
    "RetryPolicy",
    "DispatchJob",
    "RecipientError",
    "ExecutionResult",
    "AppointmentReminderRequest",
    # Analytics
    "CampaignAnalytics",
    "CampaignSummary",
    # API
    "CampaignCreateRequest",
    "CampaignUpdateRequest",
    "CampaignResponse",
    "CampaignListResponse",
    "DomainEventRequest",
    "DomainEventAccepted",
    "UnsubscribeResponse",
    "HealthResponse",
    "ReadinessResponse",
    "LivenessResponse",
]

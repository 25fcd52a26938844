"""
Campaign Event Data Models

Event type definitions and payload structures for published and
consumed domain events.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Event Type Definitions
# =============================================================================


class CampaignEventType(str, Enum):
    """
    Events published by the campaign engine.
    """
    CREATED = "campaign.created"
    UPDATED = "campaign.updated"
    LAUNCHED = "campaign.launched"
    PAUSED = "campaign.paused"
    RESUMED = "campaign.resumed"
    EXECUTED = "campaign.executed"
    EXECUTION_FAILED = "campaign.execution_failed"
    DELETED = "campaign.deleted"


class CampaignSubscribedEventType(str, Enum):
    """
    Events the campaign engine reacts to beyond generic event triggers.
    """
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_RESCHEDULED = "appointment.rescheduled"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_COMPLETED = "appointment.completed"
    NOTIFICATION_BOUNCED = "notification.bounced"


# =============================================================================
# Published Event Data
# =============================================================================


class CampaignLifecycleEventData(BaseModel):
    campaign_id: str
    tenant_id: str
    name: str
    status: str
    trigger_type: str
    changed_by: Optional[str] = None
    changed_fields: List[str] = Field(default_factory=list)
    timestamp: datetime


class CampaignExecutedEventData(BaseModel):
    campaign_id: str
    tenant_id: str
    execution_id: str
    total_recipients: int
    enqueued: int
    failed: int
    unassigned: int
    timestamp: datetime


class CampaignExecutionFailedEventData(BaseModel):
    campaign_id: str
    tenant_id: str
    error: str
    timestamp: datetime


# =============================================================================
# Consumed Event Data
# =============================================================================


class AppointmentEventData(BaseModel):
    """Appointment payload; accepts camelCase or snake_case keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    appointment_id: str
    customer_id: Optional[str] = None
    customer_name: str = ""
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    start_time: Optional[datetime] = None
    service_name: Optional[str] = None
    staff_name: Optional[str] = None


class NotificationBouncedEventData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    campaign_id: str
    recipient_id: str
    bounce_type: Optional[str] = None


__all__ = [
    "CampaignEventType",
    "CampaignSubscribedEventType",
    "CampaignLifecycleEventData",
    "CampaignExecutedEventData",
    "CampaignExecutionFailedEventData",
    "AppointmentEventData",
    "NotificationBouncedEventData",
]

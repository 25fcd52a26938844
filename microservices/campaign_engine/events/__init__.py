"""
Campaign Engine Events

Published lifecycle events, consumed domain events and their handler.
"""

from .handlers import CampaignEventHandler
from .models import (
    AppointmentEventData,
    CampaignEventType,
    CampaignExecutedEventData,
    CampaignExecutionFailedEventData,
    CampaignLifecycleEventData,
    CampaignSubscribedEventType,
    NotificationBouncedEventData,
)
from .publishers import CampaignEventPublisher

__all__ = [
    "CampaignEventHandler",
    "CampaignEventPublisher",
    "CampaignEventType",
    "CampaignSubscribedEventType",
    "CampaignLifecycleEventData",
    "CampaignExecutedEventData",
    "CampaignExecutionFailedEventData",
    "AppointmentEventData",
    "NotificationBouncedEventData",
]

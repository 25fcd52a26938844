"""
Campaign Engine Clients

Clients for calling other microservices.
"""

from .notification_client import NotificationClient
from .recipient_client import CustomerClient

__all__ = [
    "CustomerClient",
    "NotificationClient",
]

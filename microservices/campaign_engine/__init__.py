"""
Campaign Engine

Campaign automation and execution microservice providing:
- Campaign lifecycle management (create, launch, pause, resume, delete)
- Audience resolution and deterministic A/B variant allocation
- Scheduled, recurring and event-based triggers
- Throttled, retryable multi-channel dispatch (email, SMS, push, in-app)
- Open/click/unsubscribe tracking and campaign analytics

Port: 8240
"""

__version__ = "1.0.0"
__service__ = "campaign_engine"

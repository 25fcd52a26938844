#!/usr/bin/env python3
"""
Core Module for the Campaign Engine

Shared infrastructure components used by the campaign engine microservice.

COMPONENTS:
    - config/: Dataclass configuration loaded from environment (python-dotenv)
    - correlation.py: Request correlation ids for logging and error responses
    - nats_client.py: NATS JetStream domain event bus (nats-py)
    - postgres_client.py: asyncpg pool wrapper

USAGE:
    from core.config import get_settings
    from core.nats_client import Event, NATSEventBus
"""

__version__ = "1.0.0"

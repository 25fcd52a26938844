#!/usr/bin/env python3
"""Campaign engine configuration

Database, cache, event bus, collaborator endpoints, dispatch and scheduler
settings.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default

def _int_list(val: str, default: List[int]) -> List[int]:
    if not val:
        return list(default)
    try:
        return [int(part) for part in val.split(",") if part.strip()]
    except ValueError:
        return list(default)

def _str_list(val: str, default: List[str]) -> List[str]:
    if not val:
        return list(default)
    return [part.strip() for part in val.split(",") if part.strip()]


DEFAULT_REMINDER_INTERVALS = [1440, 60, 15]
DEFAULT_EVENT_SUBJECTS = ["appointment.*", "notification.bounced", "customer.*", "order.*"]


@dataclass
class CampaignEngineConfig:
    """Campaign engine settings"""

    service_name: str = "campaign_engine"
    service_port: int = 8240
    environment: str = "development"

    # ===========================================
    # PostgreSQL (native asyncpg)
    # ===========================================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_schema: str = "campaign"
    postgres_min_pool_size: int = 1
    postgres_max_pool_size: int = 10

    # ===========================================
    # Redis (optional, shared rate-limit counters)
    # ===========================================
    redis_url: Optional[str] = None

    # ===========================================
    # NATS JetStream (domain events)
    # ===========================================
    nats_url: str = "nats://localhost:4222"
    event_subjects: List[str] = field(
        default_factory=lambda: list(DEFAULT_EVENT_SUBJECTS)
    )

    # ===========================================
    # Collaborators
    # ===========================================
    customer_service_url: str = "http://localhost:8202"
    notification_service_url: str = "http://localhost:8270"
    http_timeout_seconds: float = 30.0
    sender_timeout_seconds: float = 20.0

    # ===========================================
    # Tracking
    # ===========================================
    tracking_base_url: str = "http://localhost:8240"
    default_redirect_url: str = "http://localhost:3000"
    tracking_rate_limit: int = 120
    tracking_rate_window_seconds: int = 60

    # ===========================================
    # Dispatch
    # ===========================================
    sms_max_length: int = 160
    worker_enabled: bool = True
    worker_concurrency: int = 4
    worker_poll_interval_seconds: float = 1.0
    job_visibility_timeout_seconds: int = 300
    job_max_attempts: int = 3
    job_backoff: str = "exponential"
    job_backoff_delay_ms: int = 2000

    # ===========================================
    # Scheduler
    # ===========================================
    scheduler_enabled: bool = True
    scheduled_tick_seconds: float = 60.0
    recurring_tick_seconds: float = 3600.0

    # ===========================================
    # Appointment reminders
    # ===========================================
    reminders_enabled: bool = True
    reminder_intervals_minutes: List[int] = field(
        default_factory=lambda: list(DEFAULT_REMINDER_INTERVALS)
    )
    reminder_channel: str = "email"

    @property
    def postgres_dsn(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @classmethod
    def from_env(cls) -> 'CampaignEngineConfig':
        """Load campaign engine config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            service_name=os.getenv("SERVICE_NAME", "campaign_engine"),
            service_port=_int(os.getenv("SERVICE_PORT", "8240"), 8240),
            environment=env,
            postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
            postgres_port=_int(os.getenv("POSTGRES_PORT", "5432"), 5432),
            postgres_db=os.getenv("POSTGRES_DB", "postgres"),
            postgres_user=os.getenv("POSTGRES_USER", "postgres"),
            postgres_password=os.getenv("POSTGRES_PASSWORD", "postgres"),
            postgres_schema=os.getenv("POSTGRES_SCHEMA", "campaign"),
            postgres_min_pool_size=_int(os.getenv("POSTGRES_MIN_POOL_SIZE", "1"), 1),
            postgres_max_pool_size=_int(os.getenv("POSTGRES_MAX_POOL_SIZE", "10"), 10),
            redis_url=os.getenv("REDIS_URL") or None,
            nats_url=os.getenv("NATS_URL", "nats://localhost:4222"),
            event_subjects=_str_list(os.getenv("EVENT_SUBJECTS", ""), DEFAULT_EVENT_SUBJECTS),
            customer_service_url=os.getenv("CUSTOMER_SERVICE_URL", "http://localhost:8202"),
            notification_service_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8270"),
            http_timeout_seconds=_float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"), 30.0),
            sender_timeout_seconds=_float(os.getenv("SENDER_TIMEOUT_SECONDS", "20"), 20.0),
            tracking_base_url=os.getenv("TRACKING_BASE_URL", "http://localhost:8240").rstrip("/"),
            default_redirect_url=os.getenv("DEFAULT_REDIRECT_URL", "http://localhost:3000"),
            tracking_rate_limit=_int(os.getenv("TRACKING_RATE_LIMIT", "120"), 120),
            tracking_rate_window_seconds=_int(os.getenv("TRACKING_RATE_WINDOW_SECONDS", "60"), 60),
            sms_max_length=_int(os.getenv("SMS_MAX_LENGTH", "160"), 160),
            worker_enabled=_bool(os.getenv("WORKER_ENABLED", "true")),
            worker_concurrency=_int(os.getenv("WORKER_CONCURRENCY", "4"), 4),
            worker_poll_interval_seconds=_float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "1"), 1.0),
            job_visibility_timeout_seconds=_int(os.getenv("JOB_VISIBILITY_TIMEOUT_SECONDS", "300"), 300),
            job_max_attempts=_int(os.getenv("JOB_MAX_ATTEMPTS", "3"), 3),
            job_backoff=os.getenv("JOB_BACKOFF", "exponential"),
            job_backoff_delay_ms=_int(os.getenv("JOB_BACKOFF_DELAY_MS", "2000"), 2000),
            scheduler_enabled=_bool(os.getenv("SCHEDULER_ENABLED", "true")),
            scheduled_tick_seconds=_float(os.getenv("SCHEDULED_TICK_SECONDS", "60"), 60.0),
            recurring_tick_seconds=_float(os.getenv("RECURRING_TICK_SECONDS", "3600"), 3600.0),
            reminders_enabled=_bool(os.getenv("APPOINTMENT_REMINDERS_ENABLED", "true")),
            reminder_intervals_minutes=_int_list(
                os.getenv("REMINDER_INTERVALS", ""), DEFAULT_REMINDER_INTERVALS
            ),
            reminder_channel=os.getenv("REMINDER_CHANNEL", "email"),
        )

"""
Campaign Engine Factory

Factory for creating campaign engine components with proper dependency injection.
"""

import logging
from typing import Optional

from core.config import CampaignEngineConfig, get_settings
from core.nats_client import NATSEventBus
from core.postgres_client import PostgresClient

from .audience import AudienceResolver
from .campaign_repository import CampaignRepository
from .campaign_service import CampaignService
from .clients.notification_client import NotificationClient
from .clients.recipient_client import CustomerClient
from .delivery_processor import ChannelDeliveryProcessor
from .events.handlers import CampaignEventHandler
from .events.publishers import CampaignEventPublisher
from .execution import CampaignExecutor
from .metrics import CampaignMetricsAggregator
from .models import BackoffType, CampaignType, RetryPolicy
from .protocols import (
    CampaignRepositoryProtocol,
    ChannelSenderProtocol,
    EventBusProtocol,
    RecipientSourceProtocol,
    TaskQueueProtocol,
    WindowCounterStoreProtocol,
)
from .rate_limit import LocalWindowCounterStore, RateLimiter, RedisWindowCounterStore
from .reminders import ReminderScheduler
from .rendering import TrackingUrlBuilder
from .task_queue import PostgresTaskQueue
from .tracking import TrackingCollector
from .triggers import TriggerEvaluator
from .variants import VariantAllocator
from .worker import DispatchWorkerPool

logger = logging.getLogger(__name__)


class CampaignEngineFactory:
    """Factory for creating campaign engine components"""

    def __init__(
        self,
        config: Optional[CampaignEngineConfig] = None,
        repository: Optional[CampaignRepositoryProtocol] = None,
        task_queue: Optional[TaskQueueProtocol] = None,
        recipient_source: Optional[RecipientSourceProtocol] = None,
        channel_sender: Optional[ChannelSenderProtocol] = None,
        counter_store: Optional[WindowCounterStoreProtocol] = None,
        event_bus: Optional[EventBusProtocol] = None,
    ):
        self.config = config or get_settings()
        self._db: Optional[PostgresClient] = None
        self._repository = repository
        self._task_queue = task_queue
        self._recipient_source = recipient_source
        self._channel_sender = channel_sender
        self._counter_store = counter_store
        self._event_bus = event_bus
        self._event_publisher: Optional[CampaignEventPublisher] = None
        self._executor: Optional[CampaignExecutor] = None
        self._service: Optional[CampaignService] = None
        self._worker_pool: Optional[DispatchWorkerPool] = None
        self._trigger_evaluator: Optional[TriggerEvaluator] = None
        self._tracking: Optional[TrackingCollector] = None
        self._reminders: Optional[ReminderScheduler] = None
        self._event_handler: Optional[CampaignEventHandler] = None
        self._initialized = False

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.config.job_max_attempts,
            backoff=BackoffType(self.config.job_backoff),
            base_delay_ms=self.config.job_backoff_delay_ms,
        )

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Campaign Engine components...")
        config = self.config

        # Storage
        if self._repository is None or self._task_queue is None:
            self._db = PostgresClient(
                dsn=config.postgres_dsn,
                min_size=config.postgres_min_pool_size,
                max_size=config.postgres_max_pool_size,
            )
            await self._db.connect()
        if self._repository is None:
            self._repository = CampaignRepository(self._db, schema=config.postgres_schema)
        if self._task_queue is None:
            self._task_queue = PostgresTaskQueue(
                self._db,
                schema=config.postgres_schema,
                visibility_timeout_seconds=config.job_visibility_timeout_seconds,
            )

        # Collaborators
        if self._recipient_source is None:
            self._recipient_source = CustomerClient(
                config.customer_service_url, timeout=config.http_timeout_seconds
            )
        if self._channel_sender is None:
            self._channel_sender = NotificationClient(
                config.notification_service_url, timeout=config.http_timeout_seconds
            )
        if self._counter_store is None:
            if config.redis_url:
                self._counter_store = RedisWindowCounterStore(config.redis_url)
            else:
                self._counter_store = LocalWindowCounterStore()

        # Event bus
        if self._event_bus is None:
            self._event_bus = NATSEventBus(
                service_name=config.service_name, servers=config.nats_url
            )
            await self._event_bus.connect()
        self._event_publisher = CampaignEventPublisher(self._event_bus)

        # Dispatch pipeline
        audience_resolver = AudienceResolver(self._recipient_source)
        retry_policy = self.retry_policy
        self._executor = CampaignExecutor(
            repository=self._repository,
            audience_resolver=audience_resolver,
            task_queue=self._task_queue,
            variant_allocator=VariantAllocator(),
            event_publisher=self._event_publisher,
            retry_policy=retry_policy,
        )
        processor = ChannelDeliveryProcessor(
            repository=self._repository,
            channel_sender=self._channel_sender,
            url_builder=TrackingUrlBuilder(config.tracking_base_url),
            sms_max_length=config.sms_max_length,
            send_timeout=config.sender_timeout_seconds,
        )
        self._worker_pool = DispatchWorkerPool(
            task_queue=self._task_queue,
            processor=processor,
            concurrency=config.worker_concurrency,
            poll_interval=config.worker_poll_interval_seconds,
            executor=self._executor,
        )

        # Triggers, tracking and reminders
        self._trigger_evaluator = TriggerEvaluator(
            repository=self._repository,
            executor=self._executor,
            scheduled_tick_seconds=config.scheduled_tick_seconds,
            recurring_tick_seconds=config.recurring_tick_seconds,
        )
        self._tracking = TrackingCollector(
            repository=self._repository,
            rate_limiter=RateLimiter(
                self._counter_store,
                limit=config.tracking_rate_limit,
                window_seconds=config.tracking_rate_window_seconds,
            ),
        )
        if config.reminders_enabled:
            self._reminders = ReminderScheduler(
                task_queue=self._task_queue,
                intervals_minutes=config.reminder_intervals_minutes,
                channel=CampaignType(config.reminder_channel),
                retry_policy=retry_policy,
            )

        # Main service
        self._service = CampaignService(
            repository=self._repository,
            audience_resolver=audience_resolver,
            executor=self._executor,
            metrics=CampaignMetricsAggregator(self._repository),
            event_publisher=self._event_publisher,
        )

        # Event handler
        self._event_handler = CampaignEventHandler(
            trigger_evaluator=self._trigger_evaluator,
            reminder_scheduler=self._reminders,
            tracking_collector=self._tracking,
        )
        for subject in config.event_subjects:
            await self._event_bus.subscribe_to_events(subject, self._event_handler.handle_event)

        self._initialized = True
        logger.info("Campaign Engine components initialized")

    def start_background_tasks(self) -> None:
        """Start the dispatch workers and trigger loops per configuration"""
        if self.config.worker_enabled:
            self.worker_pool.start()
        if self.config.scheduler_enabled:
            self.trigger_evaluator.start()

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Campaign Engine components...")

        if self._trigger_evaluator:
            await self._trigger_evaluator.stop()

        if self._worker_pool:
            await self._worker_pool.stop()

        if self._event_bus:
            await self._event_bus.close()

        if isinstance(self._counter_store, RedisWindowCounterStore):
            await self._counter_store.close()

        if self._db:
            await self._db.close()

        self._initialized = False
        logger.info("Campaign Engine components closed")

    def _require(self, component):
        if not self._initialized or component is None:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return component

    @property
    def repository(self) -> CampaignRepositoryProtocol:
        """Get campaign repository"""
        return self._require(self._repository)

    @property
    def task_queue(self) -> TaskQueueProtocol:
        """Get dispatch queue"""
        return self._require(self._task_queue)

    @property
    def service(self) -> CampaignService:
        """Get campaign service"""
        return self._require(self._service)

    @property
    def executor(self) -> CampaignExecutor:
        return self._require(self._executor)

    @property
    def worker_pool(self) -> DispatchWorkerPool:
        return self._require(self._worker_pool)

    @property
    def trigger_evaluator(self) -> TriggerEvaluator:
        return self._require(self._trigger_evaluator)

    @property
    def tracking(self) -> TrackingCollector:
        return self._require(self._tracking)

    @property
    def reminders(self) -> Optional[ReminderScheduler]:
        return self._reminders

    @property
    def event_bus(self) -> EventBusProtocol:
        """Get event bus"""
        return self._require(self._event_bus)

    @property
    def event_handler(self) -> CampaignEventHandler:
        """Get event handler"""
        return self._require(self._event_handler)

    @property
    def event_publisher(self) -> Optional[CampaignEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


# Global factory instance
_factory: Optional[CampaignEngineFactory] = None


async def get_factory() -> CampaignEngineFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = CampaignEngineFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "CampaignEngineFactory",
    "get_factory",
    "close_factory",
]

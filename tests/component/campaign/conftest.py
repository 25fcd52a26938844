"""
Component Test Fixtures for Campaign Engine

Provides in-memory implementations of the repository, dispatch queue,
recipient source and channel senders, plus fully wired engine components.
"""

import asyncio
import fnmatch
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import CampaignEngineConfig
from microservices.campaign_engine.audience import AudienceResolver
from microservices.campaign_engine.delivery_processor import ChannelDeliveryProcessor
from microservices.campaign_engine.events.publishers import CampaignEventPublisher
from microservices.campaign_engine.execution import CampaignExecutor
from microservices.campaign_engine.factory import CampaignEngineFactory
from microservices.campaign_engine.campaign_service import CampaignService
from microservices.campaign_engine.protocols import EnqueueError
from microservices.campaign_engine.rate_limit import LocalWindowCounterStore
from microservices.campaign_engine.rendering import TrackingUrlBuilder
from microservices.campaign_engine.task_queue import apply_retry_policy
from microservices.campaign_engine.worker import DispatchWorkerPool

from tests.contracts.campaign.data_contract import (
    Campaign,
    CampaignStatus,
    CampaignTestDataFactory,
    DispatchJob,
    ExecutionLogEntry,
    JobStatus,
    Recipient,
    RetryPolicy,
    TriggerType,
)


TRACKING_BASE_URL = "http://track.test"


# ====================
# Mock Repository
# ====================


class MockCampaignRepository:
    """In-memory campaign store"""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}

    async def health_check(self) -> bool:
        return True

    def _live(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None or campaign.deleted_at is not None:
            return None
        return campaign

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.campaign_id] = campaign.model_copy(deep=True)
        return campaign.model_copy(deep=True)

    async def get_campaign(
        self, campaign_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Campaign]:
        campaign = self._live(campaign_id)
        if campaign is None:
            return None
        if tenant_id and campaign.tenant_id != tenant_id:
            return None
        return campaign.model_copy(deep=True)

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        results = [
            c for c in self.campaigns.values()
            if c.deleted_at is None and c.tenant_id == tenant_id
        ]
        if status:
            results = [c for c in results if c.status in status]
        if trigger_type:
            results = [c for c in results if c.trigger_type == trigger_type]
        results.sort(key=lambda c: c.created_at, reverse=True)
        page = results[offset:offset + limit]
        return [c.model_copy(deep=True) for c in page], len(results)

    async def update_campaign(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        campaign = self._live(campaign_id)
        if campaign is None:
            return None
        for key, value in updates.items():
            setattr(campaign, key, value)
        campaign.updated_at = datetime.now(timezone.utc)
        return campaign.model_copy(deep=True)

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        campaign = self._live(campaign_id)
        if campaign is None or campaign.status not in from_statuses:
            return None
        campaign.status = to_status
        for key, value in fields.items():
            setattr(campaign, key, value)
        campaign.updated_at = datetime.now(timezone.utc)
        return campaign.model_copy(deep=True)

    async def claim_execution(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        seen_last_executed_at: Optional[datetime],
        executed_at: datetime,
    ) -> Optional[Campaign]:
        campaign = self._live(campaign_id)
        if (
            campaign is None
            or campaign.status not in from_statuses
            or campaign.last_executed_at != seen_last_executed_at
        ):
            return None
        campaign.status = CampaignStatus.ACTIVE
        campaign.started_at = campaign.started_at or executed_at
        campaign.last_executed_at = executed_at
        campaign.updated_at = executed_at
        return campaign.model_copy(deep=True)

    async def increment_counters(self, campaign_id: str, **deltas: int) -> bool:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return False
        for column, delta in deltas.items():
            setattr(campaign, column, getattr(campaign, column) + delta)
        return True

    async def set_estimated_recipients(self, campaign_id: str, count: int) -> None:
        campaign = self.campaigns.get(campaign_id)
        if campaign:
            campaign.estimated_recipients = count

    async def append_execution_log(
        self, campaign_id: str, entry: ExecutionLogEntry
    ) -> None:
        campaign = self.campaigns.get(campaign_id)
        if campaign:
            campaign.execution_log.append(entry)

    async def soft_delete(self, campaign_id: str) -> bool:
        campaign = self._live(campaign_id)
        if campaign is None:
            return False
        campaign.deleted_at = datetime.now(timezone.utc)
        return True

    async def find_due_scheduled(self, now: datetime) -> List[Campaign]:
        return [
            c.model_copy(deep=True) for c in self.campaigns.values()
            if c.deleted_at is None
            and c.status == CampaignStatus.SCHEDULED
            and c.scheduled_at is not None
            and c.scheduled_at <= now
        ]

    async def find_active_by_trigger(
        self, trigger_type: TriggerType, tenant_id: Optional[str] = None
    ) -> List[Campaign]:
        return [
            c.model_copy(deep=True) for c in self.campaigns.values()
            if c.deleted_at is None
            and c.status == CampaignStatus.ACTIVE
            and c.trigger_type == trigger_type
            and (tenant_id is None or c.tenant_id == tenant_id)
        ]

    async def get_tenant_totals(self, tenant_id: str) -> Dict[str, int]:
        campaigns = [
            c for c in self.campaigns.values()
            if c.deleted_at is None and c.tenant_id == tenant_id
        ]
        return {
            "total_campaigns": len(campaigns),
            "active_campaigns": sum(1 for c in campaigns if c.status == CampaignStatus.ACTIVE),
            "total_sent": sum(c.sent_count for c in campaigns),
            "total_delivered": sum(c.delivered_count for c in campaigns),
            "total_opened": sum(c.opened_count for c in campaigns),
            "total_clicked": sum(c.clicked_count for c in campaigns),
        }

    # Test helpers
    def stored(self, campaign_id: str) -> Campaign:
        return self.campaigns[campaign_id]


# ====================
# Mock Task Queue
# ====================


class MockTaskQueue:
    """In-memory dispatch queue; claim_due ignores run_at unless respect_delays is set"""

    def __init__(self, respect_delays: bool = False):
        self.jobs: Dict[str, DispatchJob] = {}
        self.delays: Dict[str, int] = {}
        self.fail_for_recipients: set = set()
        self.respect_delays = respect_delays

    async def enqueue(
        self,
        job: DispatchJob,
        delay_ms: int = 0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Optional[DispatchJob]:
        if job.recipient_id in self.fail_for_recipients:
            raise EnqueueError(f"queue unavailable for {job.recipient_id}")
        for existing in self.jobs.values():
            if (
                existing.dedupe_key == job.dedupe_key
                and existing.status in (JobStatus.PENDING, JobStatus.RUNNING)
            ):
                return None
        apply_retry_policy(job, retry_policy)
        job.status = JobStatus.PENDING
        job.attempts_made = 0
        job.run_at = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        self.jobs[job.job_id] = job
        self.delays[job.job_id] = delay_ms
        return job

    async def list_pending(self, campaign_id: str) -> List[DispatchJob]:
        return [
            j for j in self.jobs.values()
            if j.campaign_id == campaign_id and j.status == JobStatus.PENDING
        ]

    async def list_pending_for_reference(self, reference_id: str) -> List[DispatchJob]:
        return [
            j for j in self.jobs.values()
            if j.reference_id == reference_id and j.status == JobStatus.PENDING
        ]

    async def remove(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False
        del self.jobs[job_id]
        return True

    async def claim_due(self, limit: int = 1) -> List[DispatchJob]:
        now = datetime.now(timezone.utc)
        due = [
            j for j in self.jobs.values()
            if j.status == JobStatus.PENDING
            and (not self.respect_delays or j.run_at is None or j.run_at <= now)
        ]
        due.sort(key=lambda j: j.run_at or now)
        claimed = due[:limit]
        for job in claimed:
            job.status = JobStatus.RUNNING
        return [job.model_copy() for job in claimed]

    async def complete(self, job_id: str) -> None:
        self.jobs[job_id].status = JobStatus.COMPLETED

    async def retry(
        self, job_id: str, attempts_made: int, error: str, delay_ms: int
    ) -> None:
        job = self.jobs[job_id]
        job.status = JobStatus.PENDING
        job.attempts_made = attempts_made
        job.last_error = error
        job.run_at = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        self.delays[job_id] = delay_ms

    async def dead_letter(self, job_id: str, attempts_made: int, error: str) -> None:
        job = self.jobs[job_id]
        job.status = JobStatus.FAILED
        job.attempts_made = attempts_made
        job.last_error = error

    async def list_dead_letters(self, tenant_id: str, limit: int = 100) -> List[DispatchJob]:
        return [
            j for j in self.jobs.values()
            if j.tenant_id == tenant_id and j.status == JobStatus.FAILED
        ][:limit]

    # Test helpers
    def by_status(self, status: JobStatus) -> List[DispatchJob]:
        return [j for j in self.jobs.values() if j.status == status]


# ====================
# Mock Collaborators
# ====================


class MockRecipientSource:
    """Recipient source returning a fixed list per tenant; `yield_control`
    makes each lookup suspend like a network call"""

    def __init__(self):
        self.recipients: Dict[str, List[Recipient]] = {}
        self.error: Optional[Exception] = None
        self.calls: List[str] = []
        self.yield_control = False

    def set_recipients(self, tenant_id: str, recipients: List[Recipient]) -> None:
        self.recipients[tenant_id] = list(recipients)

    async def list_recipients(self, tenant_id: str, recipient_filter=None) -> List[Recipient]:
        self.calls.append(tenant_id)
        if self.yield_control:
            await asyncio.sleep(0)
        if self.error:
            raise self.error
        return list(self.recipients.get(tenant_id, []))


class MockChannelSender:
    """Records every send; `results` queues per-call outcomes (default delivered)"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.results: List[Any] = []

    def _next_result(self) -> bool:
        if not self.results:
            return True
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        self.sent.append({"channel": "email", "to": to, "subject": subject, "body": html})
        return self._next_result()

    async def send_sms(self, to: str, body: str) -> bool:
        self.sent.append({"channel": "sms", "to": to, "body": body})
        return self._next_result()

    async def send_in_app(self, user_id: str, title: str, message: str) -> bool:
        self.sent.append({"channel": "in_app", "to": user_id, "subject": title, "body": message})
        return self._next_result()


class MockEventBus:
    """Event bus recording published events"""

    def __init__(self):
        self.published_events: List[Any] = []
        self.subscriptions: Dict[str, Any] = {}
        self.is_connected = True

    async def publish_event(self, event) -> bool:
        self.published_events.append(event)
        return True

    def subscribe(self, pattern: str, handler, predicate=None) -> str:
        self.subscriptions[pattern] = handler
        return pattern

    def get_events_by_name(self, name: str) -> List[Any]:
        return [e for e in self.published_events if e.name == name]


class InMemoryEventBus:
    """Stands in for the NATS bus: delivers published events to matching
    subscribers as background tasks"""

    def __init__(self):
        self.subscriptions: List[Tuple[str, Any, Any]] = []
        self.published_events: List[Any] = []
        self.is_connected = True
        self._tasks: set = set()

    async def subscribe_to_events(self, pattern: str, handler, predicate=None) -> str:
        self.subscriptions.append((pattern, handler, predicate))
        return pattern

    async def publish_event(self, event) -> bool:
        self.published_events.append(event)
        for pattern, handler, predicate in self.subscriptions:
            if not self._matches_pattern(pattern, event.name):
                continue
            if predicate is not None and not predicate(event):
                continue
            task = asyncio.create_task(handler(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        while any(not task.done() for task in self._tasks):
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._tasks.clear()
        self.is_connected = False

    def subscribed_patterns(self) -> List[str]:
        return [pattern for pattern, _, _ in self.subscriptions]

    def _matches_pattern(self, pattern: str, subject: str) -> bool:
        """NATS wildcards: "*" is one token, ">" the remaining tokens"""
        if pattern.endswith(">"):
            return subject.startswith(pattern[:-1]) and len(subject) > len(pattern) - 1
        return len(pattern.split(".")) == len(subject.split(".")) and fnmatch.fnmatchcase(
            subject, pattern
        )


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Test data factory"""
    return CampaignTestDataFactory()


@pytest.fixture
def mock_repository():
    return MockCampaignRepository()


@pytest.fixture
def mock_task_queue():
    return MockTaskQueue()


@pytest.fixture
def mock_recipient_source():
    return MockRecipientSource()


@pytest.fixture
def mock_channel_sender():
    return MockChannelSender()


@pytest.fixture
def mock_event_bus():
    return MockEventBus()


@pytest.fixture
def in_memory_event_bus():
    return InMemoryEventBus()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay_ms=2000)


@pytest.fixture
def executor(mock_repository, mock_recipient_source, mock_task_queue, mock_event_bus, retry_policy):
    """Campaign executor wired to in-memory dependencies"""
    return CampaignExecutor(
        repository=mock_repository,
        audience_resolver=AudienceResolver(mock_recipient_source),
        task_queue=mock_task_queue,
        event_publisher=CampaignEventPublisher(mock_event_bus),
        retry_policy=retry_policy,
    )


@pytest.fixture
def campaign_service(mock_repository, mock_recipient_source, executor, mock_event_bus):
    """Campaign service wired to in-memory dependencies"""
    return CampaignService(
        repository=mock_repository,
        audience_resolver=AudienceResolver(mock_recipient_source),
        executor=executor,
        event_publisher=CampaignEventPublisher(mock_event_bus),
    )


@pytest.fixture
def processor(mock_repository, mock_channel_sender):
    return ChannelDeliveryProcessor(
        repository=mock_repository,
        channel_sender=mock_channel_sender,
        url_builder=TrackingUrlBuilder(TRACKING_BASE_URL),
        send_timeout=1.0,
    )


@pytest.fixture
def worker_pool(mock_task_queue, processor, executor):
    return DispatchWorkerPool(
        mock_task_queue, processor, concurrency=2, poll_interval=0.01, executor=executor
    )


@pytest.fixture
def engine_config():
    """Engine configuration with background loops disabled"""
    return CampaignEngineConfig(
        worker_enabled=False,
        scheduler_enabled=False,
        tracking_base_url=TRACKING_BASE_URL,
        tracking_rate_limit=5,
        reminder_intervals_minutes=[1440, 60, 15],
    )


@pytest_asyncio.fixture
async def engine(
    engine_config,
    mock_repository,
    mock_task_queue,
    mock_recipient_source,
    mock_channel_sender,
    in_memory_event_bus,
):
    """Fully wired engine over in-memory dependencies"""
    engine = CampaignEngineFactory(
        config=engine_config,
        repository=mock_repository,
        task_queue=mock_task_queue,
        recipient_source=mock_recipient_source,
        channel_sender=mock_channel_sender,
        counter_store=LocalWindowCounterStore(),
        event_bus=in_memory_event_bus,
    )
    await engine.initialize()
    yield engine
    await engine.close()


@pytest.fixture
def tenant_id():
    return "tnt_test"


@pytest.fixture
def recipients(factory, mock_recipient_source, tenant_id):
    """Two recipients registered for the test tenant"""
    people = factory.make_recipients(2)
    mock_recipient_source.set_recipients(tenant_id, people)
    return people

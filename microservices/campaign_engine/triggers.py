"""
Trigger Evaluator

Decides which campaigns must run now: scheduled campaigns whose time has
come (minute tick), recurring campaigns whose next occurrence has passed
(hour tick), and event-based campaigns matching an incoming domain event.
Every run claims its campaign before enqueueing, so ticks firing on
several replicas at once still produce a single wave.
"""

import asyncio
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from core.nats_client import Event
from .execution import CampaignExecutor
from .models import (
    Campaign,
    CampaignStatus,
    RecurringConfig,
    RecurringFrequency,
    TriggerType,
)
from .protocols import CampaignRepositoryProtocol, ExecutionClaimError

logger = logging.getLogger(__name__)


MS_PER_MINUTE = 60_000

# ====================
# Pure predicates
# ====================


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(last_execution: datetime, config: RecurringConfig) -> datetime:
    interval = config.interval
    if config.frequency == RecurringFrequency.DAILY:
        return last_execution + timedelta(days=interval)
    if config.frequency == RecurringFrequency.WEEKLY:
        return last_execution + timedelta(days=interval * 7)
    if config.frequency == RecurringFrequency.MONTHLY:
        return add_months(last_execution, interval)
    return add_months(last_execution, interval * 12)


def last_execution_of(campaign: Campaign) -> datetime:
    return ensure_aware(campaign.last_executed_at or campaign.completed_at or campaign.created_at)


def is_schedule_due(campaign: Campaign, now: datetime) -> bool:
    if campaign.status != CampaignStatus.SCHEDULED or not campaign.scheduled_at:
        return False
    return ensure_aware(campaign.scheduled_at) <= ensure_aware(now)


def should_execute_recurring(campaign: Campaign, now: datetime) -> bool:
    """
    True when an active recurring campaign has reached its next occurrence.

    Stops once end_date has passed or sent_count has reached max_occurrences.
    """
    config = campaign.recurring_config
    if (
        campaign.status != CampaignStatus.ACTIVE
        or campaign.trigger_type != TriggerType.RECURRING
        or not config
    ):
        return False

    now = ensure_aware(now)
    if config.end_date and now > ensure_aware(config.end_date):
        return False
    if config.max_occurrences and campaign.sent_count >= config.max_occurrences:
        return False

    return now >= next_occurrence(last_execution_of(campaign), config)


def normalize_event_name(name: str) -> str:
    """appointment.created and appointment_created name the same event"""
    return name.strip().lower().replace("_", ".")


def conditions_match(conditions: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    for key, expected in conditions.items():
        if key not in payload or payload[key] != expected:
            return False
    return True


def matches_event_trigger(campaign: Campaign, event: Event) -> bool:
    triggers = campaign.event_triggers
    if (
        campaign.status != CampaignStatus.ACTIVE
        or campaign.trigger_type != TriggerType.EVENT_BASED
        or not triggers
    ):
        return False
    if event.tenant_id and campaign.tenant_id != event.tenant_id:
        return False

    wanted = normalize_event_name(event.name)
    if not any(normalize_event_name(name) == wanted for name in triggers.events):
        return False

    return conditions_match(triggers.conditions, event.payload)


# ====================
# Evaluator
# ====================


class TriggerEvaluator:
    """Runs due campaigns on timer ticks and on domain events"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        executor: CampaignExecutor,
        scheduled_tick_seconds: float = 60,
        recurring_tick_seconds: float = 3600,
    ):
        self.repository = repository
        self.executor = executor
        self.scheduled_tick_seconds = scheduled_tick_seconds
        self.recurring_tick_seconds = recurring_tick_seconds
        self.is_running = False
        self._loops: Set[asyncio.Task] = set()
        self._executions: Set[asyncio.Task] = set()

    async def process_scheduled_campaigns(self, now: Optional[datetime] = None) -> int:
        """Execute every scheduled campaign whose time has come"""
        now = now or datetime.now(timezone.utc)
        executed = 0
        for campaign in await self.repository.find_due_scheduled(now):
            if not is_schedule_due(campaign, now):
                continue
            if await self._execute(campaign.campaign_id, "scheduled", [CampaignStatus.SCHEDULED]):
                executed += 1
        return executed

    async def process_recurring_campaigns(self, now: Optional[datetime] = None) -> int:
        """Execute every recurring campaign past its next occurrence"""
        now = now or datetime.now(timezone.utc)
        executed = 0
        for campaign in await self.repository.find_active_by_trigger(TriggerType.RECURRING):
            if not should_execute_recurring(campaign, now):
                continue
            if await self._execute(campaign.campaign_id, "recurring", [CampaignStatus.ACTIVE]):
                executed += 1
        return executed

    async def handle_domain_event(self, event: Event) -> int:
        """
        Start every matching event-based campaign without waiting for it.

        Campaigns with a trigger delay are queued as execution jobs that a
        dispatch worker runs once due, so the delay survives a restart.

        Returns the number of campaigns whose execution was started or queued.
        """
        campaigns = await self.repository.find_active_by_trigger(
            TriggerType.EVENT_BASED, event.tenant_id
        )
        started = 0
        for campaign in campaigns:
            if not matches_event_trigger(campaign, event):
                continue
            delay_minutes = campaign.event_triggers.delay or 0
            logger.info(
                f"Event {event.name} triggers campaign {campaign.campaign_id}"
                + (f" in {delay_minutes} minute(s)" if delay_minutes else "")
            )
            if delay_minutes:
                try:
                    await self.executor.schedule_execution(
                        campaign, delay_minutes * MS_PER_MINUTE, event.id
                    )
                except Exception as e:
                    logger.error(f"Could not queue delayed execution of campaign {campaign.campaign_id}: {e}")
                    continue
            else:
                self._spawn(self._execute(campaign.campaign_id, "event", [CampaignStatus.ACTIVE]))
            started += 1
        return started

    # ====================
    # Timer loops
    # ====================

    def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._loops.add(asyncio.create_task(
            self._run_loop(self.scheduled_tick_seconds, self.process_scheduled_campaigns)
        ))
        self._loops.add(asyncio.create_task(
            self._run_loop(self.recurring_tick_seconds, self.process_recurring_campaigns)
        ))
        logger.info("Trigger evaluator started")

    async def stop(self) -> None:
        self.is_running = False
        tasks = list(self._loops) + list(self._executions)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._executions.clear()
        logger.info("Trigger evaluator stopped")

    async def wait_for_pending(self) -> None:
        """Wait for event-started executions to finish"""
        while any(not task.done() for task in self._executions):
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    async def _run_loop(self, period_seconds: float, tick) -> None:
        while self.is_running:
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Trigger tick {tick.__name__} failed: {e}", exc_info=True)
            await asyncio.sleep(period_seconds)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)

    async def _execute(
        self, campaign_id: str, reason: str, expected_from: List[CampaignStatus]
    ) -> bool:
        try:
            await self.executor.execute_campaign(campaign_id, expected_from=expected_from)
            return True
        except ExecutionClaimError as e:
            logger.info(f"{reason.capitalize()} execution of campaign {campaign_id} skipped: {e}")
            return False
        except Exception as e:
            logger.error(f"{reason.capitalize()} execution of campaign {campaign_id} failed: {e}")
            return False


__all__ = [
    "TriggerEvaluator",
    "add_months",
    "conditions_match",
    "ensure_aware",
    "is_schedule_due",
    "last_execution_of",
    "matches_event_trigger",
    "next_occurrence",
    "normalize_event_name",
    "should_execute_recurring",
]

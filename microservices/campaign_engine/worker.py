"""
Dispatch Worker Pool

A fixed number of asyncio workers drain the dispatch queue. Each claimed
job is handed to the delivery processor (or, for delayed executions, to
the campaign executor), then completed, scheduled for a retry with
backoff, or dead-lettered once its attempts are exhausted.
"""

import asyncio
import logging
from typing import List, Optional

from .delivery_processor import ChannelDeliveryProcessor
from .execution import CampaignExecutor
from .models import CampaignStatus, DispatchJob, JobKind
from .protocols import CampaignNotFoundError, InvalidCampaignStateError, TaskQueueProtocol

logger = logging.getLogger(__name__)


class DispatchWorkerPool:
    """Pool of queue-draining workers"""

    def __init__(
        self,
        task_queue: TaskQueueProtocol,
        processor: ChannelDeliveryProcessor,
        concurrency: int = 4,
        poll_interval: float = 1.0,
        executor: Optional[CampaignExecutor] = None,
    ):
        self.task_queue = task_queue
        self.processor = processor
        self.executor = executor
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.is_running = False
        self._workers: List[asyncio.Task] = []

    def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(i)) for i in range(self.concurrency)
        ]
        logger.info(f"Dispatch worker pool started with {self.concurrency} worker(s)")

    async def stop(self) -> None:
        self.is_running = False
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Dispatch worker pool stopped")

    async def run_once(self, limit: Optional[int] = None) -> int:
        """Claim and process one batch of due jobs; returns how many were claimed"""
        jobs = await self.task_queue.claim_due(limit or self.concurrency)
        if jobs:
            await asyncio.gather(*(self.process_job(job) for job in jobs))
        return len(jobs)

    async def drain(self, max_batches: int = 1000) -> int:
        """Process due jobs until none are left"""
        processed = 0
        for _ in range(max_batches):
            claimed = await self.run_once()
            if not claimed:
                break
            processed += claimed
        return processed

    async def process_job(self, job: DispatchJob) -> None:
        """Run one job and record its outcome on the queue"""
        try:
            if job.kind == JobKind.EXECUTION:
                await self._run_execution(job)
            else:
                await self.processor.process(job)
        except Exception as e:
            attempts_made = job.attempts_made + 1
            policy = job.retry_policy
            if policy.should_retry(attempts_made):
                delay_ms = policy.delay_for(attempts_made)
                logger.info(
                    f"Job {job.job_id} failed (attempt {attempts_made}/{job.max_attempts}), "
                    f"retrying in {delay_ms}ms: {e}"
                )
                await self.task_queue.retry(job.job_id, attempts_made, str(e), delay_ms)
            else:
                logger.error(
                    f"Job {job.job_id} failed permanently after {attempts_made} attempt(s): {e}"
                )
                await self.task_queue.dead_letter(job.job_id, attempts_made, str(e))
            return

        await self.task_queue.complete(job.job_id)

    async def _run_execution(self, job: DispatchJob) -> None:
        if self.executor is None:
            raise RuntimeError(f"No executor configured for execution job {job.job_id}")
        try:
            await self.executor.execute_campaign(
                job.campaign_id, expected_from=[CampaignStatus.ACTIVE]
            )
        except (CampaignNotFoundError, InvalidCampaignStateError) as e:
            logger.info(f"Delayed execution {job.job_id} of campaign {job.campaign_id} dropped: {e}")

    async def _worker_loop(self, index: int) -> None:
        while self.is_running:
            try:
                jobs = await self.task_queue.claim_due(1)
                if not jobs:
                    await asyncio.sleep(self.poll_interval)
                    continue
                await self.process_job(jobs[0])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Dispatch worker {index} error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)


__all__ = ["DispatchWorkerPool"]

"""
Dispatch Queue - PostgreSQL (Async)

Delayed, retryable, at-least-once job queue backed by a database table.
Workers claim due jobs with FOR UPDATE SKIP LOCKED; a job held by a worker
that disappears becomes claimable again after the visibility timeout.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.postgres_client import PostgresClient
from .models import DispatchJob, JobStatus, RetryPolicy
from .protocols import EnqueueError

logger = logging.getLogger(__name__)


DEFAULT_RETRY_POLICY = RetryPolicy()


def apply_retry_policy(job: DispatchJob, retry_policy: Optional[RetryPolicy]) -> DispatchJob:
    """Copy the policy onto the job so workers can read it back from storage"""
    policy = retry_policy or DEFAULT_RETRY_POLICY
    job.max_attempts = policy.max_attempts
    job.backoff = policy.backoff
    job.backoff_delay_ms = policy.base_delay_ms
    return job


class PostgresTaskQueue:
    """Dispatch queue stored in the dispatch_jobs table"""

    def __init__(
        self,
        db: PostgresClient,
        schema: str = "campaign",
        visibility_timeout_seconds: int = 300,
    ):
        self.db = db
        self.schema = schema
        self.jobs_table = "dispatch_jobs"
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)

    @property
    def _table(self) -> str:
        return f"{self.schema}.{self.jobs_table}"

    # ====================
    # Producer Side
    # ====================

    async def enqueue(
        self,
        job: DispatchJob,
        delay_ms: int = 0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Optional[DispatchJob]:
        """
        Add a job to the queue.

        Returns:
            The stored job, or None when a pending/running job already holds
            the same dedupe key.
        """
        now = datetime.now(timezone.utc)
        apply_retry_policy(job, retry_policy)
        job.status = JobStatus.PENDING
        job.attempts_made = 0
        job.run_at = now + timedelta(milliseconds=max(0, delay_ms))

        query = f'''
            INSERT INTO {self._table} (
                job_id, kind, idempotency_key, dedupe_key, campaign_id,
                reference_id, tenant_id, status, attempts_made, max_attempts,
                run_at, payload, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, 'pending', 0, $8, $9, $10, $11, $11)
            ON CONFLICT (dedupe_key) WHERE status IN ('pending', 'running') DO NOTHING
            RETURNING job_id
        '''
        params = [
            job.job_id,
            job.kind.value,
            job.idempotency_key,
            job.dedupe_key,
            job.campaign_id,
            job.reference_id,
            job.tenant_id,
            job.max_attempts,
            job.run_at,
            job.model_dump(mode="json"),
            now,
        ]

        try:
            row = await self.db.query_row(query, params)
        except Exception as e:
            logger.error(f"Error enqueueing job {job.idempotency_key}: {e}")
            raise EnqueueError(f"Failed to enqueue job {job.idempotency_key}: {e}") from e

        if row is None:
            logger.info(f"Skipped duplicate job {job.idempotency_key}")
            return None
        return job

    async def list_pending(self, campaign_id: str) -> List[DispatchJob]:
        """Jobs of a campaign not yet picked up by a worker"""
        query = f'''
            SELECT * FROM {self._table}
            WHERE campaign_id = $1 AND status = 'pending'
            ORDER BY run_at
        '''
        rows = await self.db.query(query, [campaign_id])
        return [self._row_to_job(row) for row in rows]

    async def list_pending_for_reference(self, reference_id: str) -> List[DispatchJob]:
        """Pending jobs attached to an external entity"""
        query = f'''
            SELECT * FROM {self._table}
            WHERE reference_id = $1 AND status = 'pending'
            ORDER BY run_at
        '''
        rows = await self.db.query(query, [reference_id])
        return [self._row_to_job(row) for row in rows]

    async def remove(self, job_id: str) -> bool:
        """Remove a job that has not been picked up yet"""
        query = f'''
            DELETE FROM {self._table}
            WHERE job_id = $1 AND status = 'pending'
            RETURNING job_id
        '''
        row = await self.db.query_row(query, [job_id])
        return row is not None

    # ====================
    # Consumer Side
    # ====================

    async def claim_due(self, limit: int = 1) -> List[DispatchJob]:
        """Mark up to `limit` due jobs as running and return them"""
        now = datetime.now(timezone.utc)
        query = f'''
            UPDATE {self._table}
            SET status = 'running', locked_at = $1, updated_at = $1
            WHERE job_id IN (
                SELECT job_id FROM {self._table}
                WHERE (status = 'pending' AND run_at <= $1)
                   OR (status = 'running' AND locked_at < $2)
                ORDER BY run_at, created_at
                LIMIT $3
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
        '''
        rows = await self.db.query(query, [now, now - self.visibility_timeout, limit])
        return [self._row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        now = datetime.now(timezone.utc)
        await self.db.execute(
            f'''
                UPDATE {self._table}
                SET status = 'completed', completed_at = $1, updated_at = $1, locked_at = NULL
                WHERE job_id = $2
            ''',
            [now, job_id],
        )

    async def retry(
        self, job_id: str, attempts_made: int, error: str, delay_ms: int
    ) -> None:
        now = datetime.now(timezone.utc)
        await self.db.execute(
            f'''
                UPDATE {self._table}
                SET status = 'pending', attempts_made = $1, last_error = $2,
                    run_at = $3, locked_at = NULL, updated_at = $4
                WHERE job_id = $5
            ''',
            [attempts_made, error, now + timedelta(milliseconds=delay_ms), now, job_id],
        )

    async def dead_letter(self, job_id: str, attempts_made: int, error: str) -> None:
        now = datetime.now(timezone.utc)
        await self.db.execute(
            f'''
                UPDATE {self._table}
                SET status = 'failed', attempts_made = $1, last_error = $2,
                    failed_at = $3, locked_at = NULL, updated_at = $3
                WHERE job_id = $4
            ''',
            [attempts_made, error, now, job_id],
        )

    async def list_dead_letters(self, tenant_id: str, limit: int = 100) -> List[DispatchJob]:
        """Terminal-failed jobs kept for manual inspection"""
        query = f'''
            SELECT * FROM {self._table}
            WHERE tenant_id = $1 AND status = 'failed'
            ORDER BY failed_at DESC
            LIMIT $2
        '''
        rows = await self.db.query(query, [tenant_id, limit])
        return [self._row_to_job(row) for row in rows]

    # ====================
    # Helpers
    # ====================

    def _row_to_job(self, row: Dict[str, Any]) -> DispatchJob:
        """Convert database row to DispatchJob model"""
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)

        return DispatchJob.model_validate({
            **payload,
            "job_id": row["job_id"],
            "status": row["status"],
            "attempts_made": row.get("attempts_made", 0),
            "max_attempts": row.get("max_attempts", payload.get("max_attempts", 3)),
            "run_at": row.get("run_at"),
            "last_error": row.get("last_error"),
        })


__all__ = ["PostgresTaskQueue", "DEFAULT_RETRY_POLICY", "apply_retry_policy"]

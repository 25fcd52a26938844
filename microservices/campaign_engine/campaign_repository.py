"""
Campaign Engine Data Repository

Data access layer - PostgreSQL (Async)
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from core.postgres_client import PostgresClient
from .models import (
    Campaign,
    CampaignStatus,
    ExecutionLogEntry,
    TriggerType,
)

logger = logging.getLogger(__name__)


COUNTER_COLUMNS = frozenset({
    "sent_count",
    "delivered_count",
    "opened_count",
    "clicked_count",
    "unsubscribed_count",
    "bounced_count",
    "failed_count",
})

JSON_COLUMNS = frozenset({
    "template_data",
    "target_audience",
    "recurring_config",
    "event_triggers",
    "ab_test_config",
    "settings",
    "execution_log",
})

UPDATABLE_COLUMNS = frozenset({
    "name",
    "description",
    "trigger_type",
    "subject",
    "content",
    "html_content",
    "template_data",
    "target_audience",
    "scheduled_at",
    "recurring_config",
    "event_triggers",
    "ab_test_config",
    "settings",
    "estimated_recipients",
    "started_at",
    "completed_at",
    "last_executed_at",
    "updated_by",
})


def _to_db_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_to_db_value(v) for v in value]
    return value


class CampaignRepository:
    """Campaign store - PostgreSQL (Async)"""

    def __init__(self, db: PostgresClient, schema: str = "campaign"):
        self.db = db
        self.schema = schema
        self.campaigns_table = "campaigns"

    @property
    def _table(self) -> str:
        return f"{self.schema}.{self.campaigns_table}"

    async def health_check(self) -> bool:
        """Check repository health"""
        return await self.db.health_check()

    # ====================
    # Campaign CRUD
    # ====================

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Insert a new campaign"""
        try:
            columns = list(Campaign.model_fields.keys())
            params = [_to_db_value(getattr(campaign, column)) for column in columns]
            placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))

            query = f'''
                INSERT INTO {self._table} ({", ".join(columns)})
                VALUES ({placeholders})
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row)

        except Exception as e:
            logger.error(f"Error saving campaign {campaign.campaign_id}: {e}")
            raise

    async def get_campaign(
        self, campaign_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Campaign]:
        """Get a non-deleted campaign by ID, optionally scoped to a tenant"""
        try:
            query = f'''
                SELECT * FROM {self._table}
                WHERE campaign_id = $1 AND deleted_at IS NULL
            '''
            params: List[Any] = [campaign_id]
            if tenant_id is not None:
                query += " AND tenant_id = $2"
                params.append(tenant_id)

            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def list_campaigns(
        self,
        tenant_id: str,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns for a tenant, newest first"""
        try:
            conditions = ["tenant_id = $1", "deleted_at IS NULL"]
            params: List[Any] = [tenant_id]

            if status:
                params.append([s.value for s in status])
                conditions.append(f"status = ANY(${len(params)}::text[])")
            if trigger_type:
                params.append(trigger_type.value)
                conditions.append(f"trigger_type = ${len(params)}")

            where_clause = " AND ".join(conditions)

            count_row = await self.db.query_row(
                f"SELECT COUNT(*) AS total FROM {self._table} WHERE {where_clause}",
                params,
            )
            total = int(count_row["total"]) if count_row else 0

            query = f'''
                SELECT * FROM {self._table}
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            '''
            rows = await self.db.query(query, params + [limit, offset])
            return [self._row_to_campaign(row) for row in rows], total

        except Exception as e:
            logger.error(f"Error listing campaigns for tenant {tenant_id}: {e}")
            raise

    async def update_campaign(
        self, campaign_id: str, updates: Dict[str, Any]
    ) -> Optional[Campaign]:
        """Update campaign definition fields"""
        try:
            if not updates:
                return await self.get_campaign(campaign_id)

            unknown = set(updates) - UPDATABLE_COLUMNS
            if unknown:
                raise ValueError(f"Columns not updatable: {sorted(unknown)}")

            set_clauses = []
            params: List[Any] = []
            for key, value in updates.items():
                params.append(_to_db_value(value))
                set_clauses.append(f"{key} = ${len(params)}")

            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")
            params.append(campaign_id)

            query = f'''
                UPDATE {self._table}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = ${len(params)} AND deleted_at IS NULL
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error updating campaign {campaign_id}: {e}")
            raise

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        """
        Compare-and-set status change.

        The row is only updated when its current status is one of
        from_statuses; None means the campaign was missing or had moved on.
        """
        try:
            unknown = set(fields) - UPDATABLE_COLUMNS
            if unknown:
                raise ValueError(f"Columns not updatable: {sorted(unknown)}")

            params: List[Any] = [to_status.value, datetime.now(timezone.utc)]
            set_clauses = ["status = $1", "updated_at = $2"]
            for key, value in fields.items():
                params.append(_to_db_value(value))
                set_clauses.append(f"{key} = ${len(params)}")

            params.append(campaign_id)
            id_param = len(params)
            params.append([s.value for s in from_statuses])
            status_param = len(params)

            query = f'''
                UPDATE {self._table}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = ${id_param}
                  AND deleted_at IS NULL
                  AND status = ANY(${status_param}::text[])
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error transitioning campaign {campaign_id} to {to_status.value}: {e}")
            raise

    async def claim_execution(
        self,
        campaign_id: str,
        from_statuses: List[CampaignStatus],
        seen_last_executed_at: Optional[datetime],
        executed_at: datetime,
    ) -> Optional[Campaign]:
        """
        Claim one execution wave.

        Matches on status and on the last_executed_at the caller read, so of
        several concurrent claims for the same occurrence exactly one row
        update succeeds.
        """
        try:
            query = f'''
                UPDATE {self._table}
                SET status = $1,
                    started_at = COALESCE(started_at, $2),
                    last_executed_at = $2,
                    updated_at = $2
                WHERE campaign_id = $3
                  AND deleted_at IS NULL
                  AND status = ANY($4::text[])
                  AND last_executed_at IS NOT DISTINCT FROM $5
                RETURNING *
            '''
            params = [
                CampaignStatus.ACTIVE.value,
                executed_at,
                campaign_id,
                [s.value for s in from_statuses],
                seen_last_executed_at,
            ]
            row = await self.db.query_row(query, params)
            return self._row_to_campaign(row) if row else None

        except Exception as e:
            logger.error(f"Error claiming execution of campaign {campaign_id}: {e}")
            raise

    async def increment_counters(self, campaign_id: str, **deltas: int) -> bool:
        """Atomically add deltas to counter columns in one statement"""
        deltas = {k: v for k, v in deltas.items() if v}
        if not deltas:
            return True

        unknown = set(deltas) - COUNTER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown counters: {sorted(unknown)}")
        if any(v < 0 for v in deltas.values()):
            raise ValueError("Counter deltas must be positive")

        try:
            params: List[Any] = []
            set_clauses = []
            for column, delta in deltas.items():
                params.append(int(delta))
                set_clauses.append(f"{column} = {column} + ${len(params)}")

            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")
            params.append(campaign_id)

            query = f'''
                UPDATE {self._table}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = ${len(params)}
                RETURNING campaign_id
            '''
            row = await self.db.query_row(query, params)
            return row is not None

        except Exception as e:
            logger.error(f"Error incrementing counters for campaign {campaign_id}: {e}")
            raise

    async def set_estimated_recipients(self, campaign_id: str, count: int) -> None:
        """Cache the resolved audience size"""
        await self.update_campaign(campaign_id, {"estimated_recipients": max(0, count)})

    async def append_execution_log(
        self, campaign_id: str, entry: ExecutionLogEntry
    ) -> None:
        """Append one entry to the execution log"""
        try:
            query = f'''
                UPDATE {self._table}
                SET execution_log = COALESCE(execution_log, '[]'::jsonb) || $1::jsonb,
                    updated_at = $2
                WHERE campaign_id = $3
            '''
            await self.db.execute(
                query,
                [[entry.model_dump(mode="json")], datetime.now(timezone.utc), campaign_id],
            )

        except Exception as e:
            logger.error(f"Error appending execution log for campaign {campaign_id}: {e}")
            raise

    async def soft_delete(self, campaign_id: str) -> bool:
        """Soft delete campaign"""
        try:
            query = f'''
                UPDATE {self._table}
                SET deleted_at = $1, updated_at = $1
                WHERE campaign_id = $2 AND deleted_at IS NULL
                RETURNING campaign_id
            '''
            row = await self.db.query_row(query, [datetime.now(timezone.utc), campaign_id])
            return row is not None

        except Exception as e:
            logger.error(f"Error deleting campaign {campaign_id}: {e}")
            raise

    # ====================
    # Trigger Queries
    # ====================

    async def find_due_scheduled(self, now: datetime) -> List[Campaign]:
        """Scheduled campaigns whose time has come"""
        query = f'''
            SELECT * FROM {self._table}
            WHERE status = 'scheduled'
              AND scheduled_at <= $1
              AND deleted_at IS NULL
            ORDER BY scheduled_at
        '''
        rows = await self.db.query(query, [now])
        return [self._row_to_campaign(row) for row in rows]

    async def find_active_by_trigger(
        self, trigger_type: TriggerType, tenant_id: Optional[str] = None
    ) -> List[Campaign]:
        """Active campaigns of a trigger type, optionally within one tenant"""
        query = f'''
            SELECT * FROM {self._table}
            WHERE status = 'active'
              AND trigger_type = $1
              AND deleted_at IS NULL
        '''
        params: List[Any] = [trigger_type.value]
        if tenant_id is not None:
            query += " AND tenant_id = $2"
            params.append(tenant_id)

        rows = await self.db.query(query, params)
        return [self._row_to_campaign(row) for row in rows]

    # ====================
    # Aggregates
    # ====================

    async def get_tenant_totals(self, tenant_id: str) -> Dict[str, int]:
        """Campaign counts and summed counters for a tenant"""
        query = f'''
            SELECT
                COUNT(*) AS total_campaigns,
                COUNT(*) FILTER (WHERE status = 'active') AS active_campaigns,
                COALESCE(SUM(sent_count), 0) AS total_sent,
                COALESCE(SUM(delivered_count), 0) AS total_delivered,
                COALESCE(SUM(opened_count), 0) AS total_opened,
                COALESCE(SUM(clicked_count), 0) AS total_clicked
            FROM {self._table}
            WHERE tenant_id = $1 AND deleted_at IS NULL
        '''
        row = await self.db.query_row(query, [tenant_id]) or {}
        return {key: int(value or 0) for key, value in row.items()}

    # ====================
    # Helpers
    # ====================

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        """Convert database row to Campaign model"""
        data = dict(row)
        for column in JSON_COLUMNS:
            value = data.get(column)
            if isinstance(value, str):
                data[column] = json.loads(value)

        for column, default in (
            ("template_data", {}),
            ("target_audience", {}),
            ("ab_test_config", {}),
            ("settings", {}),
            ("execution_log", []),
        ):
            if data.get(column) is None:
                data[column] = default

        return Campaign.model_validate(data)


__all__ = ["CampaignRepository", "COUNTER_COLUMNS"]

"""
PostgreSQL record store for daily AI code assistant records.
"""

import json
from datetime import date
from typing import Any, List, Optional, Tuple

import asyncpg

from shared.errors import EMSException
from shared.logging import get_logger
from ..rules.models import AggregateQuery, Interval, MetricOperation, UsageQuery, UsageStats
from .base import DailyMetricRecord, RecordStore, get_dimension_spec

TABLE_NAME = "ai_code_assistant_daily_metrics"

_DATE_TRUNC_UNITS = {
    Interval.DAILY: "day",
    Interval.WEEKLY: "week",
    Interval.MONTHLY: "month",
}


def _aggregate_expression(query: AggregateQuery) -> str:
    spec = get_dimension_spec(query.dimension, query.operation)
    operation = MetricOperation(query.operation)
    if operation == MetricOperation.COUNT:
        return "COUNT(*)::float"
    if operation == MetricOperation.SUM:
        return f"COALESCE(SUM({spec.sql_expression}), 0)::float"
    return f"COALESCE(AVG({spec.sql_expression}), 0)::float"


def _bucket_expression(interval: Interval) -> str:
    return f"DATE_TRUNC('{_DATE_TRUNC_UNITS[Interval(interval)]}', metric_date)::date"


def _where_clause(query: AggregateQuery) -> Tuple[str, List[Any]]:
    conditions = ["organization_id = $1", "metric_date >= $2", "metric_date <= $3"]
    args: List[Any] = [query.organization_id, query.start_date, query.end_date]

    if query.account_ids:
        args.append(list(query.account_ids))
        conditions.append(f"external_account_id = ANY(${len(args)}::text[])")
    if query.tool_names:
        args.append(list(query.tool_names))
        conditions.append(f"tool_name = ANY(${len(args)}::text[])")

    return " AND ".join(conditions), args



def _usage_where_clause(query: UsageQuery) -> Tuple[str, List[Any]]:
    conditions = ["organization_id = $1"]
    args: List[Any] = [query.organization_id]

    if query.account_ids:
        args.append(list(query.account_ids))
        conditions.append(f"external_account_id = ANY(${len(args)}::text[])")
    if query.tool_name:
        args.append(query.tool_name)
        conditions.append(f"tool_name = ${len(args)}")
    if query.start_date is not None:
        args.append(query.start_date)
        conditions.append(f"metric_date >= ${len(args)}")
    if query.end_date is not None:
        args.append(query.end_date)
        conditions.append(f"metric_date <= ${len(args)}")

    return " AND ".join(conditions), args


def _record_from_row(row) -> DailyMetricRecord:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return DailyMetricRecord(
        organization_id=row["organization_id"],
        external_account_id=row["external_account_id"],
        tool_name=row["tool_name"],
        metric_date=row["metric_date"],
        lines_of_code_accepted=row["lines_of_code_accepted"],
        lines_of_code_suggested=row["lines_of_code_suggested"],
        active_sessions=row["active_sessions"],
        suggestion_accept_rate=row["suggestion_accept_rate"],
        metadata=metadata or {},
    )

class PostgresRecordStore(RecordStore):
    """Record store on PostgreSQL. Medians are computed with PERCENTILE_CONT."""

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None,
                 min_size: int = 2, max_size: int = 10, command_timeout: float = 30.0):
        self.dsn = dsn
        self.pool = pool
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.logger = get_logger("metrics.store.postgres")

    async def start(self):
        """Open the connection pool and create the table if needed."""
        if self.pool is None:
            try:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout
                )
            except Exception as e:
                self.logger.error("Failed to start PostgreSQL record store", error=str(e))
                raise EMSException("POSTGRES_START_FAILED", str(e))

        await self._create_tables()
        self.logger.info("PostgreSQL record store started")

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL record store stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    organization_id TEXT NOT NULL,
                    external_account_id TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    metric_date DATE NOT NULL,
                    lines_of_code_accepted INTEGER NOT NULL DEFAULT 0,
                    lines_of_code_suggested INTEGER NOT NULL DEFAULT 0,
                    active_sessions INTEGER NOT NULL DEFAULT 0,
                    suggestion_accept_rate DOUBLE PRECISION,
                    metadata JSONB NOT NULL DEFAULT '{{}}',
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (organization_id, external_account_id, tool_name, metric_date)
                );
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_org_date
                ON {TABLE_NAME}(organization_id, metric_date);
            """)

    async def check_health(self) -> str:
        async with self.pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return "ok"

    async def upsert(self, record: DailyMetricRecord) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO {TABLE_NAME} (
                    organization_id, external_account_id, tool_name, metric_date,
                    lines_of_code_accepted, lines_of_code_suggested, active_sessions,
                    suggestion_accept_rate, metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                ON CONFLICT (organization_id, external_account_id, tool_name, metric_date) DO UPDATE SET
                    lines_of_code_accepted = EXCLUDED.lines_of_code_accepted,
                    lines_of_code_suggested = EXCLUDED.lines_of_code_suggested,
                    active_sessions = EXCLUDED.active_sessions,
                    suggestion_accept_rate = EXCLUDED.suggestion_accept_rate,
                    metadata = EXCLUDED.metadata,
                    updated_at = NOW()
            """,
                record.organization_id, record.external_account_id, record.tool_name,
                record.metric_date, record.lines_of_code_accepted, record.lines_of_code_suggested,
                record.active_sessions, record.suggestion_accept_rate, json.dumps(record.metadata)
            )

    async def aggregate(self, query: AggregateQuery) -> float:
        where, args = _where_clause(query)
        sql = f"SELECT {_aggregate_expression(query)} FROM {TABLE_NAME} WHERE {where}"
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(sql, *args)
        return float(value or 0)

    async def aggregate_per_account(self, query: AggregateQuery) -> List[float]:
        where, args = _where_clause(query)
        sql = f"""
            SELECT {_aggregate_expression(query)} AS member_total
            FROM {TABLE_NAME}
            WHERE {where}
            GROUP BY external_account_id
            ORDER BY external_account_id
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [float(row["member_total"] or 0) for row in rows]

    async def aggregate_bucketed(self, query: AggregateQuery,
                                 interval: Interval) -> List[Tuple[date, float]]:
        where, args = _where_clause(query)
        sql = f"""
            SELECT {_bucket_expression(interval)} AS bucket, {_aggregate_expression(query)} AS value
            FROM {TABLE_NAME}
            WHERE {where}
            GROUP BY bucket
            ORDER BY bucket
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [(row["bucket"], float(row["value"] or 0)) for row in rows]

    async def aggregate_bucketed_per_account(self, query: AggregateQuery,
                                             interval: Interval) -> List[Tuple[date, List[float]]]:
        where, args = _where_clause(query)
        sql = f"""
            SELECT bucket, ARRAY_AGG(member_total ORDER BY external_account_id) AS totals
            FROM (
                SELECT {_bucket_expression(interval)} AS bucket, external_account_id,
                       {_aggregate_expression(query)} AS member_total
                FROM {TABLE_NAME}
                WHERE {where}
                GROUP BY bucket, external_account_id
            ) per_account
            GROUP BY bucket
            ORDER BY bucket
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [(row["bucket"], [float(v or 0) for v in row["totals"]]) for row in rows]

    async def peer_median(self, query: AggregateQuery) -> float:
        where, args = _where_clause(query)
        sql = f"""
            SELECT COALESCE(PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY member_total), 0)
            FROM (
                SELECT external_account_id, {_aggregate_expression(query)} AS member_total
                FROM {TABLE_NAME}
                WHERE {where}
                GROUP BY external_account_id
            ) per_account
        """
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(sql, *args)
        return float(value or 0)

    async def peer_median_bucketed(self, query: AggregateQuery,
                                   interval: Interval) -> List[Tuple[date, float]]:
        where, args = _where_clause(query)
        sql = f"""
            SELECT bucket,
                   COALESCE(PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY member_total), 0) AS value
            FROM (
                SELECT {_bucket_expression(interval)} AS bucket, external_account_id,
                       {_aggregate_expression(query)} AS member_total
                FROM {TABLE_NAME}
                WHERE {where}
                GROUP BY bucket, external_account_id
            ) per_account
            GROUP BY bucket
            ORDER BY bucket
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [(row["bucket"], float(row["value"] or 0)) for row in rows]

    async def list_records(self, query: UsageQuery) -> List[DailyMetricRecord]:
        where, args = _usage_where_clause(query)
        sql = f"""
            SELECT organization_id, external_account_id, tool_name, metric_date,
                   lines_of_code_accepted, lines_of_code_suggested, active_sessions,
                   suggestion_accept_rate, metadata
            FROM {TABLE_NAME}
            WHERE {where}
            ORDER BY metric_date, external_account_id, tool_name
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_record_from_row(row) for row in rows]

    async def usage_stats(self, query: UsageQuery) -> UsageStats:
        where, args = _usage_where_clause(query)
        sql = f"""
            SELECT COALESCE(SUM(lines_of_code_accepted), 0) AS accepted,
                   COALESCE(SUM(lines_of_code_suggested), 0) AS suggested,
                   COALESCE(SUM(active_sessions), 0) AS active_sessions
            FROM {TABLE_NAME}
            WHERE {where}
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, *args)
        return UsageStats.from_totals(
            int(row["accepted"]), int(row["suggested"]), int(row["active_sessions"])
        )

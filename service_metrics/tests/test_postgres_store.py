"""
Unit tests for the PostgreSQL record store using a mocked connection pool.
"""

import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock

from shared.errors import ConfigurationError
from service_metrics.app.rules.models import (
    AggregateQuery, Interval, MetricDimension, MetricOperation, UsageQuery
)
from service_metrics.app.store.base import DailyMetricRecord
from service_metrics.app.store.postgres import PostgresRecordStore


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _query(dimension=MetricDimension.LINES_OF_CODE_ACCEPTED, operation=MetricOperation.SUM, **kwargs):
    defaults = dict(
        organization_id="org-1",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        dimension=dimension,
        operation=operation,
    )
    defaults.update(kwargs)
    return AggregateQuery(**defaults)


class TestPostgresRecordStore:
    """Test cases for PostgresRecordStore."""

    @pytest.fixture
    def conn(self):
        """Create a mocked connection."""
        conn = MagicMock()
        conn.execute = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        conn.fetchval = AsyncMock(return_value=None)
        return conn

    @pytest.fixture
    def store(self, conn):
        """Create a store around a mocked pool."""
        pool = MagicMock()
        pool.acquire = MagicMock(side_effect=lambda: _Acquire(conn))
        pool.close = AsyncMock()
        return PostgresRecordStore("postgres://unused", pool=pool)

    @pytest.mark.asyncio
    async def test_start_creates_table(self, store, conn):
        """Test start creates the table with the unique record key."""
        await store.start()

        sql = conn.execute.call_args_list[0].args[0]
        assert "CREATE TABLE IF NOT EXISTS ai_code_assistant_daily_metrics" in sql
        assert "PRIMARY KEY (organization_id, external_account_id, tool_name, metric_date)" in sql

    @pytest.mark.asyncio
    async def test_aggregate_sum(self, store, conn):
        """Test SUM query and filters."""
        conn.fetchval.return_value = 42

        value = await store.aggregate(_query(account_ids=("a",), tool_names=("copilot",)))

        assert value == 42.0
        sql, *args = conn.fetchval.call_args.args
        assert "SUM(lines_of_code_accepted)" in sql
        assert "external_account_id = ANY($4::text[])" in sql
        assert "tool_name = ANY($5::text[])" in sql
        assert args == ["org-1", date(2024, 1, 1), date(2024, 1, 31), ["a"], ["copilot"]]

    @pytest.mark.asyncio
    async def test_aggregate_without_filters(self, store, conn):
        """Test no account or tool filter clauses are added when absent."""
        await store.aggregate(_query())

        sql, *args = conn.fetchval.call_args.args
        assert "ANY(" not in sql
        assert len(args) == 3

    @pytest.mark.asyncio
    async def test_aggregate_null_is_zero(self, store, conn):
        """Test NULL results become zero."""
        assert await store.aggregate(_query()) == 0.0

    @pytest.mark.asyncio
    async def test_count_and_accept_rate(self, store, conn):
        """Test COUNT and accept rate expressions."""
        await store.aggregate(_query(operation=MetricOperation.COUNT))
        assert "COUNT(*)" in conn.fetchval.call_args.args[0]

        await store.aggregate(_query(MetricDimension.ACCEPT_RATE, MetricOperation.AVERAGE))
        sql = conn.fetchval.call_args.args[0]
        assert "AVG(CASE WHEN lines_of_code_suggested > 0" in sql

    @pytest.mark.asyncio
    async def test_unsupported_operation(self, store, conn):
        """Test unsupported operations fail before any query."""
        with pytest.raises(ConfigurationError):
            await store.aggregate(_query(MetricDimension.ACCEPT_RATE, MetricOperation.COUNT))
        conn.fetchval.assert_not_called()

    @pytest.mark.asyncio
    async def test_peer_median_uses_percentile_cont(self, store, conn):
        """Test peer median is computed in the database."""
        conn.fetchval.return_value = 12.5

        value = await store.peer_median(_query())

        assert value == 12.5
        sql = conn.fetchval.call_args.args[0]
        assert "PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY member_total)" in sql
        assert "GROUP BY external_account_id" in sql

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval, unit", [
        (Interval.DAILY, "day"),
        (Interval.WEEKLY, "week"),
        (Interval.MONTHLY, "month"),
    ])
    async def test_bucketed_date_trunc(self, store, conn, interval, unit):
        """Test bucketing uses DATE_TRUNC with the interval unit."""
        conn.fetch.return_value = [{"bucket": date(2024, 1, 1), "value": 3}]

        buckets = await store.aggregate_bucketed(_query(), interval)

        assert buckets == [(date(2024, 1, 1), 3.0)]
        assert f"DATE_TRUNC('{unit}', metric_date)" in conn.fetch.call_args.args[0]

    @pytest.mark.asyncio
    async def test_peer_median_bucketed(self, store, conn):
        """Test per-bucket medians."""
        conn.fetch.return_value = [
            {"bucket": date(2024, 1, 1), "value": 20},
            {"bucket": date(2024, 1, 8), "value": None},
        ]

        buckets = await store.peer_median_bucketed(_query(), Interval.WEEKLY)

        assert buckets == [(date(2024, 1, 1), 20.0), (date(2024, 1, 8), 0.0)]
        assert "PERCENTILE_CONT(0.5)" in conn.fetch.call_args.args[0]

    @pytest.mark.asyncio
    async def test_per_account(self, store, conn):
        """Test per-account aggregates."""
        conn.fetch.return_value = [{"member_total": 7}, {"member_total": 1}]

        assert await store.aggregate_per_account(_query()) == [7.0, 1.0]

    @pytest.mark.asyncio
    async def test_upsert(self, store, conn):
        """Test upsert uses ON CONFLICT on the record key."""
        record = DailyMetricRecord("org-1", "acct", "copilot", date(2024, 1, 1),
                                   lines_of_code_accepted=3, metadata={"source": "api"})

        await store.upsert(record)

        sql, *args = conn.execute.call_args.args
        assert "ON CONFLICT (organization_id, external_account_id, tool_name, metric_date) DO UPDATE" in sql
        assert args[0:4] == ["org-1", "acct", "copilot", date(2024, 1, 1)]
        assert args[-1] == '{"source": "api"}'

    @pytest.mark.asyncio
    async def test_close(self, store):
        """Test close releases the pool."""
        await store.close()

        store.pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_list_records(self, store, conn):
        """Test listing builds optional filters and decodes metadata."""
        conn.fetch.return_value = [{
            "organization_id": "org-1",
            "external_account_id": "acct",
            "tool_name": "cursor",
            "metric_date": date(2024, 1, 3),
            "lines_of_code_accepted": 4,
            "lines_of_code_suggested": 8,
            "active_sessions": 2,
            "suggestion_accept_rate": None,
            "metadata": '{"source": "api"}',
        }]

        records = await store.list_records(
            UsageQuery("org-1", account_ids=("acct",), tool_name="cursor", start_date=date(2024, 1, 1))
        )

        sql, *args = conn.fetch.call_args.args
        assert "external_account_id = ANY($2::text[])" in sql
        assert "tool_name = $3" in sql
        assert "metric_date >= $4" in sql
        assert "metric_date <=" not in sql
        assert "ORDER BY metric_date" in sql
        assert args == ["org-1", ["acct"], "cursor", date(2024, 1, 1)]
        assert records[0].metadata == {"source": "api"}
        assert records[0].lines_of_code_suggested == 8

    @pytest.mark.asyncio
    async def test_usage_stats(self, store, conn):
        """Test usage totals are summed in SQL and the rate derived from them."""
        conn.fetchrow = AsyncMock(return_value={"accepted": 3, "suggested": 4, "active_sessions": 5})

        stats = await store.usage_stats(UsageQuery("org-1"))

        sql, *args = conn.fetchrow.call_args.args
        assert "COALESCE(SUM(lines_of_code_accepted), 0)" in sql
        assert args == ["org-1"]
        assert stats.overall_accept_rate == 75.0
        assert stats.active_sessions == 5

    @pytest.mark.asyncio
    async def test_usage_stats_nothing_suggested(self, store, conn):
        """Test the accept rate is zero when nothing was suggested."""
        conn.fetchrow = AsyncMock(return_value={"accepted": 0, "suggested": 0, "active_sessions": 0})

        stats = await store.usage_stats(UsageQuery("org-1"))

        assert stats.overall_accept_rate == 0.0

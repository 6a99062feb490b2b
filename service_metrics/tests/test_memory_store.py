"""
Unit tests for the in-memory record store.
"""

import pytest
from datetime import date

from shared.errors import ConfigurationError
from service_metrics.app.rules.models import (
    AggregateQuery, Interval, MetricDimension, MetricOperation, UsageQuery
)
from service_metrics.app.store.base import DailyMetricRecord
from service_metrics.app.store.memory import InMemoryRecordStore

ACCOUNT_A = "11111111-1111-4111-8111-111111111111"
ACCOUNT_B = "22222222-2222-4222-8222-222222222222"


def _record(account, day, accepted=0, suggested=0, sessions=0, tool="copilot", org="org-1"):
    return DailyMetricRecord(
        organization_id=org,
        external_account_id=account,
        tool_name=tool,
        metric_date=day,
        lines_of_code_accepted=accepted,
        lines_of_code_suggested=suggested,
        active_sessions=sessions,
    )


def _query(dimension=MetricDimension.ACTIVE_SESSIONS, operation=MetricOperation.SUM, **kwargs):
    defaults = dict(
        organization_id="org-1",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        dimension=dimension,
        operation=operation,
    )
    defaults.update(kwargs)
    return AggregateQuery(**defaults)


class TestInMemoryRecordStore:
    """Test cases for InMemoryRecordStore."""

    @pytest.fixture
    def store(self):
        """Create a store with two accounts over two weeks."""
        return InMemoryRecordStore([
            _record(ACCOUNT_A, date(2024, 1, 1), accepted=5, suggested=10, sessions=3),
            _record(ACCOUNT_A, date(2024, 1, 9), accepted=0, suggested=0, sessions=4),
            _record(ACCOUNT_B, date(2024, 1, 2), accepted=9, suggested=10, sessions=1, tool="cursor"),
            _record(ACCOUNT_B, date(2024, 1, 2), sessions=100, org="org-2"),
            _record(ACCOUNT_B, date(2024, 2, 1), sessions=100),
        ])

    @pytest.mark.asyncio
    async def test_sum(self, store):
        """Test SUM over the organization and date range."""
        assert await store.aggregate(_query()) == 8

    @pytest.mark.asyncio
    async def test_count(self, store):
        """Test COUNT counts matching records."""
        assert await store.aggregate(_query(operation=MetricOperation.COUNT)) == 3

    @pytest.mark.asyncio
    async def test_average(self, store):
        """Test AVG over matching records."""
        value = await store.aggregate(_query(operation=MetricOperation.AVERAGE))
        assert value == pytest.approx(8 / 3)

    @pytest.mark.asyncio
    async def test_accept_rate_average(self, store):
        """Test accept rate is averaged per record, zero when nothing was suggested."""
        value = await store.aggregate(_query(MetricDimension.ACCEPT_RATE, MetricOperation.AVERAGE))
        assert value == pytest.approx((50 + 0 + 90) / 3)

    @pytest.mark.asyncio
    async def test_account_and_tool_filters(self, store):
        """Test account and tool filters."""
        assert await store.aggregate(_query(account_ids=(ACCOUNT_A,))) == 7
        assert await store.aggregate(_query(tool_names=("cursor",))) == 1

    @pytest.mark.asyncio
    async def test_empty_filters_mean_all(self, store):
        """Test empty filter tuples match everything."""
        assert await store.aggregate(_query(account_ids=(), tool_names=())) == 8

    @pytest.mark.asyncio
    async def test_no_records_is_zero(self, store):
        """Test aggregates over nothing are zero."""
        assert await store.aggregate(_query(organization_id="missing")) == 0
        assert await store.aggregate(_query(organization_id="missing", operation=MetricOperation.AVERAGE)) == 0

    @pytest.mark.asyncio
    async def test_per_account(self, store):
        """Test per-account aggregates skip accounts without records."""
        values = await store.aggregate_per_account(
            _query(account_ids=(ACCOUNT_A, ACCOUNT_B, "33333333-3333-4333-8333-333333333333"))
        )
        assert sorted(values) == [1, 7]

    @pytest.mark.asyncio
    async def test_bucketed_weekly(self, store):
        """Test weekly bucketing."""
        buckets = await store.aggregate_bucketed(_query(), Interval.WEEKLY)
        assert buckets == [(date(2024, 1, 1), 4.0), (date(2024, 1, 8), 4.0)]

    @pytest.mark.asyncio
    async def test_bucketed_per_account(self, store):
        """Test per-account values per bucket."""
        buckets = await store.aggregate_bucketed_per_account(_query(), Interval.WEEKLY)
        assert buckets == [(date(2024, 1, 1), [3.0, 1.0]), (date(2024, 1, 8), [4.0])]

    @pytest.mark.asyncio
    async def test_peer_median(self, store):
        """Test default peer median over per-account values."""
        assert await store.peer_median(_query()) == 4.0
        assert await store.peer_median(_query(organization_id="missing")) == 0.0

    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, store):
        """Test a record with an existing key replaces the old one."""
        await store.upsert(_record(ACCOUNT_A, date(2024, 1, 1), sessions=10))

        assert len(store) == 5
        assert await store.aggregate(_query(account_ids=(ACCOUNT_A,))) == 14

    @pytest.mark.asyncio
    async def test_upsert_new_key(self, store):
        """Test a record with a new key is added."""
        await store.upsert(_record(ACCOUNT_A, date(2024, 1, 1), sessions=10, tool="cursor"))

        assert len(store) == 6

    @pytest.mark.asyncio
    async def test_unsupported_operation(self, store):
        """Test SUM of accept rate is rejected."""
        with pytest.raises(ConfigurationError):
            await store.aggregate(_query(MetricDimension.ACCEPT_RATE, MetricOperation.SUM))

    @pytest.mark.asyncio
    async def test_list_records_oldest_first(self, store):
        """Test records of the organization are listed by date."""
        records = await store.list_records(UsageQuery("org-1"))

        assert [(r.external_account_id, r.metric_date) for r in records] == [
            (ACCOUNT_A, date(2024, 1, 1)),
            (ACCOUNT_B, date(2024, 1, 2)),
            (ACCOUNT_A, date(2024, 1, 9)),
            (ACCOUNT_B, date(2024, 2, 1)),
        ]

    @pytest.mark.asyncio
    async def test_list_records_filters(self, store):
        """Test account, tool and date filters."""
        by_tool = await store.list_records(UsageQuery("org-1", tool_name="cursor"))
        by_dates = await store.list_records(
            UsageQuery("org-1", start_date=date(2024, 1, 2), end_date=date(2024, 1, 9))
        )
        by_account = await store.list_records(UsageQuery("org-1", account_ids=(ACCOUNT_A,)))

        assert [r.metric_date for r in by_tool] == [date(2024, 1, 2)]
        assert [r.metric_date for r in by_dates] == [date(2024, 1, 2), date(2024, 1, 9)]
        assert {r.external_account_id for r in by_account} == {ACCOUNT_A}

    @pytest.mark.asyncio
    async def test_usage_stats(self, store):
        """Test totals and the overall accept rate."""
        stats = await store.usage_stats(UsageQuery("org-1"))

        assert stats.total_lines_accepted == 14
        assert stats.total_lines_suggested == 20
        assert stats.overall_accept_rate == 70.0
        assert stats.active_sessions == 108

    @pytest.mark.asyncio
    async def test_usage_stats_per_account(self, store):
        """Test totals for one account."""
        stats = await store.usage_stats(UsageQuery("org-1", account_ids=(ACCOUNT_A,)))

        assert stats.overall_accept_rate == 50.0
        assert stats.active_sessions == 7

    @pytest.mark.asyncio
    async def test_usage_stats_no_records(self, store):
        """Test an organization without records has zero totals."""
        stats = await store.usage_stats(UsageQuery("org-3"))

        assert stats.total_lines_accepted == 0
        assert stats.total_lines_suggested == 0
        assert stats.overall_accept_rate == 0.0
        assert stats.active_sessions == 0

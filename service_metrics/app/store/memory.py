"""
In-memory record store used for local runs and tests.
"""

import asyncio
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Tuple

from shared.logging import get_logger
from ..rules.models import AggregateQuery, Interval, MetricOperation, UsageQuery
from ..aggregation.timeseries import truncate_date
from .base import DailyMetricRecord, DimensionSpec, RecordStore, get_dimension_spec


def _apply(operation: MetricOperation, values: List[float]) -> float:
    if not values:
        return 0.0
    if operation == MetricOperation.SUM:
        return float(sum(values))
    if operation == MetricOperation.COUNT:
        return float(len(values))
    return float(sum(values)) / len(values)


class InMemoryRecordStore(RecordStore):
    """Record store backed by a dict keyed by (org, account, tool, date)."""

    def __init__(self, records: Iterable[DailyMetricRecord] = ()):
        self.logger = get_logger("metrics.store.memory")
        self._records: Dict[Tuple[str, str, str, date], DailyMetricRecord] = {}
        self._lock = asyncio.Lock()
        for record in records:
            self._records[record.key] = record

    def __len__(self) -> int:
        return len(self._records)

    async def upsert(self, record: DailyMetricRecord) -> None:
        async with self._lock:
            replaced = record.key in self._records
            self._records[record.key] = record
        self.logger.debug(
            "Record upserted",
            organization_id=record.organization_id,
            external_account_id=record.external_account_id,
            tool_name=record.tool_name,
            metric_date=record.metric_date.isoformat(),
            replaced=replaced
        )

    def _matching(self, query: AggregateQuery) -> List[DailyMetricRecord]:
        accounts = set(query.account_ids) if query.account_ids else None
        tools = set(query.tool_names) if query.tool_names else None
        return [
            record for record in self._records.values()
            if record.organization_id == query.organization_id
            and query.start_date <= record.metric_date <= query.end_date
            and (accounts is None or record.external_account_id in accounts)
            and (tools is None or record.tool_name in tools)
        ]

    async def list_records(self, query: UsageQuery) -> List[DailyMetricRecord]:
        accounts = set(query.account_ids) if query.account_ids else None
        records = [
            record for record in self._records.values()
            if record.organization_id == query.organization_id
            and (accounts is None or record.external_account_id in accounts)
            and (not query.tool_name or record.tool_name == query.tool_name)
            and (query.start_date is None or record.metric_date >= query.start_date)
            and (query.end_date is None or record.metric_date <= query.end_date)
        ]
        return sorted(records, key=lambda r: (r.metric_date, r.external_account_id, r.tool_name))

    @staticmethod
    def _group_by_account(spec: DimensionSpec,
                          records: List[DailyMetricRecord]) -> Dict[str, List[float]]:
        grouped: Dict[str, List[float]] = defaultdict(list)
        for record in records:
            grouped[record.external_account_id].append(spec.value(record))
        return grouped

    async def aggregate(self, query: AggregateQuery) -> float:
        spec = get_dimension_spec(query.dimension, query.operation)
        values = [spec.value(record) for record in self._matching(query)]
        return _apply(query.operation, values)

    async def aggregate_per_account(self, query: AggregateQuery) -> List[float]:
        spec = get_dimension_spec(query.dimension, query.operation)
        grouped = self._group_by_account(spec, self._matching(query))
        return [_apply(query.operation, grouped[account]) for account in sorted(grouped)]

    async def aggregate_bucketed(self, query: AggregateQuery,
                                 interval: Interval) -> List[Tuple[date, float]]:
        spec = get_dimension_spec(query.dimension, query.operation)
        buckets: Dict[date, List[float]] = defaultdict(list)
        for record in self._matching(query):
            buckets[truncate_date(record.metric_date, interval)].append(spec.value(record))
        return [(bucket, _apply(query.operation, buckets[bucket])) for bucket in sorted(buckets)]

    async def aggregate_bucketed_per_account(self, query: AggregateQuery,
                                             interval: Interval) -> List[Tuple[date, List[float]]]:
        spec = get_dimension_spec(query.dimension, query.operation)
        buckets: Dict[date, List[DailyMetricRecord]] = defaultdict(list)
        for record in self._matching(query):
            buckets[truncate_date(record.metric_date, interval)].append(record)

        result = []
        for bucket in sorted(buckets):
            grouped = self._group_by_account(spec, buckets[bucket])
            result.append((bucket, [_apply(query.operation, grouped[a]) for a in sorted(grouped)]))
        return result

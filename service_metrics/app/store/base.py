"""
Record store interface for daily AI code assistant records.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from shared.errors import ConfigurationError
from ..rules.models import (
    AggregateQuery, DailyUsageRecord, Interval, MetricDimension, MetricOperation, UsageQuery, UsageStats
)
from ..aggregation.timeseries import percentile_cont


@dataclass
class DailyMetricRecord:
    """One account's usage of one tool on one day."""
    organization_id: str
    external_account_id: str
    tool_name: str
    metric_date: date
    lines_of_code_accepted: int = 0
    lines_of_code_suggested: int = 0
    active_sessions: int = 0
    suggestion_accept_rate: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str, str, date]:
        return (self.organization_id, self.external_account_id, self.tool_name, self.metric_date)

    def to_model(self) -> DailyUsageRecord:
        return DailyUsageRecord(
            organization_id=self.organization_id,
            external_account_id=self.external_account_id,
            tool_name=self.tool_name,
            metric_date=self.metric_date,
            lines_of_code_accepted=self.lines_of_code_accepted,
            lines_of_code_suggested=self.lines_of_code_suggested,
            suggestion_accept_rate=self.suggestion_accept_rate,
            active_sessions=self.active_sessions,
            metadata=dict(self.metadata),
        )


def _accept_rate(record: DailyMetricRecord) -> float:
    if record.lines_of_code_suggested > 0:
        return record.lines_of_code_accepted / record.lines_of_code_suggested * 100
    return 0.0


@dataclass(frozen=True)
class DimensionSpec:
    """How a dimension reads a record and which operations it implements."""
    dimension: MetricDimension
    value: Callable[[DailyMetricRecord], float]
    operations: FrozenSet[MetricOperation]
    # SQL expression for the per-record value
    sql_expression: str

    def supports(self, operation: MetricOperation) -> bool:
        return operation in self.operations


_COUNTER_OPERATIONS = frozenset({MetricOperation.SUM, MetricOperation.COUNT, MetricOperation.AVERAGE})

DIMENSIONS: Dict[MetricDimension, DimensionSpec] = {
    MetricDimension.LINES_OF_CODE_ACCEPTED: DimensionSpec(
        MetricDimension.LINES_OF_CODE_ACCEPTED,
        lambda r: float(r.lines_of_code_accepted),
        _COUNTER_OPERATIONS,
        "lines_of_code_accepted",
    ),
    MetricDimension.LINES_OF_CODE_SUGGESTED: DimensionSpec(
        MetricDimension.LINES_OF_CODE_SUGGESTED,
        lambda r: float(r.lines_of_code_suggested),
        _COUNTER_OPERATIONS,
        "lines_of_code_suggested",
    ),
    MetricDimension.ACTIVE_SESSIONS: DimensionSpec(
        MetricDimension.ACTIVE_SESSIONS,
        lambda r: float(r.active_sessions),
        _COUNTER_OPERATIONS,
        "active_sessions",
    ),
    MetricDimension.ACCEPT_RATE: DimensionSpec(
        MetricDimension.ACCEPT_RATE,
        _accept_rate,
        frozenset({MetricOperation.AVERAGE}),
        "CASE WHEN lines_of_code_suggested > 0 "
        "THEN lines_of_code_accepted::float / lines_of_code_suggested * 100 ELSE 0 END",
    ),
}


def get_dimension_spec(dimension: MetricDimension, operation: MetricOperation) -> DimensionSpec:
    """Look up a dimension and check it implements ``operation``."""
    spec = DIMENSIONS.get(MetricDimension(dimension))
    if spec is None or not spec.supports(MetricOperation(operation)):
        raise ConfigurationError(
            f"dimension {MetricDimension(dimension).value} does not support operation "
            f"{MetricOperation(operation).value}",
            {"dimension": MetricDimension(dimension).value, "operation": MetricOperation(operation).value}
        )
    return spec


class RecordStore(ABC):
    """Read (and upsert) access to daily metric records.

    Account filters: ``None`` means every account in the organization, and
    an empty tuple is treated the same way. Per-account results only include
    accounts that have at least one record in range.
    """

    @abstractmethod
    async def aggregate(self, query: AggregateQuery) -> float:
        """Aggregate over every matching record. No records yields 0."""

    @abstractmethod
    async def aggregate_per_account(self, query: AggregateQuery) -> List[float]:
        """One aggregate per account that has matching records."""

    @abstractmethod
    async def aggregate_bucketed(self, query: AggregateQuery,
                                 interval: Interval) -> List[Tuple[date, float]]:
        """Aggregate per interval bucket, ascending by bucket."""

    @abstractmethod
    async def aggregate_bucketed_per_account(self, query: AggregateQuery,
                                             interval: Interval) -> List[Tuple[date, List[float]]]:
        """Per-account aggregates for every bucket, ascending by bucket."""

    @abstractmethod
    async def list_records(self, query: UsageQuery) -> List[DailyMetricRecord]:
        """Records matching a usage filter, oldest first."""

    @abstractmethod
    async def upsert(self, record: DailyMetricRecord) -> None:
        """Insert a record or overwrite the one with the same key."""

    async def peer_median(self, query: AggregateQuery) -> float:
        """Median of per-account aggregates."""
        return percentile_cont(await self.aggregate_per_account(query), 0.5)

    async def peer_median_bucketed(self, query: AggregateQuery,
                                   interval: Interval) -> List[Tuple[date, float]]:
        """Median of per-account aggregates in every bucket."""
        buckets = await self.aggregate_bucketed_per_account(query, interval)
        return [(bucket, percentile_cont(values, 0.5)) for bucket, values in buckets]

    async def usage_stats(self, query: UsageQuery) -> UsageStats:
        """Totals over the records matching a usage filter."""
        records = await self.list_records(query)
        return UsageStats.from_totals(
            sum(r.lines_of_code_accepted for r in records),
            sum(r.lines_of_code_suggested for r in records),
            sum(r.active_sessions for r in records),
        )

    async def start(self) -> None:
        """Acquire resources needed before serving queries."""

    async def check_health(self) -> str:
        return "ok"

    async def close(self) -> None:
        """Release held resources."""

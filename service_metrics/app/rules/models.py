"""
Metric rule data models for the Metrics Service.
"""

from typing import Dict, Any, Optional, List, Tuple, Mapping
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field


class Unit(str, Enum):
    """Display unit of a metric value."""
    COUNT = "count"
    PERCENT = "percent"
    TIME = "time"


class MetricOperation(str, Enum):
    """Aggregation applied to a dimension's per-record values."""
    COUNT = "COUNT"
    SUM = "SUM"
    AVERAGE = "AVG"


class MetricDimension(str, Enum):
    """Measured quantity of a daily AI code assistant record."""
    LINES_OF_CODE_ACCEPTED = "LINES_OF_CODE_ACCEPTED"
    LINES_OF_CODE_SUGGESTED = "LINES_OF_CODE_SUGGESTED"
    ACTIVE_SESSIONS = "ACTIVE_SESSIONS"
    ACCEPT_RATE = "ACCEPT_RATE"


class Interval(str, Enum):
    """Graph bucket width."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class MetricRuleCategory:
    """Category a rule's output is grouped under. Lower priority sorts first."""
    name: str
    priority: int


@dataclass(frozen=True)
class MetricRuleDescriptor:
    """Everything that distinguishes one metric rule from another."""
    rule_id: str
    name: str
    description: str
    unit: Unit
    category: MetricRuleCategory
    dimension: MetricDimension
    operation: MetricOperation
    icon_identifier: str = ""
    icon_color: str = ""
    compare_peers_in_graph: bool = True


@dataclass(frozen=True)
class AggregateQuery:
    """Filter and aggregation handed to the record store."""
    organization_id: str
    start_date: date
    end_date: date
    dimension: MetricDimension
    operation: MetricOperation
    account_ids: Optional[Tuple[str, ...]] = None
    tool_names: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class UsageQuery:
    """Filter for listing daily records and summing usage. Unset fields do not filter."""
    organization_id: str
    account_ids: Optional[Tuple[str, ...]] = None
    tool_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass(frozen=True)
class MetricScope:
    """Validated scope of one metrics calculation."""
    organization_id: str
    start_date: date
    end_date: date
    interval: Interval
    primary_account_ids: Optional[Tuple[str, ...]] = None
    peer_account_ids: Tuple[str, ...] = ()
    tool_names: Optional[Tuple[str, ...]] = None
    extras: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def has_peers(self) -> bool:
        return bool(self.peer_account_ids)

    def primary_query(self, dimension: MetricDimension, operation: MetricOperation) -> AggregateQuery:
        return self._query(dimension, operation, self.primary_account_ids)

    def peer_query(self, dimension: MetricDimension, operation: MetricOperation) -> AggregateQuery:
        return self._query(dimension, operation, self.peer_account_ids)

    def _query(self, dimension, operation, account_ids) -> AggregateQuery:
        return AggregateQuery(
            organization_id=self.organization_id,
            start_date=self.start_date,
            end_date=self.end_date,
            dimension=dimension,
            operation=operation,
            account_ids=account_ids,
            tool_names=self.tool_names,
        )


class MetricRuleParams(BaseModel):
    """Raw, unvalidated request scope shared by every rule."""
    model_config = ConfigDict(populate_by_name=True)

    interval: Optional[str] = Field(None, description="daily, weekly or monthly")
    start_date: Optional[date] = Field(None, alias="startDate")
    end_date: Optional[date] = Field(None, alias="endDate")
    metric_params: Optional[Dict[str, Any]] = Field(None, alias="metricParams")


class _ResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CategoryModel(_ResponseModel):
    """Serialized category."""
    name: str
    priority: int

    @classmethod
    def from_category(cls, category: MetricRuleCategory) -> "CategoryModel":
        return cls(name=category.name, priority=category.priority)


class SnapshotMetric(_ResponseModel):
    """Single value over the date range plus its peer baseline."""
    label: str
    description: str = ""
    unit: Unit
    value: float
    peers_value: float = Field(0.0, alias="peersValue")
    icon_identifier: str = Field("", alias="iconIdentifier")
    icon_color: str = Field("", alias="iconColor")


class TimeSeriesDataPoint(_ResponseModel):
    """One keyed value inside a bucket."""
    key: str
    value: float


class TimeSeriesEntry(_ResponseModel):
    """One interval bucket, dated YYYY-MM-DD."""
    date: str
    data: List[TimeSeriesDataPoint] = Field(default_factory=list)


class GraphMetric(_ResponseModel):
    """A metric as an ordered, interval-bucketed series."""
    label: str
    type: str = "line"
    unit: Unit
    time_series: List[TimeSeriesEntry] = Field(default_factory=list, alias="timeSeries")


class SnapshotCategory(_ResponseModel):
    """Snapshot metrics sharing a category."""
    category: CategoryModel
    metrics: List[SnapshotMetric] = Field(default_factory=list)


class GraphCategory(_ResponseModel):
    """Graph metrics sharing a category."""
    category: CategoryModel
    metrics: List[GraphMetric] = Field(default_factory=list)


class MetricsResponse(_ResponseModel):
    """Response of one metrics calculation."""
    snapshot_metrics: List[SnapshotCategory] = Field(default_factory=list, alias="snapshotMetrics")
    graph_metrics: List[GraphCategory] = Field(default_factory=list, alias="graphMetrics")


class DailyUsageRecord(BaseModel):
    """One stored daily record as returned by the usage endpoints."""
    organization_id: str
    external_account_id: str
    tool_name: str
    metric_date: date
    lines_of_code_accepted: int = 0
    lines_of_code_suggested: int = 0
    suggestion_accept_rate: Optional[float] = None
    active_sessions: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UsageStats(BaseModel):
    """Totals over a set of daily records."""
    total_lines_accepted: int = 0
    total_lines_suggested: int = 0
    overall_accept_rate: float = 0.0
    active_sessions: int = 0

    @classmethod
    def from_totals(cls, accepted: int, suggested: int, active_sessions: int) -> "UsageStats":
        # Ratio of the totals, not the mean of daily rates
        rate = accepted * 100 / suggested if suggested > 0 else 0.0
        return cls(
            total_lines_accepted=accepted,
            total_lines_suggested=suggested,
            overall_accept_rate=rate,
            active_sessions=active_sessions,
        )


class UsageResponse(BaseModel):
    metrics: List[DailyUsageRecord] = Field(default_factory=list)


class UsageStatsResponse(BaseModel):
    stats: UsageStats = Field(default_factory=UsageStats)

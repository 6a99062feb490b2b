"""
Metric rule implementations.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping, Tuple, Union

from shared.logging import get_logger
from ..aggregation.aggregator import Aggregator
from ..aggregation.timeseries import merge_time_series
from .models import (
    GraphMetric, MetricRuleCategory, MetricRuleDescriptor, MetricRuleParams,
    SnapshotMetric
)
from .params import extract_scope

RuleParams = Union[MetricRuleParams, Mapping[str, Any]]


class BaseMetricRule(ABC):
    """A unit producing one snapshot metric and one graph metric."""

    @property
    @abstractmethod
    def rule_id(self) -> str:
        """Stable identifier of the rule."""

    @abstractmethod
    def category(self) -> MetricRuleCategory:
        """Category the rule's output is grouped under."""

    @abstractmethod
    async def calculate(self, params: RuleParams) -> Tuple[SnapshotMetric, GraphMetric]:
        """Evaluate the rule for the given raw parameters."""


class DimensionMetricRule(BaseMetricRule):
    """Rule driven by a descriptor: one dimension, one operation."""

    def __init__(self, descriptor: MetricRuleDescriptor, aggregator: Aggregator):
        self.descriptor = descriptor
        self.aggregator = aggregator
        self.logger = get_logger("metrics.rule")

    @property
    def rule_id(self) -> str:
        return self.descriptor.rule_id

    def category(self) -> MetricRuleCategory:
        return self.descriptor.category

    async def calculate(self, params: RuleParams) -> Tuple[SnapshotMetric, GraphMetric]:
        d = self.descriptor
        scope = extract_scope(params)

        value = await self.aggregator.value(scope, d.dimension, d.operation)
        peers_value = await self.aggregator.peer_median(scope, d.dimension, d.operation)

        time_series = await self.aggregator.series(scope, d.dimension, d.operation, d.name)
        if scope.has_peers and d.compare_peers_in_graph:
            peer_series = await self.aggregator.peer_series(scope, d.dimension, d.operation)
            time_series = merge_time_series(time_series, peer_series)

        self.logger.debug(
            "Rule calculated",
            rule_id=d.rule_id,
            organization_id=scope.organization_id,
            value=value,
            peers_value=peers_value,
            buckets=len(time_series)
        )

        snapshot = SnapshotMetric(
            label=d.name,
            description=d.description,
            unit=d.unit,
            value=value,
            peers_value=peers_value,
            icon_identifier=d.icon_identifier,
            icon_color=d.icon_color,
        )
        graph = GraphMetric(
            label=d.name,
            unit=d.unit,
            time_series=time_series,
        )
        return snapshot, graph

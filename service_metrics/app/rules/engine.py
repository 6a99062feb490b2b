"""
Metric rule engine for the Metrics Service.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.errors import EMSException
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from .models import (
    CategoryModel, GraphCategory, GraphMetric, MetricRuleCategory, MetricsResponse,
    SnapshotCategory, SnapshotMetric
)
from .rule import BaseMetricRule, RuleParams


def _rule_dimension(rule: BaseMetricRule) -> Optional[str]:
    descriptor = getattr(rule, "descriptor", None)
    if descriptor is None:
        return None
    return descriptor.dimension.value


class MetricsEngine:
    """Evaluates every registered metric rule and groups the output by category."""

    def __init__(self, rules: Optional[Iterable[BaseMetricRule]] = None,
                 metrics: Optional[MetricsCollector] = None,
                 concurrent: bool = False):
        self.logger = get_logger("metrics.engine")
        self.metrics = metrics
        self.concurrent = concurrent
        self._rules: Dict[str, BaseMetricRule] = {}
        self._calculations = 0
        self._failures = 0

        for rule in rules or ():
            self.register_rule(rule)

    @property
    def rules(self) -> List[BaseMetricRule]:
        """Registered rules in registration order."""
        return list(self._rules.values())

    def register_rule(self, rule: BaseMetricRule) -> None:
        """Register a rule. A rule with an existing id replaces it in place."""
        replaced = rule.rule_id in self._rules
        self._rules[rule.rule_id] = rule
        self.logger.info(
            "Rule registered",
            rule_id=rule.rule_id,
            category=rule.category().name,
            replaced=replaced
        )

    def get_rule(self, rule_id: str) -> Optional[BaseMetricRule]:
        """Get a rule by ID."""
        return self._rules.get(rule_id)

    async def calculate_metrics(self, params: RuleParams) -> MetricsResponse:
        """Run every rule against ``params``.

        The first rule failure aborts the calculation and is re-raised with
        ``rule_id`` and ``dimension`` added to its details.
        """
        start_time = time.time()
        rules = self.rules
        self._calculations += 1

        try:
            if self.concurrent:
                results = await self._evaluate_concurrently(rules, params)
            else:
                results = [await self._evaluate(rule, params) for rule in rules]
        except Exception:
            self._failures += 1
            raise

        response = self._group(rules, results)
        self.logger.info(
            "Metrics calculated",
            rules=len(rules),
            categories=len(response.snapshot_metrics),
            concurrent=self.concurrent,
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return response

    async def _evaluate_concurrently(self, rules: List[BaseMetricRule],
                                     params: RuleParams) -> List[Tuple[SnapshotMetric, GraphMetric]]:
        tasks = [asyncio.ensure_future(self._evaluate(rule, params)) for rule in rules]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _evaluate(self, rule: BaseMetricRule,
                        params: RuleParams) -> Tuple[SnapshotMetric, GraphMetric]:
        start_time = time.time()
        dimension = _rule_dimension(rule)

        with trace_operation("metrics.rule.calculate", rule_id=rule.rule_id, dimension=dimension):
            try:
                result = await rule.calculate(params)
            except asyncio.CancelledError:
                self._record(rule.rule_id, "cancelled", start_time)
                raise
            except EMSException as e:
                e.details.setdefault("rule_id", rule.rule_id)
                if dimension is not None:
                    e.details.setdefault("dimension", dimension)
                self._record(rule.rule_id, "error", start_time)
                self.logger.warning(
                    "Rule evaluation failed",
                    rule_id=rule.rule_id,
                    code=e.code,
                    error=e.message
                )
                raise
            except Exception as e:
                self._record(rule.rule_id, "error", start_time)
                self.logger.error("Rule evaluation error", rule_id=rule.rule_id, error=str(e))
                raise

        self._record(rule.rule_id, "success", start_time)
        return result

    def _record(self, rule_id: str, status: str, start_time: float) -> None:
        if self.metrics is not None:
            self.metrics.record_rule_evaluation(rule_id, status, time.time() - start_time)

    @staticmethod
    def _group(rules: List[BaseMetricRule],
               results: List[Tuple[SnapshotMetric, GraphMetric]]) -> MetricsResponse:
        categories: Dict[str, MetricRuleCategory] = {}
        snapshots: Dict[str, List[SnapshotMetric]] = {}
        graphs: Dict[str, List[GraphMetric]] = {}

        for rule, (snapshot, graph) in zip(rules, results):
            category = rule.category()
            if category.name not in categories:
                categories[category.name] = category
                snapshots[category.name] = []
                graphs[category.name] = []
            snapshots[category.name].append(snapshot)
            graphs[category.name].append(graph)

        ordered = sorted(categories.values(), key=lambda c: (c.priority, c.name))
        return MetricsResponse(
            snapshot_metrics=[
                SnapshotCategory(category=CategoryModel.from_category(c), metrics=snapshots[c.name])
                for c in ordered
            ],
            graph_metrics=[
                GraphCategory(category=CategoryModel.from_category(c), metrics=graphs[c.name])
                for c in ordered
            ],
        )

    def get_engine_stats(self) -> Dict[str, Any]:
        """Get engine statistics."""
        return {
            "total_rules": len(self._rules),
            "categories": sorted({r.category().name for r in self._rules.values()}),
            "concurrent": self.concurrent,
            "calculations": self._calculations,
            "failed_calculations": self._failures,
        }

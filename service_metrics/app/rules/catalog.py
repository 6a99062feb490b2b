"""
Built-in AI code assistant metric rules.
"""

from typing import List, Optional

from shared.metrics import MetricsCollector
from ..aggregation.aggregator import Aggregator
from ..store.base import RecordStore
from .engine import MetricsEngine
from .models import MetricDimension, MetricOperation, MetricRuleCategory, MetricRuleDescriptor, Unit
from .rule import DimensionMetricRule

USAGE = MetricRuleCategory(name="Usage", priority=1)
EFFICIENCY = MetricRuleCategory(name="Efficiency", priority=2)

DEFAULT_RULES: List[MetricRuleDescriptor] = [
    MetricRuleDescriptor(
        rule_id="lines_of_code_accepted_count",
        name="Lines of Code Accepted",
        description=(
            "Total lines of code accepted from AI suggestions. This metric counts all lines "
            "from accepted AI code suggestions across all tools. Peer comparison shows the "
            "median lines accepted across other organization members."
        ),
        unit=Unit.COUNT,
        category=USAGE,
        dimension=MetricDimension.LINES_OF_CODE_ACCEPTED,
        operation=MetricOperation.SUM,
        icon_identifier="check-circle",
        icon_color="green",
    ),
    MetricRuleDescriptor(
        rule_id="lines_of_code_suggested_count",
        name="Lines of Code Suggested",
        description=(
            "Total lines of code suggested by AI assistants. This metric counts all lines "
            "suggested by AI code assistants across all tools. Peer comparison shows the "
            "median lines suggested across other organization members."
        ),
        unit=Unit.COUNT,
        category=USAGE,
        dimension=MetricDimension.LINES_OF_CODE_SUGGESTED,
        operation=MetricOperation.SUM,
        icon_identifier="code",
        icon_color="blue",
    ),
    MetricRuleDescriptor(
        rule_id="active_sessions_count",
        name="Active Sessions",
        description=(
            "Total number of active AI code assistant sessions. This metric counts all active "
            "sessions across all tools. Peer comparison shows the median active sessions "
            "across other organization members."
        ),
        unit=Unit.COUNT,
        category=USAGE,
        dimension=MetricDimension.ACTIVE_SESSIONS,
        operation=MetricOperation.SUM,
        icon_identifier="activity",
        icon_color="purple",
    ),
    MetricRuleDescriptor(
        rule_id="accept_rate_percent",
        name="Accept Rate",
        description=(
            "Average percentage of AI suggestions that were accepted. Calculated as "
            "(lines accepted / lines suggested) * 100. Peer comparison shows the median "
            "accept rate across other organization members."
        ),
        unit=Unit.PERCENT,
        category=EFFICIENCY,
        dimension=MetricDimension.ACCEPT_RATE,
        operation=MetricOperation.AVERAGE,
        icon_identifier="trending-up",
        icon_color="orange",
    ),
]


def build_default_engine(store: RecordStore, metrics: Optional[MetricsCollector] = None,
                         concurrent: bool = False) -> MetricsEngine:
    """Create an engine with every built-in rule registered against ``store``."""
    aggregator = Aggregator(store)
    rules = [DimensionMetricRule(descriptor, aggregator) for descriptor in DEFAULT_RULES]
    return MetricsEngine(rules=rules, metrics=metrics, concurrent=concurrent)

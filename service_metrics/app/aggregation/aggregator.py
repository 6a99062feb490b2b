"""
Scoped aggregation over a record store.
"""

from typing import List

from shared.errors import EMSException, QueryError
from shared.logging import get_logger
from ..rules.models import MetricDimension, MetricOperation, MetricScope, TimeSeriesEntry
from ..store.base import RecordStore, get_dimension_spec
from .timeseries import PEERS_KEY, to_time_series


class Aggregator:
    """Computes single values, peer medians and bucketed series for a scope."""

    def __init__(self, store: RecordStore):
        self.store = store
        self.logger = get_logger("metrics.aggregator")

    async def value(self, scope: MetricScope, dimension: MetricDimension,
                    operation: MetricOperation) -> float:
        """Aggregate over the primary accounts."""
        get_dimension_spec(dimension, operation)
        query = scope.primary_query(dimension, operation)
        return await self._run("aggregate", self.store.aggregate(query), dimension)

    async def peer_median(self, scope: MetricScope, dimension: MetricDimension,
                          operation: MetricOperation) -> float:
        """Median of per-peer aggregates. 0 when the scope has no peers."""
        get_dimension_spec(dimension, operation)
        if not scope.has_peers:
            return 0.0
        query = scope.peer_query(dimension, operation)
        return await self._run("peer_median", self.store.peer_median(query), dimension)

    async def series(self, scope: MetricScope, dimension: MetricDimension,
                     operation: MetricOperation, label: str) -> List[TimeSeriesEntry]:
        """Bucketed primary series keyed by ``label``."""
        get_dimension_spec(dimension, operation)
        query = scope.primary_query(dimension, operation)
        buckets = await self._run(
            "aggregate_bucketed", self.store.aggregate_bucketed(query, scope.interval), dimension
        )
        return to_time_series(buckets, label)

    async def peer_series(self, scope: MetricScope, dimension: MetricDimension,
                          operation: MetricOperation) -> List[TimeSeriesEntry]:
        """Per-bucket peer median series keyed ``Peers``. Empty without peers."""
        get_dimension_spec(dimension, operation)
        if not scope.has_peers:
            return []
        query = scope.peer_query(dimension, operation)
        buckets = await self._run(
            "peer_median_bucketed", self.store.peer_median_bucketed(query, scope.interval), dimension
        )
        return to_time_series(buckets, PEERS_KEY)

    async def _run(self, operation_name: str, call, dimension: MetricDimension):
        try:
            return await call
        except EMSException:
            raise
        except Exception as e:
            self.logger.error(
                "Record store query failed",
                operation=operation_name,
                dimension=MetricDimension(dimension).value,
                error=str(e)
            )
            raise QueryError(
                f"record store query failed: {e}",
                {"operation": operation_name}
            ) from e

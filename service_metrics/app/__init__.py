"""
Metrics Service package.

Calculates AI code assistant snapshot and graph metrics, with peer medians,
from daily per-account usage records. Prometheus metrics for the service
itself are exposed on `/metrics`.
"""

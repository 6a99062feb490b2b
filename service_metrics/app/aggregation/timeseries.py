"""
Time-series helpers: bucket truncation, percentile medians and series merging.
"""

import math
from datetime import date, timedelta
from typing import Dict, Iterable, List, Sequence, Tuple

from ..rules.models import Interval, TimeSeriesDataPoint, TimeSeriesEntry

PEERS_KEY = "Peers"
DATE_FORMAT = "%Y-%m-%d"


def truncate_date(day: date, interval: Interval) -> date:
    """Return the first day of the bucket containing ``day``.

    Weekly buckets start on Monday, like PostgreSQL ``DATE_TRUNC('week')``.
    """
    interval = Interval(interval)
    if interval == Interval.DAILY:
        return day
    if interval == Interval.WEEKLY:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def percentile_cont(values: Iterable[float], fraction: float = 0.5) -> float:
    """Continuous percentile with linear interpolation. Empty input yields 0."""
    ordered = sorted(float(v) for v in values)
    if not ordered:
        return 0.0
    if len(ordered) == 1:
        return ordered[0]

    position = fraction * (len(ordered) - 1)
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return ordered[lower]
    weight = position - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * weight


def format_bucket(day: date) -> str:
    return day.strftime(DATE_FORMAT)


def to_time_series(buckets: Sequence[Tuple[date, float]], key: str) -> List[TimeSeriesEntry]:
    """Turn ``(bucket, value)`` pairs into one-point entries sorted by date."""
    return [
        TimeSeriesEntry(
            date=format_bucket(bucket),
            data=[TimeSeriesDataPoint(key=key, value=value)]
        )
        for bucket, value in sorted(buckets, key=lambda item: item[0])
    ]


def merge_time_series(primary: Sequence[TimeSeriesEntry],
                      peers: Sequence[TimeSeriesEntry]) -> List[TimeSeriesEntry]:
    """Merge two series by bucket date.

    Buckets present in both series get the primary points followed by the peer
    points. Buckets present in only one series are kept as they are; missing
    buckets are not zero-filled. Neither input is mutated.
    """
    merged: Dict[str, TimeSeriesEntry] = {}

    for entry in list(primary) + list(peers):
        existing = merged.get(entry.date)
        if existing is None:
            merged[entry.date] = TimeSeriesEntry(date=entry.date, data=list(entry.data))
        else:
            existing.data.extend(entry.data)

    return sorted(merged.values(), key=lambda entry: entry.date)

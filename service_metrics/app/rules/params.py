"""
Extraction of a validated MetricScope from raw rule parameters.
"""

import json
import re
import uuid
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from shared.errors import ValidationError
from .models import Interval, MetricRuleParams, MetricScope, UsageQuery

ORGANIZATION_ID_KEY = "organizationId"
EXTERNAL_ACCOUNT_IDS_KEY = "externalAccountIDs"
PEERS_EXTERNAL_ACCOUNT_IDS_KEY = "peersExternalAccountIDs"
TOOL_NAMES_KEY = "toolNames"

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_KNOWN_KEYS = frozenset({
    ORGANIZATION_ID_KEY,
    EXTERNAL_ACCOUNT_IDS_KEY,
    PEERS_EXTERNAL_ACCOUNT_IDS_KEY,
    TOOL_NAMES_KEY,
})


def _as_mapping(params: Union[MetricRuleParams, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(params, MetricRuleParams):
        return params.model_dump(by_alias=True)
    if isinstance(params, Mapping):
        return params
    raise ValidationError("invalid metric rule params")


def _parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and _DATE_PATTERN.match(value):
        try:
            return datetime.strptime(value, "%Y-%m-%d").date()
        except ValueError:
            pass
    raise ValidationError(
        f"invalid {field_name} format, expected YYYY-MM-DD",
        {"field": field_name, "value": str(value)}
    )


def _parse_metric_params(value: Any) -> Dict[str, Any]:
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            raise ValidationError("invalid metric params format")
    if not isinstance(value, Mapping):
        raise ValidationError("invalid metric params format")
    return dict(value)


def _parse_account_ids(value: Any, message: str) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ValidationError(message)

    account_ids = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(message, {"value": str(item)})
        try:
            canonical = str(uuid.UUID(item))
        except ValueError:
            raise ValidationError(message, {"value": item})
        if canonical != item.lower():
            raise ValidationError(message, {"value": item})
        account_ids.append(item)
    return tuple(account_ids)


def _parse_tool_names(value: Any) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)) or not all(isinstance(t, str) and t for t in value):
        raise ValidationError("invalid tool names")
    return tuple(value) or None


def extract_scope(params: Union[MetricRuleParams, Mapping[str, Any]]) -> MetricScope:
    """Validate raw rule parameters and build the calculation scope.

    Checks run in a fixed order and the first failure is raised as a
    ValidationError: interval, dates, metric params, organization id,
    account ids, peer account ids, tool names.
    """
    raw = _as_mapping(params)

    interval_value = raw.get("interval")
    if not interval_value:
        raise ValidationError("interval is required")
    try:
        interval = Interval(interval_value)
    except ValueError:
        raise ValidationError("invalid interval", {"interval": str(interval_value)})

    start_value = raw.get("startDate")
    end_value = raw.get("endDate")
    if start_value is None or start_value == "":
        raise ValidationError("start date is required")
    if end_value is None or end_value == "":
        raise ValidationError("end date is required")
    start_date = _parse_date(start_value, "start date")
    end_date = _parse_date(end_value, "end date")
    if start_date > end_date:
        raise ValidationError(
            "start date must not be after end date",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}
        )

    metric_params_value = raw.get("metricParams")
    if metric_params_value is None:
        raise ValidationError("metric params is required")
    metric_params = _parse_metric_params(metric_params_value)

    organization_id = metric_params.get(ORGANIZATION_ID_KEY)
    if organization_id is None or organization_id == "":
        raise ValidationError("organization id is required")
    if not isinstance(organization_id, str):
        raise ValidationError("invalid organization id format")

    primary_account_ids = _parse_account_ids(
        metric_params.get(EXTERNAL_ACCOUNT_IDS_KEY), "invalid external account id"
    )
    peer_account_ids = _parse_account_ids(
        metric_params.get(PEERS_EXTERNAL_ACCOUNT_IDS_KEY), "invalid peers external account id"
    )
    tool_names = _parse_tool_names(metric_params.get(TOOL_NAMES_KEY))

    extras = {k: v for k, v in metric_params.items() if k not in _KNOWN_KEYS}

    return MetricScope(
        organization_id=organization_id,
        start_date=start_date,
        end_date=end_date,
        interval=interval,
        primary_account_ids=primary_account_ids or None,
        peer_account_ids=peer_account_ids or (),
        tool_names=tool_names,
        extras=MappingProxyType(extras),
    )


def parse_usage_query(organization_id: str, account_ids: Optional[Sequence[str]] = None,
                      tool_name: Optional[str] = None, start_date: Any = None,
                      end_date: Any = None) -> UsageQuery:
    """Validate usage filters. Every filter is optional; empty values mean no filter."""
    start = _parse_date(start_date, "startDate") if start_date not in (None, "") else None
    end = _parse_date(end_date, "endDate") if end_date not in (None, "") else None
    if start is not None and end is not None and start > end:
        raise ValidationError(
            "start date must not be after end date",
            {"start_date": start.isoformat(), "end_date": end.isoformat()}
        )

    return UsageQuery(
        organization_id=organization_id,
        account_ids=_parse_account_ids(
            list(account_ids) if account_ids is not None else None, "invalid external account id"
        ) or None,
        tool_name=tool_name or None,
        start_date=start,
        end_date=end,
    )

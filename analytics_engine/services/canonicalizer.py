from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from analytics_engine.schemas import AccessScope, FilterSpec


def _normalize_scalar(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _normalize_value(value: Any) -> Any:
    if isinstance(value, dict):
        normalized_items = {str(key): _normalize_value(item) for key, item in value.items()}
        return {key: normalized_items[key] for key in sorted(normalized_items)}
    if isinstance(value, (list, tuple, set, frozenset)):
        normalized = [_normalize_value(item) for item in value]
        if isinstance(value, (set, frozenset)) or all(not isinstance(item, (dict, list)) for item in normalized):
            return sorted(normalized, key=lambda item: json.dumps(item, sort_keys=True, default=str))
        return normalized
    return _normalize_scalar(value)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def normalize_filters(filters: list[FilterSpec] | tuple[FilterSpec, ...]) -> list[dict[str, Any]]:
    """Order-independent filter list; exact duplicates collapse since they AND to the same predicate."""
    seen: set[str] = set()
    normalized: list[dict[str, Any]] = []
    for item in filters:
        if item.operator == "between" and isinstance(item.value, (list, tuple)):
            value = [_normalize_value(bound) for bound in item.value]
        else:
            value = _normalize_value(item.value)
        payload = {"field": item.field, "op": item.operator, "value": value}
        key = _canonical_json(payload)
        if key in seen:
            continue
        seen.add(key)
        normalized.append(payload)
    return sorted(normalized, key=_canonical_json)


def scope_signature(scope: AccessScope | None) -> dict[str, Any] | None:
    if scope is None:
        return None
    return {
        "unrestricted": scope.unrestricted,
        "partition_ids": None if scope.unrestricted else sorted(set(scope.partition_ids)),
        "secondary_entity_ids": (
            None if scope.unrestricted or scope.secondary_entity_ids is None else sorted(set(scope.secondary_entity_ids))
        ),
    }


def fingerprint(
    *,
    data_source_id: int,
    filters: list[FilterSpec] | tuple[FilterSpec, ...],
    shape: dict[str, Any] | None = None,
    scope: AccessScope | None = None,
) -> str:
    canonical_payload = {
        "data_source_id": int(data_source_id),
        "filters": normalize_filters(filters),
        "shape": _normalize_value(shape or {}),
        "scope": scope_signature(scope),
    }
    return hashlib.sha256(_canonical_json(canonical_payload).encode("utf-8")).hexdigest()

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo

from analytics_engine.errors import AccessDeniedEmptyScope, InvalidFilterError
from analytics_engine.schemas import DateRange, FilterSpec

logger = logging.getLogger("uvicorn.error")

# No partition is ever assigned this identifier.
PARTITION_SENTINEL = -1

EmptyScopePolicy = Literal["zero_rows", "raise"]

DATE_RANGE_PRESETS = (
    "today",
    "yesterday",
    "last_7_days",
    "last_30_days",
    "this_week",
    "this_month",
    "last_month",
    "this_quarter",
    "this_year",
    "last_year",
    "year_to_date",
)


def today_in(timezone_name: str) -> date:
    return datetime.now(ZoneInfo(timezone_name)).date()


def start_of_week(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _preset_range(preset: str, today: date) -> tuple[date, date]:
    if preset == "today":
        return today, today
    if preset == "yesterday":
        day = today - timedelta(days=1)
        return day, day
    if preset == "last_7_days":
        return today - timedelta(days=6), today
    if preset == "last_30_days":
        return today - timedelta(days=29), today
    if preset == "this_week":
        return start_of_week(today), today
    if preset == "this_month":
        return today.replace(day=1), today
    if preset == "last_month":
        last_prev = today.replace(day=1) - timedelta(days=1)
        return last_prev.replace(day=1), last_prev
    if preset == "this_quarter":
        first_month = 3 * ((today.month - 1) // 3) + 1
        return today.replace(month=first_month, day=1), today
    if preset in {"this_year", "year_to_date"}:
        return today.replace(month=1, day=1), today
    if preset == "last_year":
        year = today.year - 1
        return date(year, 1, 1), date(year, 12, 31)
    raise InvalidFilterError(f"Unknown date range preset '{preset}'")


def resolve_date_range(
    start_date: date | None,
    end_date: date | None,
    preset: str | None,
    *,
    today: date,
) -> DateRange | None:
    """Explicit dates win; a preset only fills in what is missing."""
    if preset and (start_date is None or end_date is None):
        preset_start, preset_end = _preset_range(preset, today)
        start_date = start_date or preset_start
        end_date = end_date or preset_end
    if start_date is None and end_date is None:
        return None
    if start_date and end_date and start_date > end_date:
        raise InvalidFilterError("Start date must not be after end date")
    return DateRange(start=start_date, end=end_date)


def build_partition_filter(
    partition_ids: list[int] | None,
    *,
    empty_policy: EmptyScopePolicy = "zero_rows",
    field: str = "partition",
) -> FilterSpec | None:
    if partition_ids is None:
        return None
    if not partition_ids:
        if empty_policy == "raise":
            raise AccessDeniedEmptyScope()
        logger.warning(
            "analytics.security.partition_filter | %s",
            {"field": field, "failed_closed": True, "sentinel": PARTITION_SENTINEL},
        )
        return FilterSpec(field=field, operator="in", value=[PARTITION_SENTINEL])
    return FilterSpec(field=field, operator="in", value=sorted(set(partition_ids)))


def build_date_filters(start_date: date | None, end_date: date | None, date_field: str = "date") -> list[FilterSpec]:
    filters: list[FilterSpec] = []
    if start_date is not None:
        filters.append(FilterSpec(field=date_field, operator="gte", value=start_date.isoformat()))
    if end_date is not None:
        filters.append(FilterSpec(field=date_field, operator="lte", value=end_date.isoformat()))
    return filters


def build_measure_filter(measure: str | None) -> list[FilterSpec]:
    if not measure:
        return []
    return [FilterSpec(field="measure", operator="eq", value=measure)]


def build_frequency_filter(frequency: str | None) -> list[FilterSpec]:
    if not frequency:
        return []
    return [FilterSpec(field="time_period", operator="eq", value=frequency)]


def validate_filter(item: FilterSpec) -> FilterSpec:
    value: Any = item.value
    if item.operator in {"in", "not_in"}:
        if not isinstance(value, (list, tuple)):
            raise InvalidFilterError(f"Filter '{item.field}' with operator '{item.operator}' requires a list value")
    elif item.operator == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise InvalidFilterError(f"Filter '{item.field}' with operator 'between' requires [start, end]")
    elif value is None or isinstance(value, (list, tuple, dict)):
        raise InvalidFilterError(f"Filter '{item.field}' with operator '{item.operator}' requires a scalar value")
    return item


def build_query_filters(
    *,
    date_range: DateRange | None = None,
    measure: str | None = None,
    frequency: str | None = None,
    partition_ids: list[int] | None = None,
    advanced_filters: list[FilterSpec] | None = None,
    empty_policy: EmptyScopePolicy = "zero_rows",
) -> list[FilterSpec]:
    filters: list[FilterSpec] = []
    if date_range is not None:
        filters.extend(build_date_filters(date_range.start, date_range.end))
    filters.extend(build_measure_filter(measure))
    filters.extend(build_frequency_filter(frequency))
    partition_filter = build_partition_filter(partition_ids, empty_policy=empty_policy)
    if partition_filter is not None:
        filters.append(partition_filter)
    for item in advanced_filters or []:
        filters.append(validate_filter(item))
    return filters

from __future__ import annotations

from calendar import isleap
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar

from analytics_engine.errors import InvalidChartConfigError, TransformError
from analytics_engine.schemas import (
    AccessScope,
    ChartExecutionConfig,
    ChartPayload,
    DateRange,
    FilterSpec,
    PeriodComparisonConfig,
)
from analytics_engine.services.filters import build_date_filters
from analytics_engine.services.query_executor import AnalyticsQueryExecutor, FetchResult, QueryParams

Rows = list[dict[str, Any]]
OptionsT = TypeVar("OptionsT")


def label_for(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if value is None:
        return ""
    return str(value)


def numeric_measure(row: dict[str, Any], field: str = "measure_value") -> float | None:
    if field not in row:
        raise TransformError(f"Row is missing the '{field}' field")
    value = row[field]
    if value is None:
        return None
    if isinstance(value, bool):
        raise TransformError(f"Field '{field}' must be numeric")
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    try:
        return float(str(value))
    except ValueError as exc:
        raise TransformError(f"Field '{field}' must be numeric") from exc


def aggregate(values: list[float], how: str) -> float | None:
    if how == "count":
        return float(len(values))
    if not values:
        return None
    if how == "avg":
        return sum(values) / len(values)
    if how == "min":
        return min(values)
    if how == "max":
        return max(values)
    return sum(values)


def row_value(row: dict[str, Any], field: str) -> Any:
    if field not in row:
        raise TransformError(f"Row is missing the '{field}' field")
    return row[field]


def measure_name(filters: tuple[FilterSpec, ...] | list[FilterSpec]) -> str | None:
    for item in filters:
        if item.field == "measure" and item.operator == "eq":
            return str(item.value)
    return None


def measure_type_of(rows: Rows) -> str | None:
    for row in rows:
        value = row.get("measure_type")
        if value:
            return str(value)
    return None


def with_measure(filters: tuple[FilterSpec, ...], measure: str) -> tuple[FilterSpec, ...]:
    kept = [item for item in filters if item.field != "measure"]
    kept.append(FilterSpec(field="measure", operator="eq", value=measure))
    return tuple(kept)


def with_date_range(filters: tuple[FilterSpec, ...], date_range: DateRange) -> tuple[FilterSpec, ...]:
    kept = [item for item in filters if item.field != "date"]
    kept.extend(build_date_filters(date_range.start, date_range.end))
    return tuple(kept)


def _minus_years(day: date, years: int) -> date:
    year = day.year - years
    if day.month == 2 and day.day == 29 and not isleap(year):
        return date(year, 2, 28)
    return day.replace(year=year)


def comparison_range(current: DateRange, comparison: PeriodComparisonConfig) -> DateRange:
    if current.start is None or current.end is None:
        raise TransformError("Period comparison requires a bounded date range")
    if comparison.comparison_type == "same_period_last_year":
        return DateRange(start=_minus_years(current.start, 1), end=_minus_years(current.end, 1))
    length = (current.end - current.start).days + 1
    periods = comparison.custom_period_offset if comparison.comparison_type == "custom_period" else 1
    shift = timedelta(days=length * (periods or 1))
    return DateRange(start=current.start - shift, end=current.end - shift)


def options_as(config: ChartExecutionConfig, options_type: type[OptionsT]) -> OptionsT:
    options = config.options
    if not isinstance(options, options_type):
        raise InvalidChartConfigError([f"Options for '{config.chart_type}' charts are invalid"])
    return options


class ChartHandler:
    """Fetch and transform strategy for one family of chart types.

    ``plan_fetches`` lists every underlying fetch a chart needs and ``combine``
    merges their rows, so composite charts reuse the single-fetch path.
    """

    chart_types: tuple[str, ...] = ()
    options_type: type | None = None

    def __init__(self, executor: AnalyticsQueryExecutor) -> None:
        self._executor = executor

    def validate(self, config: ChartExecutionConfig) -> list[str]:
        errors: list[str] = []
        if config.chart_type not in self.chart_types:
            errors.append(f"Handler does not support chart type '{config.chart_type}'")
        if self.options_type is not None and not isinstance(config.options, self.options_type):
            errors.append(f"Options for '{config.chart_type}' charts are invalid")
        return errors

    def build_query_params(self, config: ChartExecutionConfig) -> QueryParams:
        return QueryParams(
            data_source_id=config.data_source_id,
            filters=tuple(config.merged_filters),
            date_range=config.date_range,
        )

    def plan_fetches(self, config: ChartExecutionConfig) -> list[QueryParams]:
        return [self.build_query_params(config)]

    async def fetch_data(self, params: QueryParams, scope: AccessScope) -> FetchResult:
        return await self._executor.fetch(params, scope)

    def transform(self, rows: Rows, config: ChartExecutionConfig) -> ChartPayload:
        raise NotImplementedError

    def combine(self, results: list[Rows], config: ChartExecutionConfig) -> ChartPayload:
        return self.transform(results[0], config)

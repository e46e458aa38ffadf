from __future__ import annotations

from datetime import date

from analytics_engine.schemas import ChartDefinition, ChartExecutionConfig, UniversalFilters
from analytics_engine.services.filters import EmptyScopePolicy, build_query_filters, resolve_date_range


def build_execution_config(
    definition: ChartDefinition,
    universal: UniversalFilters | None = None,
    *,
    today: date,
    resolved_partition_ids: list[int] | None = None,
    empty_policy: EmptyScopePolicy = "zero_rows",
) -> ChartExecutionConfig:
    """Merge a chart's stored filters with dashboard-level overrides.

    Universal filters win for the date range and the partition set. Measure and
    frequency fall back to the universal value only when the chart has none.
    Advanced filters from both sides are ANDed.
    """
    stored = definition.stored_filters
    universal = universal or UniversalFilters()

    if universal.start_date or universal.end_date or universal.date_range_preset:
        date_range = resolve_date_range(
            universal.start_date,
            universal.end_date,
            universal.date_range_preset,
            today=today,
        )
    else:
        date_range = resolve_date_range(stored.start_date, stored.end_date, stored.date_range_preset, today=today)

    if resolved_partition_ids is not None:
        partition_ids = resolved_partition_ids
    elif universal.partition_ids is not None:
        partition_ids = universal.partition_ids
    else:
        partition_ids = stored.partition_ids

    filters = build_query_filters(
        date_range=date_range,
        measure=stored.measure or universal.measure,
        frequency=stored.frequency or universal.frequency,
        partition_ids=partition_ids,
        advanced_filters=[*stored.advanced_filters, *universal.advanced_filters],
        empty_policy=empty_policy,
    )
    return ChartExecutionConfig(
        chart_id=definition.chart_id,
        chart_type=definition.chart_type,
        data_source_id=definition.data_source_id,
        merged_filters=tuple(filters),
        date_range=date_range,
        options=definition.options,
    )

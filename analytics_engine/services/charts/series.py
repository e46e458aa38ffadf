from __future__ import annotations

from analytics_engine.schemas import (
    ChartDataset,
    ChartExecutionConfig,
    ChartPayload,
    PeriodComparisonConfig,
    SeriesChartOptions,
)
from analytics_engine.services.charts.base import (
    ChartHandler,
    Rows,
    aggregate,
    comparison_range,
    label_for,
    measure_name,
    measure_type_of,
    numeric_measure,
    options_as,
    row_value,
    with_date_range,
    with_measure,
)
from analytics_engine.services.query_executor import QueryParams

_COMPARISON_LABELS = {
    "previous_period": "Previous period",
    "same_period_last_year": "Same period last year",
    "custom_period": "Comparison period",
}


def bucket_series(
    rows: Rows,
    *,
    group_by: str | None,
    aggregation: str,
) -> tuple[list[str], dict[str, list[float | None]]]:
    labels: set[str] = set()
    buckets: dict[str, dict[str, list[float]]] = {}
    for row in rows:
        label = label_for(row_value(row, "date_index"))
        group = label_for(row_value(row, group_by)) if group_by else ""
        labels.add(label)
        value = numeric_measure(row)
        bucket = buckets.setdefault(group, {}).setdefault(label, [])
        if value is not None:
            bucket.append(value)
    ordered_labels = sorted(labels)
    series = {
        group: [aggregate(by_label[label], aggregation) if label in by_label else None for label in ordered_labels]
        for group, by_label in sorted(buckets.items())
    }
    return ordered_labels, series


def _as_percentages(series: dict[str, list[float | None]], size: int) -> dict[str, list[float | None]]:
    totals = [sum(abs(values[index] or 0.0) for values in series.values()) for index in range(size)]
    return {
        group: [
            round((value or 0.0) / totals[index] * 100, 2) if totals[index] else None
            for index, value in enumerate(values)
        ]
        for group, values in series.items()
    }


def _align(labels: list[str], own_labels: list[str], values: list[float | None]) -> list[float | None]:
    lookup = dict(zip(own_labels, values))
    return [lookup.get(label) for label in labels]


class SeriesChartHandler(ChartHandler):
    chart_types = ("line", "area", "bar", "stacked-bar", "horizontal-bar")
    options_type = SeriesChartOptions

    def validate(self, config: ChartExecutionConfig) -> list[str]:
        errors = super().validate(config)
        options = config.options
        if not isinstance(options, SeriesChartOptions):
            return errors
        if options.multiple_series and options.period_comparison:
            errors.append("multiple_series and period_comparison cannot be combined")
        if options.multiple_series and options.group_by:
            errors.append("multiple_series charts cannot also use group_by")
        if options.period_comparison is not None:
            date_range = config.date_range
            if date_range is None or date_range.start is None or date_range.end is None:
                errors.append("period_comparison requires a start and end date")
        return errors

    def build_query_params(self, config: ChartExecutionConfig) -> QueryParams:
        options = config.options
        columns = (options.group_by,) if isinstance(options, SeriesChartOptions) and options.group_by else ()
        return QueryParams(
            data_source_id=config.data_source_id,
            filters=tuple(config.merged_filters),
            columns=columns,
            date_range=config.date_range,
        )

    def plan_fetches(self, config: ChartExecutionConfig) -> list[QueryParams]:
        base = self.build_query_params(config)
        options = config.options
        if not isinstance(options, SeriesChartOptions):
            return [base]
        if options.multiple_series:
            return [
                QueryParams(
                    data_source_id=base.data_source_id,
                    filters=with_measure(base.filters, series.measure),
                    columns=base.columns,
                    date_range=base.date_range,
                )
                for series in options.multiple_series
            ]
        if options.period_comparison is not None and config.date_range is not None:
            previous = comparison_range(config.date_range, options.period_comparison)
            return [
                base,
                QueryParams(
                    data_source_id=base.data_source_id,
                    filters=with_date_range(base.filters, previous),
                    columns=base.columns,
                    date_range=previous,
                ),
            ]
        return [base]

    def _dataset(self, config: ChartExecutionConfig, label: str, data: list[float | None]) -> ChartDataset:
        options = config.options
        stacked = config.chart_type == "stacked-bar" or (
            isinstance(options, SeriesChartOptions) and options.stacking_mode in {"stacked", "percentage"}
        )
        is_line = config.chart_type in {"line", "area"}
        return ChartDataset(
            label=label,
            data=data,
            type="line" if is_line else "bar",
            stack="total" if stacked and not is_line else None,
            fill=True if config.chart_type == "area" else None,
        )

    def transform(self, rows: Rows, config: ChartExecutionConfig) -> ChartPayload:
        options = options_as(config, SeriesChartOptions)
        labels, series = bucket_series(rows, group_by=options.group_by, aggregation=options.aggregation)
        if options.stacking_mode == "percentage":
            series = _as_percentages(series, len(labels))
        default_label = measure_name(config.merged_filters) or "Value"
        datasets = [self._dataset(config, group or default_label, values) for group, values in series.items()]
        return ChartPayload(
            chart_type=config.chart_type,
            labels=labels,
            datasets=datasets,
            measure_type=measure_type_of(rows),
        )

    def combine(self, results: list[Rows], config: ChartExecutionConfig) -> ChartPayload:
        options = options_as(config, SeriesChartOptions)
        if options.multiple_series:
            return self._combine_series(results, config, options)
        if options.period_comparison is not None and len(results) == 2:
            return self._combine_periods(results, config, options, options.period_comparison)
        return self.transform(results[0], config)

    def _combine_series(self, results: list[Rows], config: ChartExecutionConfig, options: SeriesChartOptions) -> ChartPayload:
        bucketed = [
            bucket_series(rows, group_by=None, aggregation=series.aggregation)
            for rows, series in zip(results, options.multiple_series)
        ]
        labels = sorted({label for own_labels, _ in bucketed for label in own_labels})
        datasets: list[ChartDataset] = []
        for (own_labels, values_by_group), series in zip(bucketed, options.multiple_series):
            values = values_by_group.get("", [])
            datasets.append(self._dataset(config, series.label or series.measure, _align(labels, own_labels, values)))
        measure_type = next((measure_type_of(rows) for rows in results if measure_type_of(rows)), None)
        return ChartPayload(chart_type=config.chart_type, labels=labels, datasets=datasets, measure_type=measure_type)

    def _combine_periods(
        self,
        results: list[Rows],
        config: ChartExecutionConfig,
        options: SeriesChartOptions,
        comparison: PeriodComparisonConfig,
    ) -> ChartPayload:
        current = self.transform(results[0], config)
        _, previous_series = bucket_series(results[1], group_by=None, aggregation=options.aggregation)
        previous_values = previous_series.get("", [])
        # previous period is aligned by position, not by calendar label
        aligned = [previous_values[index] if index < len(previous_values) else None for index in range(len(current.labels))]
        label = comparison.label or _COMPARISON_LABELS[comparison.comparison_type]
        datasets = list(current.datasets)
        datasets.append(self._dataset(config, label, aligned))
        return current.model_copy(update={"datasets": datasets})

from __future__ import annotations

from analytics_engine.schemas import ChartDataset, ChartExecutionConfig, ChartPayload, PieChartOptions
from analytics_engine.services.charts.base import (
    ChartHandler,
    Rows,
    aggregate,
    label_for,
    measure_name,
    measure_type_of,
    numeric_measure,
    options_as,
    row_value,
)
from analytics_engine.services.query_executor import QueryParams


class PieChartHandler(ChartHandler):
    chart_types = ("pie", "doughnut")
    options_type = PieChartOptions

    def validate(self, config: ChartExecutionConfig) -> list[str]:
        errors = super().validate(config)
        if isinstance(config.options, PieChartOptions) and not config.options.group_by:
            errors.append("pie and doughnut charts require group_by")
        return errors

    def build_query_params(self, config: ChartExecutionConfig) -> QueryParams:
        options = options_as(config, PieChartOptions)
        return QueryParams(
            data_source_id=config.data_source_id,
            filters=tuple(config.merged_filters),
            columns=(options.group_by,) if options.group_by else (),
            date_range=config.date_range,
        )

    def transform(self, rows: Rows, config: ChartExecutionConfig) -> ChartPayload:
        options = options_as(config, PieChartOptions)
        slices: dict[str, list[float]] = {}
        for row in rows:
            key = label_for(row_value(row, options.group_by or ""))
            value = numeric_measure(row)
            bucket = slices.setdefault(key, [])
            if value is not None:
                bucket.append(value)
        totals = {key: aggregate(values, options.aggregation) for key, values in slices.items()}
        ordered = sorted(totals.items(), key=lambda item: (-(item[1] or 0.0), item[0]))
        return ChartPayload(
            chart_type=config.chart_type,
            labels=[key for key, _ in ordered],
            datasets=[
                ChartDataset(
                    label=measure_name(config.merged_filters) or "Value",
                    data=[value for _, value in ordered],
                )
            ],
            measure_type=measure_type_of(rows),
        )

from __future__ import annotations

from analytics_engine.schemas import ChartExecutionConfig, ChartPayload, NumberChartOptions
from analytics_engine.services.charts.base import (
    ChartHandler,
    Rows,
    aggregate,
    measure_type_of,
    numeric_measure,
    options_as,
)


class NumberChartHandler(ChartHandler):
    chart_types = ("number",)
    options_type = NumberChartOptions

    def transform(self, rows: Rows, config: ChartExecutionConfig) -> ChartPayload:
        options = options_as(config, NumberChartOptions)
        values = [value for value in (numeric_measure(row) for row in rows) if value is not None]
        return ChartPayload(
            chart_type=config.chart_type,
            value=aggregate(values, options.aggregation),
            target=options.target,
            measure_type=measure_type_of(rows),
        )

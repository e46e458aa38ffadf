from __future__ import annotations

from analytics_engine.schemas import ChartExecutionConfig, ChartPayload, TableChartOptions
from analytics_engine.services.charts.base import ChartHandler, Rows, options_as
from analytics_engine.services.query_executor import QueryParams


class TableChartHandler(ChartHandler):
    chart_types = ("table",)
    options_type = TableChartOptions

    def validate(self, config: ChartExecutionConfig) -> list[str]:
        errors = super().validate(config)
        options = config.options
        if isinstance(options, TableChartOptions):
            if options.limit < 1:
                errors.append("table limit must be positive")
            if options.columns is not None and not options.columns:
                errors.append("table columns must not be empty when provided")
        return errors

    def build_query_params(self, config: ChartExecutionConfig) -> QueryParams:
        options = options_as(config, TableChartOptions)
        return QueryParams(
            data_source_id=config.data_source_id,
            filters=tuple(config.merged_filters),
            kind="table_rows",
            columns=tuple(options.columns or ()),
            limit=options.limit,
            date_range=config.date_range,
        )

    def transform(self, rows: Rows, config: ChartExecutionConfig) -> ChartPayload:
        options = options_as(config, TableChartOptions)
        columns = list(options.columns) if options.columns else (list(rows[0].keys()) if rows else [])
        return ChartPayload(
            chart_type=config.chart_type,
            columns=columns,
            rows=[{column: row.get(column) for column in columns} for row in rows[: options.limit]],
        )

from __future__ import annotations

from analytics_engine.schemas import ChartDataset, ChartExecutionConfig, ChartPayload, DualAxisChartOptions
from analytics_engine.services.charts.base import ChartHandler, Rows, measure_type_of, options_as, with_measure
from analytics_engine.services.charts.series import bucket_series
from analytics_engine.services.query_executor import QueryParams


class DualAxisChartHandler(ChartHandler):
    """Primary measure on the ``y`` axis, secondary on ``y1``; two independent fetches."""

    chart_types = ("dual-axis",)
    options_type = DualAxisChartOptions

    def validate(self, config: ChartExecutionConfig) -> list[str]:
        errors = super().validate(config)
        options = config.options
        if isinstance(options, DualAxisChartOptions) and options.primary.measure == options.secondary.measure:
            errors.append("dual-axis primary and secondary measures must differ")
        return errors

    def plan_fetches(self, config: ChartExecutionConfig) -> list[QueryParams]:
        options = options_as(config, DualAxisChartOptions)
        base = self.build_query_params(config)
        return [
            QueryParams(
                data_source_id=base.data_source_id,
                filters=with_measure(base.filters, axis.measure),
                date_range=base.date_range,
            )
            for axis in (options.primary, options.secondary)
        ]

    def transform(self, rows: Rows, config: ChartExecutionConfig) -> ChartPayload:
        return self.combine([rows, []], config)

    def combine(self, results: list[Rows], config: ChartExecutionConfig) -> ChartPayload:
        options = options_as(config, DualAxisChartOptions)
        axes = list(zip((options.primary, options.secondary), ("y", "y1"), results))
        bucketed = [
            (axis, axis_id, bucket_series(rows, group_by=None, aggregation=axis.aggregation))
            for axis, axis_id, rows in axes
        ]
        labels = sorted({label for _, _, (own_labels, _) in bucketed for label in own_labels})
        datasets: list[ChartDataset] = []
        for axis, axis_id, (own_labels, series) in bucketed:
            lookup = dict(zip(own_labels, series.get("", [])))
            datasets.append(
                ChartDataset(
                    label=axis.label or axis.measure,
                    data=[lookup.get(label) for label in labels],
                    type=axis.render_as,
                    y_axis_id=axis_id,
                )
            )
        return ChartPayload(
            chart_type=config.chart_type,
            labels=labels,
            datasets=datasets,
            measure_type=measure_type_of(results[0]),
        )

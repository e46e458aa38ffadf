from __future__ import annotations

from analytics_engine.errors import ChartTypeNotFoundError
from analytics_engine.services.charts.base import ChartHandler
from analytics_engine.services.charts.dual_axis import DualAxisChartHandler
from analytics_engine.services.charts.number import NumberChartHandler
from analytics_engine.services.charts.pie import PieChartHandler
from analytics_engine.services.charts.series import SeriesChartHandler
from analytics_engine.services.charts.table import TableChartHandler
from analytics_engine.services.query_executor import AnalyticsQueryExecutor


class ChartTypeRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, ChartHandler] = {}

    def register(self, chart_type: str, handler: ChartHandler) -> None:
        self._handlers[chart_type] = handler

    def dispatch(self, chart_type: str) -> ChartHandler:
        handler = self._handlers.get(chart_type)
        if handler is None:
            raise ChartTypeNotFoundError(chart_type)
        return handler

    def chart_types(self) -> list[str]:
        return sorted(self._handlers)


def build_default_registry(executor: AnalyticsQueryExecutor) -> ChartTypeRegistry:
    registry = ChartTypeRegistry()
    handlers: list[ChartHandler] = [
        SeriesChartHandler(executor),
        PieChartHandler(executor),
        NumberChartHandler(executor),
        TableChartHandler(executor),
        DualAxisChartHandler(executor),
    ]
    for handler in handlers:
        for chart_type in handler.chart_types:
            registry.register(chart_type, handler)
    return registry

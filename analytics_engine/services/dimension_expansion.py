from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from itertools import islice, product
from time import perf_counter
from typing import Any, Sequence, TypeVar

from analytics_engine.errors import EngineError, ExecutionTimeoutError
from analytics_engine.schemas import (
    AccessScope,
    ChartDefinition,
    ChartError,
    ChartExecutionConfig,
    ChartRenderResult,
    CombinationChart,
    DimensionExpansionMetadata,
    DimensionExpansionResult,
    DimensionScalar,
    DimensionValue,
    DimensionValueCombination,
    DimensionValueSelection,
    ExpandedChart,
    ExpandedChartMetadata,
    ExpansionDimension,
    FilterSpec,
    MultiDimensionExpansionMetadata,
    MultiDimensionExpansionResult,
    UniversalFilters,
)
from analytics_engine.services.dimension_discovery import DimensionDiscoveryService
from analytics_engine.services.orchestrator import ChartOrchestrator, to_chart_error

logger = logging.getLogger("uvicorn.error")

ChartT = TypeVar("ChartT", ExpandedChart, CombinationChart)


class ExpansionState(str, Enum):
    DISCOVERING = "discovering"
    EXPANDING = "expanding"
    AGGREGATING = "aggregating"
    DONE = "done"


def aggregate_expanded(charts: list[ChartT]) -> tuple[list[ChartT], int]:
    """Successful charts by descending record count, then errored ones; empty charts are dropped."""
    successful = [chart for chart in charts if chart.error is None and chart.metadata.record_count > 0]
    errored = [chart for chart in charts if chart.error is not None]
    zero_records = len(charts) - len(successful) - len(errored)
    successful.sort(key=lambda chart: chart.metadata.record_count, reverse=True)
    return successful + errored, zero_records


def _selection_filter(column: str, selected_values: Sequence[DimensionScalar] | None) -> list[FilterSpec]:
    if selected_values is None:
        return []
    return [FilterSpec(field=column, operator="in", value=list(selected_values))]


def _discovery_limit(limit: int | None, selected_values: Sequence[DimensionScalar] | None) -> int | None:
    if limit is None and selected_values is not None:
        return len(selected_values)
    return limit


def _expanded_metadata(result: ChartRenderResult) -> ExpandedChartMetadata:
    return ExpandedChartMetadata(
        record_count=result.metadata.record_count,
        query_time_ms=result.metadata.query_time_ms,
        cache_hit=result.metadata.cache_hit,
    )


class DimensionExpansionEngine:
    """Renders one chart per dimension value, or per combination of values.

    Values come from discovery under the caller's scope, so a selected value
    the caller cannot see is never rendered. Renders share one deadline and a
    bounded pool; values past the bound wait for a slot.
    """

    def __init__(
        self,
        *,
        orchestrator: ChartOrchestrator,
        discovery: DimensionDiscoveryService,
        max_parallel_charts: int = 20,
        timeout_seconds: float = 30,
    ) -> None:
        self._orchestrator = orchestrator
        self._discovery = discovery
        self._max_parallel_charts = max(1, max_parallel_charts)
        self._timeout_seconds = timeout_seconds

    async def expand_by_dimension(
        self,
        chart_id: str,
        dimension_column: str,
        base_filters: UniversalFilters | None,
        scope: AccessScope,
        *,
        limit: int | None = None,
        selected_values: Sequence[DimensionScalar] | None = None,
    ) -> DimensionExpansionResult:
        definition = await self._orchestrator.definition_store.get_chart(chart_id)
        return await self.expand_definition(
            definition,
            dimension_column,
            base_filters,
            scope,
            limit=limit,
            selected_values=selected_values,
        )

    async def expand_definition(
        self,
        definition: ChartDefinition,
        dimension_column: str,
        base_filters: UniversalFilters | None,
        scope: AccessScope,
        *,
        limit: int | None = None,
        selected_values: Sequence[DimensionScalar] | None = None,
    ) -> DimensionExpansionResult:
        loop = asyncio.get_running_loop()
        started = perf_counter()
        deadline = loop.time() + self._timeout_seconds
        context: dict[str, Any] = {"chart_id": definition.chart_id, "columns": [dimension_column]}

        state = self._enter(ExpansionState.DISCOVERING, context)
        base_config = await self._orchestrator.build_config(definition, base_filters)
        self._orchestrator.prepare(base_config)
        dimension = await self._discovery.describe(definition.data_source_id, dimension_column)
        [values] = await self._discover(
            base_config,
            [(dimension_column, selected_values)],
            scope,
            limit=limit,
            timeout=max(0.0, deadline - loop.time()),
        )

        state = self._enter(ExpansionState.EXPANDING, context)
        outcomes = await self._render_variants(
            base_config,
            [((dimension_column, value),) for value in values],
            scope,
            timeout=max(0.0, deadline - loop.time()),
        )
        charts: list[ExpandedChart] = []
        for value, outcome in zip(values, outcomes):
            if isinstance(outcome, ChartError):
                charts.append(ExpandedChart(dimension_value=value, error=outcome))
                continue
            charts.append(
                ExpandedChart(
                    dimension_value=value.model_copy(update={"record_count_hint": outcome.metadata.record_count}),
                    chart_data=outcome.data,
                    metadata=_expanded_metadata(outcome),
                )
            )

        state = self._enter(ExpansionState.AGGREGATING, context)
        ordered, zero_records = aggregate_expanded(charts)

        state = self._enter(ExpansionState.DONE, context)
        metadata = DimensionExpansionMetadata(
            total_query_time_ms=int((perf_counter() - started) * 1000),
            discovered_values=len(values),
            total_charts=len(ordered),
            errored_charts=sum(1 for chart in ordered if chart.error is not None),
            zero_record_charts=zero_records,
            parallel_execution=True,
        )
        logger.info(
            "analytics.dimension.expand | %s",
            {**context, "state": state.value, **metadata.model_dump()},
        )
        return DimensionExpansionResult(
            dimension=dimension.model_copy(update={"value_count": len(values)}),
            charts=ordered,
            metadata=metadata,
        )

    async def expand_by_dimensions(
        self,
        chart_id: str,
        dimension_columns: Sequence[str],
        base_filters: UniversalFilters | None,
        scope: AccessScope,
        *,
        selections: Sequence[DimensionValueSelection] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> MultiDimensionExpansionResult:
        definition = await self._orchestrator.definition_store.get_chart(chart_id)
        return await self.expand_definition_by_dimensions(
            definition,
            dimension_columns,
            base_filters,
            scope,
            selections=selections,
            limit=limit,
            offset=offset,
        )

    async def expand_definition_by_dimensions(
        self,
        definition: ChartDefinition,
        dimension_columns: Sequence[str],
        base_filters: UniversalFilters | None,
        scope: AccessScope,
        *,
        selections: Sequence[DimensionValueSelection] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> MultiDimensionExpansionResult:
        """Expand over the cartesian product of several dimensions.

        Each dimension contributes its discovered values, narrowed to the
        selected ones when a selection names it. Combinations are enumerated
        in dimension order and paged with ``offset``/``limit``.
        """
        loop = asyncio.get_running_loop()
        started = perf_counter()
        deadline = loop.time() + self._timeout_seconds
        selected = {selection.column_name: selection.selected_values for selection in selections}
        columns = list(dict.fromkeys([*dimension_columns, *selected]))
        if not columns:
            raise EngineError(status_code=400, code="invalid_request", message="At least one dimension is required")
        offset = max(0, offset)
        page_size = self._discovery.clamp_limit(limit)
        context: dict[str, Any] = {"chart_id": definition.chart_id, "columns": columns}

        state = self._enter(ExpansionState.DISCOVERING, context)
        base_config = await self._orchestrator.build_config(definition, base_filters)
        self._orchestrator.prepare(base_config)
        dimensions: list[ExpansionDimension] = []
        for column in columns:
            dimensions.append(await self._discovery.describe(definition.data_source_id, column))
        value_lists = await self._discover(
            base_config,
            [(column, selected.get(column)) for column in columns],
            scope,
            limit=None,
            timeout=max(0.0, deadline - loop.time()),
        )
        total_combinations = math.prod(len(values) for values in value_lists)
        page = list(islice(product(*value_lists), offset, offset + page_size))

        state = self._enter(ExpansionState.EXPANDING, context)
        outcomes = await self._render_variants(
            base_config,
            [tuple(zip(columns, combination)) for combination in page],
            scope,
            timeout=max(0.0, deadline - loop.time()),
        )
        charts: list[CombinationChart] = []
        for combination, outcome in zip(page, outcomes):
            dimension_value = DimensionValueCombination(
                values={column: value.value for column, value in zip(columns, combination)},
                label=" - ".join(value.label for value in combination),
            )
            if isinstance(outcome, ChartError):
                charts.append(CombinationChart(dimension_value=dimension_value, error=outcome))
                continue
            charts.append(
                CombinationChart(
                    dimension_value=dimension_value.model_copy(
                        update={"record_count_hint": outcome.metadata.record_count}
                    ),
                    chart_data=outcome.data,
                    metadata=_expanded_metadata(outcome),
                )
            )

        state = self._enter(ExpansionState.AGGREGATING, context)
        ordered, zero_records = aggregate_expanded(charts)

        state = self._enter(ExpansionState.DONE, context)
        metadata = MultiDimensionExpansionMetadata(
            total_query_time_ms=int((perf_counter() - started) * 1000),
            total_charts=len(ordered),
            errored_charts=sum(1 for chart in ordered if chart.error is not None),
            zero_record_charts=zero_records,
            parallel_execution=True,
            dimension_counts={column: len(values) for column, values in zip(columns, value_lists)},
            total_combinations=total_combinations,
            offset=offset,
            limit=page_size,
            has_more=offset + len(page) < total_combinations,
        )
        logger.info(
            "analytics.dimension.expand_multi | %s",
            {**context, "state": state.value, **metadata.model_dump()},
        )
        return MultiDimensionExpansionResult(
            dimensions=[
                dimension.model_copy(update={"value_count": len(values)})
                for dimension, values in zip(dimensions, value_lists)
            ],
            charts=ordered,
            metadata=metadata,
        )

    def _enter(self, state: ExpansionState, context: dict[str, Any]) -> ExpansionState:
        logger.debug("analytics.dimension.state | %s", {**context, "state": state.value})
        return state

    async def _discover(
        self,
        base_config: ChartExecutionConfig,
        requests: list[tuple[str, Sequence[DimensionScalar] | None]],
        scope: AccessScope,
        *,
        limit: int | None,
        timeout: float,
    ) -> list[list[DimensionValue]]:
        lookups = [
            self._discovery.get_values(
                base_config.data_source_id,
                column,
                [*base_config.merged_filters, *_selection_filter(column, selected_values)],
                scope,
                _discovery_limit(limit, selected_values),
                date_range=base_config.date_range,
            )
            for column, selected_values in requests
        ]
        try:
            return await asyncio.wait_for(asyncio.gather(*lookups), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExecutionTimeoutError("Dimension discovery timed out") from exc

    async def _render_variants(
        self,
        base_config: ChartExecutionConfig,
        variants: list[tuple[tuple[str, DimensionValue], ...]],
        scope: AccessScope,
        *,
        timeout: float,
    ) -> list[ChartRenderResult | ChartError]:
        """Render the base chart once per variant; each variant adds equality filters."""
        if not variants:
            return []
        semaphore = asyncio.Semaphore(self._max_parallel_charts)

        async def _render(variant: tuple[tuple[str, DimensionValue], ...]) -> ChartRenderResult:
            async with semaphore:
                added = tuple(FilterSpec(field=column, operator="eq", value=value.value) for column, value in variant)
                config = base_config.model_copy(update={"merged_filters": (*base_config.merged_filters, *added)})
                return await self._orchestrator.render(config, scope)

        tasks = [asyncio.create_task(_render(variant)) for variant in variants]
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: list[ChartRenderResult | ChartError] = []
        for variant, task in zip(variants, tasks):
            context = {
                "chart_id": base_config.chart_id,
                "values": {column: value.label for column, value in variant},
            }
            if task in pending or task.cancelled():
                logger.warning("analytics.dimension.value_timeout | %s", context)
                error = ExecutionTimeoutError()
                outcomes.append(ChartError(code=error.code, message=error.message))
                continue
            exc = task.exception()
            if exc is not None:
                outcomes.append(to_chart_error(exc, context=context))
                continue
            outcomes.append(task.result())
        return outcomes

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from time import perf_counter

from analytics_engine.errors import ExecutionTimeoutError
from analytics_engine.schemas import (
    AccessScope,
    BatchResult,
    ChartDefinition,
    ChartError,
    ChartExecutionConfig,
    ChartRenderMetadata,
    DashboardDefinition,
    DashboardRenderMetadata,
    DashboardRenderResult,
    UniversalFilters,
)
from analytics_engine.services.charts.base import ChartHandler
from analytics_engine.services.config_builder import build_execution_config
from analytics_engine.services.orchestrator import ChartOrchestrator, combine_rows, to_chart_error
from analytics_engine.services.query_executor import FetchResult, QueryParams

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class _PlannedChart:
    index: int
    chart_id: str
    config: ChartExecutionConfig | None = None
    handler: ChartHandler | None = None
    fetch_keys: list[str] = field(default_factory=list)
    error: ChartError | None = None


@dataclass(slots=True)
class _FetchGroup:
    key: str
    handler: ChartHandler
    params: QueryParams
    member_indexes: list[int] = field(default_factory=list)


def effective_universal_filters(dashboard: DashboardDefinition, universal: UniversalFilters | None) -> UniversalFilters:
    filter_config = dashboard.filter_config
    effective = (universal or UniversalFilters()) if filter_config.enabled else UniversalFilters()
    updates: dict[str, object] = {}
    has_dates = effective.start_date or effective.end_date or effective.date_range_preset
    if not has_dates and filter_config.default_date_range_preset:
        updates["date_range_preset"] = filter_config.default_date_range_preset
    if not effective.organization_id and effective.partition_ids is None and filter_config.organization_id:
        updates["organization_id"] = filter_config.organization_id
    return effective.model_copy(update=updates) if updates else effective


class DashboardBatchRenderer:
    """Renders every chart of a dashboard in one pass.

    Charts that need identical underlying rows share a single fetch; the chart
    type only matters at transform time. Results come back in dashboard order
    and one chart's failure never fails the batch.
    """

    def __init__(self, *, orchestrator: ChartOrchestrator, timeout_seconds: float = 30) -> None:
        self._orchestrator = orchestrator
        self._timeout_seconds = timeout_seconds

    async def render_dashboard(
        self,
        dashboard_id: str,
        universal: UniversalFilters | None,
        scope: AccessScope,
    ) -> DashboardRenderResult:
        dashboard = await self._orchestrator.definition_store.get_dashboard(dashboard_id)
        return await self.render(dashboard, universal, scope)

    async def render(
        self,
        dashboard: DashboardDefinition,
        universal: UniversalFilters | None,
        scope: AccessScope,
    ) -> DashboardRenderResult:
        loop = asyncio.get_running_loop()
        started = perf_counter()
        deadline = loop.time() + self._timeout_seconds

        effective = effective_universal_filters(dashboard, universal)
        partition_ids = await self._orchestrator.resolve_partition_ids(effective)
        definitions = await asyncio.gather(
            *(self._orchestrator.definition_store.get_chart(chart_id) for chart_id in dashboard.chart_ids),
            return_exceptions=True,
        )

        planned: list[_PlannedChart] = []
        groups: dict[str, _FetchGroup] = {}
        for index, (chart_id, definition) in enumerate(zip(dashboard.chart_ids, definitions)):
            item = _PlannedChart(index=index, chart_id=chart_id)
            planned.append(item)
            context = {"dashboard_id": dashboard.dashboard_id, "chart_id": chart_id}
            if isinstance(definition, BaseException):
                item.error = to_chart_error(definition, context=context)
                continue
            try:
                self._plan_chart(item, definition, effective, partition_ids, groups)
            except Exception as exc:
                item.error = to_chart_error(exc, context=context)

        outcomes = await self._run_fetches(list(groups.values()), scope, timeout=max(0.0, deadline - loop.time()))
        results = [self._finish_chart(item, groups, outcomes, dashboard.dashboard_id) for item in planned]

        planned_fetches = sum(len(item.fetch_keys) for item in planned)
        metadata = DashboardRenderMetadata(
            total_query_time_ms=int((perf_counter() - started) * 1000),
            charts_rendered=sum(1 for result in results if result.error is None),
            charts_failed=sum(1 for result in results if result.error is not None),
            unique_fetches=len(groups),
            deduped_fetches=planned_fetches - len(groups),
            cache_hits=sum(1 for outcome in outcomes.values() if isinstance(outcome, FetchResult) and outcome.cache_hit),
            filters_applied=effective.applied_filter_names(),
        )
        logger.info(
            "analytics.dashboard.render | %s",
            {"dashboard_id": dashboard.dashboard_id, "chart_count": len(results), **metadata.model_dump()},
        )
        return DashboardRenderResult(dashboard_id=dashboard.dashboard_id, results=results, metadata=metadata)

    def _plan_chart(
        self,
        item: _PlannedChart,
        definition: ChartDefinition,
        universal: UniversalFilters,
        partition_ids: list[int] | None,
        groups: dict[str, _FetchGroup],
    ) -> None:
        config = build_execution_config(
            definition,
            universal,
            today=self._orchestrator.today(),
            resolved_partition_ids=partition_ids,
        )
        handler, plans = self._orchestrator.prepare(config)
        item.config = config
        item.handler = handler
        for params in plans:
            key = params.fingerprint()
            group = groups.get(key)
            if group is None:
                group = _FetchGroup(key=key, handler=handler, params=params)
                groups[key] = group
            if item.index not in group.member_indexes:
                group.member_indexes.append(item.index)
            item.fetch_keys.append(key)

    async def _run_fetches(
        self,
        groups: list[_FetchGroup],
        scope: AccessScope,
        *,
        timeout: float,
    ) -> dict[str, FetchResult | BaseException]:
        if not groups:
            return {}
        tasks = {group.key: asyncio.create_task(group.handler.fetch_data(group.params, scope)) for group in groups}
        _done, pending = await asyncio.wait(tasks.values(), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: dict[str, FetchResult | BaseException] = {}
        for key, task in tasks.items():
            if task in pending or task.cancelled():
                outcomes[key] = ExecutionTimeoutError()
                continue
            exc = task.exception()
            outcomes[key] = exc if exc is not None else task.result()
        return outcomes

    def _finish_chart(
        self,
        item: _PlannedChart,
        groups: dict[str, _FetchGroup],
        outcomes: dict[str, FetchResult | BaseException],
        dashboard_id: str,
    ) -> BatchResult:
        config, handler = item.config, item.handler
        if item.error is not None or config is None or handler is None:
            return BatchResult(chart_id=item.chart_id, error=item.error)
        context = {"dashboard_id": dashboard_id, "chart_id": item.chart_id}

        fetched: list[FetchResult] = []
        for key in item.fetch_keys:
            outcome = outcomes[key]
            if isinstance(outcome, BaseException):
                return BatchResult(chart_id=item.chart_id, error=to_chart_error(outcome, context=context))
            fetched.append(outcome)

        try:
            transform_started = perf_counter()
            payload = combine_rows(handler, [outcome.rows for outcome in fetched], config)
        except Exception as exc:
            return BatchResult(chart_id=item.chart_id, error=to_chart_error(exc, context=context))

        return BatchResult(
            chart_id=item.chart_id,
            data=payload,
            metadata=ChartRenderMetadata(
                record_count=sum(outcome.record_count for outcome in fetched),
                query_time_ms=max((outcome.query_time_ms for outcome in fetched), default=0),
                cache_hit=bool(fetched) and all(outcome.cache_hit for outcome in fetched),
                transform_ms=int((perf_counter() - transform_started) * 1000),
                deduped=any(len(groups[key].member_indexes) > 1 for key in item.fetch_keys),
            ),
        )

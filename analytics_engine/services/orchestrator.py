from __future__ import annotations

import asyncio
import logging
from datetime import date
from time import perf_counter
from typing import Callable

from analytics_engine.datasources.base import DefinitionStore, HierarchyResolver
from analytics_engine.errors import (
    EngineError,
    ExecutionTimeoutError,
    InvalidChartConfigError,
    MappingError,
    TransformError,
    UnknownColumnError,
)
from analytics_engine.schemas import (
    AccessScope,
    ChartDefinition,
    ChartError,
    ChartExecutionConfig,
    ChartPayload,
    ChartRenderMetadata,
    ChartRenderResult,
    UniversalFilters,
)
from analytics_engine.services.charts.base import ChartHandler, Rows
from analytics_engine.services.charts.registry import ChartTypeRegistry
from analytics_engine.services.config_builder import build_execution_config
from analytics_engine.services.query_executor import FetchResult, QueryParams

logger = logging.getLogger("uvicorn.error")


def combine_rows(handler: ChartHandler, results: list[Rows], config: ChartExecutionConfig) -> ChartPayload:
    try:
        return handler.combine(results, config)
    except TransformError:
        raise
    except (KeyError, IndexError, TypeError, ValueError, ZeroDivisionError) as exc:
        raise TransformError("Chart data could not be transformed") from exc


class ChartOrchestrator:
    def __init__(
        self,
        *,
        registry: ChartTypeRegistry,
        definition_store: DefinitionStore,
        hierarchy_resolver: HierarchyResolver,
        timeout_seconds: float = 25,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._registry = registry
        self._definition_store = definition_store
        self._hierarchy_resolver = hierarchy_resolver
        self._timeout_seconds = timeout_seconds
        self._today = today

    @property
    def registry(self) -> ChartTypeRegistry:
        return self._registry

    @property
    def definition_store(self) -> DefinitionStore:
        return self._definition_store

    def today(self) -> date:
        return self._today()

    async def resolve_partition_ids(self, universal: UniversalFilters | None) -> list[int] | None:
        if universal is None or not universal.organization_id:
            return None
        partition_ids = await self._hierarchy_resolver.resolve_partition_ids(universal.organization_id)
        logger.info(
            "analytics.hierarchy.resolved | %s",
            {"organization_id": universal.organization_id, "partition_count": len(partition_ids)},
        )
        return partition_ids

    async def build_config(
        self,
        definition: ChartDefinition,
        universal: UniversalFilters | None = None,
        *,
        resolved_partition_ids: list[int] | None = None,
    ) -> ChartExecutionConfig:
        if resolved_partition_ids is None:
            resolved_partition_ids = await self.resolve_partition_ids(universal)
        return build_execution_config(
            definition,
            universal,
            today=self._today(),
            resolved_partition_ids=resolved_partition_ids,
        )

    def prepare(self, config: ChartExecutionConfig) -> tuple[ChartHandler, list[QueryParams]]:
        handler = self._registry.dispatch(config.chart_type)
        errors = handler.validate(config)
        if errors:
            raise InvalidChartConfigError(errors)
        return handler, handler.plan_fetches(config)

    async def render_chart(
        self,
        config: ChartExecutionConfig,
        scope: AccessScope,
        *,
        timeout_seconds: float | None = None,
    ) -> ChartRenderResult:
        timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        try:
            return await asyncio.wait_for(self.render(config, scope), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "analytics.chart.timeout | %s",
                {"chart_id": config.chart_id, "timeout_seconds": timeout},
            )
            raise ExecutionTimeoutError() from exc

    async def render(self, config: ChartExecutionConfig, scope: AccessScope) -> ChartRenderResult:
        started = perf_counter()
        handler, plans = self.prepare(config)
        fetched: list[FetchResult] = list(
            await asyncio.gather(*(handler.fetch_data(params, scope) for params in plans))
        )
        transform_started = perf_counter()
        payload = combine_rows(handler, [item.rows for item in fetched], config)
        metadata = ChartRenderMetadata(
            record_count=sum(item.record_count for item in fetched),
            query_time_ms=max((item.query_time_ms for item in fetched), default=0),
            cache_hit=bool(fetched) and all(item.cache_hit for item in fetched),
            transform_ms=int((perf_counter() - transform_started) * 1000),
        )
        logger.info(
            "analytics.chart.render | %s",
            {
                "chart_id": config.chart_id,
                "chart_type": config.chart_type,
                "data_source_id": config.data_source_id,
                "fetches": len(plans),
                "record_count": metadata.record_count,
                "cache_hit": metadata.cache_hit,
                "latency_ms": int((perf_counter() - started) * 1000),
            },
        )
        return ChartRenderResult(chart_id=config.chart_id, chart_type=config.chart_type, data=payload, metadata=metadata)

    async def render_definition(
        self,
        definition: ChartDefinition,
        universal: UniversalFilters | None,
        scope: AccessScope,
    ) -> ChartRenderResult:
        config = await self.build_config(definition, universal)
        return await self.render_chart(config, scope)

    async def render_chart_id(self, chart_id: str, universal: UniversalFilters | None, scope: AccessScope) -> ChartRenderResult:
        definition = await self._definition_store.get_chart(chart_id)
        return await self.render_definition(definition, universal, scope)


def to_chart_error(exc: BaseException, *, context: dict | None = None) -> ChartError:
    """Convert a constituent failure into the entry surfaced to callers; raw exception text never leaks."""
    payload = {**(context or {}), "error_type": type(exc).__name__}
    if isinstance(exc, (MappingError, UnknownColumnError)):
        logger.error("analytics.chart.config_defect | %s", {**payload, "code": exc.code}, exc_info=exc)
        return ChartError(code=exc.code, message=exc.message)
    if isinstance(exc, EngineError):
        logger.error("analytics.chart.failed | %s", {**payload, "code": exc.code, "error_id": exc.error_id})
        return ChartError(code=exc.code, message=exc.message)
    logger.error("analytics.chart.failed | %s", {**payload, "code": "internal_error"}, exc_info=exc)
    return ChartError(code="internal_error", message="Failed to render chart")

from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Awaitable, TypeVar

from fastapi import APIRouter, Depends, Header, Request

from analytics_engine.errors import EngineError
from analytics_engine.schemas import (
    AccessScope,
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    ChartRenderResult,
    DashboardRenderResult,
    DimensionExpansionResult,
    ExpandChartRequest,
    ExpandDimensionsRequest,
    ExpansionDimension,
    MultiDimensionExpansionResult,
    RenderChartRequest,
    RenderDashboardRequest,
)
from analytics_engine.security import require_access_scope
from analytics_engine.services.container import EngineServices

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


def _audit_log(
    *,
    scope: AccessScope,
    operation: str,
    status: str,
    duration_ms: int,
    target: str | None = None,
    error_code: str | None = None,
    correlation_id: str | None = None,
) -> None:
    logger.info(
        "analytics.audit.request | %s",
        {
            "principal_id": scope.principal_id,
            "partition_count": len(scope.partition_ids),
            "unrestricted": scope.unrestricted,
            "operation": operation,
            "target": target,
            "status": status,
            "duration_ms": duration_ms,
            "error_code": error_code,
            "correlation_id": correlation_id,
        },
    )


async def _audited(
    work: Awaitable[T],
    *,
    scope: AccessScope,
    operation: str,
    target: str | None,
    correlation_id: str | None,
) -> T:
    started = perf_counter()
    try:
        result = await work
    except EngineError as exc:
        _audit_log(
            scope=scope,
            operation=operation,
            status="error",
            duration_ms=max(0, int((perf_counter() - started) * 1000)),
            target=target,
            error_code=exc.code,
            correlation_id=correlation_id,
        )
        raise
    _audit_log(
        scope=scope,
        operation=operation,
        status="ok",
        duration_ms=max(0, int((perf_counter() - started) * 1000)),
        target=target,
        correlation_id=correlation_id,
    )
    return result


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "analytics-engine"}


@router.post("/charts/render", response_model=ChartRenderResult)
async def render_chart(
    payload: RenderChartRequest,
    x_correlation_id: str | None = Header(default=None),
    scope: AccessScope = Depends(require_access_scope),
    services: EngineServices = Depends(get_services),
) -> ChartRenderResult:
    orchestrator = services.orchestrator
    if payload.definition is not None:
        work = orchestrator.render_definition(payload.definition, payload.filters, scope)
        target = payload.definition.chart_id
    else:
        work = orchestrator.render_chart_id(str(payload.chart_id), payload.filters, scope)
        target = payload.chart_id
    return await _audited(work, scope=scope, operation="chart.render", target=target, correlation_id=x_correlation_id)


@router.post("/charts/{chart_id}/expand", response_model=DimensionExpansionResult)
async def expand_chart(
    chart_id: str,
    payload: ExpandChartRequest,
    x_correlation_id: str | None = Header(default=None),
    scope: AccessScope = Depends(require_access_scope),
    services: EngineServices = Depends(get_services),
) -> DimensionExpansionResult:
    return await _audited(
        services.expansion.expand_by_dimension(
            chart_id,
            payload.dimension_column,
            payload.base_filters,
            scope,
            limit=payload.limit,
            selected_values=payload.selected_values,
        ),
        scope=scope,
        operation="chart.expand",
        target=chart_id,
        correlation_id=x_correlation_id,
    )


@router.post("/charts/{chart_id}/expand/combinations", response_model=MultiDimensionExpansionResult)
async def expand_chart_combinations(
    chart_id: str,
    payload: ExpandDimensionsRequest,
    x_correlation_id: str | None = Header(default=None),
    scope: AccessScope = Depends(require_access_scope),
    services: EngineServices = Depends(get_services),
) -> MultiDimensionExpansionResult:
    return await _audited(
        services.expansion.expand_by_dimensions(
            chart_id,
            payload.dimension_columns,
            payload.base_filters,
            scope,
            selections=payload.selections,
            limit=payload.limit,
            offset=payload.offset,
        ),
        scope=scope,
        operation="chart.expand_combinations",
        target=chart_id,
        correlation_id=x_correlation_id,
    )


@router.get("/charts/{chart_id}/dimensions", response_model=list[ExpansionDimension])
async def list_chart_dimensions(
    chart_id: str,
    scope: AccessScope = Depends(require_access_scope),
    services: EngineServices = Depends(get_services),
) -> list[ExpansionDimension]:
    _ = scope
    definition = await services.orchestrator.definition_store.get_chart(chart_id)
    return await services.discovery.get_expansion_dimensions(definition.data_source_id)


@router.post("/dashboards/{dashboard_id}/render", response_model=DashboardRenderResult)
async def render_dashboard(
    dashboard_id: str,
    payload: RenderDashboardRequest,
    x_correlation_id: str | None = Header(default=None),
    scope: AccessScope = Depends(require_access_scope),
    services: EngineServices = Depends(get_services),
) -> DashboardRenderResult:
    return await _audited(
        services.dashboards.render_dashboard(dashboard_id, payload.universal_filters, scope),
        scope=scope,
        operation="dashboard.render",
        target=dashboard_id,
        correlation_id=x_correlation_id,
    )


@router.post("/internal/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    payload: CacheInvalidateRequest,
    scope: AccessScope = Depends(require_access_scope),
    services: EngineServices = Depends(get_services),
) -> CacheInvalidateResponse:
    if not scope.unrestricted:
        raise EngineError(status_code=403, code="forbidden", message="Cache invalidation requires an unrestricted scope")
    if payload.data_source_id is None and not payload.prefix:
        raise EngineError(status_code=400, code="invalid_request", message="Provide data_source_id or prefix")
    removed = 0
    if payload.data_source_id is not None:
        removed += await services.cache.invalidate_data_source(payload.data_source_id)
        await services.mapping_resolver.invalidate(payload.data_source_id)
    if payload.prefix:
        removed += await services.cache.invalidate_by_prefix(payload.prefix)
    details: dict[str, Any] = {"data_source_id": payload.data_source_id, "prefix": payload.prefix, "removed": removed}
    logger.info("analytics.cache.invalidate_request | %s", details)
    return CacheInvalidateResponse(removed=removed)

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable

from analytics_engine.datasources.base import DataExecutor, DefinitionStore, HierarchyResolver, SchemaProvider
from analytics_engine.datasources.postgres import (
    PostgresDataExecutor,
    PostgresDefinitionStore,
    PostgresHierarchyResolver,
    PostgresSchemaProvider,
)
from analytics_engine.services.cache import CacheBackend, MemoryCacheBackend, RedisCacheBackend, ResultCache
from analytics_engine.services.charts.registry import ChartTypeRegistry, build_default_registry
from analytics_engine.services.column_mapping import ColumnMappingResolver
from analytics_engine.services.dashboard_renderer import DashboardBatchRenderer
from analytics_engine.services.dimension_discovery import DimensionDiscoveryService
from analytics_engine.services.dimension_expansion import DimensionExpansionEngine
from analytics_engine.services.filters import today_in
from analytics_engine.services.orchestrator import ChartOrchestrator
from analytics_engine.services.query_executor import AnalyticsQueryExecutor
from analytics_engine.settings import Settings


@dataclass(slots=True)
class EngineServices:
    cache: ResultCache
    mapping_resolver: ColumnMappingResolver
    executor: AnalyticsQueryExecutor
    registry: ChartTypeRegistry
    orchestrator: ChartOrchestrator
    discovery: DimensionDiscoveryService
    expansion: DimensionExpansionEngine
    dashboards: DashboardBatchRenderer

    async def close(self) -> None:
        await self.cache.close()


def build_cache_backend(settings: Settings) -> CacheBackend:
    if settings.redis_url:
        return RedisCacheBackend.from_url(settings.redis_url)
    return MemoryCacheBackend(max_entries=settings.cache_max_entries)


def build_services(
    settings: Settings,
    *,
    data_executor: DataExecutor | None = None,
    schema_provider: SchemaProvider | None = None,
    definition_store: DefinitionStore | None = None,
    hierarchy_resolver: HierarchyResolver | None = None,
    cache_backend: CacheBackend | None = None,
    today: Callable[[], date] | None = None,
) -> EngineServices:
    definitions_url = settings.definitions_db_url or settings.analytics_db_url
    today = today or (lambda: today_in(settings.reporting_timezone))

    cache = ResultCache(
        cache_backend or build_cache_backend(settings),
        key_prefix=settings.cache_key_prefix,
        ttl_today_seconds=settings.cache_ttl_today_seconds,
        ttl_week_seconds=settings.cache_ttl_week_seconds,
        ttl_historical_seconds=settings.cache_ttl_historical_seconds,
        today=today,
    )
    mapping_resolver = ColumnMappingResolver(
        schema_provider or PostgresSchemaProvider(definitions_url),
        ttl_seconds=settings.column_mapping_ttl_seconds,
        default_partition_column=settings.default_partition_column,
        default_secondary_entity_column=settings.default_secondary_entity_column,
    )
    executor = AnalyticsQueryExecutor(
        data_executor=data_executor
        or PostgresDataExecutor(settings.analytics_db_url, timeout_seconds=settings.query_timeout_seconds),
        mapping_resolver=mapping_resolver,
        cache=cache,
        max_concurrent_fetches=settings.max_concurrent_fetches,
        max_rows=settings.query_result_rows_max,
        singleflight_ttl_seconds=settings.singleflight_ttl_seconds,
    )
    registry = build_default_registry(executor)
    orchestrator = ChartOrchestrator(
        registry=registry,
        definition_store=definition_store or PostgresDefinitionStore(definitions_url),
        hierarchy_resolver=hierarchy_resolver or PostgresHierarchyResolver(definitions_url),
        timeout_seconds=settings.chart_render_timeout_seconds,
        today=today,
    )
    discovery = DimensionDiscoveryService(
        executor,
        default_limit=settings.dimension_values_default_limit,
        max_limit=settings.dimension_values_max_limit,
    )
    return EngineServices(
        cache=cache,
        mapping_resolver=mapping_resolver,
        executor=executor,
        registry=registry,
        orchestrator=orchestrator,
        discovery=discovery,
        expansion=DimensionExpansionEngine(
            orchestrator=orchestrator,
            discovery=discovery,
            max_parallel_charts=settings.max_parallel_dimension_charts,
            timeout_seconds=settings.dimension_expansion_timeout_seconds,
        ),
        dashboards=DashboardBatchRenderer(
            orchestrator=orchestrator,
            timeout_seconds=settings.dashboard_render_timeout_seconds,
        ),
    )

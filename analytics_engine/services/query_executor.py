from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any, Awaitable, Callable, Literal

from analytics_engine.datasources.base import DataExecutor
from analytics_engine.errors import EngineError, FetchError
from analytics_engine.schemas import AccessScope, DateRange, FilterSpec
from analytics_engine.services.cache import ResultCache
from analytics_engine.services.canonicalizer import fingerprint
from analytics_engine.services.column_mapping import ColumnMappingResolver
from analytics_engine.services.filters import EmptyScopePolicy
from analytics_engine.services.query_builder import (
    RBACQueryBuilder,
    SelectStatement,
    distinct_values_statement,
    measure_rows_statement,
    table_rows_statement,
)

logger = logging.getLogger("uvicorn.error")

FetchKind = Literal["measure_rows", "table_rows"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class QueryParams:
    data_source_id: int
    filters: tuple[FilterSpec, ...] = ()
    kind: FetchKind = "measure_rows"
    columns: tuple[str, ...] = ()
    limit: int | None = None
    date_range: DateRange | None = None

    def fetch_shape(self) -> dict[str, Any]:
        # chart type is deliberately absent: charts reading the same rows share one fetch
        return {"kind": self.kind, "columns": sorted(self.columns), "limit": self.limit}

    def fingerprint(self) -> str:
        return fingerprint(data_source_id=self.data_source_id, filters=self.filters, shape=self.fetch_shape())


@dataclass(slots=True)
class FetchResult:
    rows: list[dict[str, Any]]
    cache_hit: bool = False
    query_time_ms: int = 0
    coalesced: bool = False

    @property
    def record_count(self) -> int:
        return len(self.rows)


class _LeaderCancelled(Exception):
    """Set on a shared fetch whose owning caller was cancelled before it finished."""


@dataclass(slots=True)
class _Inflight:
    future: asyncio.Future[Any]
    expires_at: datetime = field(default_factory=_utcnow)


class AnalyticsQueryExecutor:
    """Scoped, cached access to the underlying data executor.

    Every fetch goes schema -> mapping -> RBAC filters -> statement -> executor,
    behind the result cache, an in-process singleflight and one global
    concurrency cap shared by every caller.
    """

    def __init__(
        self,
        *,
        data_executor: DataExecutor,
        mapping_resolver: ColumnMappingResolver,
        cache: ResultCache,
        max_concurrent_fetches: int = 16,
        max_rows: int = 10000,
        singleflight_ttl_seconds: int = 30,
        empty_policy: EmptyScopePolicy = "zero_rows",
    ) -> None:
        self._data_executor = data_executor
        self._mapping_resolver = mapping_resolver
        self._cache = cache
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_fetches))
        self._max_rows = max_rows
        self._singleflight_ttl_seconds = singleflight_ttl_seconds
        self._empty_policy = empty_policy
        self._inflight: dict[str, _Inflight] = {}
        self._inflight_lock = asyncio.Lock()

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def mapping_resolver(self) -> ColumnMappingResolver:
        return self._mapping_resolver

    async def fetch(self, params: QueryParams, scope: AccessScope) -> FetchResult:
        resolved = await self._mapping_resolver.load(params.data_source_id)
        builder = RBACQueryBuilder(resolved.mapping, empty_policy=self._empty_policy)
        where = builder.build(list(params.filters), scope)
        limit = min(params.limit or self._max_rows, self._max_rows)
        if params.kind == "table_rows":
            statement = table_rows_statement(resolved.schema, resolved.mapping, where, columns=params.columns, limit=limit)
        else:
            statement = measure_rows_statement(
                resolved.schema,
                resolved.mapping,
                where,
                extra_columns=params.columns,
                limit=limit,
            )
        digest = fingerprint(
            data_source_id=params.data_source_id,
            filters=params.filters,
            shape=params.fetch_shape(),
            scope=scope,
        )
        key = self._cache.chart_key(params.data_source_id, digest)
        return await self._cached(key, statement, ttl_seconds=self._cache.ttl_for(params.date_range))

    async def fetch_distinct(
        self,
        *,
        data_source_id: int,
        column: str,
        filters: list[FilterSpec],
        scope: AccessScope,
        limit: int,
        date_range: DateRange | None = None,
    ) -> FetchResult:
        resolved = await self._mapping_resolver.load(data_source_id)
        builder = RBACQueryBuilder(resolved.mapping, empty_policy=self._empty_policy)
        where = builder.build(filters, scope)
        statement = distinct_values_statement(resolved.schema, resolved.mapping.physical(column), where, limit=limit)
        digest = fingerprint(
            data_source_id=data_source_id,
            filters=filters,
            shape={"distinct": column, "limit": limit},
            scope=scope,
        )
        key = self._cache.dimension_key(data_source_id, digest)
        return await self._cached(key, statement, ttl_seconds=self._cache.ttl_for(date_range))

    async def _cached(self, key: str, statement: SelectStatement, *, ttl_seconds: int) -> FetchResult:
        entry = await self._cache.get(key)
        if entry is not None:
            return FetchResult(rows=entry.payload, cache_hit=True)

        async def _producer() -> FetchResult:
            started = perf_counter()
            rows = await self._run(statement)
            result = FetchResult(rows=rows, query_time_ms=int((perf_counter() - started) * 1000))
            await self._cache.set(key, rows, ttl_seconds)
            return result

        result, coalesced = await self._singleflight(key, _producer)
        if coalesced:
            return FetchResult(rows=result.rows, query_time_ms=result.query_time_ms, coalesced=True)
        return result

    async def _run(self, statement: SelectStatement) -> list[dict[str, Any]]:
        async with self._semaphore:
            try:
                return await self._data_executor.execute(statement)
            except EngineError:
                raise
            except Exception as exc:
                logger.error(
                    "analytics.query.fetch_failed | %s",
                    {"table": f"{statement.schema_name}.{statement.table_name}", "reason": type(exc).__name__},
                )
                raise FetchError() from exc

    async def _singleflight(self, key: str, producer: Callable[[], Awaitable[FetchResult]]) -> tuple[FetchResult, bool]:
        loop = asyncio.get_running_loop()

        while True:
            now = _utcnow()
            async with self._inflight_lock:
                inflight = self._inflight.get(key)
                if inflight and inflight.expires_at > now and not inflight.future.done():
                    future = inflight.future
                    coalesced = True
                else:
                    future = loop.create_future()
                    self._inflight[key] = _Inflight(
                        future=future,
                        expires_at=now + timedelta(seconds=self._singleflight_ttl_seconds),
                    )
                    coalesced = False

            if not coalesced:
                break
            try:
                return await asyncio.shield(future), True
            except _LeaderCancelled:
                # the owning request gave up; this caller's own deadline still stands
                logger.info("analytics.query.singleflight_retry | %s", {"key": key})
                continue

        try:
            result = await producer()
            if not future.done():
                future.set_result(result)
            return result, False
        except asyncio.CancelledError:
            if not future.done():
                future.set_exception(_LeaderCancelled())
                _ = future.exception()
            raise
        except BaseException as exc:
            if not future.done():
                future.set_exception(exc)
                _ = future.exception()
            raise
        finally:
            async with self._inflight_lock:
                current = self._inflight.get(key)
                if current and current.future is future:
                    self._inflight.pop(key, None)

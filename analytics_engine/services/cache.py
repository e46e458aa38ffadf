from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Protocol

from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from analytics_engine.schemas import DateRange
from analytics_engine.services.filters import start_of_week

logger = logging.getLogger("uvicorn.error")

_GLOB_SPECIALS = re.compile(r"([*?\[\]\\])")


@dataclass(slots=True)
class CacheEntry:
    key: str
    payload: Any
    recorded_at: float
    ttl_seconds: int

    def expired(self, now: float) -> bool:
        return self.recorded_at + self.ttl_seconds <= now


class CacheBackend(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, entry: CacheEntry) -> None: ...

    async def invalidate_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None: ...


class MemoryCacheBackend:
    def __init__(self, *, max_entries: int, clock: Callable[[], float] = time.time) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._items: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> CacheEntry | None:
        async with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                self._items.pop(key, None)
                return None
            self._items.move_to_end(key)
            return entry

    async def set(self, entry: CacheEntry) -> None:
        async with self._lock:
            self._items[entry.key] = entry
            self._items.move_to_end(entry.key)
            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)

    async def invalidate_prefix(self, prefix: str) -> int:
        async with self._lock:
            doomed = [key for key in self._items if key.startswith(prefix)]
            for key in doomed:
                self._items.pop(key, None)
            return len(doomed)

    async def close(self) -> None:
        async with self._lock:
            self._items.clear()


class RedisCacheBackend:
    """Entries live as JSON strings with a server-side expiry.

    Prefix invalidation walks the keyspace with ``SCAN`` and removes matches
    with ``UNLINK`` in batches, so it never blocks the server.
    """

    def __init__(self, client: Any, *, scan_count: int = 500, unlink_batch_size: int = 500) -> None:
        self._client = client
        self._scan_count = scan_count
        self._unlink_batch_size = unlink_batch_size

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisCacheBackend":
        return cls(redis_asyncio.from_url(url, decode_responses=True), **kwargs)

    async def get(self, key: str) -> CacheEntry | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        data = json.loads(raw)
        return CacheEntry(
            key=key,
            payload=data["payload"],
            recorded_at=float(data["recorded_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
        )

    async def set(self, entry: CacheEntry) -> None:
        raw = json.dumps(
            {"payload": entry.payload, "recorded_at": entry.recorded_at, "ttl_seconds": entry.ttl_seconds},
            separators=(",", ":"),
            default=str,
        )
        await self._client.set(entry.key, raw, ex=max(1, int(entry.ttl_seconds)))

    async def invalidate_prefix(self, prefix: str) -> int:
        pattern = _GLOB_SPECIALS.sub(r"\\\1", prefix) + "*"
        removed = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=self._scan_count):
            batch.append(key)
            if len(batch) >= self._unlink_batch_size:
                removed += int(await self._client.unlink(*batch))
                batch = []
        if batch:
            removed += int(await self._client.unlink(*batch))
        return removed

    async def close(self) -> None:
        await self._client.aclose()


class ResultCache:
    def __init__(
        self,
        backend: CacheBackend,
        *,
        key_prefix: str = "analytics",
        ttl_today_seconds: int = 60,
        ttl_week_seconds: int = 300,
        ttl_historical_seconds: int = 3600,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._key_prefix = key_prefix
        self._ttl_today_seconds = ttl_today_seconds
        self._ttl_week_seconds = ttl_week_seconds
        self._ttl_historical_seconds = ttl_historical_seconds
        self._today = today
        self._clock = clock

    def chart_key(self, data_source_id: int, digest: str) -> str:
        return f"{self._key_prefix}:chart:{data_source_id}:{digest}"

    def dimension_key(self, data_source_id: int, digest: str) -> str:
        return f"{self._key_prefix}:dimvals:{data_source_id}:{digest}"

    def ttl_for(self, date_range: DateRange | None) -> int:
        end = date_range.end if date_range else None
        today = self._today()
        if end is None or end >= today:
            return self._ttl_today_seconds
        if end >= start_of_week(today):
            return self._ttl_week_seconds
        return self._ttl_historical_seconds

    async def get(self, key: str) -> CacheEntry | None:
        try:
            entry = await self._backend.get(key)
        except (RedisError, OSError, ValueError, KeyError) as exc:
            logger.warning("analytics.cache.degraded | %s", {"operation": "get", "key": key, "reason": type(exc).__name__})
            return None
        if entry is not None and entry.expired(self._clock()):
            return None
        return entry

    async def set(self, key: str, payload: Any, ttl_seconds: int) -> None:
        entry = CacheEntry(key=key, payload=payload, recorded_at=self._clock(), ttl_seconds=ttl_seconds)
        try:
            await self._backend.set(entry)
        except (RedisError, OSError, TypeError, ValueError) as exc:
            logger.warning("analytics.cache.degraded | %s", {"operation": "set", "key": key, "reason": type(exc).__name__})

    async def invalidate_by_prefix(self, prefix: str) -> int:
        if not prefix.startswith(f"{self._key_prefix}:"):
            prefix = f"{self._key_prefix}:{prefix}"
        try:
            removed = await self._backend.invalidate_prefix(prefix)
        except (RedisError, OSError) as exc:
            logger.warning(
                "analytics.cache.degraded | %s",
                {"operation": "invalidate", "prefix": prefix, "reason": type(exc).__name__},
            )
            return 0
        logger.info("analytics.cache.invalidated | %s", {"prefix": prefix, "removed": removed})
        return removed

    async def invalidate_data_source(self, data_source_id: int) -> int:
        removed = await self.invalidate_by_prefix(f"{self._key_prefix}:chart:{data_source_id}:")
        removed += await self.invalidate_by_prefix(f"{self._key_prefix}:dimvals:{data_source_id}:")
        return removed

    async def read_through(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl_seconds: int,
    ) -> tuple[Any, bool]:
        entry = await self.get(key)
        if entry is not None:
            return entry.payload, True
        payload = await producer()
        await self.set(key, payload, ttl_seconds)
        return payload, False

    async def close(self) -> None:
        await self._backend.close()

"""Response cache stores and the detached writer that populates them."""

from __future__ import annotations

import asyncio
import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import structlog
from fastapi import Response
from redis.asyncio import Redis, from_url as redis_from_url

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.settings import RelaySettings


LOGGER = structlog.get_logger("edgerelay.cache")

CACHE_WRITES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgerelay_cache_writes_total", "Responses stored in the cache")
)
CACHE_WRITE_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgerelay_cache_write_failures_total", "Background cache writes that failed")
)
PENDING_WRITES_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("edgerelay_cache_pending_writes", "Background cache writes not yet completed")
)


@dataclass(frozen=True)
class CachedResponse:
    """Snapshot of a response as stored in the cache. Header names are lower-case."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def build(cls, status: int, headers: Mapping[str, str], body: bytes) -> "CachedResponse":
        return cls(status=status, headers={k.lower(): v for k, v in headers.items()}, body=body)

    def with_header(self, name: str, value: str) -> "CachedResponse":
        headers = dict(self.headers)
        headers[name.lower()] = value
        return CachedResponse(status=self.status, headers=headers, body=self.body)

    def to_response(self) -> Response:
        headers = {k: v for k, v in self.headers.items() if k != "content-length"}
        return Response(content=self.body, status_code=self.status, headers=headers)

    def to_mapping(self) -> dict[str, bytes]:
        return {
            "status": str(self.status).encode(),
            "headers": json.dumps(dict(self.headers)).encode("utf-8"),
            "body": self.body,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[bytes | str, bytes]) -> "CachedResponse":
        values = {(k.decode() if isinstance(k, bytes) else k): v for k, v in data.items()}
        return cls(
            status=int(values["status"]),
            headers=json.loads(values["headers"]),
            body=bytes(values["body"]),
        )


class CacheStore:
    async def get(self, key: str) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, snapshot: CachedResponse, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryCacheStore(CacheStore):
    """Per-process LRU store honouring per-entry TTLs."""

    def __init__(self, max_entries: int = 256, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, CachedResponse]] = OrderedDict()

    async def get(self, key: str) -> Optional[CachedResponse]:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, snapshot = item
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return snapshot

    async def put(self, key: str, snapshot: CachedResponse, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, snapshot)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            LOGGER.debug("cache_evicted", cache_key=evicted)

    async def ping(self) -> bool:
        return True

    def status(self) -> dict[str, object]:
        return {
            "backend": "memory",
            "entries": len(self._entries),
            "max_entries": self._max_entries,
        }


class RedisCacheStore(CacheStore):
    """Shared store keeping each snapshot as a Redis hash with an expiry."""

    def __init__(self, redis: Redis, namespace: str = "edgerelay:") -> None:
        self._redis = redis
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> Optional[CachedResponse]:
        data = await self._redis.hgetall(self._key(key))
        if not data:
            return None
        return CachedResponse.from_mapping(data)

    async def put(self, key: str, snapshot: CachedResponse, ttl_seconds: int) -> None:
        redis_key = self._key(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(redis_key)
            pipe.hset(redis_key, mapping=snapshot.to_mapping())
            pipe.expire(redis_key, ttl_seconds)
            await pipe.execute()

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("cache_ping_failed", error=str(exc))
            return False

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "namespace": self._namespace}

    async def close(self) -> None:
        await self._redis.aclose()


class CacheWriter:
    """Runs cache writes as background tasks detached from the response path.

    Tasks are held until they finish so they are not garbage collected mid-write,
    and ``drain`` lets shutdown wait for in-flight writes.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, key: str, snapshot: CachedResponse, ttl_seconds: int) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._write(key, snapshot, ttl_seconds))
        self._tasks.add(task)
        PENDING_WRITES_GAUGE.set(float(len(self._tasks)))
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        PENDING_WRITES_GAUGE.set(float(len(self._tasks)))

    async def _write(self, key: str, snapshot: CachedResponse, ttl_seconds: int) -> None:
        try:
            await self._store.put(key, snapshot, ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            CACHE_WRITE_FAILURES_COUNTER.inc()
            LOGGER.warning("cache_write_failed", cache_key=key, error=str(exc))
            return
        CACHE_WRITES_COUNTER.inc()
        LOGGER.info("cache_write", cache_key=key, bytes=len(snapshot.body), ttl_seconds=ttl_seconds)

    async def drain(self, timeout: float | None = None) -> None:
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            LOGGER.warning("cache_writer_drain_timeout", pending=len(pending))


def build_cache_store(settings: RelaySettings) -> CacheStore:
    if settings.cache_backend == "redis":
        return RedisCacheStore(redis_from_url(str(settings.redis_url), decode_responses=False))
    return InMemoryCacheStore(max_entries=settings.memory_cache_max_entries)

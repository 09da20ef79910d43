from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from edgerelay.common.settings import RelaySettings
from edgerelay.relay import cache as cache_module
from edgerelay.relay.cache import (
    CachedResponse,
    CacheStore,
    CacheWriter,
    InMemoryCacheStore,
    RedisCacheStore,
    build_cache_store,
)


def _snapshot(body: bytes = b"payload") -> CachedResponse:
    return CachedResponse.build(200, {"Content-Type": "application/octet-stream", "X-Cache": "MISS"}, body)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_cached_response_lowercases_headers_and_drops_length():
    snapshot = CachedResponse.build(200, {"Content-Length": "7", "X-Source-URL": "https://x"}, b"payload")
    assert dict(snapshot.headers) == {"content-length": "7", "x-source-url": "https://x"}

    response = snapshot.with_header("X-Cache", "HIT").to_response()
    assert response.status_code == 200
    assert response.body == b"payload"
    assert response.headers["x-cache"] == "HIT"
    # the length is recomputed from the stored body
    assert response.headers["content-length"] == "7"


def test_cached_response_mapping_accepts_bytes_keys():
    snapshot = _snapshot(b"\x00\x01binary")
    stored = {key.encode(): value for key, value in snapshot.to_mapping().items()}
    assert CachedResponse.from_mapping(stored) == snapshot


@pytest.mark.asyncio
async def test_memory_store_expires_entries():
    clock = _Clock()
    store = InMemoryCacheStore(clock=clock)

    await store.put("key", _snapshot(), ttl_seconds=300)
    clock.now += 299
    assert await store.get("key") == _snapshot()
    clock.now += 1
    assert await store.get("key") is None
    assert store.status()["entries"] == 0


@pytest.mark.asyncio
async def test_memory_store_evicts_least_recently_used():
    store = InMemoryCacheStore(max_entries=2)
    await store.put("a", _snapshot(b"a"), 60)
    await store.put("b", _snapshot(b"b"), 60)
    assert await store.get("a") is not None
    await store.put("c", _snapshot(b"c"), 60)

    assert await store.get("b") is None
    assert (await store.get("a")).body == b"a"
    assert (await store.get("c")).body == b"c"
    assert store.status() == {"backend": "memory", "entries": 2, "max_entries": 2}


@pytest.mark.asyncio
async def test_memory_store_overwrite_refreshes_ttl():
    clock = _Clock()
    store = InMemoryCacheStore(clock=clock)

    await store.put("key", _snapshot(b"old"), ttl_seconds=10)
    clock.now += 8
    await store.put("key", _snapshot(b"new"), ttl_seconds=10)
    clock.now += 8
    assert (await store.get("key")).body == b"new"


def _redis_with_pipeline():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 3, True])
    pipe_ctx = MagicMock()
    pipe_ctx.__aenter__ = AsyncMock(return_value=pipe)
    pipe_ctx.__aexit__ = AsyncMock(return_value=False)
    redis = MagicMock()
    redis.pipeline.return_value = pipe_ctx
    redis.hgetall = AsyncMock(return_value={})
    redis.ping = AsyncMock(return_value=True)
    redis.aclose = AsyncMock()
    return redis, pipe


@pytest.mark.asyncio
async def test_redis_store_writes_hash_with_expiry():
    redis, pipe = _redis_with_pipeline()
    store = RedisCacheStore(redis)
    snapshot = _snapshot()

    await store.put("https://downloads/x", snapshot, ttl_seconds=86400)

    redis.pipeline.assert_called_once_with(transaction=True)
    pipe.delete.assert_called_once_with("edgerelay:https://downloads/x")
    pipe.hset.assert_called_once_with("edgerelay:https://downloads/x", mapping=snapshot.to_mapping())
    pipe.expire.assert_called_once_with("edgerelay:https://downloads/x", 86400)
    pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_store_reads_snapshot():
    redis, _ = _redis_with_pipeline()
    snapshot = _snapshot()
    redis.hgetall.return_value = {key.encode(): value for key, value in snapshot.to_mapping().items()}
    store = RedisCacheStore(redis, namespace="relay:")

    assert await store.get("k") == snapshot
    redis.hgetall.assert_awaited_once_with("relay:k")

    redis.hgetall.return_value = {}
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_redis_store_ping_reports_failure():
    redis, _ = _redis_with_pipeline()
    redis.ping.side_effect = ConnectionError("down")
    store = RedisCacheStore(redis)

    assert await store.ping() is False
    await store.close()
    redis.aclose.assert_awaited_once()


def test_build_cache_store_selects_backend():
    memory = build_cache_store(RelaySettings(cache_backend="memory", memory_cache_max_entries=8))
    assert isinstance(memory, InMemoryCacheStore)
    assert memory.status()["max_entries"] == 8

    redis_store = build_cache_store(RelaySettings(cache_backend="redis", redis_url="redis://localhost:6379/0"))
    assert isinstance(redis_store, RedisCacheStore)


@pytest.mark.asyncio
async def test_cache_writer_stores_snapshot_in_background():
    store = InMemoryCacheStore()
    writer = CacheWriter(store)

    task = writer.schedule("key", _snapshot(), 60)
    assert writer.pending == 1
    await task

    assert writer.pending == 0
    assert await store.get("key") == _snapshot()


@pytest.mark.asyncio
async def test_cache_writer_swallows_store_failures():
    store = MagicMock(spec=CacheStore)
    store.put = AsyncMock(side_effect=RuntimeError("redis unavailable"))
    writer = CacheWriter(store)
    failures_before = cache_module.CACHE_WRITE_FAILURES_COUNTER.value()

    await writer.schedule("key", _snapshot(), 60)

    assert writer.pending == 0
    assert cache_module.CACHE_WRITE_FAILURES_COUNTER.value() == failures_before + 1


@pytest.mark.asyncio
async def test_cache_writer_drain_waits_for_pending_writes():
    release = asyncio.Event()
    written: list[str] = []

    class SlowStore(InMemoryCacheStore):
        async def put(self, key, snapshot, ttl_seconds):
            await release.wait()
            written.append(key)

    writer = CacheWriter(SlowStore())
    writer.schedule("a", _snapshot(), 60)
    writer.schedule("b", _snapshot(), 60)

    await writer.drain(timeout=0.01)
    assert writer.pending == 2

    release.set()
    await writer.drain(timeout=1.0)
    assert sorted(written) == ["a", "b"]
    assert writer.pending == 0

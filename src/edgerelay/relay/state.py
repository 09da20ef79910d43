"""Per-process relay state shared by the request handlers."""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import Request

from ..common.settings import RelaySettings
from .cache import CachedResponse, CacheStore, CacheWriter
from .upstream import UpstreamClient


class RelayState:
    def __init__(
        self,
        settings: RelaySettings,
        upstream: UpstreamClient,
        cache: CacheStore,
        writer: CacheWriter,
    ) -> None:
        self.settings = settings
        self.upstream = upstream
        self.cache = cache
        self.writer = writer
        self.logger = structlog.get_logger("edgerelay.relay").bind(cache_backend=cache.status().get("backend"))

    async def cache_lookup(self, key: str) -> Optional[CachedResponse]:
        """Read a snapshot; a failing store degrades to a miss."""
        try:
            return await self.cache.get(key)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("cache_read_failed", cache_key=key, error=str(exc))
            return None

    async def aclose(self) -> None:
        await self.writer.drain(timeout=self.settings.cache_writer_drain_timeout_seconds)
        await self.upstream.aclose()
        await self.cache.close()


def get_state(request: Request) -> RelayState:
    state = getattr(request.app.state, "relay", None)
    if state is None:
        raise RuntimeError("Relay state not initialised")
    return state

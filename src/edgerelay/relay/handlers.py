"""Handlers behind the four public relay routes."""

from __future__ import annotations

from typing import AsyncIterator, Optional

import httpx
from fastapi import Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, StreamingResponse

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .cache import CachedResponse
from .routing import InvalidDownloadPath, parse_download_path
from .schemas import VersionDescriptor
from .state import RelayState
from .upstream import iter_body, passthrough_length


HIT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgerelay_cache_hits_total", "Responses served from the cache", labelnames=("route",))
)
MISS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgerelay_cache_misses_total", "Cache lookups that went upstream", labelnames=("route",))
)
UPSTREAM_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "edgerelay_upstream_errors_total",
        "Upstream requests that failed or returned a non-success status",
        labelnames=("route",),
    )
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgerelay_download_bytes_streamed_total", "Release asset bytes streamed from upstream")
)
REJECTED_PATHS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgerelay_rejected_download_paths_total", "Download requests rejected before contacting upstream")
)


def redirect_home(state: RelayState) -> Response:
    return RedirectResponse(state.settings.homepage_url, status_code=status.HTTP_302_FOUND)


async def relay_install_script(state: RelayState) -> Response:
    try:
        upstream = await state.upstream.open_install_script()
    except httpx.HTTPError as exc:
        UPSTREAM_ERRORS_COUNTER.inc(route="install_script")
        state.logger.warning("upstream_error", error=repr(exc))
        return PlainTextResponse(
            f"unable to fetch install script: {exc.__class__.__name__}",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
    if not upstream.is_success:
        await upstream.aclose()
        UPSTREAM_ERRORS_COUNTER.inc(route="install_script")
        state.logger.warning("upstream_error", upstream_status=upstream.status_code)
        return PlainTextResponse(
            f"unable to fetch install script: {upstream.status_code}",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    headers = {
        "Content-Type": "text/plain; charset=utf-8",
        "Cache-Control": "no-cache",
        "X-Served-By": state.settings.served_by,
    }
    return StreamingResponse(iter_body(upstream), status_code=status.HTTP_200_OK, headers=headers)


def _version_error(error: str, upstream_status: int) -> JSONResponse:
    return JSONResponse({"error": error, "status": upstream_status}, status_code=status.HTTP_502_BAD_GATEWAY)


async def resolve_latest_version(state: RelayState) -> Response:
    """Serve ``{version, published_at}`` for the newest release, cached for a short window.

    1. A cached snapshot is returned as-is without contacting upstream.
    2. On a miss the release API is queried; failures become a 502 JSON body and
       are never cached.
    3. Successful projections are cached by a detached write.
    """
    settings = state.settings
    cache_key = settings.latest_cache_key
    cached = await state.cache_lookup(cache_key)
    if cached is not None:
        HIT_COUNTER.inc(route="latest_version")
        state.logger.info("cache_hit", cache_key=cache_key)
        return cached.to_response()

    MISS_COUNTER.inc(route="latest_version")
    state.logger.info("cache_miss", cache_key=cache_key)
    try:
        upstream = await state.upstream.fetch_latest_release()
    except httpx.HTTPError as exc:
        UPSTREAM_ERRORS_COUNTER.inc(route="latest_version")
        state.logger.warning("upstream_error", error=repr(exc))
        return _version_error("upstream API unreachable", status.HTTP_502_BAD_GATEWAY)
    if not upstream.is_success:
        UPSTREAM_ERRORS_COUNTER.inc(route="latest_version")
        state.logger.warning("upstream_error", upstream_status=upstream.status_code)
        return _version_error("upstream API error", upstream.status_code)

    try:
        descriptor = VersionDescriptor.from_release(upstream.json())
    except ValueError as exc:
        UPSTREAM_ERRORS_COUNTER.inc(route="latest_version")
        state.logger.warning("upstream_payload_invalid", error=str(exc))
        return _version_error("invalid upstream payload", upstream.status_code)
    if descriptor.version is None:
        state.logger.warning("upstream_payload_missing_version")

    snapshot = CachedResponse.build(
        status.HTTP_200_OK,
        {
            "Content-Type": "application/json",
            "Cache-Control": f"public, max-age={settings.latest_cache_ttl_seconds}",
            "Access-Control-Allow-Origin": "*",
        },
        descriptor.to_json(),
    )
    state.writer.schedule(cache_key, snapshot, settings.latest_cache_ttl_seconds)
    return snapshot.to_response()


async def proxy_download(state: RelayState, suffix: str) -> Response:
    """Serve ``/dl/{version}/{filename}`` from cache, or stream it from the release host."""
    settings = state.settings
    try:
        target = parse_download_path(suffix)
    except InvalidDownloadPath as exc:
        REJECTED_PATHS_COUNTER.inc()
        state.logger.info("download_path_rejected", suffix=suffix, reason=str(exc))
        return PlainTextResponse(str(exc), status_code=status.HTTP_400_BAD_REQUEST)

    url = target.upstream_url(settings)
    cached = await state.cache_lookup(url)
    if cached is not None:
        HIT_COUNTER.inc(route="download")
        state.logger.info("cache_hit", cache_key=url, bytes=len(cached.body))
        return cached.with_header("X-Cache", "HIT").to_response()

    MISS_COUNTER.inc(route="download")
    state.logger.info("cache_miss", cache_key=url)
    try:
        upstream = await state.upstream.open_download(url)
    except httpx.HTTPError as exc:
        UPSTREAM_ERRORS_COUNTER.inc(route="download")
        state.logger.warning("upstream_error", url=url, error=repr(exc))
        return PlainTextResponse(
            f"download failed ({status.HTTP_502_BAD_GATEWAY}): {url}",
            status_code=status.HTTP_502_BAD_GATEWAY,
        )
    if not upstream.is_success:
        await upstream.aclose()
        UPSTREAM_ERRORS_COUNTER.inc(route="download")
        state.logger.warning("upstream_error", url=url, upstream_status=upstream.status_code)
        return PlainTextResponse(f"download failed ({upstream.status_code}): {url}", status_code=upstream.status_code)

    headers = {
        "Content-Type": "application/octet-stream",
        "Content-Disposition": f'attachment; filename="{target.filename}"',
        "Cache-Control": f"public, max-age={settings.download_cache_ttl_seconds}",
        "X-Cache": "MISS",
        "X-Source-URL": url,
    }
    content_length = passthrough_length(upstream)
    if content_length is not None:
        headers["Content-Length"] = content_length

    try:
        body = _stream_and_cache(state, url, headers, upstream, content_length)
        return StreamingResponse(body, status_code=status.HTTP_200_OK, headers=headers)
    except Exception:
        await upstream.aclose()
        raise


async def _stream_and_cache(
    state: RelayState,
    cache_key: str,
    headers: dict[str, str],
    upstream: httpx.Response,
    content_length: Optional[str],
) -> AsyncIterator[bytes]:
    """Yield upstream chunks to the client while teeing them into a bounded buffer.

    The snapshot is scheduled for storage only once the whole body went through,
    so an aborted stream never lands in the cache.
    """
    limit = state.settings.max_cached_object_bytes
    buffer: Optional[bytearray] = bytearray()
    try:
        async for chunk in iter_body(upstream):
            if buffer is not None:
                buffer.extend(chunk)
                if len(buffer) > limit:
                    buffer = None
                    state.logger.info("cache_skip_oversize", cache_key=cache_key, limit=limit)
            BYTES_SERVED_COUNTER.inc(len(chunk))
            yield chunk
    except httpx.HTTPError as exc:
        UPSTREAM_ERRORS_COUNTER.inc(route="download")
        state.logger.warning("upstream_stream_aborted", cache_key=cache_key, error=repr(exc))
        raise

    if buffer is None:
        return
    if content_length is not None and int(content_length) != len(buffer):
        state.logger.warning(
            "cache_skip_length_mismatch",
            cache_key=cache_key,
            expected=content_length,
            received=len(buffer),
        )
        return
    snapshot = CachedResponse.build(status.HTTP_200_OK, headers, bytes(buffer))
    state.writer.schedule(cache_key, snapshot, state.settings.download_cache_ttl_seconds)

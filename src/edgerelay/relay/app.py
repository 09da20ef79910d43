"""Edge relay fronting the release host: install script, latest version and binary downloads."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.convertors import Convertor, register_url_convertor

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import (
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    instrument_http_client,
    request_log_context,
)
from ..common.settings import RelaySettings
from .cache import CacheStore, CacheWriter, build_cache_store
from .handlers import proxy_download, redirect_home, relay_install_script, resolve_latest_version
from .routing import DOWNLOAD_PREFIX, RouteKind, resolve_route
from .state import RelayState, get_state
from .upstream import UpstreamClient


REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("edgerelay_requests_total", "Total relay requests"))
NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(Counter("edgerelay_not_found_total", "Requests matching no route"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edgerelay_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Time until the relay produced response headers",
    )
)

# every verb reaches the dispatcher so that non-GET requests get the same 404 as unknown paths
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


class AnyPathConvertor(Convertor):
    """Like starlette's ``path`` convertor, but also matches decoded line breaks."""

    regex = "(?s:.*)"

    def convert(self, value: str) -> str:
        return value

    def to_string(self, value: str) -> str:
        return value


register_url_convertor("anypath", AnyPathConvertor())


def build_state(
    settings: RelaySettings,
    cache_store: Optional[CacheStore] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RelayState:
    client_kwargs: dict[str, object] = {}
    if settings.upstream_timeout_seconds is not None:
        client_kwargs["timeout"] = httpx.Timeout(settings.upstream_timeout_seconds)
    if upstream_transport is not None:
        client_kwargs["transport"] = upstream_transport
    http_client = httpx.AsyncClient(**client_kwargs)
    instrument_http_client(http_client)

    cache = cache_store if cache_store is not None else build_cache_store(settings)
    return RelayState(
        settings=settings,
        upstream=UpstreamClient(settings, http_client),
        cache=cache,
        writer=CacheWriter(cache),
    )


def create_app(
    settings: Optional[RelaySettings] = None,
    *,
    cache_store: Optional[CacheStore] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or RelaySettings()
    configure_logging("edgerelay.relay", settings.log_level)
    configure_tracing(
        service_name="edgerelay.relay",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    state = build_state(settings, cache_store=cache_store, upstream_transport=upstream_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.logger.info(
            "relay_started",
            repository=settings.repository,
            download_base_url=settings.download_base_url,
        )
        try:
            yield
        finally:
            await state.aclose()
            state.logger.info("relay_stopped")

    # no docs routes and no slash redirects: the public surface is exactly the four routes
    app = FastAPI(
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    app.state.relay = state
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        with request_log_context(method=request.method, path=request.url.path):
            try:
                response = await call_next(request)
            except Exception:
                duration = time.perf_counter() - start
                LATENCY_HISTOGRAM.observe(duration)
                state.logger.exception("http_request_error", duration_ms=round(duration * 1000, 2))
                raise

            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            log_kwargs = {
                "status": response.status_code,
                "x_cache": response.headers.get("x-cache"),
                "duration_ms": round(duration * 1000, 2),
            }
            if response.status_code >= 500:
                state.logger.error("http_request", **log_kwargs)
            elif duration >= 1.0:
                state.logger.warning("http_request", **log_kwargs)
            else:
                state.logger.info("http_request", **log_kwargs)
        return response

    @app.api_route("/{path:anypath}", methods=ALL_METHODS, include_in_schema=False)
    async def dispatch(request: Request, state: RelayState = Depends(get_state)) -> Response:
        # scope["path"] is already percent-decoded; validation runs on the decoded form
        path = request.scope["path"]
        route = resolve_route(request.method, path, state.settings.script_route)
        with request_log_context(route=route.value):
            if route is RouteKind.HOME:
                return redirect_home(state)
            if route is RouteKind.INSTALL_SCRIPT:
                return await relay_install_script(state)
            if route is RouteKind.LATEST_VERSION:
                return await resolve_latest_version(state)
            if route is RouteKind.DOWNLOAD:
                return await proxy_download(state, path[len(DOWNLOAD_PREFIX):])
        NOT_FOUND_COUNTER.inc()
        return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)

    return app


def create_ops_app(state: RelayState) -> FastAPI:
    """Health, status and metrics endpoints, served on their own port."""

    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.state.relay = state

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: RelayState = Depends(get_state)) -> dict:
        """Readiness and liveness check; 503 when the cache backend is unreachable."""
        cache_ok = await state.cache.ping()
        health = {
            "status": "healthy" if cache_ok else "unhealthy",
            "checks": {"cache": state.cache.status().get("backend"), "cache_reachable": cache_ok},
        }
        if not cache_ok:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/status")
    async def status_report(state: RelayState = Depends(get_state)) -> JSONResponse:
        payload = dict(state.cache.status())
        payload.update(
            {
                "repository": state.settings.repository,
                "pending_cache_writes": state.writer.pending,
                "latest_cache_ttl_seconds": state.settings.latest_cache_ttl_seconds,
                "download_cache_ttl_seconds": state.settings.download_cache_ttl_seconds,
                "max_cached_object_bytes": state.settings.max_cached_object_bytes,
            }
        )
        return JSONResponse(payload)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: RelayState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app

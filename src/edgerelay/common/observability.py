"""Structured logging and tracing for the relay processes.

Log lines are JSON objects carrying the service name, the request being served
(method, path, matched route) and, when a span is recording, the OpenTelemetry
trace and span ids so a cache miss can be followed into its upstream fetch.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars, bound_contextvars
from structlog.typing import EventDict, WrappedLogger

# libraries whose per-request chatter duplicates the relay's own http_request event
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _level_number(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    value = getattr(logging, str(level or "INFO").strip().upper(), None)
    return value if isinstance(value, int) else logging.INFO


def drop_unset_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Remove keys bound to ``None`` (e.g. ``x_cache`` on routes that never cache)."""
    return {key: value for key, value in event_dict.items() if value is not None}


def add_trace_context(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format(span_context.trace_id, "032x"))
        event_dict.setdefault("span_id", format(span_context.span_id, "016x"))
    return event_dict


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    numeric_level = _level_number(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(message)s")
    root.setLevel(numeric_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            drop_unset_fields,
            add_trace_context,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # create_app may reconfigure with another level; loggers must not keep the old one
        cache_logger_on_first_use=False,
    )
    bind_contextvars(service=service_name)


@contextmanager
def request_log_context(**fields: Any) -> Iterator[None]:
    """Bind request fields to every event logged while the request is handled."""
    with bound_contextvars(**{key: value for key, value in fields.items() if value is not None}):
        yield


def otlp_headers(raw: Optional[str]) -> dict[str, str]:
    """Parse ``key=value,key=value`` exporter headers, skipping malformed items."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip() and value.strip()}


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> Optional[TracerProvider]:
    """Export spans over OTLP/HTTP when an endpoint is configured.

    Without an endpoint the global provider is left alone, so spans stay
    non-recording. An SDK provider installed earlier is reused as-is.
    """
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        return current
    if not endpoint:
        return None

    ratio = min(max(sampler_ratio, 0.0), 1.0)
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.namespace": "edgerelay"}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=otlp_headers(headers))))
    trace.set_tracer_provider(provider)
    return provider


def instrument_fastapi_app(app) -> None:
    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())


def instrument_http_client(client: httpx.AsyncClient) -> None:
    """Emit client spans for every upstream request made through ``client``."""
    HTTPXClientInstrumentor.instrument_client(client, tracer_provider=trace.get_tracer_provider())

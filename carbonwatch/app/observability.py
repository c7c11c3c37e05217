"""Request context, pipeline counters, structured logging and optional OTel metrics."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from collections import Counter
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_REQUEST_ID_HEADERS = ("X-Request-ID", "X-Correlation-ID")

_http_logger = logging.getLogger("carbonwatch.http")


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def _incoming_request_id(request: Request) -> str:
    for header in _REQUEST_ID_HEADERS:
        value = (request.headers.get(header) or "").strip()
        if value:
            return value[:128]
    return uuid.uuid4().hex


def _route_label(request: Request) -> str:
    # Templated path keeps metric cardinality bounded (no device ids).
    path = getattr(request.scope.get("route"), "path", None)
    return path if isinstance(path, str) and path else request.url.path


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with a request id and log one line when it completes.

    Upstream ids are reused when present; the id is echoed in `X-Request-ID`
    and attached to every log record emitted while the request is handled.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _incoming_request_id(request)
        token = request_id_ctx.set(rid)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = rid
            return response
        except Exception:
            _http_logger.exception("request_failed", extra={"fields": _request_fields(request, 500, started)})
            raise
        finally:
            fields = _request_fields(request, status_code, started)
            if status_code < 500:
                _http_logger.info("request", extra={"fields": fields})
            record_http_request_metric(
                method=request.method,
                route=_route_label(request),
                status_code=status_code,
                duration_ms=fields["duration_ms"],
            )
            request_id_ctx.reset(token)


def _request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status": status_code,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    if request.client:
        fields["client"] = request.client.host
    return fields


# -----------------------------
# Pipeline counters
# -----------------------------


class PipelineCounters:
    """Thread-safe in-process counters for the ingestion pipeline.

    Workers run in threads (asyncio.to_thread) and the MQTT callback thread,
    so increments are guarded by a lock. The OTel counter, when enabled,
    receives the same increments.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount
        record_pipeline_event_metric(event=name, amount=amount)

    def get(self, name: str) -> int:
        with self._lock:
            return int(self._counts.get(name, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counts.items()))


pipeline_counters = PipelineCounters()


# -----------------------------
# Metrics (OpenTelemetry, optional)
# -----------------------------


@dataclass
class _Instruments:
    http_requests: Any
    http_duration_ms: Any
    pipeline_events: Any
    alert_transitions: Any
    notification_attempts: Any


# Set by maybe_instrument_opentelemetry(); None means metrics are off.
_instruments: _Instruments | None = None


def record_http_request_metric(*, method: str, route: str, status_code: int, duration_ms: float) -> None:
    inst = _instruments
    if inst is None:
        return
    attrs = {"http.method": method.upper(), "http.route": route or "/", "http.status_code": int(status_code)}
    inst.http_requests.add(1, attributes=attrs)
    inst.http_duration_ms.record(float(duration_ms), attributes=attrs)


def record_pipeline_event_metric(*, event: str, amount: int = 1) -> None:
    inst = _instruments
    if inst is not None:
        inst.pipeline_events.add(int(amount), attributes={"event": event})


def record_alert_transition_metric(*, state: str, alert_type: str, severity: str) -> None:
    inst = _instruments
    if inst is not None:
        inst.alert_transitions.add(
            1, attributes={"state": state, "alert_type": alert_type, "severity": severity or "unknown"}
        )


def record_notification_attempt_metric(*, channel: str, status: str) -> None:
    inst = _instruments
    if inst is not None:
        inst.notification_attempts.add(1, attributes={"channel": channel, "status": status})


def _create_instruments(meter: Any) -> _Instruments:
    return _Instruments(
        http_requests=meter.create_counter(
            "carbonwatch.http.server.requests", unit="{request}", description="HTTP requests by route and status."
        ),
        http_duration_ms=meter.create_histogram(
            "carbonwatch.http.server.duration", unit="ms", description="HTTP request latency."
        ),
        pipeline_events=meter.create_counter(
            "carbonwatch.pipeline.events",
            unit="{event}",
            description="Mirror of the in-process pipeline counters.",
        ),
        alert_transitions=meter.create_counter(
            "carbonwatch.alert.transitions", unit="{event}", description="Alert creations and state changes."
        ),
        notification_attempts=meter.create_counter(
            "carbonwatch.notification.attempts",
            unit="{attempt}",
            description="Notification delivery attempts by channel and outcome.",
        ),
    )


# -----------------------------
# Logging
# -----------------------------


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record; `extra={"fields": {...}}` is kept as a nested object."""

    def __init__(self, service_name: str = "carbonwatch") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        rid = getattr(record, "request_id", None)
        if rid:
            payload["request_id"] = rid
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with structured fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        rid = getattr(record, "request_id", None)
        if rid:
            line += f" request_id={rid}"
        return line


def configure_logging(*, level: int, log_format: str, service_name: str = "carbonwatch") -> None:
    """Install a single root handler; safe to call more than once."""

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(service_name))
    else:
        handler.setFormatter(TextFormatter())
    root.addHandler(handler)

    # paho logs every reconnect attempt at INFO; keep that out of the app stream.
    logging.getLogger("paho").setLevel(max(level, logging.WARNING))


# -----------------------------
# OpenTelemetry (optional)
# -----------------------------


def maybe_instrument_opentelemetry(
    *,
    enabled: bool,
    app,
    sqlalchemy_engine,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Instrument FastAPI and SQLAlchemy and create the pipeline instruments.

    The `otel` extra must be installed; without it only a warning is logged.
    Exporters follow the standard OTEL_* environment variables.
    """

    global _instruments

    if not enabled:
        _instruments = None
        return

    log = logging.getLogger("carbonwatch.otel")

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        log.warning(
            "otel_unavailable",
            extra={"fields": {"hint": "pip install -e .[otel]", "env": "ENABLE_OTEL"}},
        )
        return

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
            "deployment.environment": environment,
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    readers: list[Any] = []

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
        readers.append(PeriodicExportingMetricReader(OTLPMetricExporter()))
        log.info("otel_exporters_enabled", extra={"fields": {"endpoint": endpoint}})
    else:
        log.warning("otel_no_exporter", extra={"fields": {"hint": "set OTEL_EXPORTER_OTLP_ENDPOINT"}})

    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))
    _instruments = _create_instruments(metrics.get_meter(service_name, service_version))

    SQLAlchemyInstrumentor().instrument(engine=sqlalchemy_engine, tracer_provider=tracer_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.src.config import AppConfig, load_config, parse_bool
from watcher.src.kube import build_core_api, load_kube_configuration
from watcher.src.logs import configure_logging
from watcher.src.mirror import SettingsMirror, build_mirror_from_env

APP_VERSION = "0.3.0"

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "http_in_flight_requests",
    "Current number of HTTP requests being processed",
)
MESSAGE_RELOADS = Counter(
    "app_message_reloads_total",
    "Total times the served message changed after a settings reload",
)
MESSAGE_INFO = Gauge(
    "app_message_info",
    "Metadata of the message currently served",
    ["source", "message_fingerprint", "app_version"],
)
KNOWN_METRIC_PATHS = {"/", "/settings", "/healthz", "/readyz", "/metrics"}
_TRACING_INITIALIZED = False


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records per-request Prometheus counters and histograms.

    Skips the ``/metrics`` endpoint itself to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            metric_path = (
                request.url.path if request.url.path in KNOWN_METRIC_PATHS else "other"
            )
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(
                time.monotonic() - start
            )
            REQUEST_IN_FLIGHT.dec()
        return response


def _message_fingerprint(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()[:12]


def _record_message_info(source: str, message: str) -> None:
    MESSAGE_INFO.clear()
    MESSAGE_INFO.labels(
        source=source,
        message_fingerprint=_message_fingerprint(message),
        app_version=APP_VERSION,
    ).set(1)


class MessageHolder:
    """Current greeting, swapped atomically by the mirror's reload callback."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._lock = threading.Lock()
        self.value = config.message
        self.source = config.source
        _record_message_info(self.source, self.value)

    def on_reload(self, data: dict[str, str | None]) -> None:
        mirrored = data.get(self._config.message_key)
        with self._lock:
            if mirrored is None:
                value, source = self._config.message, self._config.source
            else:
                value, source = mirrored, "mirror"
            if value != self.value:
                MESSAGE_RELOADS.inc()
                logging.getLogger(__name__).info("Served message updated from %s", source)
            if (value, source) != (self.value, self.source):
                _record_message_info(source, value)
            self.value, self.source = value, source


def configure_tracing(app: FastAPI, logger: logging.Logger) -> None:
    """Enable OpenTelemetry tracing when ``OTEL_ENABLED=true``.

    The app stays fully functional when OpenTelemetry packages are absent;
    tracing is then skipped with a warning.
    """
    global _TRACING_INITIALIZED

    if not parse_bool(os.getenv("OTEL_ENABLED")):
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning(
            "OTEL_ENABLED=true but OpenTelemetry packages are not installed; tracing disabled"
        )
        return

    if not _TRACING_INITIALIZED:
        endpoint_base = os.getenv(
            "OTEL_EXPORTER_OTLP_ENDPOINT",
            "http://otel-collector.monitoring.svc:4318",
        )
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or (
            endpoint_base
            if endpoint_base.endswith("/v1/traces")
            else endpoint_base.rstrip("/") + "/v1/traces"
        )
        resource = Resource.create({
            "service.name": os.getenv("OTEL_SERVICE_NAME", "helloworld"),
            "service.namespace": os.getenv("OTEL_SERVICE_NAMESPACE", "shipshape"),
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _TRACING_INITIALIZED = True
        logger.info("OpenTelemetry tracing enabled (OTLP endpoint=%s)", endpoint)

    FastAPIInstrumentor.instrument_app(app)


def _run_mirror(mirror: SettingsMirror, shutdown_event: threading.Event) -> None:
    try:
        mirror.run_forever(shutdown_event=shutdown_event)
    except Exception:
        logging.getLogger(__name__).exception("Settings mirror crashed")


def create_app(mirror: SettingsMirror | None = None) -> FastAPI:
    """Create the helloworld FastAPI application.

    ``GET /`` serves the mirrored ``MESSAGE_KEY`` setting when a settings
    mirror is running and has loaded it, and the startup ``MESSAGE``
    otherwise.  Changes to the ConfigMap reach the response on the next poll
    without restarting the pod.

    Endpoints:
        ``GET /``         - Current message as plain text.
        ``GET /settings`` - Mirrored settings as JSON (empty without a mirror).
        ``GET /healthz``  - Liveness probe (always ``200 ok``).
        ``GET /readyz``   - Readiness probe with message source and mirror state.
        ``GET /metrics``  - Prometheus metrics in text exposition format.
    """
    configure_logging()
    config = load_config()
    logger = logging.getLogger(__name__)

    if mirror is None and config.mirror_enabled:
        load_kube_configuration()
        mirror = build_mirror_from_env(core_api=build_core_api())

    holder = MessageHolder(config)
    if mirror is not None:
        mirror.on_reload(holder.on_reload)
    logger.info(
        "Starting helloworld app (config source=%s, mirror=%s)",
        config.source,
        "enabled" if mirror is not None else "disabled",
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if mirror is None:
            yield
            return
        shutdown_event = threading.Event()
        thread = threading.Thread(
            target=_run_mirror,
            args=(mirror, shutdown_event),
            name="settings-mirror",
            daemon=True,
        )
        thread.start()
        try:
            yield
        finally:
            shutdown_event.set()
            mirror.request_stop()
            thread.join(timeout=mirror.join_timeout_seconds)

    app = FastAPI(title="helloworld", version=APP_VERSION, lifespan=lifespan)
    app.add_middleware(MetricsMiddleware)
    configure_tracing(app, logger)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    @app.get("/", response_class=PlainTextResponse)
    def read_message() -> str:
        return holder.value

    @app.get("/settings")
    def read_settings() -> dict[str, str | None]:
        return mirror.data if mirror is not None else {}

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz() -> PlainTextResponse:
        if mirror is None:
            return PlainTextResponse(f"ok source={holder.source} mirror=disabled")
        if mirror.fatal_error is not None:
            return PlainTextResponse(
                f"failed source={holder.source} mirror=stopped", status_code=503
            )
        state = "ready" if mirror.ready.is_set() else "starting"
        return PlainTextResponse(f"ok source={holder.source} mirror={state}")

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app

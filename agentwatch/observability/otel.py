"""OpenTelemetry + Prometheus fallback wiring for agentwatch.

Every signal is declared once in ``_SIGNALS``; ``initialize`` creates the
OTEL instrument and, when a Prometheus port is configured, a mirrored
Prometheus collector for it. All ``record_*`` helpers are no-ops until then.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from fastapi import FastAPI

from agentwatch import config

logger = logging.getLogger("agentwatch.observability")


@dataclass
class _Signal:
    name: str
    description: str
    labels: tuple[str, ...]
    histogram: bool = False
    unit: str = "1"
    otel: Any = None
    prom: Any = None

    def emit(self, value: float, labels: dict[str, str]) -> None:
        if _state.enabled and self.otel is not None:
            if self.histogram:
                self.otel.record(value, labels)
            else:
                self.otel.add(value, labels)
        if _state.prom_enabled and self.prom is not None:
            child = self.prom.labels(**labels)
            if self.histogram:
                child.observe(value)
            else:
                child.inc(value)


_SIGNALS: dict[str, _Signal] = {
    "refresh": _Signal(
        "agentwatch_refresh_total",
        "Provider refresh passes by outcome",
        ("provider", "result"),
    ),
    "refresh_latency": _Signal(
        "agentwatch_refresh_latency_ms",
        "Latency of provider refresh passes",
        ("provider", "result"),
        histogram=True,
        unit="ms",
    ),
    "transcripts": _Signal(
        "agentwatch_transcripts_total",
        "Transcripts considered per refresh, split by mtime cache outcome",
        ("provider", "cache"),
    ),
    "deliveries": _Signal(
        "agentwatch_merge_deliveries_total",
        "Merged snapshot deliveries to consumers",
        ("component",),
    ),
    "callback_failures": _Signal(
        "agentwatch_callback_failures_total",
        "Subscriber callbacks that raised",
        ("component",),
    ),
}


@dataclass
class _TelemetryState:
    initialized: bool = False
    enabled: bool = False
    prom_enabled: bool = False
    tracer: Any = None
    trace_provider: Any = None
    meter_provider: Any = None
    instrumentor: Any = None


_state = _TelemetryState()


def _signal_endpoint(base_endpoint: str, signal_path: str) -> str:
    """Append the OTLP signal path (``/v1/traces``...) to a collector base URL."""
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint or endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return endpoint + signal_path


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def _setup_otel(service_name: str) -> None:
    from opentelemetry import metrics, trace
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name, "service.namespace": "agentwatch"})

    traces_url = _signal_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None
    _state.trace_provider = TracerProvider(resource=resource)
    _state.trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_url)))
    trace.set_tracer_provider(_state.trace_provider)
    _state.tracer = trace.get_tracer("agentwatch")

    metrics_url = _signal_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_url))
    _state.meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_state.meter_provider)
    meter = metrics.get_meter("agentwatch")

    for signal in _SIGNALS.values():
        create = meter.create_histogram if signal.histogram else meter.create_counter
        signal.otel = create(signal.name, unit=signal.unit, description=signal.description)

    _state.instrumentor = FastAPIInstrumentor()


def _setup_prometheus(port: int) -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(port)
        for signal in _SIGNALS.values():
            collector = Histogram if signal.histogram else Counter
            signal.prom = collector(signal.name, signal.description, list(signal.labels))
        _state.prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", port)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _state.prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    if _state.initialized:
        if _state.enabled and app and _state.instrumentor:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTWATCH_OTEL_ENABLED=false)")
        return

    service_name = config.OTEL_SERVICE_NAME or "agentwatch"
    _setup_otel(service_name)
    _state.enabled = True
    if app:
        _state.instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _setup_prometheus(config.PROM_PORT)

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    if not _state.initialized:
        return
    if app and _state.instrumentor:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_state.meter_provider, _state.trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _state.enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    if not _state.enabled or _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_refresh(provider: str, result: str, duration_ms: float) -> None:
    labels = _labels(provider=provider, result=result)
    _SIGNALS["refresh"].emit(1, labels)
    _SIGNALS["refresh_latency"].emit(max(0.0, float(duration_ms)), labels)


def record_transcripts(provider: str, *, parsed: int, cached: int) -> None:
    for cache, count in (("miss", parsed), ("hit", cached)):
        if count > 0:
            _SIGNALS["transcripts"].emit(count, _labels(provider=provider, cache=cache))


def record_delivery(component: str) -> None:
    _SIGNALS["deliveries"].emit(1, _labels(component=component))


def record_callback_failure(component: str) -> None:
    _SIGNALS["callback_failures"].emit(1, _labels(component=component))

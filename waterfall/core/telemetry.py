"""Tracing and trace-correlated logging for the API process and the pipeline driver."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from urllib.parse import unquote

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_NAMESPACE, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from waterfall.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
SERVICE_NAMESPACE_VALUE = "waterfall"
TRACES_PATH = "/v1/traces"
NO_TRACE_ID = "0" * 32
NO_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


class TraceContextFilter(logging.Filter):
    """Stamp every record passing a handler with the active span's ids.

    Records emitted outside a span, or with correlation switched off, carry
    all-zero ids so ``LOG_FORMAT`` always renders.
    """

    def __init__(self, *, correlate: bool = True) -> None:
        super().__init__()
        self.correlate = correlate

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context() if self.correlate else None
        if context is not None and context.is_valid:
            record.trace_id = trace.format_trace_id(context.trace_id)
            record.span_id = trace.format_span_id(context.span_id)
        else:
            record.trace_id = NO_TRACE_ID
            record.span_id = NO_SPAN_ID
        return True


@dataclass(frozen=True, slots=True)
class ExporterConfig:
    endpoint: str | None
    headers: dict[str, str] = field(default_factory=dict)

    def build(self) -> OTLPSpanExporter | None:
        if not self.endpoint:
            return None
        return OTLPSpanExporter(endpoint=self.endpoint, headers=self.headers or None)


@dataclass(slots=True)
class TelemetryRuntime:
    service_name: str
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def shutdown(self) -> None:
        if self.provider is None:
            return
        if self.app is not None:
            FastAPIInstrumentor.uninstrument_app(self.app)
        _HTTPX_INSTRUMENTOR.uninstrument()
        self.provider.force_flush()
        self.provider.shutdown()
        self.provider = None


def configure_logging(*, correlate: bool = True) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    for handler in root.handlers:
        existing = [item for item in handler.filters if isinstance(item, TraceContextFilter)]
        if existing:
            existing[0].correlate = correlate
        else:
            handler.addFilter(TraceContextFilter(correlate=correlate))


def setup_telemetry(settings: Settings, *, component: str, app: FastAPI | None = None) -> TelemetryRuntime:
    """Install a tracer provider for one process of the pipeline.

    ``component`` names the process (``api`` or ``driver``) and becomes the
    service name suffix. With an ``app`` the FastAPI routes are instrumented
    as well; outgoing httpx calls always are.
    """
    runtime = TelemetryRuntime(service_name=f"{settings.otel_service_name}-{component}", app=app)
    if not settings.otel_enabled:
        return runtime

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: runtime.service_name,
                SERVICE_NAMESPACE: SERVICE_NAMESPACE_VALUE,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "waterfall.component": component,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = resolve_exporter_config(settings).build()
    if exporter is None:
        logger.info("no OTLP endpoint configured; spans for %s stay in-process", runtime.service_name)
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    runtime.provider = provider
    return runtime


def resolve_exporter_config(settings: Settings) -> ExporterConfig:
    """Settings win over the standard OTLP environment variables.

    The generic ``OTEL_EXPORTER_OTLP_ENDPOINT`` names a collector base URL, so
    the traces path is appended to it; the traces-specific variable and the
    setting are used verbatim.
    """
    endpoint = settings.otel_exporter_otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if not endpoint:
        base = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        endpoint = f"{base.rstrip('/')}{TRACES_PATH}" if base else None

    raw_headers = (
        settings.otel_exporter_otlp_headers
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_HEADERS")
        or os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    )
    return ExporterConfig(endpoint=endpoint, headers=parse_headers(raw_headers))


def parse_headers(raw: str | None) -> dict[str, str]:
    # W3C baggage style: comma separated key=value pairs with percent-encoded values
    if not raw:
        return {}
    headers: dict[str, str] = {}
    for pair in raw.split(","):
        key, separator, value = pair.partition("=")
        key = key.strip()
        if separator and key:
            headers[key] = unquote(value.strip())
    return headers

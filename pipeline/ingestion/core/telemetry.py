from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import sys

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from ingestion.core.config import Settings

logger = logging.getLogger(__name__)

PIPELINE_COMPONENT_ATTRIBUTE = "ingest.component"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    component: str
    provider: TracerProvider | None = None
    exporting: bool = False

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_pipeline_logging(level: str = "INFO") -> None:
    """Route pipeline logs to stderr with trace correlation ids.

    stdout stays reserved for CLI JSON output. An already configured root
    logger only has its level adjusted.
    """
    _install_log_correlation()
    resolved_level = logging.getLevelName(level.upper())
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)


def build_pipeline_resource(settings: Settings, component: str) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            PIPELINE_COMPONENT_ATTRIBUTE: component,
        }
    )


def setup_pipeline_telemetry(settings: Settings, component: str = "cli") -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(component=component)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=build_pipeline_resource(settings, component),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    endpoint = resolve_otlp_endpoint(settings)
    if endpoint:
        headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logger.info(
            "OTel exporter endpoint not set; spans stay in-process service=%s component=%s",
            settings.otel_service_name,
            component,
        )

    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(component=component, provider=provider, exporting=bool(endpoint))


def shutdown_pipeline_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def resolve_otlp_endpoint(settings: Settings) -> str | None:
    for candidate in (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` header lists; malformed items are skipped."""
    if not raw:
        return {}
    headers: dict[str, str] = {}
    for item in raw.split(","):
        name, separator, value = item.partition("=")
        if separator and name.strip():
            headers[name.strip()] = value.strip()
    return headers


def current_correlation_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return _EMPTY_TRACE_ID, _EMPTY_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        record.trace_id, record.span_id = current_correlation_ids()
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True

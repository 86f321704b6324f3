import pytest

from ingestion.core.config import Settings
from ingestion.core.telemetry import (
    current_correlation_ids,
    parse_otlp_headers,
    resolve_otlp_endpoint,
    setup_pipeline_telemetry,
    shutdown_pipeline_telemetry,
)


def test_parse_otlp_headers_skips_malformed_items() -> None:
    assert parse_otlp_headers("authorization=Bearer abc, x-team = ingest ,broken,=orphan") == {
        "authorization": "Bearer abc",
        "x-team": "ingest",
    }
    assert parse_otlp_headers(None) == {}


def test_endpoint_prefers_settings_then_trace_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "http://traces:4318/v1/traces")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318")

    assert resolve_otlp_endpoint(Settings(otel_exporter_otlp_endpoint="http://explicit:4318")) == "http://explicit:4318"
    assert resolve_otlp_endpoint(Settings()) == "http://traces:4318/v1/traces"

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    assert resolve_otlp_endpoint(Settings()) == "http://collector:4318"


def test_disabled_telemetry_is_a_noop() -> None:
    runtime = setup_pipeline_telemetry(Settings(otel_enabled=False), component="scheduler")

    assert runtime.enabled is False
    assert runtime.component == "scheduler"
    shutdown_pipeline_telemetry(runtime)


def test_correlation_ids_default_to_zeroes_outside_a_span() -> None:
    assert current_correlation_ids() == ("0" * 32, "0" * 16)

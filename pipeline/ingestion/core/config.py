from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when required pipeline configuration is missing or unsafe."""


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    app_database_url: str | None = None
    snapshot_mode: Literal["local", "disabled"] = "local"
    snapshot_local_dir: str = "./snapshots"
    reconciliation_spike_threshold: int = 25
    reconciliation_page_size: int = 500
    compliance_robots_ttl_days: int = 7
    compliance_terms_ttl_days: int = 30
    log_level: str = "INFO"
    default_locale: str = "en"
    user_agent: str = "rekindle-pipeline/0.1 (+https://rekindle.app)"
    http_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 60.0
    max_backoff_seconds: float = 900.0
    incident_interval_seconds: float = 3600.0
    reconcile_interval_seconds: float = 3600.0
    otel_enabled: bool = True
    otel_service_name: str = "ingestion-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def assert_ingest_config(settings: Settings) -> None:
    if not settings.database_url:
        raise ConfigurationError("INGEST_DATABASE_URL is required for ingestion jobs")


def assert_reconciliation_config(settings: Settings) -> None:
    assert_ingest_config(settings)
    if not settings.app_database_url:
        raise ConfigurationError("INGEST_APP_DATABASE_URL is required for promotion reconciliation")
    if settings.app_database_url == settings.database_url:
        raise ConfigurationError(
            "INGEST_APP_DATABASE_URL must not match INGEST_DATABASE_URL; app and ingestion stores are separate"
        )

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from ingestion.core.config import Settings, assert_ingest_config, get_settings
from ingestion.core.metadata import HealthSnapshot, round_half_up, to_iso, utc_now
from ingestion.services.repository import RepositoryNotFoundError, SourceRegistryRecord, get_repository
from ingestion.sources.registry import list_sources

logger = logging.getLogger(__name__)

HIGH_FAILURE_RATE = 0.35
LOW_YIELD_RATE = 0.05
CONSECUTIVE_FAILURE_LIMIT = 3
LOW_HEALTH_SCORE = 40


@dataclass(slots=True)
class SourceHealthSignal:
    code: str
    severity: str
    message: str


@dataclass(slots=True)
class SourceHealthEntry:
    source_key: str
    display_name: str | None
    state: str
    approved_for_prod: bool
    cadence: str | None
    last_run_at: str | None
    last_success_at: str | None
    rolling_promotion_rate_30d: float | None
    rolling_failure_rate_30d: float | None
    health_score: float | None
    consecutive_failures: int
    last_run_status: str | None
    last_error: str | None
    signals: list[SourceHealthSignal] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SourceHealthReport:
    generated_at: str
    sources: list[SourceHealthEntry]
    unregistered_sources: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "sources": [entry.as_dict() for entry in self.sources],
            "unregistered_sources": list(self.unregistered_sources),
        }


def build_source_health_signals(record: SourceRegistryRecord, health: HealthSnapshot) -> list[SourceHealthSignal]:
    signals: list[SourceHealthSignal] = []
    failure_rate = record.rolling_failure_rate_30d or 0.0
    promotion_rate = record.rolling_promotion_rate_30d or 0.0

    if not record.last_run_at:
        signals.append(SourceHealthSignal("never_run", "warn", "No run has been recorded for this source."))
    if not record.last_success_at:
        signals.append(
            SourceHealthSignal("no_success", "warn", "No successful run has been recorded for this source.")
        )
    if failure_rate >= HIGH_FAILURE_RATE:
        signals.append(
            SourceHealthSignal("high_failure_rate", "critical", f"Rolling failure rate is {100 * failure_rate:.1f}%.")
        )
    if 0 < promotion_rate < LOW_YIELD_RATE:
        signals.append(
            SourceHealthSignal("low_yield", "warn", f"Rolling promotion proxy is {100 * promotion_rate:.1f}%.")
        )
    if health.consecutive_failures >= CONSECUTIVE_FAILURE_LIMIT:
        signals.append(
            SourceHealthSignal(
                "consecutive_failures",
                "critical",
                f"Consecutive failed runs: {health.consecutive_failures}.",
            )
        )
    score = 100.0 if health.health_score is None else health.health_score
    if score < LOW_HEALTH_SCORE:
        signals.append(SourceHealthSignal("low_health_score", "warn", f"Health score is {round_half_up(score)} / 100."))
    if record.state in {"paused", "retired"} and record.approved_for_prod:
        signals.append(
            SourceHealthSignal(
                "inactive_source",
                "info",
                f"Source is {record.state} and not expected to run on schedule.",
            )
        )

    if not signals:
        signals.append(
            SourceHealthSignal("healthy", "info", "No immediate failure or yield risk signals detected.")
        )
    return signals


def build_source_health_entry(record: SourceRegistryRecord) -> SourceHealthEntry:
    health = HealthSnapshot.from_metadata(record.metadata_json)
    return SourceHealthEntry(
        source_key=record.source_key,
        display_name=record.display_name,
        state=record.state,
        approved_for_prod=record.approved_for_prod,
        cadence=record.cadence,
        last_run_at=record.last_run_at,
        last_success_at=record.last_success_at,
        rolling_promotion_rate_30d=record.rolling_promotion_rate_30d,
        rolling_failure_rate_30d=record.rolling_failure_rate_30d,
        health_score=health.health_score,
        consecutive_failures=health.consecutive_failures,
        last_run_status=health.last_run_status,
        last_error=health.last_error,
        signals=build_source_health_signals(record, health),
    )


async def source_health(
    source_key: str | None = None,
    *,
    repository=None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> SourceHealthReport:
    """Summarize registry health for one source, or every registered source.

    Without ``source_key`` the report also lists bundled source modules that
    have no registry row.
    """
    if repository is None:
        assert_ingest_config(settings or get_settings())
        repository = get_repository()

    records = await repository.list_source_registry_records([source_key] if source_key else None)
    if source_key and not records:
        raise RepositoryNotFoundError(f'No source registry row found for source key "{source_key}"')

    registered = {record.source_key for record in records}
    unregistered = [] if source_key else [s.key for s in list_sources() if s.key not in registered]
    if unregistered:
        logger.warning("Bundled sources missing from registry sources=%s", ",".join(unregistered))

    return SourceHealthReport(
        generated_at=to_iso(now or utc_now()),
        sources=[build_source_health_entry(record) for record in records],
        unregistered_sources=unregistered,
    )

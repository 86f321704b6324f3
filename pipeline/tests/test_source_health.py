import asyncio
from datetime import datetime, timezone

import pytest

from ingestion.jobs.source_health import build_source_health_entry, source_health
from ingestion.services.repository import RepositoryNotFoundError, SourceRegistryRecord
from ingestion.services.store import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(**overrides) -> SourceRegistryRecord:
    values = {
        "source_key": "rak",
        "display_name": "Random Acts of Kindness",
        "state": "active",
        "approved_for_prod": True,
        "last_run_at": "2026-02-28T12:00:00.000Z",
        "last_success_at": "2026-02-28T12:00:00.000Z",
        "rolling_promotion_rate_30d": 0.4,
        "rolling_failure_rate_30d": 0.1,
        "metadata_json": {"health": {"health_score": 82, "consecutive_failures": 0, "last_run_status": "success"}},
    }
    values.update(overrides)
    return SourceRegistryRecord(**values)


def _codes(entry) -> list[str]:
    return [signal.code for signal in entry.signals]


def test_healthy_source_reports_single_info_signal() -> None:
    entry = build_source_health_entry(_record())

    assert _codes(entry) == ["healthy"]
    assert entry.signals[0].severity == "info"
    assert entry.health_score == 82
    assert entry.last_run_status == "success"


def test_failing_source_collects_every_risk_signal() -> None:
    entry = build_source_health_entry(
        _record(
            last_success_at=None,
            rolling_failure_rate_30d=0.456,
            rolling_promotion_rate_30d=0.012,
            metadata_json={
                "health": {
                    "health_score": 23.6,
                    "consecutive_failures": 4,
                    "last_run_status": "failed",
                    "last_error": "discover:rak failed after 2 attempts",
                }
            },
        )
    )

    assert _codes(entry) == [
        "no_success",
        "high_failure_rate",
        "low_yield",
        "consecutive_failures",
        "low_health_score",
    ]
    messages = {signal.code: signal.message for signal in entry.signals}
    assert messages["high_failure_rate"] == "Rolling failure rate is 45.6%."
    assert messages["low_yield"] == "Rolling promotion proxy is 1.2%."
    assert messages["consecutive_failures"] == "Consecutive failed runs: 4."
    assert messages["low_health_score"] == "Health score is 24 / 100."
    assert entry.last_error == "discover:rak failed after 2 attempts"


def test_new_and_paused_sources() -> None:
    never_run = build_source_health_entry(
        _record(last_run_at=None, last_success_at=None, rolling_promotion_rate_30d=None, metadata_json={})
    )
    paused = build_source_health_entry(_record(state="paused"))

    assert _codes(never_run) == ["never_run", "no_success"]
    assert never_run.health_score is None
    assert _codes(paused) == ["inactive_source"]
    assert paused.signals[0].message == "Source is paused and not expected to run on schedule."


def test_source_health_lists_unregistered_bundled_sources() -> None:
    store = InMemoryStore(now=NOW)
    store.add_source(_record(source_key="ggia", display_name="Greater Good"))

    report = asyncio.run(source_health(repository=store, now=NOW))

    assert [entry.source_key for entry in report.sources] == ["ggia"]
    assert report.unregistered_sources == ["rak"]
    assert report.as_dict()["generated_at"] == "2026-03-01T12:00:00.000Z"


def test_source_health_for_single_key() -> None:
    store = InMemoryStore(now=NOW)
    store.add_source(_record())

    report = asyncio.run(source_health("rak", repository=store, now=NOW))

    assert [entry.source_key for entry in report.sources] == ["rak"]
    assert report.unregistered_sources == []

    with pytest.raises(RepositoryNotFoundError, match='No source registry row found for source key "ggia"'):
        asyncio.run(source_health("ggia", repository=store))

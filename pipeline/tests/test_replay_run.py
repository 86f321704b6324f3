import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from ingestion.core.config import Settings
from ingestion.core.metadata import HEALTH_KEY, to_iso
from ingestion.jobs.replay_run import (
    ReplayDeterminismTolerance,
    evaluate_replay_determinism,
    extract_run_config_version,
    jaccard_overlap,
    replay_run,
)
from ingestion.jobs.run_source import run_source
from ingestion.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    SourceRegistryRecord,
    StoredCandidate,
)
from ingestion.services.snapshots import SnapshotWriter
from ingestion.services.store import InMemoryStore

FIXTURES = Path(__file__).parent / "fixtures" / "rak"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BASE = "https://www.randomactsofkindness.org/kindness-ideas"


async def _no_sleep(_seconds: float) -> None:
    return None


def _candidate(key: str, status: str = "curated") -> StoredCandidate:
    return StoredCandidate(
        id=key,
        run_id="run-1",
        page_id=None,
        source_key="rak",
        source_url=f"https://example.org/{key}",
        title=f"Title {key}",
        candidate_key=key,
        status=status,
        description="description",
    )


def _run_kwargs() -> dict:
    pages = {
        BASE: (FIXTURES / "listing_page.html").read_text(encoding="utf-8"),
        f"{BASE}/101-write-a-thank-you-note": (FIXTURES / "detail_page_actionable.html").read_text(encoding="utf-8"),
        f"{BASE}/102-donate-books-to-library": (FIXTURES / "detail_page_noise.html").read_text(encoding="utf-8"),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        body = pages.get(str(request.url))
        return httpx.Response(200, text=body) if body is not None else httpx.Response(404)

    return {
        "http_client": httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        "snapshot_writer": SnapshotWriter(mode="disabled", local_dir="unused"),
        "sleep": _no_sleep,
    }


def _store() -> InMemoryStore:
    store = InMemoryStore(now=NOW)
    store.add_source(
        SourceRegistryRecord(
            source_key="rak",
            display_name="Random Acts of Kindness",
            approved_for_prod=True,
            robots_checked_at=to_iso(NOW - timedelta(days=1)),
            terms_checked_at=to_iso(NOW - timedelta(days=1)),
        )
    )
    return store


def _original_run(store: InMemoryStore) -> str:
    result = asyncio.run(run_source("rak", repository=store, settings=Settings(), now=NOW, **_run_kwargs()))
    return result.run_id


def test_extract_run_config_version_prefers_run_versions() -> None:
    assert (
        extract_run_config_version(
            {
                "run_versions": {"source_config_version": "42"},
                "strategy_selection": {"source_config_version": "41"},
                "source_config_version": "40",
            }
        )
        == "42"
    )
    assert extract_run_config_version({"strategy_selection": {"source_config_version": "9"}}) == "9"
    assert extract_run_config_version({"source_config_version": "7"}) == "7"
    assert extract_run_config_version({"run_versions": {"source_config_version": "  "}}) is None


def test_determinism_passes_within_tolerance() -> None:
    original = [_candidate("a"), _candidate("b"), _candidate("c", "normalized")]
    replay = [_candidate("a"), _candidate("b"), _candidate("d", "normalized")]

    result = evaluate_replay_determinism(
        original,
        replay,
        {
            "max_candidate_delta_ratio": 0,
            "max_curated_delta_ratio": 0,
            "max_quality_filtered_delta_ratio": 1,
            "min_candidate_delta_absolute": 0,
            "min_curated_delta_absolute": 0,
            "min_quality_filtered_delta_absolute": 1,
            "min_candidate_key_overlap_ratio": 0.5,
            "min_curated_key_overlap_ratio": 1,
        },
    )

    assert result.passed is True
    assert result.failure_reasons == []
    assert f"{result.candidate_key_overlap:.3f}" == "0.500"
    assert f"{result.curated_key_overlap:.3f}" == "1.000"
    assert result.as_dict()["overlap"] == {"candidate_keys": 0.5, "curated_candidate_keys": 1.0}


def test_determinism_fails_when_deltas_and_overlap_exceed_tolerance() -> None:
    original = [_candidate("a"), _candidate("b"), _candidate("c", "normalized"), _candidate("d", "normalized")]
    replay = [_candidate(key, "normalized") for key in ("x", "y", "z", "u", "v", "w")]

    result = evaluate_replay_determinism(
        original,
        replay,
        {
            "max_candidate_delta_ratio": 0.1,
            "max_curated_delta_ratio": 0.1,
            "max_quality_filtered_delta_ratio": 0.1,
            "min_candidate_delta_absolute": 0,
            "min_curated_delta_absolute": 0,
            "min_quality_filtered_delta_absolute": 0,
            "min_candidate_key_overlap_ratio": 0.9,
            "min_curated_key_overlap_ratio": 0.9,
        },
    )

    assert result.passed is False
    assert "candidate_count_delta_exceeded (2 > 1)" in result.failure_reasons
    assert "curated_count_delta_exceeded (2 > 1)" in result.failure_reasons
    assert "quality_filtered_count_delta_exceeded (4 > 1)" in result.failure_reasons
    assert "candidate_key_overlap_below_threshold (0.000 < 0.900)" in result.failure_reasons
    assert "curated_key_overlap_below_threshold (0.000 < 0.900)" in result.failure_reasons


def test_tolerance_defaults_and_clamping() -> None:
    tolerance = ReplayDeterminismTolerance.resolve(
        {
            "max_candidate_delta_ratio": 5,
            "min_candidate_delta_absolute": "not-a-number",
            "min_curated_delta_absolute": 50_000,
            "min_curated_key_overlap_ratio": -1,
        }
    )

    assert tolerance.max_candidate_delta_ratio == 1.0
    assert tolerance.min_candidate_delta_absolute == 2
    assert tolerance.min_curated_delta_absolute == 10_000
    assert tolerance.min_curated_key_overlap_ratio == 0.0
    assert tolerance.max_quality_filtered_delta_ratio == 0.45


def test_empty_runs_have_no_overlap_and_pass() -> None:
    assert jaccard_overlap(set(), set()) is None

    result = evaluate_replay_determinism([], [])

    assert result.passed is True
    assert result.candidate_delta.allowed == 2


def test_identical_candidate_sets_pass_with_zero_deltas() -> None:
    candidates = [_candidate("a"), _candidate("b"), _candidate("c", "normalized"), _candidate("d", "normalized")]

    result = evaluate_replay_determinism(candidates, [_candidate(c.candidate_key, c.status) for c in candidates])

    assert result.passed is True
    assert result.failure_reasons == []
    assert result.candidate_delta.delta == 0
    assert result.curated_delta.delta == 0
    assert result.quality_filtered_delta.delta == 0
    assert result.candidate_key_overlap == 1.0
    assert result.curated_key_overlap == 1.0


def test_fractional_absolute_threshold_is_reported_unrounded() -> None:
    baseline = [_candidate("a"), _candidate("b")]
    tolerance = {"max_candidate_delta_ratio": 0, "min_candidate_delta_absolute": 2.5}

    within = evaluate_replay_determinism(baseline, baseline + [_candidate("c"), _candidate("d")], tolerance)
    beyond = evaluate_replay_determinism(
        baseline, baseline + [_candidate("c"), _candidate("d"), _candidate("e")], tolerance
    )

    assert within.candidate_delta.allowed == 2.5
    assert "candidate_count_delta_exceeded (2 > 2.5)" not in within.failure_reasons
    assert "candidate_count_delta_exceeded (3 > 2.5)" in beyond.failure_reasons


def test_replay_run_reproduces_original_candidates() -> None:
    store = _store()
    original_run_id = _original_run(store)

    result = asyncio.run(replay_run(original_run_id, repository=store, settings=Settings(), now=NOW, **_run_kwargs()))

    assert result.determinism.passed is True
    assert result.determinism.candidate_key_overlap == 1.0
    assert result.default_config_version == "1"
    assert result.resolved_config_version == "1"
    assert result.config_resolved_from == "current_registry"
    assert result.override_applied is False
    assert result.warnings == []

    replay = store.runs[result.replay_run_id]
    assert replay.mode == "replay"
    assert replay.meta_json["replay"]["original_run_id"] == original_run_id
    assert replay.meta_json["replay"]["override_reason"] is None
    assert result.as_dict()["replay"]["mode"] == "replay"
    assert store.registry["rak"].metadata_json[HEALTH_KEY]["observed_runs"] == 1


def test_replay_run_resolves_historical_config_from_audit() -> None:
    store = _store()
    original_run_id = _original_run(store)
    for max_rps in (2.0, 3.0):
        asyncio.run(
            store.patch_source_config(
                "rak",
                expected_config_version=store.registry["rak"].config_version,
                patch={"max_rps": max_rps},
                reason="tune",
            )
        )

    result = asyncio.run(
        replay_run(original_run_id, config_version="2", repository=store, settings=Settings(), now=NOW, **_run_kwargs())
    )

    assert result.override_applied is True
    assert result.resolved_config_version == "2"
    assert result.config_resolved_from == "audit_event"
    assert result.replay.runtime_policy["max_rps"] == 2.0
    assert store.runs[result.replay_run_id].meta_json["replay"]["override_reason"] == "config_version_override"


def test_replay_run_falls_back_to_current_runtime_for_unknown_version() -> None:
    store = _store()
    original_run_id = _original_run(store)

    result = asyncio.run(
        replay_run(original_run_id, config_version="99", repository=store, settings=Settings(), now=NOW, **_run_kwargs())
    )

    assert result.config_resolved_from == "current_runtime"
    assert result.resolved_config_version == "1"
    assert result.warnings == [
        'Config version "99" was not found in source registry audit history for "rak". '
        "Falling back to current runtime config.",
        'Replay override requested config version "99" but resolved config version was "1".',
    ]


def test_replay_run_rejects_unknown_and_running_runs() -> None:
    store = _store()

    with pytest.raises(RepositoryNotFoundError, match="Run not found for replay: missing"):
        asyncio.run(replay_run("missing", repository=store, settings=Settings()))

    running = asyncio.run(store.create_run("rak", meta={}))
    with pytest.raises(RepositoryConflictError, match="is still in progress"):
        asyncio.run(replay_run(running.id, repository=store, settings=Settings()))

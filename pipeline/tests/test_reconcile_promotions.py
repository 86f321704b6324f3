import asyncio
import logging
from datetime import datetime, timezone

import pytest

from ingestion.core.config import Settings
from ingestion.core.metadata import parse_timestamp
from ingestion.jobs.reconcile_promotions import (
    SyncLogRepair,
    build_promotion_reconciliation_plan,
    reconcile_promotions,
)
from ingestion.services.repository import (
    CandidateUpsert,
    LinkedDraftRecord,
    StoredCandidate,
    SyncLogRecord,
)
from ingestion.services.store import InMemoryStore

NOW = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)


def _candidate(candidate_id: str, status: str) -> StoredCandidate:
    return StoredCandidate(
        id=candidate_id,
        run_id="run-1",
        page_id=None,
        source_key="rak",
        source_url=f"https://example.org/{candidate_id}",
        title=candidate_id,
        candidate_key=f"key-{candidate_id}",
        status=status,
    )


def _success(candidate_id: str, target_id: str | None) -> SyncLogRecord:
    return SyncLogRecord(
        id=f"log-{candidate_id}",
        candidate_id=candidate_id,
        target_system="app_draft",
        target_id=target_id,
        status="success",
    )


def test_plan_schedules_status_and_sync_repairs_for_desynced_promotions() -> None:
    plan = build_promotion_reconciliation_plan(
        [
            LinkedDraftRecord("draft-1", "candidate-1"),
            LinkedDraftRecord("draft-2", "candidate-2"),
            LinkedDraftRecord("draft-3", "candidate-3"),
        ],
        [_candidate("candidate-1", "curated"), _candidate("candidate-2", "pushed_to_studio")],
        [_success("candidate-2", "draft-2")],
    )

    assert plan.scanned_draft_count == 3
    assert plan.linked_candidate_count == 2
    assert plan.missing_candidate_count == 1
    assert plan.status_repair_candidate_ids == ["candidate-1"]
    assert plan.sync_log_repairs == [SyncLogRepair(candidate_id="candidate-1", draft_id="draft-1")]


def test_plan_dedupes_repeated_links_and_ignores_success_rows_without_target() -> None:
    plan = build_promotion_reconciliation_plan(
        [
            LinkedDraftRecord("draft-1", "candidate-1"),
            LinkedDraftRecord("draft-1", "candidate-1"),
            LinkedDraftRecord("draft-2", "candidate-2"),
        ],
        [_candidate("candidate-1", "pushed_to_studio"), _candidate("candidate-2", "pushed_to_studio")],
        [_success("candidate-1", "draft-1"), _success("candidate-2", None)],
    )

    assert plan.scanned_draft_count == 3
    assert plan.missing_candidate_count == 0
    assert plan.status_repair_candidate_ids == []
    assert plan.sync_log_repairs == [SyncLogRepair(candidate_id="candidate-2", draft_id="draft-2")]


def test_plan_is_empty_once_its_repairs_are_applied() -> None:
    drafts = [LinkedDraftRecord("draft-1", "candidate-1"), LinkedDraftRecord("draft-2", "candidate-1")]
    candidates = [_candidate("candidate-1", "curated")]
    first = build_promotion_reconciliation_plan(drafts, candidates, [])

    repaired_candidates = [_candidate("candidate-1", "pushed_to_studio")]
    repaired_logs = [_success(repair.candidate_id, repair.draft_id) for repair in first.sync_log_repairs]
    second = build_promotion_reconciliation_plan(drafts, repaired_candidates, repaired_logs)

    assert len(first.sync_log_repairs) == 2
    assert second.status_repair_candidate_ids == []
    assert second.sync_log_repairs == []


def _seeded_store() -> tuple[InMemoryStore, list[StoredCandidate]]:
    store = InMemoryStore(now=NOW)
    stored = asyncio.run(
        store.upsert_candidates(
            "run-1",
            None,
            [
                CandidateUpsert(
                    source_key="rak",
                    source_url=f"https://example.org/ideas/{index}",
                    title=f"Idea {index}",
                    candidate_key=f"key-{index}",
                    status="curated",
                )
                for index in range(3)
            ],
        )
    )
    for index, candidate in enumerate(stored):
        store.add_draft(f"draft-{index}", candidate.id)
    store.add_draft("draft-orphan", "candidate-missing")
    return store, stored


def test_reconcile_promotions_repairs_store_and_is_idempotent() -> None:
    store, stored = _seeded_store()
    settings = Settings(reconciliation_page_size=2, reconciliation_spike_threshold=25)

    result = asyncio.run(reconcile_promotions(repository=store, editorial=store, settings=settings, now=NOW))

    assert result["started_at"] == "2026-03-01T06:00:00.000Z"
    assert result["scanned_draft_count"] == 4
    assert result["missing_candidate_count"] == 1
    assert result["repaired_candidate_status_count"] == 3
    assert result["repaired_sync_log_count"] == 3
    assert result["total_repairs"] == 6
    assert result["spike_detected"] is False
    assert {store.candidates[candidate.id].status for candidate in stored} == {"pushed_to_studio"}
    assert {(log.target_system, log.status) for log in store.sync_logs} == {("app_draft", "success")}

    second = asyncio.run(reconcile_promotions(repository=store, editorial=store, settings=settings, now=NOW))

    assert second["total_repairs"] == 0
    assert len(store.sync_logs) == 3


def test_finished_at_comes_from_the_wall_clock() -> None:
    store, _ = _seeded_store()

    result = asyncio.run(
        reconcile_promotions(repository=store, editorial=store, settings=Settings(), now=NOW)
    )

    assert result["started_at"] == "2026-03-01T06:00:00.000Z"
    assert parse_timestamp(result["finished_at"]) > NOW


def test_reconcile_promotions_counts_row_failures_and_flags_spike(caplog: pytest.LogCaptureFixture) -> None:
    store, stored = _seeded_store()
    store.fail_status_updates.add(stored[0].id)
    store.fail_sync_writes.add(stored[1].id)
    settings = Settings(reconciliation_page_size=500, reconciliation_spike_threshold=3)

    with caplog.at_level(logging.INFO, logger="ingestion.jobs.reconcile_promotions"):
        result = asyncio.run(reconcile_promotions(repository=store, editorial=store, settings=settings, now=NOW))

    assert result["failed_status_repair_count"] == 1
    assert result["failed_sync_repair_count"] == 1
    assert result["total_repairs"] == 4
    assert result["spike_threshold"] == 3
    assert result["spike_detected"] is True
    assert store.candidates[stored[0].id].status == "curated"

    messages = [(record.levelno, record.getMessage()) for record in caplog.records]
    assert sum(1 for level, _ in messages if level == logging.ERROR) == 2
    assert any(
        level == logging.WARNING and message.startswith("Promotion reconciliation repair spike detected")
        for level, message in messages
    )

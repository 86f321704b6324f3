from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from opentelemetry import trace

from ingestion.core.config import Settings, assert_reconciliation_config, get_settings
from ingestion.core.metadata import to_iso, utc_now
from ingestion.services.repository import (
    LinkedDraftRecord,
    RepositoryError,
    StoredCandidate,
    SyncLogRecord,
    get_editorial_repository,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

APP_DRAFT_TARGET_SYSTEM = "app_draft"
PROMOTED_STATUS = "pushed_to_studio"

T = TypeVar("T")


@dataclass(slots=True)
class SyncLogRepair:
    candidate_id: str
    draft_id: str


@dataclass(slots=True)
class PromotionReconciliationPlan:
    scanned_draft_count: int = 0
    linked_candidate_count: int = 0
    missing_candidate_count: int = 0
    status_repair_candidate_ids: list[str] = field(default_factory=list)
    sync_log_repairs: list[SyncLogRepair] = field(default_factory=list)


def build_promotion_reconciliation_plan(
    drafts: list[LinkedDraftRecord],
    candidates: list[StoredCandidate],
    sync_logs: list[SyncLogRecord],
) -> PromotionReconciliationPlan:
    """Compare editorial draft links with ingestion state and list the repairs.

    ``sync_logs`` should hold the successful ``app_draft`` rows; rows without
    a target id never satisfy a draft link.
    """
    candidate_by_id = {candidate.id: candidate for candidate in candidates}
    success_targets: dict[str, set[str]] = {}
    for log in sync_logs:
        if log.status != "success" or not log.target_id:
            continue
        success_targets.setdefault(log.candidate_id, set()).add(log.target_id)

    plan = PromotionReconciliationPlan(scanned_draft_count=len(drafts))
    linked: set[str] = set()
    status_repairs: dict[str, None] = {}
    seen_sync_repairs: set[str] = set()

    for draft in drafts:
        candidate = candidate_by_id.get(draft.ingest_candidate_id)
        if candidate is None:
            plan.missing_candidate_count += 1
            continue

        linked.add(candidate.id)
        if candidate.status != PROMOTED_STATUS:
            status_repairs[candidate.id] = None

        if draft.draft_id not in success_targets.get(candidate.id, set()):
            key = f"{candidate.id}|{draft.draft_id}"
            if key not in seen_sync_repairs:
                seen_sync_repairs.add(key)
                plan.sync_log_repairs.append(SyncLogRepair(candidate_id=candidate.id, draft_id=draft.draft_id))

    plan.linked_candidate_count = len(linked)
    plan.status_repair_candidate_ids = list(status_repairs)
    return plan


def _chunks(values: list[T], size: int) -> list[list[T]]:
    return [values[index : index + size] for index in range(0, len(values), max(1, size))]


async def _list_all_linked_drafts(editorial, page_size: int) -> list[LinkedDraftRecord]:
    drafts: list[LinkedDraftRecord] = []
    offset = 0
    while True:
        page = await editorial.list_linked_drafts(limit=page_size, offset=offset)
        drafts.extend(draft for draft in page if draft.ingest_candidate_id)
        if len(page) < page_size:
            return drafts
        offset += page_size


async def reconcile_promotions(
    *,
    repository=None,
    editorial=None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    if repository is None or editorial is None:
        assert_reconciliation_config(settings)
        repository = repository or get_repository()
        editorial = editorial or get_editorial_repository()

    page_size = max(1, settings.reconciliation_page_size)
    spike_threshold = settings.reconciliation_spike_threshold
    started_at = to_iso(now or utc_now())

    with tracer.start_as_current_span("ingest.reconcile_promotions") as span:
        drafts = await _list_all_linked_drafts(editorial, page_size)
        candidate_ids = list(dict.fromkeys(draft.ingest_candidate_id for draft in drafts))

        candidates: list[StoredCandidate] = []
        sync_logs: list[SyncLogRecord] = []
        for batch in _chunks(candidate_ids, page_size):
            candidates.extend(await repository.get_candidates_by_ids(batch))
            sync_logs.extend(await repository.list_success_sync_logs(batch, APP_DRAFT_TARGET_SYSTEM))

        plan = build_promotion_reconciliation_plan(drafts, candidates, sync_logs)
        draft_by_candidate: dict[str, str] = {}
        for draft in drafts:
            draft_by_candidate.setdefault(draft.ingest_candidate_id, draft.draft_id)

        repaired_status = 0
        failed_status = 0
        for candidate_id in plan.status_repair_candidate_ids:
            try:
                await repository.update_candidate_status(candidate_id, PROMOTED_STATUS)
            except RepositoryError as exc:
                failed_status += 1
                logger.error(
                    "Promotion reconciliation failed to repair candidate status candidate_id=%s error=%s",
                    candidate_id,
                    exc,
                )
                continue
            repaired_status += 1
            logger.info(
                "Promotion reconciliation repaired candidate status candidate_id=%s draft_id=%s",
                candidate_id,
                draft_by_candidate.get(candidate_id),
            )

        repaired_sync = 0
        failed_sync = 0
        for repair in plan.sync_log_repairs:
            try:
                await repository.write_sync_log(
                    candidate_id=repair.candidate_id,
                    target_system=APP_DRAFT_TARGET_SYSTEM,
                    target_id=repair.draft_id,
                    status="success",
                )
            except RepositoryError as exc:
                failed_sync += 1
                logger.error(
                    "Promotion reconciliation failed to repair sync log candidate_id=%s draft_id=%s error=%s",
                    repair.candidate_id,
                    repair.draft_id,
                    exc,
                )
                continue
            repaired_sync += 1
            logger.info(
                "Promotion reconciliation repaired sync log candidate_id=%s draft_id=%s",
                repair.candidate_id,
                repair.draft_id,
            )

        total_repairs = repaired_status + repaired_sync
        spike_detected = total_repairs >= spike_threshold
        if spike_detected:
            logger.warning(
                "Promotion reconciliation repair spike detected total_repairs=%s spike_threshold=%s scanned=%s",
                total_repairs,
                spike_threshold,
                plan.scanned_draft_count,
            )
        span.set_attribute("ingest.total_repairs", total_repairs)

    result = {
        "started_at": started_at,
        "finished_at": to_iso(utc_now()),
        "scanned_draft_count": plan.scanned_draft_count,
        "linked_candidate_count": plan.linked_candidate_count,
        "missing_candidate_count": plan.missing_candidate_count,
        "planned_status_repairs": len(plan.status_repair_candidate_ids),
        "planned_sync_log_repairs": len(plan.sync_log_repairs),
        "repaired_candidate_status_count": repaired_status,
        "repaired_sync_log_count": repaired_sync,
        "failed_status_repair_count": failed_status,
        "failed_sync_repair_count": failed_sync,
        "total_repairs": total_repairs,
        "spike_threshold": spike_threshold,
        "spike_detected": spike_detected,
    }
    logger.info(
        "Promotion reconciliation completed scanned=%s repairs=%s failed_status=%s failed_sync=%s",
        plan.scanned_draft_count,
        total_repairs,
        failed_status,
        failed_sync,
    )
    return result

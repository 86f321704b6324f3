from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from ingestion.core.metadata import as_record, to_iso, utc_now
from ingestion.services.repository import (
    CANDIDATE_STATUSES,
    LIFECYCLE_STATES,
    PAGE_ERROR_TEXT_LIMIT,
    REVIEWED_CANDIDATE_STATUSES,
    RUN_MODES,
    RUN_STATUSES,
    RUNTIME_COLUMNS,
    SYNC_STATUSES,
    CandidateUpsert,
    IngestPageRecord,
    LinkedDraftRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SourceConfigSnapshot,
    SourceRegistryRecord,
    SourceRejectionRateTrend,
    SourceRunRecord,
    StoredCandidate,
    SyncLogRecord,
    build_rejection_trend,
    normalize_config_patch,
    registry_record_from_snapshot,
    registry_snapshot,
)


class InMemoryStore:
    """Process-local stand-in for the ingestion and editorial databases.

    Mirrors the async surface of ``PostgresRepository`` and
    ``EditorialRepository`` so jobs can run offline and in tests.
    """

    def __init__(self, *, now: datetime | None = None) -> None:
        self.now = now
        self.registry: dict[str, SourceRegistryRecord] = {}
        self.audit_events: list[dict[str, Any]] = []
        self.runs: dict[str, SourceRunRecord] = {}
        self.pages: dict[str, IngestPageRecord] = {}
        self.candidates: dict[str, StoredCandidate] = {}
        self.candidate_updated_at: dict[str, datetime] = {}
        self.sync_logs: list[SyncLogRecord] = []
        self.drafts: list[LinkedDraftRecord] = []
        self.onboarding_reports: list[dict[str, Any]] = []
        self.fail_status_updates: set[str] = set()
        self.fail_sync_writes: set[str] = set()

    async def close(self) -> None:
        return None

    def _now(self) -> datetime:
        return self.now or utc_now()

    def add_source(self, record: SourceRegistryRecord) -> SourceRegistryRecord:
        stored = replace(record, config_version=record.config_version or "1")
        self.registry[stored.source_key] = copy.deepcopy(stored)
        return stored

    def add_draft(self, draft_id: str, candidate_id: str) -> None:
        self.drafts.append(LinkedDraftRecord(draft_id=draft_id, ingest_candidate_id=candidate_id))

    # Source registry

    async def get_source_registry_record(self, source_key: str) -> SourceRegistryRecord | None:
        record = self.registry.get(source_key)
        return copy.deepcopy(record) if record else None

    async def list_source_registry_records(
        self,
        source_keys: list[str] | None = None,
    ) -> list[SourceRegistryRecord]:
        keys = sorted(self.registry) if source_keys is None else sorted(set(source_keys) & set(self.registry))
        return [copy.deepcopy(self.registry[key]) for key in keys]

    async def update_source_runtime(
        self,
        source_key: str,
        *,
        columns: dict[str, Any] | None = None,
        metadata_sections: dict[str, dict[str, Any]] | None = None,
    ) -> SourceRegistryRecord | None:
        column_patch = dict(columns or {})
        unknown = sorted(set(column_patch) - RUNTIME_COLUMNS)
        if unknown:
            raise RepositoryValidationError(f"unsupported runtime columns: {', '.join(unknown)}")

        record = self.registry.get(source_key)
        if record is None:
            return None

        metadata = as_record(copy.deepcopy(record.metadata_json))
        for key, section in (metadata_sections or {}).items():
            metadata[key] = copy.deepcopy(as_record(section))
        record.metadata_json = metadata
        for key, value in column_patch.items():
            setattr(record, key, value)
        return copy.deepcopy(record)

    async def patch_source_config(
        self,
        source_key: str,
        *,
        expected_config_version: str | None,
        patch: dict[str, Any],
        reason: str,
        actor: str = "pipeline",
    ) -> SourceRegistryRecord:
        normalized = normalize_config_patch(patch)
        if not normalized:
            raise RepositoryValidationError("config patch must not be empty")

        record = self._lock(source_key, expected_config_version)
        previous_version = record.config_version
        for key, value in normalized.items():
            setattr(record, key, value)
        self._bump(record)
        self._audit(
            record,
            action="config_patch",
            reason=reason,
            actor=actor,
            details={"patch": normalized, "previous_config_version": previous_version},
        )
        return copy.deepcopy(record)

    async def transition_source_state(
        self,
        source_key: str,
        *,
        expected_config_version: str | None,
        to_state: str,
        reason: str,
        actor: str = "pipeline",
    ) -> SourceRegistryRecord:
        if to_state not in LIFECYCLE_STATES:
            raise RepositoryValidationError(f"unknown lifecycle state: {to_state}")

        record = self._lock(source_key, expected_config_version)
        previous_state = record.state
        previous_version = record.config_version
        record.state = to_state
        self._bump(record)
        self._audit(
            record,
            action="state_transition",
            reason=reason,
            actor=actor,
            details={
                "from_state": previous_state,
                "to_state": to_state,
                "previous_config_version": previous_version,
            },
        )
        return copy.deepcopy(record)

    async def get_source_config_snapshot(
        self,
        source_key: str,
        config_version: str,
    ) -> SourceConfigSnapshot | None:
        current = self.registry.get(source_key)
        if current is not None and current.config_version == config_version:
            return SourceConfigSnapshot(runtime=copy.deepcopy(current), resolved_from="current_registry")

        for event in reversed(self.audit_events):
            if event["source_key"] == source_key and event["config_version"] == config_version:
                return SourceConfigSnapshot(
                    runtime=registry_record_from_snapshot(
                        source_key,
                        copy.deepcopy(event["snapshot_json"]),
                        config_version=config_version,
                    ),
                    resolved_from="audit_event",
                )
        return None

    async def ensure_source_proposal(
        self,
        *,
        source_key: str,
        display_name: str,
        source_domain: str,
        root_url: str,
        owner_team: str,
        strategy_order: list[str],
    ) -> bool:
        if source_key in self.registry:
            return False
        self.registry[source_key] = SourceRegistryRecord(
            source_key=source_key,
            display_name=display_name,
            state="proposed",
            approved_for_prod=False,
            legal_risk_level="medium",
            config_version="1",
            strategy_order=list(strategy_order),
            metadata_json={
                "onboarding": {
                    "source_domain": source_domain,
                    "root_url": root_url,
                    "owner_team": owner_team,
                }
            },
        )
        return True

    async def create_source_onboarding_report(self, **fields: Any) -> str:
        report_id = str(uuid4())
        self.onboarding_reports.append({"id": report_id, **copy.deepcopy(fields)})
        return report_id

    # Runs and pages

    async def create_run(
        self,
        source_key: str,
        *,
        mode: str = "live",
        meta: dict[str, Any] | None = None,
    ) -> SourceRunRecord:
        if mode not in RUN_MODES:
            raise RepositoryValidationError(f"unknown run mode: {mode}")
        run = SourceRunRecord(
            id=str(uuid4()),
            source_key=source_key,
            status="running",
            mode=mode,
            started_at=to_iso(self._now()),
            meta_json=copy.deepcopy(meta or {}),
        )
        self.runs[run.id] = run
        return copy.deepcopy(run)

    async def finish_run(self, run_id: str, status: str, meta: dict[str, Any]) -> SourceRunRecord:
        if status not in RUN_STATUSES - {"running"}:
            raise RepositoryValidationError(f"invalid final run status: {status}")
        run = self.runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("ingest run not found")
        if run.status != "running":
            raise RepositoryConflictError(f"ingest run {run_id} is already {run.status}")
        run.status = status
        run.finished_at = to_iso(self._now())
        run.meta_json = {**run.meta_json, **copy.deepcopy(meta)}
        return copy.deepcopy(run)

    async def get_run(self, run_id: str) -> SourceRunRecord | None:
        run = self.runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def insert_discovered_pages(
        self,
        run_id: str,
        source_key: str,
        urls: list[str],
    ) -> list[IngestPageRecord]:
        pages = []
        for url in urls:
            page = IngestPageRecord(id=str(uuid4()), run_id=run_id, source_key=source_key, url=url)
            self.pages[page.id] = page
            pages.append(copy.deepcopy(page))
        return pages

    async def mark_page_extracted(self, page_id: str) -> None:
        page = self.pages[page_id]
        page.status = "extracted"
        page.error_text = None

    async def mark_page_failed(self, page_id: str, error_text: str) -> None:
        page = self.pages[page_id]
        page.status = "failed"
        page.error_text = error_text[:PAGE_ERROR_TEXT_LIMIT]

    # Candidates

    async def upsert_candidates(
        self,
        run_id: str,
        page_id: str | None,
        candidates: list[CandidateUpsert],
    ) -> list[StoredCandidate]:
        by_key = {candidate.candidate_key: candidate for candidate in self.candidates.values()}
        stored: list[StoredCandidate] = []
        for upsert in candidates:
            if upsert.status not in CANDIDATE_STATUSES:
                raise RepositoryValidationError(f"unknown candidate status: {upsert.status}")
            existing = by_key.get(upsert.candidate_key)
            if existing is None:
                existing = StoredCandidate(
                    id=str(uuid4()),
                    run_id=run_id,
                    page_id=page_id,
                    source_key=upsert.source_key,
                    source_url=upsert.source_url,
                    title=upsert.title,
                    candidate_key=upsert.candidate_key,
                    status=upsert.status,
                    description=upsert.description,
                    reason_snippet=upsert.reason_snippet,
                    raw_excerpt=upsert.raw_excerpt,
                    meta_json=copy.deepcopy(upsert.meta_json),
                )
                self.candidates[existing.id] = existing
                self.candidate_updated_at[existing.id] = self._now()
                by_key[existing.candidate_key] = existing
            traits = {(trait.trait_type_slug, trait.trait_option_slug): trait for trait in existing.traits}
            for trait in upsert.traits:
                traits[(trait.trait_type_slug, trait.trait_option_slug)] = trait
            existing.traits = list(traits.values())
            if all(item.id != existing.id for item in stored):
                stored.append(existing)
        return [copy.deepcopy(candidate) for candidate in stored]

    async def list_candidates_by_run(self, run_id: str) -> list[StoredCandidate]:
        return [copy.deepcopy(c) for c in self.candidates.values() if c.run_id == run_id]

    async def get_candidates_by_ids(self, candidate_ids: list[str]) -> list[StoredCandidate]:
        return [copy.deepcopy(self.candidates[cid]) for cid in candidate_ids if cid in self.candidates]

    async def update_candidate_status(self, candidate_id: str, status: str) -> None:
        if status not in CANDIDATE_STATUSES:
            raise RepositoryValidationError(f"unknown candidate status: {status}")
        if candidate_id in self.fail_status_updates:
            raise RepositoryConflictError(f"candidate {candidate_id} is locked")
        candidate = self.candidates.get(candidate_id)
        if candidate is None:
            raise RepositoryNotFoundError(f"candidate {candidate_id} not found")
        candidate.status = status
        self.candidate_updated_at[candidate_id] = self._now()

    def set_candidate_review(self, candidate_id: str, status: str, *, updated_at: datetime) -> None:
        self.candidates[candidate_id].status = status
        self.candidate_updated_at[candidate_id] = updated_at

    # Sync log

    async def write_sync_log(
        self,
        *,
        candidate_id: str,
        target_system: str,
        status: str,
        target_id: str | None = None,
        error_text: str | None = None,
    ) -> None:
        if status not in SYNC_STATUSES:
            raise RepositoryValidationError(f"unknown sync status: {status}")
        if candidate_id in self.fail_sync_writes:
            raise RepositoryConflictError(f"sync log write rejected for {candidate_id}")
        self.sync_logs.append(
            SyncLogRecord(
                id=str(uuid4()),
                candidate_id=candidate_id,
                target_system=target_system,
                target_id=target_id,
                status=status,
                error_text=error_text,
                created_at=to_iso(self._now()),
            )
        )

    async def list_success_sync_logs(
        self,
        candidate_ids: list[str],
        target_system: str,
    ) -> list[SyncLogRecord]:
        wanted = set(candidate_ids)
        return [
            copy.deepcopy(log)
            for log in self.sync_logs
            if log.candidate_id in wanted and log.target_system == target_system and log.status == "success"
        ]

    async def list_source_rejection_rate_trends(
        self,
        source_keys: list[str],
        *,
        window_days: int,
        now: datetime | None = None,
    ) -> list[SourceRejectionRateTrend]:
        current = now or self._now()
        recent_start = current - timedelta(days=window_days)
        prior_start = recent_start - timedelta(days=window_days)
        counts: dict[str, list[int]] = {}
        for candidate in self.candidates.values():
            if candidate.source_key not in source_keys or candidate.status not in REVIEWED_CANDIDATE_STATUSES:
                continue
            updated_at = self.candidate_updated_at.get(candidate.id)
            if updated_at is None or updated_at <= prior_start or updated_at > current:
                continue
            bucket = counts.setdefault(candidate.source_key, [0, 0, 0, 0])
            offset = 0 if updated_at > recent_start else 2
            bucket[offset] += 1
            if candidate.status == "rejected":
                bucket[offset + 1] += 1
        return [
            build_rejection_trend(
                key,
                recent_reviewed=values[0],
                recent_rejected=values[1],
                prior_reviewed=values[2],
                prior_rejected=values[3],
            )
            for key, values in sorted(counts.items())
        ]

    # Editorial drafts

    async def list_linked_drafts(self, *, limit: int, offset: int) -> list[LinkedDraftRecord]:
        return [copy.deepcopy(draft) for draft in self.drafts[offset : offset + limit]]

    # Internals

    def _lock(self, source_key: str, expected_config_version: str | None) -> SourceRegistryRecord:
        record = self.registry.get(source_key)
        if record is None:
            raise RepositoryNotFoundError(f'source "{source_key}" is not registered')
        if record.config_version != expected_config_version:
            raise RepositoryConflictError(
                f'source "{source_key}" config_version is {record.config_version}, '
                f"expected {expected_config_version}"
            )
        return record

    @staticmethod
    def _bump(record: SourceRegistryRecord) -> None:
        record.config_version = str(int(record.config_version or "0") + 1)

    def _audit(
        self,
        record: SourceRegistryRecord,
        *,
        action: str,
        reason: str,
        actor: str,
        details: dict[str, Any],
    ) -> None:
        self.audit_events.append(
            {
                "source_key": record.source_key,
                "config_version": record.config_version,
                "action": action,
                "reason": reason,
                "actor": actor,
                "details_json": copy.deepcopy(details),
                "snapshot_json": registry_snapshot(record),
                "created_at": to_iso(self._now()),
            }
        )


from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from ingestion.core.config import get_settings
from ingestion.core.metadata import as_record, parse_timestamp, to_iso, utc_now
from ingestion.sources.base import TraitHint


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition or version rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


LIFECYCLE_STATES = {"proposed", "approved_for_trial", "active", "degraded", "paused", "retired"}
LEGAL_RISK_LEVELS = {"low", "medium", "high"}
RUN_STATUSES = {"running", "success", "partial", "failed"}
RUN_MODES = {"live", "replay"}
CANDIDATE_STATUSES = {"new", "normalized", "curated", "pushed_to_studio", "exported", "rejected"}
REVIEWED_CANDIDATE_STATUSES = ("pushed_to_studio", "exported", "rejected")
SYNC_STATUSES = {"pending", "success", "failed"}
ONBOARDING_APPROVAL_ACTIONS = {"pending_review", "approved_for_trial", "rejected"}
PAGE_ERROR_TEXT_LIMIT = 2000

CONFIG_PATCH_FIELDS = {
    "display_name",
    "approved_for_prod",
    "legal_risk_level",
    "robots_checked_at",
    "terms_checked_at",
    "cadence",
    "max_rps",
    "max_concurrency",
    "timeout_seconds",
    "include_url_patterns",
    "exclude_url_patterns",
    "strategy_order",
}
RUNTIME_COLUMNS = {
    "last_run_at",
    "last_success_at",
    "rolling_promotion_rate_30d",
    "rolling_failure_rate_30d",
}
_TIMESTAMP_FIELDS = {"robots_checked_at", "terms_checked_at", "last_run_at", "last_success_at"}
_TEXT_LIST_FIELDS = {"include_url_patterns", "exclude_url_patterns", "strategy_order"}


@dataclass(slots=True)
class SourceRegistryRecord:
    source_key: str
    display_name: str | None = None
    state: str = "active"
    approved_for_prod: bool = False
    legal_risk_level: str = "medium"
    robots_checked_at: str | None = None
    terms_checked_at: str | None = None
    config_version: str | None = None
    cadence: str | None = None
    max_rps: float | None = None
    max_concurrency: int | None = None
    timeout_seconds: int | None = None
    include_url_patterns: list[str] = field(default_factory=list)
    exclude_url_patterns: list[str] = field(default_factory=list)
    strategy_order: list[str] = field(default_factory=list)
    last_run_at: str | None = None
    last_success_at: str | None = None
    rolling_promotion_rate_30d: float | None = None
    rolling_failure_rate_30d: float | None = None
    metadata_json: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SourceConfigSnapshot:
    runtime: SourceRegistryRecord
    resolved_from: str


@dataclass(slots=True)
class SourceRunRecord:
    id: str
    source_key: str
    status: str
    mode: str = "live"
    started_at: str | None = None
    finished_at: str | None = None
    meta_json: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IngestPageRecord:
    id: str
    run_id: str
    source_key: str
    url: str
    status: str = "discovered"
    error_text: str | None = None


@dataclass(slots=True)
class CandidateUpsert:
    source_key: str
    source_url: str
    title: str
    candidate_key: str
    status: str
    description: str | None = None
    reason_snippet: str | None = None
    raw_excerpt: str | None = None
    meta_json: dict[str, Any] = field(default_factory=dict)
    traits: list[TraitHint] = field(default_factory=list)


@dataclass(slots=True)
class StoredCandidate:
    id: str
    run_id: str | None
    page_id: str | None
    source_key: str
    source_url: str
    title: str
    candidate_key: str
    status: str
    description: str | None = None
    reason_snippet: str | None = None
    raw_excerpt: str | None = None
    meta_json: dict[str, Any] = field(default_factory=dict)
    traits: list[TraitHint] = field(default_factory=list)


@dataclass(slots=True)
class SyncLogRecord:
    id: str
    candidate_id: str
    target_system: str
    target_id: str | None
    status: str
    error_text: str | None = None
    created_at: str | None = None


@dataclass(slots=True)
class LinkedDraftRecord:
    draft_id: str
    ingest_candidate_id: str


@dataclass(slots=True)
class SourceRejectionRateTrend:
    source_key: str
    recent_reviewed_count: int
    recent_rejected_count: int
    prior_reviewed_count: int
    prior_rejected_count: int
    recent_rejection_rate: float | None
    prior_rejection_rate: float | None


def build_rejection_trend(
    source_key: str,
    *,
    recent_reviewed: int,
    recent_rejected: int,
    prior_reviewed: int,
    prior_rejected: int,
) -> SourceRejectionRateTrend:
    return SourceRejectionRateTrend(
        source_key=source_key,
        recent_reviewed_count=recent_reviewed,
        recent_rejected_count=recent_rejected,
        prior_reviewed_count=prior_reviewed,
        prior_rejected_count=prior_rejected,
        recent_rejection_rate=recent_rejected / recent_reviewed if recent_reviewed > 0 else None,
        prior_rejection_rate=prior_rejected / prior_reviewed if prior_reviewed > 0 else None,
    )


def registry_snapshot(record: SourceRegistryRecord) -> dict[str, Any]:
    """Serializable copy of a registry row, stored on every audit event."""
    return asdict(record)


def registry_record_from_snapshot(
    source_key: str,
    snapshot: Any,
    *,
    config_version: str | None,
) -> SourceRegistryRecord:
    payload = as_record(snapshot)
    known = {name for name in SourceRegistryRecord.__dataclass_fields__}
    values = {key: value for key, value in payload.items() if key in known}
    values["source_key"] = source_key
    values["config_version"] = config_version
    values["metadata_json"] = as_record(values.get("metadata_json"))
    for list_field in _TEXT_LIST_FIELDS:
        raw = values.get(list_field)
        values[list_field] = [item for item in raw if isinstance(item, str)] if isinstance(raw, list) else []
    return SourceRegistryRecord(**values)


def normalize_config_patch(patch: dict[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(patch) - CONFIG_PATCH_FIELDS)
    if unknown:
        raise RepositoryValidationError(f"unsupported source config fields: {', '.join(unknown)}")

    normalized: dict[str, Any] = {}
    for key, value in patch.items():
        if key in _TEXT_LIST_FIELDS:
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise RepositoryValidationError(f"{key} must be a list of strings")
            normalized[key] = list(value)
        elif key in _TIMESTAMP_FIELDS:
            if value is None:
                normalized[key] = None
                continue
            parsed = parse_timestamp(value)
            if parsed is None:
                raise RepositoryValidationError(f"{key} must be an ISO timestamp")
            normalized[key] = to_iso(parsed)
        elif key == "legal_risk_level":
            if value not in LEGAL_RISK_LEVELS:
                raise RepositoryValidationError("legal_risk_level must be one of: low, medium, high")
            normalized[key] = value
        elif key == "approved_for_prod":
            normalized[key] = bool(value)
        elif key in {"max_rps"}:
            normalized[key] = None if value is None else float(value)
        elif key in {"max_concurrency", "timeout_seconds"}:
            normalized[key] = None if value is None else int(value)
        else:
            normalized[key] = value
    return normalized


def _iso(value: Any) -> str | None:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, str):
        return value
    return None


def _load_json(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    return as_record(value)


def _as_db_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return parse_timestamp(value)


_REGISTRY_COLUMNS = """
  source_key,
  display_name,
  state::text as state,
  approved_for_prod,
  legal_risk_level::text as legal_risk_level,
  robots_checked_at,
  terms_checked_at,
  config_version::text as config_version,
  cadence,
  max_rps,
  max_concurrency,
  timeout_seconds,
  include_url_patterns,
  exclude_url_patterns,
  strategy_order,
  last_run_at,
  last_success_at,
  rolling_promotion_rate_30d,
  rolling_failure_rate_30d,
  metadata_json
"""

_CANDIDATE_COLUMNS = """
  id::text as id,
  run_id::text as run_id,
  page_id::text as page_id,
  source_key,
  source_url,
  title,
  description,
  reason_snippet,
  raw_excerpt,
  candidate_key,
  status::text as status,
  meta_json
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Source registry

    async def get_source_registry_record(self, source_key: str) -> SourceRegistryRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_REGISTRY_COLUMNS} from ingest_source_registry where source_key = $1",
            source_key,
        )
        return self._registry_row(row) if row else None

    async def list_source_registry_records(
        self,
        source_keys: list[str] | None = None,
    ) -> list[SourceRegistryRecord]:
        pool = await self._get_pool()
        if source_keys is None:
            rows = await pool.fetch(
                f"select {_REGISTRY_COLUMNS} from ingest_source_registry order by source_key asc",
            )
        else:
            rows = await pool.fetch(
                f"""
                select {_REGISTRY_COLUMNS}
                from ingest_source_registry
                where source_key = any($1::text[])
                order by source_key asc
                """,
                list(source_keys),
            )
        return [self._registry_row(row) for row in rows]

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

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    f"select {_REGISTRY_COLUMNS} from ingest_source_registry where source_key = $1 for update",
                    source_key,
                )
                if not current:
                    return None

                metadata = _load_json(current["metadata_json"])
                for key, section in (metadata_sections or {}).items():
                    metadata[key] = as_record(section)

                row = await conn.fetchrow(
                    f"""
                    update ingest_source_registry
                    set
                      last_run_at = case when $2 then $3::timestamptz else last_run_at end,
                      last_success_at = case when $4 then $5::timestamptz else last_success_at end,
                      rolling_promotion_rate_30d = case when $6 then $7::double precision
                        else rolling_promotion_rate_30d end,
                      rolling_failure_rate_30d = case when $8 then $9::double precision
                        else rolling_failure_rate_30d end,
                      metadata_json = $10::jsonb,
                      updated_at = now()
                    where source_key = $1
                    returning {_REGISTRY_COLUMNS}
                    """,
                    source_key,
                    "last_run_at" in column_patch,
                    _as_db_timestamp(column_patch.get("last_run_at")),
                    "last_success_at" in column_patch,
                    _as_db_timestamp(column_patch.get("last_success_at")),
                    "rolling_promotion_rate_30d" in column_patch,
                    column_patch.get("rolling_promotion_rate_30d"),
                    "rolling_failure_rate_30d" in column_patch,
                    column_patch.get("rolling_failure_rate_30d"),
                    json.dumps(metadata),
                )
        return self._registry_row(row) if row else None

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

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock_registry_row(conn, source_key, expected_config_version)
                assignments = []
                values: list[Any] = [source_key]
                for key, value in normalized.items():
                    values.append(_as_db_timestamp(value) if key in _TIMESTAMP_FIELDS else value)
                    cast = "::legal_risk_level" if key == "legal_risk_level" else ""
                    assignments.append(f"{key} = ${len(values)}{cast}")

                row = await conn.fetchrow(
                    f"""
                    update ingest_source_registry
                    set
                      {", ".join(assignments)},
                      config_version = config_version + 1,
                      updated_at = now()
                    where source_key = $1
                    returning {_REGISTRY_COLUMNS}
                    """,
                    *values,
                )
                if not row:
                    raise RepositoryConflictError("failed to patch source config")

                updated = self._registry_row(row)
                await self._record_registry_audit(
                    conn=conn,
                    record=updated,
                    action="config_patch",
                    reason=reason,
                    actor=actor,
                    details={"patch": normalized, "previous_config_version": current.config_version},
                )
        return updated

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

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock_registry_row(conn, source_key, expected_config_version)
                row = await conn.fetchrow(
                    f"""
                    update ingest_source_registry
                    set
                      state = $2::source_lifecycle_state,
                      config_version = config_version + 1,
                      updated_at = now()
                    where source_key = $1
                    returning {_REGISTRY_COLUMNS}
                    """,
                    source_key,
                    to_state,
                )
                if not row:
                    raise RepositoryConflictError("failed to transition source state")

                updated = self._registry_row(row)
                await self._record_registry_audit(
                    conn=conn,
                    record=updated,
                    action="state_transition",
                    reason=reason,
                    actor=actor,
                    details={
                        "from_state": current.state,
                        "to_state": to_state,
                        "previous_config_version": current.config_version,
                    },
                )
        return updated

    async def get_source_config_snapshot(
        self,
        source_key: str,
        config_version: str,
    ) -> SourceConfigSnapshot | None:
        current = await self.get_source_registry_record(source_key)
        if current is not None and current.config_version == config_version:
            return SourceConfigSnapshot(runtime=current, resolved_from="current_registry")

        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select snapshot_json
            from ingest_source_registry_audit
            where source_key = $1
              and config_version::text = $2
            order by created_at desc
            limit 1
            """,
            source_key,
            config_version,
        )
        if not row:
            return None
        return SourceConfigSnapshot(
            runtime=registry_record_from_snapshot(
                source_key,
                _load_json(row["snapshot_json"]),
                config_version=config_version,
            ),
            resolved_from="audit_event",
        )

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into ingest_source_registry (
              source_key,
              display_name,
              state,
              approved_for_prod,
              legal_risk_level,
              strategy_order,
              config_version,
              metadata_json
            )
            values ($1, $2, 'proposed', false, 'medium', $3::text[], 1, $4::jsonb)
            on conflict (source_key) do nothing
            returning source_key
            """,
            source_key,
            display_name,
            list(strategy_order),
            json.dumps(
                {
                    "onboarding": {
                        "source_domain": source_domain,
                        "root_url": root_url,
                        "owner_team": owner_team,
                    }
                }
            ),
        )
        return row is not None

    async def create_source_onboarding_report(
        self,
        *,
        source_key: str,
        input_url: str,
        root_url: str,
        source_domain: str,
        probe_status: str,
        fetch_status: str,
        strategy_order: list[str],
        confidence: float,
        approval_action: str,
        decision_reason: str | None,
        actor: str | None,
        evidence_json: dict[str, Any],
    ) -> str:
        if approval_action not in ONBOARDING_APPROVAL_ACTIONS:
            raise RepositoryValidationError(f"unknown approval action: {approval_action}")

        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into ingest_source_onboarding_reports (
              source_key,
              input_url,
              root_url,
              source_domain,
              probe_status,
              fetch_status,
              recommended_strategy_order,
              recommendation_confidence,
              operator_approval_action,
              operator_decision_reason,
              actor,
              decided_at,
              evidence_json
            )
            values (
              $1, $2, $3, $4, $5, $6, $7::text[], $8, $9, $10, $11,
              case when $9 = 'pending_review' then null else now() end,
              $12::jsonb
            )
            returning id::text as id
            """,
            source_key,
            input_url,
            root_url,
            source_domain,
            probe_status,
            fetch_status,
            list(strategy_order),
            confidence,
            approval_action,
            decision_reason,
            actor,
            json.dumps(evidence_json),
        )
        if not row:
            raise RepositoryConflictError("failed to create onboarding report")
        return row["id"]

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

        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into ingest_runs (source_key, status, mode, meta_json)
            values ($1, 'running', $2, $3::jsonb)
            returning
              id::text as id,
              source_key,
              status::text as status,
              mode,
              started_at,
              finished_at,
              meta_json
            """,
            source_key,
            mode,
            json.dumps(meta or {}),
        )
        if not row:
            raise RepositoryConflictError("failed to create ingest run")
        return self._run_row(row)

    async def finish_run(self, run_id: str, status: str, meta: dict[str, Any]) -> SourceRunRecord:
        if status not in RUN_STATUSES - {"running"}:
            raise RepositoryValidationError(f"invalid final run status: {status}")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select status::text as status, meta_json from ingest_runs where id = $1::uuid for update",
                    run_id,
                )
                if not current:
                    raise RepositoryNotFoundError("ingest run not found")
                if current["status"] != "running":
                    raise RepositoryConflictError(f"ingest run {run_id} is already {current['status']}")

                merged_meta = {**_load_json(current["meta_json"]), **meta}
                row = await conn.fetchrow(
                    """
                    update ingest_runs
                    set
                      status = $2::ingest_run_status,
                      finished_at = now(),
                      meta_json = $3::jsonb
                    where id = $1::uuid
                    returning
                      id::text as id,
                      source_key,
                      status::text as status,
                      mode,
                      started_at,
                      finished_at,
                      meta_json
                    """,
                    run_id,
                    status,
                    json.dumps(merged_meta),
                )
        return self._run_row(row)

    async def get_run(self, run_id: str) -> SourceRunRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  source_key,
                  status::text as status,
                  mode,
                  started_at,
                  finished_at,
                  meta_json
                from ingest_runs
                where id = $1::uuid
                """,
                run_id,
            )
        except asyncpg.DataError as exc:
            raise RepositoryValidationError("run_id must be a UUID") from exc
        return self._run_row(row) if row else None

    async def insert_discovered_pages(
        self,
        run_id: str,
        source_key: str,
        urls: list[str],
    ) -> list[IngestPageRecord]:
        if not urls:
            return []

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            insert into ingest_pages (run_id, source_key, url, status)
            select $1::uuid, $2, url, 'discovered'
            from unnest($3::text[]) with ordinality as input(url, position)
            order by position
            returning id::text as id, run_id::text as run_id, source_key, url, status::text as status
            """,
            run_id,
            source_key,
            list(urls),
        )
        return [
            IngestPageRecord(
                id=row["id"],
                run_id=row["run_id"],
                source_key=row["source_key"],
                url=row["url"],
                status=row["status"],
            )
            for row in rows
        ]

    async def mark_page_extracted(self, page_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update ingest_pages
            set status = 'extracted', fetched_at = now(), error_text = null
            where id = $1::uuid
            """,
            page_id,
        )

    async def mark_page_failed(self, page_id: str, error_text: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update ingest_pages
            set status = 'failed', fetched_at = now(), error_text = $2
            where id = $1::uuid
            """,
            page_id,
            error_text[:PAGE_ERROR_TEXT_LIMIT],
        )

    # Candidates

    async def upsert_candidates(
        self,
        run_id: str,
        page_id: str | None,
        candidates: list[CandidateUpsert],
    ) -> list[StoredCandidate]:
        if not candidates:
            return []

        traits_by_key = {candidate.candidate_key: list(candidate.traits) for candidate in candidates}
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for candidate in candidates:
                    if candidate.status not in CANDIDATE_STATUSES:
                        raise RepositoryValidationError(f"unknown candidate status: {candidate.status}")
                    await conn.execute(
                        """
                        insert into ingest_candidates (
                          run_id,
                          page_id,
                          source_key,
                          source_url,
                          title,
                          description,
                          reason_snippet,
                          raw_excerpt,
                          candidate_key,
                          status,
                          meta_json
                        )
                        values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10::ingest_candidate_status, $11::jsonb)
                        on conflict (candidate_key) do nothing
                        """,
                        run_id,
                        page_id,
                        candidate.source_key,
                        candidate.source_url,
                        candidate.title,
                        candidate.description,
                        candidate.reason_snippet,
                        candidate.raw_excerpt,
                        candidate.candidate_key,
                        candidate.status,
                        json.dumps(candidate.meta_json),
                    )

                rows = await conn.fetch(
                    f"select {_CANDIDATE_COLUMNS} from ingest_candidates where candidate_key = any($1::text[])",
                    list(traits_by_key),
                )
                stored = [self._candidate_row(row) for row in rows]
                for candidate in stored:
                    traits = traits_by_key.get(candidate.candidate_key, [])
                    for trait in traits:
                        await conn.execute(
                            """
                            insert into ingest_candidate_traits (
                              candidate_id,
                              trait_type_slug,
                              trait_option_slug,
                              confidence,
                              source
                            )
                            values ($1::uuid, $2, $3, $4, $5)
                            on conflict (candidate_id, trait_type_slug, trait_option_slug)
                            do update set confidence = excluded.confidence, source = excluded.source
                            """,
                            candidate.id,
                            trait.trait_type_slug,
                            trait.trait_option_slug,
                            trait.confidence,
                            trait.source or "pipeline",
                        )
                    candidate.traits = traits
        return stored

    async def list_candidates_by_run(self, run_id: str) -> list[StoredCandidate]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_CANDIDATE_COLUMNS}
            from ingest_candidates
            where run_id = $1::uuid
            order by created_at asc
            """,
            run_id,
        )
        return [self._candidate_row(row) for row in rows]

    async def get_candidates_by_ids(self, candidate_ids: list[str]) -> list[StoredCandidate]:
        if not candidate_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_CANDIDATE_COLUMNS} from ingest_candidates where id = any($1::uuid[])",
            list(candidate_ids),
        )
        return [self._candidate_row(row) for row in rows]

    async def update_candidate_status(self, candidate_id: str, status: str) -> None:
        if status not in CANDIDATE_STATUSES:
            raise RepositoryValidationError(f"unknown candidate status: {status}")
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update ingest_candidates
            set status = $2::ingest_candidate_status, updated_at = now()
            where id = $1::uuid
            """,
            candidate_id,
            status,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(f"candidate {candidate_id} not found")

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
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into ingest_sync_log (candidate_id, target_system, target_id, status, error_text)
            values ($1::uuid, $2, $3, $4::ingest_sync_status, $5)
            """,
            candidate_id,
            target_system,
            target_id,
            status,
            error_text,
        )

    async def list_success_sync_logs(
        self,
        candidate_ids: list[str],
        target_system: str,
    ) -> list[SyncLogRecord]:
        if not candidate_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              candidate_id::text as candidate_id,
              target_system,
              target_id,
              status::text as status,
              error_text,
              created_at
            from ingest_sync_log
            where candidate_id = any($1::uuid[])
              and target_system = $2
              and status = 'success'
            """,
            list(candidate_ids),
            target_system,
        )
        return [
            SyncLogRecord(
                id=row["id"],
                candidate_id=row["candidate_id"],
                target_system=row["target_system"],
                target_id=row["target_id"],
                status=row["status"],
                error_text=row["error_text"],
                created_at=_iso(row["created_at"]),
            )
            for row in rows
        ]

    async def list_source_rejection_rate_trends(
        self,
        source_keys: list[str],
        *,
        window_days: int,
        now: datetime | None = None,
    ) -> list[SourceRejectionRateTrend]:
        if not source_keys:
            return []

        current = now or utc_now()
        recent_start = current - timedelta(days=window_days)
        prior_start = recent_start - timedelta(days=window_days)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              source_key,
              count(*) filter (where updated_at > $2) as recent_reviewed,
              count(*) filter (where updated_at > $2 and status = 'rejected') as recent_rejected,
              count(*) filter (where updated_at <= $2) as prior_reviewed,
              count(*) filter (where updated_at <= $2 and status = 'rejected') as prior_rejected
            from ingest_candidates
            where source_key = any($1::text[])
              and status::text = any($5::text[])
              and updated_at > $3
              and updated_at <= $4
            group by source_key
            """,
            list(source_keys),
            recent_start,
            prior_start,
            current,
            list(REVIEWED_CANDIDATE_STATUSES),
        )
        return [
            build_rejection_trend(
                row["source_key"],
                recent_reviewed=int(row["recent_reviewed"]),
                recent_rejected=int(row["recent_rejected"]),
                prior_reviewed=int(row["prior_reviewed"]),
                prior_rejected=int(row["prior_rejected"]),
            )
            for row in rows
        ]

    # Internals

    async def _lock_registry_row(
        self,
        conn: asyncpg.Connection,
        source_key: str,
        expected_config_version: str | None,
    ) -> SourceRegistryRecord:
        row = await conn.fetchrow(
            f"select {_REGISTRY_COLUMNS} from ingest_source_registry where source_key = $1 for update",
            source_key,
        )
        if not row:
            raise RepositoryNotFoundError(f'source "{source_key}" is not registered')
        current = self._registry_row(row)
        if current.config_version != expected_config_version:
            raise RepositoryConflictError(
                f'source "{source_key}" config_version is {current.config_version}, '
                f"expected {expected_config_version}"
            )
        return current

    async def _record_registry_audit(
        self,
        *,
        conn: asyncpg.Connection,
        record: SourceRegistryRecord,
        action: str,
        reason: str,
        actor: str,
        details: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into ingest_source_registry_audit (
              source_key,
              config_version,
              action,
              reason,
              actor,
              details_json,
              snapshot_json
            )
            values ($1, $2::bigint, $3, $4, $5, $6::jsonb, $7::jsonb)
            """,
            record.source_key,
            int(record.config_version or 0),
            action,
            reason,
            actor,
            json.dumps(details),
            json.dumps(registry_snapshot(record)),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("INGEST_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _registry_row(row: asyncpg.Record) -> SourceRegistryRecord:
        return SourceRegistryRecord(
            source_key=row["source_key"],
            display_name=row["display_name"],
            state=row["state"],
            approved_for_prod=bool(row["approved_for_prod"]),
            legal_risk_level=row["legal_risk_level"],
            robots_checked_at=_iso(row["robots_checked_at"]),
            terms_checked_at=_iso(row["terms_checked_at"]),
            config_version=row["config_version"],
            cadence=row["cadence"],
            max_rps=float(row["max_rps"]) if row["max_rps"] is not None else None,
            max_concurrency=row["max_concurrency"],
            timeout_seconds=row["timeout_seconds"],
            include_url_patterns=list(row["include_url_patterns"] or []),
            exclude_url_patterns=list(row["exclude_url_patterns"] or []),
            strategy_order=list(row["strategy_order"] or []),
            last_run_at=_iso(row["last_run_at"]),
            last_success_at=_iso(row["last_success_at"]),
            rolling_promotion_rate_30d=row["rolling_promotion_rate_30d"],
            rolling_failure_rate_30d=row["rolling_failure_rate_30d"],
            metadata_json=_load_json(row["metadata_json"]),
        )

    @staticmethod
    def _run_row(row: asyncpg.Record) -> SourceRunRecord:
        return SourceRunRecord(
            id=row["id"],
            source_key=row["source_key"],
            status=row["status"],
            mode=row["mode"],
            started_at=_iso(row["started_at"]),
            finished_at=_iso(row["finished_at"]),
            meta_json=_load_json(row["meta_json"]),
        )

    @staticmethod
    def _candidate_row(row: asyncpg.Record) -> StoredCandidate:
        return StoredCandidate(
            id=row["id"],
            run_id=row["run_id"],
            page_id=row["page_id"],
            source_key=row["source_key"],
            source_url=row["source_url"],
            title=row["title"],
            description=row["description"],
            reason_snippet=row["reason_snippet"],
            raw_excerpt=row["raw_excerpt"],
            candidate_key=row["candidate_key"],
            status=row["status"],
            meta_json=_load_json(row["meta_json"]),
        )


class EditorialRepository:
    """Read-only view of the editorial app database used by reconciliation."""

    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def list_linked_drafts(self, *, limit: int, offset: int) -> list[LinkedDraftRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as draft_id, ingest_candidate_id::text as ingest_candidate_id
            from idea_drafts
            where ingest_candidate_id is not null
            order by created_at asc, id asc
            limit $1 offset $2
            """,
            limit,
            offset,
        )
        return [
            LinkedDraftRecord(draft_id=row["draft_id"], ingest_candidate_id=row["ingest_candidate_id"])
            for row in rows
        ]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("INGEST_APP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("app database unavailable") from exc


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


@lru_cache
def get_editorial_repository() -> EditorialRepository:
    settings = get_settings()
    return EditorialRepository(
        database_url=settings.app_database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )

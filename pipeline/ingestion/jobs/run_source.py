"""One ingestion run for one source.

Gates (state, compliance, cadence) run before anything is fetched. Discovery
output is filtered and ranked by strategy; pages are extracted by a bounded
worker pool that shares one rate limiter. Registry bookkeeping (health,
strategy performance, lifecycle) happens after the run is finalized and never
changes its outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from opentelemetry import trace

from ingestion.core.config import Settings, assert_ingest_config, get_settings
from ingestion.core.metadata import (
    COMPLIANCE_KEY,
    HEALTH_KEY,
    STRATEGY_PERFORMANCE_KEY,
    round_half_up,
    to_iso,
    utc_now,
)
from ingestion.core.normalize import build_candidate_key, normalize_optional_text
from ingestion.core.quality import QUALITY_RULE_VERSION, evaluate_candidate_quality
from ingestion.jobs.lifecycle_automation import (
    LifecycleAutomationInput,
    apply_lifecycle_decision,
    evaluate_lifecycle_automation,
)
from ingestion.jobs.runtime_controls import (
    CadenceEvaluation,
    CompliancePreRunResult,
    OperationRateLimiter,
    Sleep,
    SourceHealthInput,
    SourceRuntimePolicy,
    compute_source_health_patch,
    evaluate_cadence,
    evaluate_source_compliance_pre_run,
    filter_urls_by_patterns,
    merge_compliance_alert_metadata,
    resolve_source_runtime_policy,
    run_with_retry,
)
from ingestion.jobs.strategy_selection import (
    STRATEGY_SELECTION_VERSION,
    StrategyExecutionAttempt,
    StrategySelectionPlan,
    filter_pages_for_strategy,
    merge_strategy_performance_metadata,
    select_strategy_plan,
)
from ingestion.services.repository import (
    CandidateUpsert,
    IngestPageRecord,
    RepositoryConflictError,
    RepositoryError,
    SourceRegistryRecord,
    StoredCandidate,
    get_repository,
)
from ingestion.services.snapshots import SnapshotWriter
from ingestion.sources.base import DiscoveredPage, ExtractedCandidate, SourceModule, SourceModuleContext
from ingestion.sources.contract import (
    assert_discovered_pages_contract,
    assert_extracted_candidates_contract,
    assert_health_check_result_contract,
    assert_source_module_contract,
)
from ingestion.sources.registry import get_source_by_key

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

COMPLIANCE_ACTOR = "compliance_gate"
INACTIVE_STATES = {"paused", "retired"}


class SourceStateError(Exception):
    """Raised when a paused or retired source is run without ``force``."""


class SourceHealthCheckError(Exception):
    """Raised when a source module reports itself as failed before discovery."""


class SourceRunFailedError(Exception):
    """Raised after a started run has been finished as failed.

    ``result`` describes the failed run (``run_id`` and page counts); the
    original error is chained as ``__cause__``.
    """

    def __init__(self, result: RunSourceResult, cause: BaseException) -> None:
        super().__init__(str(cause) or type(cause).__name__)
        self.result = result

    @property
    def run_id(self) -> str:
        return self.result.run_id


class ComplianceBlockedError(Exception):
    """Raised when the compliance pre-run gate blocks a run.

    ``result`` carries the evidence bundle that was persisted on the source.
    """

    def __init__(self, result: CompliancePreRunResult) -> None:
        super().__init__(result.message or f'Compliance pre-run check failed for "{result.source_key}"')
        self.result = result

    @property
    def reason_codes(self) -> list[str]:
        return list(self.result.reason_codes)

    @property
    def evidence_bundle(self) -> dict[str, Any]:
        return self.result.evidence_bundle


@dataclass(slots=True)
class ReplayContext:
    original_run_id: str
    requested_config_version: str | None
    default_config_version: str | None
    resolved_config_version: str | None
    config_resolved_from: str
    override_applied: bool

    def as_meta(self) -> dict[str, Any]:
        return {
            "original_run_id": self.original_run_id,
            "requested_config_version": self.requested_config_version,
            "default_config_version": self.default_config_version,
            "resolved_config_version": self.resolved_config_version,
            "config_resolved_from": self.config_resolved_from,
            "override_applied": self.override_applied,
            "override_reason": "config_version_override" if self.override_applied else None,
        }


@dataclass(slots=True)
class RunSourceResult:
    run_id: str
    source_key: str
    mode: str
    status: str
    discovered_pages: int = 0
    extracted_pages: int = 0
    failed_pages: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    snapshot_location: str | None = None
    skipped_by_cadence: bool = False
    cadence_next_run_at: str | None = None
    source_config_version: str | None = None
    selected_strategy: str | None = None
    runtime_policy: dict[str, Any] = field(default_factory=dict)
    candidates: list[StoredCandidate] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source_key": self.source_key,
            "mode": self.mode,
            "status": self.status,
            "discovered_pages": self.discovered_pages,
            "extracted_pages": self.extracted_pages,
            "failed_pages": self.failed_pages,
            "candidate_count": self.candidate_count,
            "curated_candidate_count": self.curated_candidate_count,
            "quality_filtered_candidate_count": self.quality_filtered_candidate_count,
            "snapshot_location": self.snapshot_location,
            "skipped_by_cadence": self.skipped_by_cadence,
            "cadence_next_run_at": self.cadence_next_run_at,
            "source_config_version": self.source_config_version,
            "selected_strategy": self.selected_strategy,
            "runtime_policy": dict(self.runtime_policy),
        }


@dataclass(slots=True)
class _RunState:
    status: str = "failed"
    error: str | None = None
    source_health_status: str | None = None
    discovered_pages: int = 0
    extracted_pages: int = 0
    failed_pages: int = 0
    dropped_by_include: int = 0
    dropped_by_exclude: int = 0
    invalid_url_pattern_count: int = 0
    skipped_by_cadence: bool = False
    snapshot_location: str | None = None
    plan: StrategySelectionPlan | None = None
    attempts: list[StrategyExecutionAttempt] = field(default_factory=list)
    candidates: dict[str, StoredCandidate] = field(default_factory=dict)

    def stored_candidates(self) -> list[StoredCandidate]:
        return list(self.candidates.values())

    def count_status(self, status: str) -> int:
        return sum(1 for candidate in self.candidates.values() if candidate.status == status)


@dataclass(slots=True)
class _BatchOutcome:
    pages_succeeded: int = 0
    pages_failed: int = 0
    candidates: dict[str, StoredCandidate] = field(default_factory=dict)


def build_candidate_upsert(candidate: ExtractedCandidate) -> CandidateUpsert:
    """Normalize an extracted candidate and freeze its quality verdict into ``meta_json``."""
    title = candidate.title.strip()
    description = normalize_optional_text(candidate.description)
    quality = evaluate_candidate_quality(title, description)
    return CandidateUpsert(
        source_key=candidate.source_key,
        source_url=candidate.source_url,
        title=title,
        candidate_key=build_candidate_key(
            source_key=candidate.source_key,
            source_url=candidate.source_url,
            title=candidate.title,
            description=candidate.description,
        ),
        status="curated" if quality.passed else "normalized",
        description=description,
        reason_snippet=normalize_optional_text(candidate.reason_snippet),
        raw_excerpt=normalize_optional_text(candidate.raw_excerpt),
        meta_json={**candidate.meta, "quality": quality.as_meta()},
        traits=list(candidate.traits),
    )


def _attempt_status(outcome: _BatchOutcome) -> str:
    if outcome.pages_succeeded == 0:
        return "failed"
    if not outcome.candidates:
        return "no_candidates"
    if outcome.pages_failed > 0:
        return "partial"
    return "success"


async def _extract_page(
    page: IngestPageRecord,
    *,
    source: SourceModule,
    ctx: SourceModuleContext,
    policy: SourceRuntimePolicy,
    repository,
    sleep: Sleep,
) -> list[StoredCandidate]:
    extraction = await run_with_retry(
        lambda: source.extract(ctx, DiscoveredPage(source_key=source.key, url=page.url)),
        operation_label=f"extract:{source.key}:{page.id}",
        timeout_ms=policy.timeout_seconds * 1000,
        max_attempts=policy.retry_max_attempts,
        backoff_ms=policy.retry_backoff_ms,
        backoff_multiplier=policy.retry_backoff_multiplier,
        sleep=sleep,
    )
    assert_extracted_candidates_contract(source, extraction.value)

    stored = await repository.upsert_candidates(
        page.run_id,
        page.id,
        [build_candidate_upsert(candidate) for candidate in extraction.value],
    )
    await repository.mark_page_extracted(page.id)
    return stored


async def _extract_pages(
    pages: list[IngestPageRecord],
    *,
    source: SourceModule,
    ctx: SourceModuleContext,
    policy: SourceRuntimePolicy,
    limiter: OperationRateLimiter,
    repository,
    sleep: Sleep,
) -> _BatchOutcome:
    queue = deque(pages)
    outcome = _BatchOutcome()

    async def worker() -> None:
        while queue:
            page = queue.popleft()
            await limiter.wait_turn()
            try:
                stored = await _extract_page(
                    page,
                    source=source,
                    ctx=ctx,
                    policy=policy,
                    repository=repository,
                    sleep=sleep,
                )
            except Exception as exc:
                outcome.pages_failed += 1
                logger.warning("Page extraction failed page_id=%s url=%s error=%s", page.id, page.url, exc)
                await repository.mark_page_failed(page.id, str(exc))
                continue

            outcome.pages_succeeded += 1
            for candidate in stored:
                outcome.candidates[candidate.id] = candidate

    worker_count = min(policy.max_concurrency, max(1, len(pages)))
    await asyncio.gather(*(worker() for _ in range(worker_count)))
    return outcome


async def _execute_strategies(
    plan: StrategySelectionPlan,
    pages: list[IngestPageRecord],
    state: _RunState,
    **extract_kwargs: Any,
) -> None:
    """Try strategies in ranked order until one yields candidates.

    Each page is extracted at most once per run; a strategy only sees the
    pages that earlier strategies did not claim.
    """
    remaining = list(pages)
    fallback_reason: str | None = None

    for strategy in plan.ranked_order:
        started_at = to_iso(utc_now())
        started_clock = time.monotonic()
        selected = filter_pages_for_strategy(remaining, strategy)
        if not selected:
            state.attempts.append(
                StrategyExecutionAttempt(
                    strategy=strategy,
                    status="no_pages",
                    started_at=started_at,
                    finished_at=to_iso(utc_now()),
                    fallback_reason=fallback_reason,
                )
            )
            fallback_reason = f"{strategy}:no_pages"
            continue

        claimed = {page.id for page in selected}
        remaining = [page for page in remaining if page.id not in claimed]
        outcome = await _extract_pages(selected, **extract_kwargs)

        state.extracted_pages += outcome.pages_succeeded
        state.failed_pages += outcome.pages_failed
        state.candidates.update(outcome.candidates)

        status = _attempt_status(outcome)
        candidates = list(outcome.candidates.values())
        state.attempts.append(
            StrategyExecutionAttempt(
                strategy=strategy,
                status=status,
                started_at=started_at,
                finished_at=to_iso(utc_now()),
                pages_considered=len(selected),
                pages_succeeded=outcome.pages_succeeded,
                pages_failed=outcome.pages_failed,
                candidate_count=len(candidates),
                curated_candidate_count=sum(1 for c in candidates if c.status == "curated"),
                quality_filtered_candidate_count=sum(1 for c in candidates if c.status == "normalized"),
                duration_ms=round_half_up((time.monotonic() - started_clock) * 1000),
                fallback_reason=fallback_reason,
            )
        )
        if status in {"success", "partial"} or not remaining:
            return
        fallback_reason = f"{strategy}:{status}"
        logger.info(
            "Strategy produced no usable output; falling back source_key=%s strategy=%s status=%s",
            plan.source_key,
            strategy,
            status,
        )


async def _run_compliance_gate(
    repository,
    source_key: str,
    record: SourceRegistryRecord | None,
    now: datetime,
    settings: Settings,
    *,
    force: bool,
    apply_transition: bool,
) -> tuple[SourceRegistryRecord | None, CompliancePreRunResult]:
    result = evaluate_source_compliance_pre_run(
        source_key,
        record,
        now,
        robots_ttl_days=settings.compliance_robots_ttl_days,
        terms_ttl_days=settings.compliance_terms_ttl_days,
    )

    if record is not None:
        merged = merge_compliance_alert_metadata(
            record.metadata_json,
            result.evidence_bundle,
            now,
            failed=not result.is_compliant,
        )
        try:
            updated = await repository.update_source_runtime(
                source_key,
                metadata_sections={COMPLIANCE_KEY: merged[COMPLIANCE_KEY]},
            )
        except RepositoryError as exc:
            logger.warning("Failed to persist compliance pre-run evidence source_key=%s error=%s", source_key, exc)
        else:
            record = updated or record

    if result.is_compliant:
        return record, result

    if force:
        logger.warning(
            "Compliance pre-run check failed; continuing because run was forced source_key=%s reason_codes=%s",
            source_key,
            ",".join(result.reason_codes),
        )
        return record, result

    if apply_transition and record is not None and result.transition_state:
        try:
            record = await repository.transition_source_state(
                source_key,
                expected_config_version=record.config_version,
                to_state=result.transition_state,
                reason=result.message or "compliance pre-run check failed",
                actor=COMPLIANCE_ACTOR,
            )
        except RepositoryConflictError as exc:
            logger.warning(
                "Compliance auto-transition skipped on config conflict source_key=%s to_state=%s error=%s",
                source_key,
                result.transition_state,
                exc,
            )

    log = logger.error if result.severity == "critical" else logger.warning
    log(
        "Compliance pre-run check blocked run source_key=%s severity=%s reason_codes=%s transition_state=%s",
        source_key,
        result.severity,
        ",".join(result.reason_codes),
        result.transition_state,
    )
    raise ComplianceBlockedError(result)


def _finish_meta(
    state: _RunState,
    policy: SourceRuntimePolicy,
    cadence: CadenceEvaluation,
) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "discovered_pages": state.discovered_pages,
        "extracted_pages": state.extracted_pages,
        "failed_pages": state.failed_pages,
        "candidates": len(state.candidates),
        "curated_candidates": state.count_status("curated"),
        "quality_filtered_candidates": state.count_status("normalized"),
        "dropped_by_include": state.dropped_by_include,
        "dropped_by_exclude": state.dropped_by_exclude,
        "invalid_url_pattern_count": state.invalid_url_pattern_count,
        "source_health_status": state.source_health_status,
        "skipped_by_cadence": state.skipped_by_cadence,
        "cadence": cadence.as_meta(),
        "runtime_policy": policy.as_meta(),
        "strategy_attempts": [attempt.as_meta() for attempt in state.attempts],
        "candidate_ids": list(state.candidates),
        "snapshot_location": state.snapshot_location,
    }
    if state.error is not None:
        meta["error"] = state.error
    return meta


async def _record_run_outcome(
    repository,
    source_key: str,
    record: SourceRegistryRecord,
    state: _RunState,
    policy: SourceRuntimePolicy,
    now: datetime,
) -> None:
    try:
        patch = compute_source_health_patch(
            SourceHealthInput(
                now=now,
                status=state.status,
                discovered_pages=state.discovered_pages,
                extracted_pages=state.extracted_pages,
                failed_pages=state.failed_pages,
                candidate_count=len(state.candidates),
                curated_candidate_count=state.count_status("curated"),
                quality_filtered_candidate_count=state.count_status("normalized"),
                skipped_by_cadence=state.skipped_by_cadence,
                policy=policy,
                prior=record,
                run_error=state.error,
            )
        )
        updated = await repository.update_source_runtime(
            source_key,
            columns=patch.columns(),
            metadata_sections={HEALTH_KEY: patch.metadata_json[HEALTH_KEY]},
        )
        if updated is None:
            logger.warning("Source health patch skipped; registry row not found source_key=%s", source_key)
            return
        record = updated
    except Exception as exc:
        logger.warning("Failed to update source runtime health metrics source_key=%s error=%s", source_key, exc)

    if state.attempts:
        try:
            merged = merge_strategy_performance_metadata(record.metadata_json, state.attempts)
            updated = await repository.update_source_runtime(
                source_key,
                metadata_sections={STRATEGY_PERFORMANCE_KEY: merged[STRATEGY_PERFORMANCE_KEY]},
            )
            record = updated or record
        except Exception as exc:
            logger.warning("Failed to merge strategy performance source_key=%s error=%s", source_key, exc)

    try:
        decision = evaluate_lifecycle_automation(
            LifecycleAutomationInput.from_record(
                record,
                final_run_status=state.status,
                skipped_by_cadence=state.skipped_by_cadence,
                now=now,
            )
        )
        if decision.evidence_bundle is not None:
            await apply_lifecycle_decision(
                repository,
                record,
                decision,
                final_run_status=state.status,
                now=now,
            )
    except Exception as exc:
        logger.warning("Failed to apply lifecycle automation source_key=%s error=%s", source_key, exc)


def _build_result(
    run_id: str,
    source_key: str,
    mode: str,
    state: _RunState,
    policy: SourceRuntimePolicy,
    cadence: CadenceEvaluation,
    config_version: str | None,
) -> RunSourceResult:
    return RunSourceResult(
        run_id=run_id,
        source_key=source_key,
        mode=mode,
        status=state.status,
        discovered_pages=state.discovered_pages,
        extracted_pages=state.extracted_pages,
        failed_pages=state.failed_pages,
        candidate_count=len(state.candidates),
        curated_candidate_count=state.count_status("curated"),
        quality_filtered_candidate_count=state.count_status("normalized"),
        snapshot_location=state.snapshot_location,
        skipped_by_cadence=state.skipped_by_cadence,
        cadence_next_run_at=cadence.next_run_at,
        source_config_version=config_version,
        selected_strategy=state.plan.selected_primary if state.plan else None,
        runtime_policy=policy.as_meta(),
        candidates=state.stored_candidates(),
    )


async def run_source(
    source_key: str,
    *,
    respect_cadence: bool = False,
    force: bool = False,
    mode: str = "live",
    config_override: SourceRegistryRecord | None = None,
    replay_context: ReplayContext | None = None,
    apply_compliance_transition: bool = True,
    repository=None,
    snapshot_writer: SnapshotWriter | None = None,
    http_client: httpx.AsyncClient | None = None,
    settings: Settings | None = None,
    sleep: Sleep = asyncio.sleep,
    now: datetime | None = None,
) -> RunSourceResult:
    settings = settings or get_settings()
    if repository is None:
        assert_ingest_config(settings)
        repository = get_repository()
    snapshot_writer = snapshot_writer or SnapshotWriter.from_settings(settings)
    started = now or utc_now()

    source = get_source_by_key(source_key)
    assert_source_module_contract(source)

    registry_record = await repository.get_source_registry_record(source_key)
    if registry_record is None:
        logger.warning("Source is missing a registry entry; runtime defaults applied source_key=%s", source_key)

    if registry_record is not None and registry_record.state in INACTIVE_STATES and not force:
        raise SourceStateError(f'Source "{source_key}" is {registry_record.state}. Use --force to run manually.')

    registry_record, compliance = await _run_compliance_gate(
        repository,
        source_key,
        registry_record,
        started,
        settings,
        force=force,
        apply_transition=apply_compliance_transition,
    )

    runtime_record = config_override or registry_record
    policy = resolve_source_runtime_policy(runtime_record)
    cadence = evaluate_cadence(policy.cadence, registry_record.last_run_at if registry_record else None, started)
    config_version = runtime_record.config_version if runtime_record else None

    logger.info(
        "Resolved source runtime policy source_key=%s mode=%s config_version=%s max_rps=%s max_concurrency=%s "
        "timeout_seconds=%s retry_max_attempts=%s cadence_reason=%s",
        source_key,
        mode,
        config_version,
        policy.max_rps,
        policy.max_concurrency,
        policy.timeout_seconds,
        policy.retry_max_attempts,
        cadence.reason,
    )

    run_meta: dict[str, Any] = {
        "run_versions": {
            "source_config_version": config_version,
            "strategy_selection_version": STRATEGY_SELECTION_VERSION,
            "quality_rule_version": QUALITY_RULE_VERSION,
        },
        "compliance": {
            "status": "passed" if compliance.is_compliant else "failed",
            "reason_codes": list(compliance.reason_codes),
            "forced": force and not compliance.is_compliant,
        },
    }
    if replay_context is not None:
        run_meta["replay"] = replay_context.as_meta()
    run = await repository.create_run(source_key, mode=mode, meta=run_meta)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        headers={"user-agent": settings.user_agent},
        timeout=settings.http_timeout_seconds,
        follow_redirects=True,
    )
    ctx = SourceModuleContext(
        logger=logging.getLogger(f"ingestion.sources.{source_key}"),
        default_locale=settings.default_locale,
        http_client=client,
    )
    limiter = OperationRateLimiter(policy.max_rps, sleep=sleep)
    timeout_ms = policy.timeout_seconds * 1000
    state = _RunState()

    with tracer.start_as_current_span("ingest.run_source") as span:
        span.set_attribute("ingest.source_key", source_key)
        span.set_attribute("ingest.run_id", run.id)
        span.set_attribute("ingest.mode", mode)
        try:
            if respect_cadence and not force and not cadence.is_due:
                state.skipped_by_cadence = True
                state.snapshot_location = await snapshot_writer.write_run_snapshot(
                    run_id=run.id,
                    source_key=source_key,
                    candidates=[],
                )
                state.status = "success"
                await repository.finish_run(run.id, state.status, _finish_meta(state, policy, cadence))
                logger.info(
                    "Run skipped by cadence source_key=%s run_id=%s next_run_at=%s",
                    source_key,
                    run.id,
                    cadence.next_run_at,
                )
                return _build_result(run.id, source_key, mode, state, policy, cadence, config_version)

            if not cadence.is_due:
                logger.info(
                    "Cadence window not due; proceeding with manual run source_key=%s force=%s next_run_at=%s",
                    source_key,
                    force,
                    cadence.next_run_at,
                )

            await limiter.wait_turn()
            health = await run_with_retry(
                lambda: source.health_check(ctx),
                operation_label=f"health_check:{source_key}",
                timeout_ms=timeout_ms,
                max_attempts=policy.retry_max_attempts,
                backoff_ms=policy.retry_backoff_ms,
                backoff_multiplier=policy.retry_backoff_multiplier,
                sleep=sleep,
            )
            assert_health_check_result_contract(source, health.value)
            state.source_health_status = health.value.status
            if health.value.status == "failed":
                raise SourceHealthCheckError(f'Source health check failed for "{source_key}"')
            if health.value.status == "degraded":
                logger.warning("Source health check returned degraded source_key=%s", source_key)

            await limiter.wait_turn()
            discovered = await run_with_retry(
                lambda: source.discover(ctx),
                operation_label=f"discover:{source_key}",
                timeout_ms=timeout_ms,
                max_attempts=policy.retry_max_attempts,
                backoff_ms=policy.retry_backoff_ms,
                backoff_multiplier=policy.retry_backoff_multiplier,
                sleep=sleep,
            )
            assert_discovered_pages_contract(source, discovered.value)

            filtered = filter_urls_by_patterns(
                [page.url for page in discovered.value],
                policy.include_url_patterns,
                policy.exclude_url_patterns,
            )
            state.dropped_by_include = filtered.dropped_by_include
            state.dropped_by_exclude = filtered.dropped_by_exclude
            state.invalid_url_pattern_count = filtered.invalid_pattern_count
            if filtered.dropped_by_include or filtered.dropped_by_exclude or filtered.invalid_pattern_count:
                logger.info(
                    "Applied source URL pattern filters source_key=%s accepted=%s dropped_by_include=%s "
                    "dropped_by_exclude=%s invalid_patterns=%s",
                    source_key,
                    len(filtered.accepted),
                    filtered.dropped_by_include,
                    filtered.dropped_by_exclude,
                    filtered.invalid_pattern_count,
                )

            state.plan = select_strategy_plan(
                source_key,
                runtime_record.strategy_order if runtime_record else [],
                filtered.accepted,
                runtime_record.metadata_json if runtime_record else {},
                runtime_record.legal_risk_level if runtime_record else None,
                now=started,
            )
            plan_meta = {**state.plan.as_meta(), "source_config_version": config_version}
            span.set_attribute("ingest.strategy", state.plan.selected_primary)

            pages = await repository.insert_discovered_pages(run.id, source_key, filtered.accepted)
            state.discovered_pages = len(pages)

            await _execute_strategies(
                state.plan,
                pages,
                state,
                source=source,
                ctx=ctx,
                policy=policy,
                limiter=limiter,
                repository=repository,
                sleep=sleep,
            )

            state.status = "partial" if state.failed_pages > 0 else "success"
            state.snapshot_location = await snapshot_writer.write_run_snapshot(
                run_id=run.id,
                source_key=source_key,
                candidates=state.stored_candidates(),
            )
            await repository.finish_run(
                run.id,
                state.status,
                {**_finish_meta(state, policy, cadence), "strategy_selection": plan_meta},
            )
            span.set_attribute("ingest.candidate_count", len(state.candidates))
            logger.info(
                "Source run finished source_key=%s run_id=%s status=%s pages=%s failed_pages=%s candidates=%s",
                source_key,
                run.id,
                state.status,
                state.discovered_pages,
                state.failed_pages,
                len(state.candidates),
            )
            return _build_result(run.id, source_key, mode, state, policy, cadence, config_version)
        except Exception as exc:
            state.status = "failed"
            state.error = str(exc)
            logger.error("Source run failed source_key=%s run_id=%s error=%s", source_key, run.id, exc)
            try:
                await repository.finish_run(run.id, state.status, _finish_meta(state, policy, cadence))
            except RepositoryError as finish_exc:
                logger.error("Failed to finalize run run_id=%s error=%s", run.id, finish_exc)
            raise SourceRunFailedError(
                _build_result(run.id, source_key, mode, state, policy, cadence, config_version), exc
            ) from exc
        finally:
            if owns_client:
                await client.aclose()
            if registry_record is not None and mode == "live":
                await _record_run_outcome(repository, source_key, registry_record, state, policy, now or utc_now())

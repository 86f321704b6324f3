"""Re-run a finished ingestion run and check that its output is reproducible."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any

from opentelemetry import trace

from ingestion.core.config import Settings, assert_ingest_config, get_settings
from ingestion.core.metadata import as_float, as_record, as_text, clamp, to_iso, utc_now
from ingestion.jobs.run_source import ReplayContext, RunSourceResult, run_source
from ingestion.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    SourceRegistryRecord,
    StoredCandidate,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REPLAY_DETERMINISM_VERSION = "ing052_v1"
_RATIO_BOUNDS = (0.0, 1.0)
_ABSOLUTE_BOUNDS = (0.0, 10_000.0)


@dataclass(slots=True, frozen=True)
class ReplayDeterminismTolerance:
    max_candidate_delta_ratio: float = 0.35
    max_curated_delta_ratio: float = 0.4
    max_quality_filtered_delta_ratio: float = 0.45
    min_candidate_delta_absolute: float = 2
    min_curated_delta_absolute: float = 1
    min_quality_filtered_delta_absolute: float = 1
    min_candidate_key_overlap_ratio: float = 0.5
    min_curated_key_overlap_ratio: float = 0.4

    @classmethod
    def resolve(cls, overrides: ReplayDeterminismTolerance | dict[str, Any] | None = None) -> ReplayDeterminismTolerance:
        """Fill missing or non-numeric values with defaults and clamp the rest."""
        if isinstance(overrides, ReplayDeterminismTolerance):
            overrides = asdict(overrides)
        values = as_record(overrides)
        defaults = cls()

        resolved: dict[str, float] = {}
        for item in fields(cls):
            fallback = getattr(defaults, item.name)
            candidate = as_float(values.get(item.name))
            if candidate is None or not math.isfinite(candidate):
                resolved[item.name] = fallback
                continue
            minimum, maximum = _ABSOLUTE_BOUNDS if "absolute" in item.name else _RATIO_BOUNDS
            resolved[item.name] = clamp(candidate, minimum, maximum)
        return cls(**resolved)


@dataclass(slots=True)
class CountDelta:
    baseline: int
    replay: int
    delta: int
    allowed: float


@dataclass(slots=True)
class ReplayDeterminismResult:
    version: str
    passed: bool
    candidate_delta: CountDelta
    curated_delta: CountDelta
    quality_filtered_delta: CountDelta
    candidate_key_overlap: float | None
    curated_key_overlap: float | None
    tolerance: ReplayDeterminismTolerance
    failure_reasons: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "passed": self.passed,
            "candidate_delta": asdict(self.candidate_delta),
            "curated_delta": asdict(self.curated_delta),
            "quality_filtered_delta": asdict(self.quality_filtered_delta),
            "overlap": {
                "candidate_keys": self.candidate_key_overlap,
                "curated_candidate_keys": self.curated_key_overlap,
            },
            "tolerance": asdict(self.tolerance),
            "failure_reasons": list(self.failure_reasons),
        }


@dataclass(slots=True)
class ResolvedReplayConfig:
    runtime: SourceRegistryRecord | None
    resolved_config_version: str | None
    resolved_from: str


@dataclass(slots=True)
class ReplayRunResult:
    original_run_id: str
    replay_run_id: str
    source_key: str
    original_run_status: str
    default_config_version: str | None
    requested_config_version: str | None
    resolved_config_version: str | None
    config_resolved_from: str
    override_applied: bool
    replay: RunSourceResult
    determinism: ReplayDeterminismResult
    warnings: list[str]
    started_at: str
    finished_at: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "original_run_id": self.original_run_id,
            "replay_run_id": self.replay_run_id,
            "source_key": self.source_key,
            "original_run_status": self.original_run_status,
            "default_config_version": self.default_config_version,
            "requested_config_version": self.requested_config_version,
            "resolved_config_version": self.resolved_config_version,
            "config_resolved_from": self.config_resolved_from,
            "override_applied": self.override_applied,
            "replay": self.replay.as_dict(),
            "determinism": self.determinism.as_dict(),
            "warnings": list(self.warnings),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def _key_set(candidates: list[StoredCandidate], status: str | None = None) -> set[str]:
    return {c.candidate_key for c in candidates if status is None or c.status == status}


def jaccard_overlap(left: set[str], right: set[str]) -> float | None:
    """Jaccard ratio of two key sets, or ``None`` when both are empty."""
    union = left | right
    if not union:
        return None
    return len(left & right) / len(union)


def _count_delta(baseline: int, replay: int, ratio: float, min_absolute: float) -> CountDelta:
    allowed = max(min_absolute, math.ceil(baseline * ratio))
    if float(allowed).is_integer():
        allowed = int(allowed)
    return CountDelta(baseline=baseline, replay=replay, delta=abs(replay - baseline), allowed=allowed)


def _count(candidates: list[StoredCandidate], status: str | None = None) -> int:
    return sum(1 for c in candidates if status is None or c.status == status)


def evaluate_replay_determinism(
    baseline: list[StoredCandidate],
    replay: list[StoredCandidate],
    tolerance: ReplayDeterminismTolerance | dict[str, Any] | None = None,
) -> ReplayDeterminismResult:
    resolved = ReplayDeterminismTolerance.resolve(tolerance)

    candidate_delta = _count_delta(
        _count(baseline),
        _count(replay),
        resolved.max_candidate_delta_ratio,
        resolved.min_candidate_delta_absolute,
    )
    curated_delta = _count_delta(
        _count(baseline, "curated"),
        _count(replay, "curated"),
        resolved.max_curated_delta_ratio,
        resolved.min_curated_delta_absolute,
    )
    quality_filtered_delta = _count_delta(
        _count(baseline, "normalized"),
        _count(replay, "normalized"),
        resolved.max_quality_filtered_delta_ratio,
        resolved.min_quality_filtered_delta_absolute,
    )
    candidate_overlap = jaccard_overlap(_key_set(baseline), _key_set(replay))
    curated_overlap = jaccard_overlap(_key_set(baseline, "curated"), _key_set(replay, "curated"))

    failure_reasons: list[str] = []
    for label, delta in (
        ("candidate_count", candidate_delta),
        ("curated_count", curated_delta),
        ("quality_filtered_count", quality_filtered_delta),
    ):
        if delta.delta > delta.allowed:
            failure_reasons.append(f"{label}_delta_exceeded ({delta.delta} > {delta.allowed})")

    for label, overlap, minimum in (
        ("candidate_key", candidate_overlap, resolved.min_candidate_key_overlap_ratio),
        ("curated_key", curated_overlap, resolved.min_curated_key_overlap_ratio),
    ):
        if overlap is not None and overlap < minimum:
            failure_reasons.append(f"{label}_overlap_below_threshold ({overlap:.3f} < {minimum:.3f})")

    return ReplayDeterminismResult(
        version=REPLAY_DETERMINISM_VERSION,
        passed=not failure_reasons,
        candidate_delta=candidate_delta,
        curated_delta=curated_delta,
        quality_filtered_delta=quality_filtered_delta,
        candidate_key_overlap=candidate_overlap,
        curated_key_overlap=curated_overlap,
        tolerance=resolved,
        failure_reasons=failure_reasons,
    )


def extract_run_config_version(meta_json: Any) -> str | None:
    meta = as_record(meta_json)
    return (
        as_text(as_record(meta.get("run_versions")).get("source_config_version"))
        or as_text(as_record(meta.get("strategy_selection")).get("source_config_version"))
        or as_text(meta.get("source_config_version"))
    )


async def resolve_replay_config(
    repository,
    source_key: str,
    requested_config_version: str | None,
    warnings: list[str],
) -> ResolvedReplayConfig:
    if requested_config_version:
        snapshot = await repository.get_source_config_snapshot(source_key, requested_config_version)
        if snapshot is not None:
            return ResolvedReplayConfig(
                runtime=snapshot.runtime,
                resolved_config_version=snapshot.runtime.config_version,
                resolved_from=snapshot.resolved_from,
            )
        warnings.append(
            f'Config version "{requested_config_version}" was not found in source registry audit history '
            f'for "{source_key}". Falling back to current runtime config.'
        )

    current = await repository.get_source_registry_record(source_key)
    return ResolvedReplayConfig(
        runtime=current,
        resolved_config_version=current.config_version if current else None,
        resolved_from="current_runtime",
    )


async def _baseline_candidates(repository, run_id: str, meta_json: dict[str, Any]) -> list[StoredCandidate]:
    candidate_ids = meta_json.get("candidate_ids")
    if isinstance(candidate_ids, list):
        return await repository.get_candidates_by_ids([str(cid) for cid in candidate_ids])
    return await repository.list_candidates_by_run(run_id)


async def replay_run(
    run_id: str,
    *,
    config_version: str | None = None,
    tolerance: ReplayDeterminismTolerance | dict[str, Any] | None = None,
    force: bool = True,
    repository=None,
    settings: Settings | None = None,
    now: datetime | None = None,
    **run_kwargs: Any,
) -> ReplayRunResult:
    """Replay ``run_id`` under its recorded config version (or ``config_version``).

    Extra keyword arguments are passed through to ``run_source``.
    """
    settings = settings or get_settings()
    if repository is None:
        assert_ingest_config(settings)
        repository = get_repository()
    started_at = to_iso(now or utc_now())

    original = await repository.get_run(run_id)
    if original is None:
        raise RepositoryNotFoundError(f"Run not found for replay: {run_id}")
    if original.status == "running":
        raise RepositoryConflictError(f"Run {run_id} is still in progress and cannot be replayed yet")

    default_version = extract_run_config_version(original.meta_json)
    override_version = as_text(config_version)
    requested_version = override_version or default_version
    override_applied = override_version is not None and override_version != default_version

    warnings: list[str] = []
    with tracer.start_as_current_span("ingest.replay_run") as span:
        span.set_attribute("ingest.source_key", original.source_key)
        span.set_attribute("ingest.original_run_id", run_id)

        resolved = await resolve_replay_config(repository, original.source_key, requested_version, warnings)
        if override_applied and override_version != resolved.resolved_config_version:
            warnings.append(
                f'Replay override requested config version "{override_version}" but resolved config version '
                f'was "{resolved.resolved_config_version or "unknown"}".'
            )
        for warning in warnings:
            logger.warning("%s run_id=%s", warning, run_id)

        replay = await run_source(
            original.source_key,
            mode="replay",
            respect_cadence=False,
            force=force,
            config_override=resolved.runtime,
            replay_context=ReplayContext(
                original_run_id=run_id,
                requested_config_version=requested_version,
                default_config_version=default_version,
                resolved_config_version=resolved.resolved_config_version,
                config_resolved_from=resolved.resolved_from,
                override_applied=override_applied,
            ),
            repository=repository,
            settings=settings,
            now=now,
            **run_kwargs,
        )

        baseline = await _baseline_candidates(repository, run_id, original.meta_json)
        determinism = evaluate_replay_determinism(baseline, replay.candidates, tolerance)
        span.set_attribute("ingest.replay_passed", determinism.passed)

    if determinism.passed:
        logger.info(
            "Replay determinism check passed original_run_id=%s replay_run_id=%s source_key=%s "
            "candidate_overlap=%s curated_overlap=%s",
            run_id,
            replay.run_id,
            original.source_key,
            determinism.candidate_key_overlap,
            determinism.curated_key_overlap,
        )
    else:
        logger.warning(
            "Replay determinism check failed original_run_id=%s replay_run_id=%s source_key=%s reasons=%s",
            run_id,
            replay.run_id,
            original.source_key,
            "; ".join(determinism.failure_reasons),
        )

    return ReplayRunResult(
        original_run_id=run_id,
        replay_run_id=replay.run_id,
        source_key=original.source_key,
        original_run_status=original.status,
        default_config_version=default_version,
        requested_config_version=requested_version,
        resolved_config_version=resolved.resolved_config_version,
        config_resolved_from=resolved.resolved_from,
        override_applied=override_applied,
        replay=replay,
        determinism=determinism,
        warnings=warnings,
        started_at=started_at,
        finished_at=to_iso(utc_now()),
    )

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ingestion.core.metadata import (
    LIFECYCLE_KEY,
    HealthSnapshot,
    as_record,
    prepend_history,
    to_iso,
)
from ingestion.jobs.runtime_controls import parse_cadence_interval_ms, parse_cadence_tokens
from ingestion.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    SourceRegistryRecord,
)

logger = logging.getLogger(__name__)

LIFECYCLE_AUTOMATION_VERSION = "ing032_v1"
LIFECYCLE_ACTOR = "lifecycle_automation"
MAX_ALERT_HISTORY = 20

DEGRADED_MIN_INTERVAL_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_DEGRADED_CADENCE = "FREQ=WEEKLY;INTERVAL=1;BYDAY=SUN;BYHOUR=2;BYMINUTE=0"
FAILURE_TRIGGERS = {"consecutive_failures", "rolling_failure_rate_spike"}


@dataclass(slots=True)
class LifecycleAutomationInput:
    source_key: str
    state: str
    cadence: str | None
    skipped_by_cadence: bool
    final_run_status: str
    rolling_failure_rate_30d: float | None
    rolling_promotion_rate_30d: float | None
    metadata_json: dict[str, Any]
    now: datetime

    @classmethod
    def from_record(
        cls,
        record: SourceRegistryRecord,
        *,
        final_run_status: str,
        skipped_by_cadence: bool,
        now: datetime,
    ) -> LifecycleAutomationInput:
        return cls(
            source_key=record.source_key,
            state=record.state,
            cadence=record.cadence,
            skipped_by_cadence=skipped_by_cadence,
            final_run_status=final_run_status,
            rolling_failure_rate_30d=record.rolling_failure_rate_30d,
            rolling_promotion_rate_30d=record.rolling_promotion_rate_30d,
            metadata_json=as_record(record.metadata_json),
            now=now,
        )


@dataclass(slots=True)
class LifecycleDecision:
    should_transition_to_degraded: bool = False
    should_downgrade_cadence: bool = False
    degraded_cadence: str | None = None
    trigger_codes: list[str] = field(default_factory=list)
    reason: str | None = None
    alert_severity: str | None = None
    evidence_bundle: dict[str, Any] | None = None


@dataclass(slots=True)
class LifecycleApplyResult:
    decision: LifecycleDecision
    record: SourceRegistryRecord
    transitioned_to_degraded: bool = False
    downgraded_cadence: bool = False

    def as_meta(self) -> dict[str, Any]:
        return {
            "trigger_codes": list(self.decision.trigger_codes),
            "alert_severity": self.decision.alert_severity,
            "transitioned_to_degraded": self.transitioned_to_degraded,
            "downgraded_cadence": self.downgraded_cadence,
            "config_version": self.record.config_version,
        }


def derive_degraded_cadence(cadence: str | None) -> str:
    if not cadence or not cadence.strip():
        return DEFAULT_DEGRADED_CADENCE

    tokens = {key: value.upper() for key, value in parse_cadence_tokens(cadence).items()}
    by_day = tokens.get("BYDAY", "SUN")
    by_hour = tokens.get("BYHOUR", "2")
    by_minute = tokens.get("BYMINUTE", "0")
    return f"FREQ=WEEKLY;INTERVAL=1;BYDAY={by_day};BYHOUR={by_hour};BYMINUTE={by_minute}"


def _is_sub_weekly(cadence: str | None) -> bool:
    if not cadence or not cadence.strip():
        return True
    interval_ms = parse_cadence_interval_ms(cadence)
    if interval_ms is None:
        return True
    return interval_ms < DEGRADED_MIN_INTERVAL_MS


def _recommended_actions(trigger_codes: list[str]) -> list[str]:
    actions: list[str] = []
    if "consecutive_failures" in trigger_codes:
        actions.append("Investigate extractor breakage on latest failed pages.")
    if "rolling_failure_rate_spike" in trigger_codes:
        actions.append("Reduce crawl scope and validate network/source stability.")
    if "quality_drop" in trigger_codes:
        actions.append("Review recent candidates and tune quality/extractor heuristics.")
    if not actions:
        actions.append("Monitor source health and strategy performance.")
    return actions


def evaluate_lifecycle_automation(data: LifecycleAutomationInput) -> LifecycleDecision:
    if data.skipped_by_cadence:
        return LifecycleDecision()

    health = HealthSnapshot.from_metadata(data.metadata_json)
    failure_rate = data.rolling_failure_rate_30d
    promotion_rate = data.rolling_promotion_rate_30d

    trigger_codes: list[str] = []
    if health.consecutive_failures >= 3:
        trigger_codes.append("consecutive_failures")
    if (failure_rate or 0.0) >= 0.5 and health.observed_runs >= 6:
        trigger_codes.append("rolling_failure_rate_spike")

    sustained_zero_yield = (
        (1.0 if promotion_rate is None else promotion_rate) <= 0.03
        and health.observed_runs >= 6
        and health.last_run_candidate_count >= 5
        and health.last_run_curated_candidate_count == 0
    )
    if health.consecutive_low_quality_runs >= 3 or sustained_zero_yield:
        trigger_codes.append("quality_drop")

    if not trigger_codes:
        return LifecycleDecision()

    should_transition = data.state == "active"
    should_downgrade = (should_transition or data.state == "degraded") and _is_sub_weekly(data.cadence)
    degraded_cadence = derive_degraded_cadence(data.cadence) if should_downgrade else None
    reason = f"Lifecycle automation triggers: {', '.join(trigger_codes)}"
    severity = "critical" if FAILURE_TRIGGERS.intersection(trigger_codes) else "warn"

    evidence_bundle = {
        "version": LIFECYCLE_AUTOMATION_VERSION,
        "source_key": data.source_key,
        "generated_at": to_iso(data.now),
        "status": data.final_run_status,
        "trigger_codes": trigger_codes,
        "reason": reason,
        "suggested_state": "degraded" if should_transition else data.state,
        "cadence_before": data.cadence,
        "cadence_after": degraded_cadence if should_downgrade else data.cadence,
        "health_snapshot": {
            "health_score": health.health_score,
            "consecutive_failures": health.consecutive_failures,
            "consecutive_low_quality_runs": health.consecutive_low_quality_runs,
            "observed_runs": health.observed_runs,
            "observed_failed_runs": health.observed_failed_runs,
            "rolling_failure_rate_30d": failure_rate,
            "rolling_promotion_rate_30d": promotion_rate,
            "last_run_candidate_count": health.last_run_candidate_count,
            "last_run_curated_candidate_count": health.last_run_curated_candidate_count,
        },
        "recommended_actions": _recommended_actions(trigger_codes),
    }

    return LifecycleDecision(
        should_transition_to_degraded=should_transition,
        should_downgrade_cadence=should_downgrade,
        degraded_cadence=degraded_cadence,
        trigger_codes=trigger_codes,
        reason=reason,
        alert_severity=severity,
        evidence_bundle=evidence_bundle,
    )


def merge_lifecycle_alert_metadata(
    metadata_json: Any,
    evidence_bundle: dict[str, Any],
    now: datetime,
    *,
    transitioned_to_degraded: bool,
    downgraded_cadence: bool,
) -> dict[str, Any]:
    metadata = as_record(metadata_json)
    lifecycle = as_record(metadata.get(LIFECYCLE_KEY))
    return {
        **metadata,
        LIFECYCLE_KEY: {
            **lifecycle,
            "version": LIFECYCLE_AUTOMATION_VERSION,
            "last_alert": evidence_bundle,
            "alert_history": prepend_history([evidence_bundle], lifecycle.get("alert_history"), MAX_ALERT_HISTORY),
            "last_automation_at": to_iso(now),
            "last_automation_result": {
                "transitioned_to_degraded": transitioned_to_degraded,
                "downgraded_cadence": downgraded_cadence,
            },
        },
    }


async def _apply_once(
    repository,
    record: SourceRegistryRecord,
    decision: LifecycleDecision,
    now: datetime,
) -> LifecycleApplyResult:
    if decision.evidence_bundle is None:
        return LifecycleApplyResult(decision=decision, record=record)

    current = record
    transitioned = False
    if decision.should_transition_to_degraded:
        current = await repository.transition_source_state(
            record.source_key,
            expected_config_version=current.config_version,
            to_state="degraded",
            reason=decision.reason or "lifecycle automation",
            actor=LIFECYCLE_ACTOR,
        )
        transitioned = True

    downgraded = False
    if decision.should_downgrade_cadence and decision.degraded_cadence and decision.degraded_cadence != current.cadence:
        current = await repository.patch_source_config(
            record.source_key,
            expected_config_version=current.config_version,
            patch={"cadence": decision.degraded_cadence},
            reason=decision.reason or "lifecycle automation",
            actor=LIFECYCLE_ACTOR,
        )
        downgraded = True

    merged = merge_lifecycle_alert_metadata(
        current.metadata_json,
        decision.evidence_bundle,
        now,
        transitioned_to_degraded=transitioned,
        downgraded_cadence=downgraded,
    )
    updated = await repository.update_source_runtime(
        record.source_key,
        metadata_sections={LIFECYCLE_KEY: merged[LIFECYCLE_KEY]},
    )

    log = logger.error if decision.alert_severity == "critical" else logger.warning
    log(
        "Lifecycle automation alert source_key=%s triggers=%s transitioned=%s downgraded_cadence=%s",
        record.source_key,
        ",".join(decision.trigger_codes),
        transitioned,
        downgraded,
    )
    return LifecycleApplyResult(
        decision=decision,
        record=updated or current,
        transitioned_to_degraded=transitioned,
        downgraded_cadence=downgraded,
    )


async def apply_lifecycle_decision(
    repository,
    record: SourceRegistryRecord,
    decision: LifecycleDecision,
    *,
    final_run_status: str,
    now: datetime,
) -> LifecycleApplyResult:
    """Apply a decision through the versioned registry operations.

    A config version conflict means someone else changed the row after
    ``record`` was read. The record is re-read, the decision re-evaluated
    against it, and the write retried once; a second conflict propagates.
    """
    try:
        return await _apply_once(repository, record, decision, now)
    except RepositoryConflictError as exc:
        logger.warning(
            "Lifecycle automation config conflict, retrying source_key=%s expected_version=%s error=%s",
            record.source_key,
            record.config_version,
            exc,
        )

    refreshed = await repository.get_source_registry_record(record.source_key)
    if refreshed is None:
        raise RepositoryNotFoundError(f'source "{record.source_key}" is not registered')

    retried = evaluate_lifecycle_automation(
        LifecycleAutomationInput.from_record(
            refreshed,
            final_run_status=final_run_status,
            skipped_by_cadence=False,
            now=now,
        )
    )
    return await _apply_once(repository, refreshed, retried, now)

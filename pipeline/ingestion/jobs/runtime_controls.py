"""Per-source runtime governance.

Policy resolution, cadence gating, URL filtering, pacing, timeout/retry
execution, the compliance pre-run gate and the rolling health patch. Every
function here is deterministic given its inputs; wall-clock time is always
passed in.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Generic, TypeVar

from ingestion.core.metadata import (
    COMPLIANCE_KEY,
    HEALTH_KEY,
    ComplianceSnapshot,
    HealthSnapshot,
    as_float,
    as_record,
    as_string_list,
    clamp,
    get_by_path,
    merge_metadata_section,
    parse_timestamp,
    prepend_history,
    round_half_up,
    to_iso,
)
from ingestion.services.repository import SourceRegistryRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RPS = 1.0
DEFAULT_MAX_CONCURRENCY = 1
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_RETRY_MAX_ATTEMPTS = 2
DEFAULT_RETRY_BACKOFF_MS = 750
DEFAULT_RETRY_BACKOFF_MULTIPLIER = 2.0

ROLLING_RATE_ALPHA = 0.2
HEALTH_SCORE_VERSION = "ing022_v1"
LOW_QUALITY_MIN_CANDIDATES = 3

COMPLIANCE_CHECK_VERSION = "ing021_v1"
COMPLIANCE_HISTORY_CAP = 20
LEGAL_HOLD_STATUSES = {"active", "on_hold", "hold"}
CRITICAL_COMPLIANCE_CODES = {"source_not_registered", "not_approved_for_prod", "legal_hold_active"}

RETRY_ATTEMPT_PATHS = (
    ("runtime", "retry_max_attempts"),
    ("runtime", "retryMaxAttempts"),
    ("runtime", "max_retries"),
    ("retry_max_attempts",),
    ("retryMaxAttempts",),
    ("max_retries",),
)
RETRY_BACKOFF_PATHS = (
    ("runtime", "retry_backoff_ms"),
    ("runtime", "retryBackoffMs"),
    ("retry_backoff_ms",),
    ("retryBackoffMs",),
)
RETRY_MULTIPLIER_PATHS = (
    ("runtime", "retry_backoff_multiplier"),
    ("runtime", "retryBackoffMultiplier"),
    ("retry_backoff_multiplier",),
    ("retryBackoffMultiplier",),
)

_HOUR_MS = 60 * 60 * 1000
_FREQUENCY_MS = {"HOURLY": _HOUR_MS, "DAILY": 24 * _HOUR_MS, "WEEKLY": 7 * 24 * _HOUR_MS}
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_GLOB_SPECIAL_RE = re.compile(r"[.+?^${}()|\[\]\\]")


class OperationTimeoutError(Exception):
    """Raised when a single attempt exceeds its timeout."""


class RetryExhaustedError(Exception):
    """Raised when every retry attempt of an operation failed."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


@dataclass(slots=True)
class SourceRuntimePolicy:
    cadence: str | None = None
    max_rps: float = DEFAULT_MAX_RPS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    include_url_patterns: list[str] = field(default_factory=list)
    exclude_url_patterns: list[str] = field(default_factory=list)
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_backoff_ms: int = DEFAULT_RETRY_BACKOFF_MS
    retry_backoff_multiplier: float = DEFAULT_RETRY_BACKOFF_MULTIPLIER

    def as_meta(self) -> dict[str, Any]:
        return {
            "cadence": self.cadence,
            "max_rps": self.max_rps,
            "max_concurrency": self.max_concurrency,
            "timeout_seconds": self.timeout_seconds,
            "retry_max_attempts": self.retry_max_attempts,
            "retry_backoff_ms": self.retry_backoff_ms,
            "retry_backoff_multiplier": self.retry_backoff_multiplier,
        }


def _read_setting(metadata_json: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> float | None:
    for path in paths:
        value = as_float(get_by_path(metadata_json, path))
        if value is not None:
            return value
    return None


def _column_or_default(value: Any, default: float) -> float:
    number = as_float(value)
    return default if number is None else number


def resolve_source_runtime_policy(record: SourceRegistryRecord | None) -> SourceRuntimePolicy:
    if record is None:
        return SourceRuntimePolicy()

    metadata_json = as_record(record.metadata_json)
    retry_max_attempts = _read_setting(metadata_json, RETRY_ATTEMPT_PATHS)
    retry_backoff_ms = _read_setting(metadata_json, RETRY_BACKOFF_PATHS)
    retry_backoff_multiplier = _read_setting(metadata_json, RETRY_MULTIPLIER_PATHS)

    return SourceRuntimePolicy(
        cadence=record.cadence,
        max_rps=clamp(_column_or_default(record.max_rps, DEFAULT_MAX_RPS), 0.1, 20),
        max_concurrency=round_half_up(
            clamp(_column_or_default(record.max_concurrency, DEFAULT_MAX_CONCURRENCY), 1, 20)
        ),
        timeout_seconds=round_half_up(
            clamp(_column_or_default(record.timeout_seconds, DEFAULT_TIMEOUT_SECONDS), 5, 300)
        ),
        include_url_patterns=as_string_list(record.include_url_patterns),
        exclude_url_patterns=as_string_list(record.exclude_url_patterns),
        retry_max_attempts=round_half_up(
            clamp(DEFAULT_RETRY_MAX_ATTEMPTS if retry_max_attempts is None else retry_max_attempts, 1, 8)
        ),
        retry_backoff_ms=round_half_up(
            clamp(DEFAULT_RETRY_BACKOFF_MS if retry_backoff_ms is None else retry_backoff_ms, 100, 15_000)
        ),
        retry_backoff_multiplier=clamp(
            DEFAULT_RETRY_BACKOFF_MULTIPLIER if retry_backoff_multiplier is None else retry_backoff_multiplier,
            1,
            5,
        ),
    )


# Cadence


@dataclass(slots=True)
class CadenceEvaluation:
    cadence: str | None
    min_interval_ms: int | None
    is_due: bool
    reason: str
    next_run_at: str | None

    def as_meta(self) -> dict[str, Any]:
        return {
            "cadence": self.cadence,
            "min_interval_ms": self.min_interval_ms,
            "is_due": self.is_due,
            "reason": self.reason,
            "next_run_at": self.next_run_at,
        }


def parse_cadence_tokens(cadence: str) -> dict[str, str]:
    tokens: dict[str, str] = {}
    for token in cadence.split(";"):
        raw_key, _, raw_value = token.partition("=")
        key = raw_key.strip().upper()
        value = raw_value.strip()
        if key and value:
            tokens[key] = value
    return tokens


def parse_cadence_interval_ms(cadence: str) -> int | None:
    tokens = parse_cadence_tokens(cadence)
    frequency = tokens.get("FREQ", "").upper()
    if not frequency:
        return None

    interval = 1
    raw_interval = tokens.get("INTERVAL")
    if raw_interval is not None:
        match = _LEADING_INT_RE.match(raw_interval)
        if match is None:
            return None
        interval = int(match.group(1))
    if interval <= 0:
        return None

    unit = _FREQUENCY_MS.get(frequency)
    return None if unit is None else interval * unit


def evaluate_cadence(cadence: str | None, last_run_at: Any, now: datetime) -> CadenceEvaluation:
    if not cadence or not cadence.strip():
        return CadenceEvaluation(cadence, None, True, "no_cadence_configured", None)

    min_interval_ms = parse_cadence_interval_ms(cadence)
    if min_interval_ms is None:
        return CadenceEvaluation(cadence, None, True, "cadence_unparsed_treat_due", None)

    if not last_run_at:
        return CadenceEvaluation(cadence, min_interval_ms, True, "no_last_run", None)

    parsed_last_run = parse_timestamp(last_run_at)
    if parsed_last_run is None:
        return CadenceEvaluation(cadence, min_interval_ms, True, "invalid_last_run_treat_due", None)

    interval = timedelta(milliseconds=min_interval_ms)
    due = now - parsed_last_run >= interval
    return CadenceEvaluation(
        cadence,
        min_interval_ms,
        due,
        "cadence_due" if due else "cadence_not_due",
        to_iso(parsed_last_run + interval),
    )


# URL filtering


@dataclass(slots=True)
class UrlFilterResult:
    accepted: list[str]
    dropped_by_include: int
    dropped_by_exclude: int
    invalid_pattern_count: int


def compile_url_pattern(pattern: str) -> re.Pattern[str] | None:
    trimmed = pattern.strip()
    if not trimmed:
        return None
    try:
        return re.compile(trimmed, re.IGNORECASE)
    except re.error:
        pass

    escaped = _GLOB_SPECIAL_RE.sub(lambda match: "\\" + match.group(0), trimmed).replace("*", ".*")
    try:
        return re.compile(f"^{escaped}$", re.IGNORECASE)
    except re.error:
        return None


def filter_urls_by_patterns(
    urls: list[str],
    include_patterns: list[str],
    exclude_patterns: list[str],
) -> UrlFilterResult:
    include = [compile_url_pattern(pattern) for pattern in include_patterns]
    exclude = [compile_url_pattern(pattern) for pattern in exclude_patterns]
    invalid_pattern_count = sum(1 for regex in [*include, *exclude] if regex is None)
    valid_include = [regex for regex in include if regex is not None]
    valid_exclude = [regex for regex in exclude if regex is not None]

    accepted: list[str] = []
    dropped_by_include = 0
    dropped_by_exclude = 0
    for url in dict.fromkeys(urls):
        if valid_include and not any(regex.search(url) for regex in valid_include):
            dropped_by_include += 1
            continue
        if any(regex.search(url) for regex in valid_exclude):
            dropped_by_exclude += 1
            continue
        accepted.append(url)

    return UrlFilterResult(
        accepted=accepted,
        dropped_by_include=dropped_by_include,
        dropped_by_exclude=dropped_by_exclude,
        invalid_pattern_count=invalid_pattern_count,
    )


# Pacing, timeout and retry

Sleep = Callable[[float], Awaitable[Any]]


class OperationRateLimiter:
    """Spaces callers at least ``ceil(1000 / max_rps)`` milliseconds apart."""

    def __init__(
        self,
        max_rps: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.minimum_gap_ms = math.ceil(1000 / clamp(max_rps, 0.1, 20))
        self._clock = clock
        self._sleep = sleep
        self._next_available_at = 0.0

    async def wait_turn(self) -> None:
        now_ms = self._clock() * 1000
        scheduled_at = max(self._next_available_at, now_ms)
        wait_ms = scheduled_at - now_ms
        self._next_available_at = scheduled_at + self.minimum_gap_ms
        if wait_ms > 0:
            await self._sleep(wait_ms / 1000)


async def with_timeout(operation: Callable[[], Awaitable[T]], timeout_ms: int, label: str) -> T:
    try:
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(f"{label} timed out after {timeout_ms}ms") from exc


@dataclass(slots=True)
class RetryExecutionResult(Generic[T]):
    value: T
    attempts: int


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    operation_label: str,
    timeout_ms: int,
    max_attempts: int,
    backoff_ms: int,
    backoff_multiplier: float,
    sleep: Sleep = asyncio.sleep,
) -> RetryExecutionResult[T]:
    attempts_allowed = max(1, round_half_up(max_attempts))
    current_backoff_ms = max(0, round_half_up(backoff_ms))
    attempt = 1

    while True:
        try:
            value = await with_timeout(operation, timeout_ms, f"{operation_label} (attempt {attempt})")
            return RetryExecutionResult(value=value, attempts=attempt)
        except Exception as exc:
            if attempt >= attempts_allowed:
                raise RetryExhaustedError(
                    f"{operation_label} failed after {attempt} attempts: {exc}",
                    attempts=attempt,
                    last_error=exc,
                ) from exc

            logger.warning(
                "Operation attempt failed; retrying operation=%s attempt=%s max_attempts=%s backoff_ms=%s error=%s",
                operation_label,
                attempt,
                attempts_allowed,
                current_backoff_ms,
                exc,
            )
            if current_backoff_ms > 0:
                await sleep(current_backoff_ms / 1000)
            current_backoff_ms = round_half_up(current_backoff_ms * backoff_multiplier)
            attempt += 1


# Compliance pre-run gate


@dataclass(slots=True)
class CompliancePreRunResult:
    source_key: str
    is_compliant: bool
    should_block: bool
    severity: str | None
    transition_state: str | None
    reason_codes: list[str]
    message: str | None
    evidence_bundle: dict[str, Any]


def _review_check(
    prefix: str,
    checked_at: Any,
    *,
    now: datetime,
    ttl_days: int,
) -> tuple[str | None, dict[str, Any]]:
    evidence: dict[str, Any] = {"checked_at": checked_at, "ttl_days": ttl_days, "age_days": None}
    if not checked_at:
        return f"{prefix}_check_missing", evidence
    parsed = parse_timestamp(checked_at)
    if parsed is None:
        return f"{prefix}_check_invalid", evidence
    age = now - parsed
    evidence["age_days"] = round(age.total_seconds() / 86400, 3)
    if age > timedelta(days=ttl_days):
        return f"{prefix}_check_stale", evidence
    return None, evidence


def _legal_hold_active(compliance: ComplianceSnapshot, now: datetime) -> bool:
    if compliance.legal_hold:
        return True
    if compliance.legal_hold_status and compliance.legal_hold_status.lower() in LEGAL_HOLD_STATUSES:
        return True
    hold_until = parse_timestamp(compliance.legal_hold_until)
    return hold_until is not None and hold_until > now


def evaluate_source_compliance_pre_run(
    source_key: str,
    record: SourceRegistryRecord | None,
    now: datetime,
    *,
    robots_ttl_days: int = 7,
    terms_ttl_days: int = 30,
) -> CompliancePreRunResult:
    checked_at = to_iso(now)
    reason_codes: list[str] = []
    evidence: dict[str, Any] = {
        "version": COMPLIANCE_CHECK_VERSION,
        "id": f"{source_key}:compliance:{re.sub(r'[-:.TZ]', '', checked_at)[:14]}",
        "source_key": source_key,
        "checked_at": checked_at,
    }

    if record is None:
        reason_codes.append("source_not_registered")
    else:
        compliance = ComplianceSnapshot.from_metadata(record.metadata_json)
        if record.state != "active":
            reason_codes.append("source_not_active")
        if not record.approved_for_prod:
            reason_codes.append("not_approved_for_prod")
        legal_hold = _legal_hold_active(compliance, now)
        if legal_hold:
            reason_codes.append("legal_hold_active")

        robots_code, robots_evidence = _review_check(
            "robots", record.robots_checked_at, now=now, ttl_days=robots_ttl_days
        )
        terms_code, terms_evidence = _review_check(
            "terms", record.terms_checked_at, now=now, ttl_days=terms_ttl_days
        )
        reason_codes.extend(code for code in (robots_code, terms_code) if code)
        evidence.update(
            {
                "state": record.state,
                "approved_for_prod": record.approved_for_prod,
                "legal_risk_level": record.legal_risk_level,
                "legal_hold": {
                    "active": legal_hold,
                    "flag": compliance.legal_hold,
                    "status": compliance.legal_hold_status,
                    "until": compliance.legal_hold_until,
                },
                "robots": robots_evidence,
                "terms": terms_evidence,
            }
        )

    is_compliant = not reason_codes
    severity: str | None = None
    transition_state: str | None = None
    message: str | None = None
    if not is_compliant:
        severity = "critical" if CRITICAL_COMPLIANCE_CODES.intersection(reason_codes) else "warn"
        if record is not None and record.state == "active":
            transition_state = "paused" if severity == "critical" else "degraded"
        message = f'Compliance pre-run check failed for "{source_key}": {", ".join(reason_codes)}'

    evidence.update(
        {
            "status": "passed" if is_compliant else "failed",
            "severity": severity,
            "reason_codes": reason_codes,
            "transition_state": transition_state,
        }
    )
    return CompliancePreRunResult(
        source_key=source_key,
        is_compliant=is_compliant,
        should_block=not is_compliant,
        severity=severity,
        transition_state=transition_state,
        reason_codes=reason_codes,
        message=message,
        evidence_bundle=evidence,
    )


def merge_compliance_alert_metadata(
    metadata_json: Any,
    evidence_bundle: dict[str, Any],
    now: datetime,
    *,
    failed: bool,
) -> dict[str, Any]:
    compliance = as_record(as_record(metadata_json).get(COMPLIANCE_KEY))
    updates: dict[str, Any] = {
        "version": COMPLIANCE_CHECK_VERSION,
        "last_pre_run_check_at": to_iso(now),
        "last_pre_run_check_status": "failed" if failed else "passed",
        "last_pre_run_check": evidence_bundle,
    }
    if failed:
        updates["last_alert_at"] = to_iso(now)
        updates["alert_history"] = prepend_history(
            [evidence_bundle], compliance.get("alert_history"), COMPLIANCE_HISTORY_CAP
        )
    return merge_metadata_section(metadata_json, COMPLIANCE_KEY, updates)


# Rolling health


@dataclass(slots=True)
class SourceHealthInput:
    now: datetime
    status: str
    discovered_pages: int
    extracted_pages: int
    failed_pages: int
    candidate_count: int
    curated_candidate_count: int
    quality_filtered_candidate_count: int
    skipped_by_cadence: bool
    policy: SourceRuntimePolicy
    prior: SourceRegistryRecord
    run_error: str | None = None


@dataclass(slots=True)
class SourceHealthPatch:
    last_run_at: str
    last_success_at: str | None
    rolling_promotion_rate_30d: float | None
    rolling_failure_rate_30d: float | None
    metadata_json: dict[str, Any]

    def columns(self) -> dict[str, Any]:
        return {
            "last_run_at": self.last_run_at,
            "last_success_at": self.last_success_at,
            "rolling_promotion_rate_30d": self.rolling_promotion_rate_30d,
            "rolling_failure_rate_30d": self.rolling_failure_rate_30d,
        }


def _smooth_rate(prior: float | None, current: float) -> float:
    if prior is None:
        return clamp(current, 0, 1)
    return clamp(prior * (1 - ROLLING_RATE_ALPHA) + current * ROLLING_RATE_ALPHA, 0, 1)


def compute_source_health_patch(data: SourceHealthInput) -> SourceHealthPatch:
    prior_metadata = as_record(data.prior.metadata_json)
    prior_health = HealthSnapshot.from_metadata(prior_metadata)
    now_iso = to_iso(data.now)

    run_promotion_rate = (
        clamp(data.curated_candidate_count / data.candidate_count, 0, 1) if data.candidate_count > 0 else 0.0
    )
    failure_denominator = max(data.discovered_pages, data.extracted_pages + data.failed_pages)
    if failure_denominator > 0:
        run_failure_rate = clamp(data.failed_pages / failure_denominator, 0, 1)
    else:
        run_failure_rate = 1.0 if data.status == "failed" else 0.0
    if data.discovered_pages > 0:
        run_completion_rate = clamp(data.extracted_pages / data.discovered_pages, 0, 1)
    else:
        run_completion_rate = 0.0 if data.status == "failed" else 1.0

    prior_promotion = as_float(data.prior.rolling_promotion_rate_30d)
    prior_failure = as_float(data.prior.rolling_failure_rate_30d)

    if data.skipped_by_cadence:
        # A skip is not a run: last_run_at and the last_run_* fields keep describing the prior run.
        return SourceHealthPatch(
            last_run_at=data.prior.last_run_at,
            last_success_at=data.prior.last_success_at,
            rolling_promotion_rate_30d=prior_promotion,
            rolling_failure_rate_30d=prior_failure,
            metadata_json=merge_metadata_section(
                prior_metadata,
                HEALTH_KEY,
                {"skipped_by_cadence": True, "updated_at": now_iso},
            ),
        )

    rolling_promotion = _smooth_rate(prior_promotion, run_promotion_rate)
    rolling_failure = _smooth_rate(prior_failure, run_failure_rate)
    health_score = round_half_up(
        100 * clamp((1 - rolling_failure) * 0.5 + rolling_promotion * 0.3 + run_completion_rate * 0.2, 0, 1)
    )
    failed = data.status == "failed"
    consecutive_failures = prior_health.consecutive_failures + 1 if failed else 0
    if data.candidate_count >= LOW_QUALITY_MIN_CANDIDATES and data.curated_candidate_count == 0:
        consecutive_low_quality = prior_health.consecutive_low_quality_runs + 1
    elif failed:
        consecutive_low_quality = prior_health.consecutive_low_quality_runs
    else:
        consecutive_low_quality = 0
    observed_runs = prior_health.observed_runs + 1
    observed_failed_runs = prior_health.observed_failed_runs + (1 if failed else 0)

    successful_run = data.status == "success" or (data.status == "partial" and data.extracted_pages > 0)

    metadata_json = merge_metadata_section(
        prior_metadata,
        HEALTH_KEY,
        {
            "version": HEALTH_SCORE_VERSION,
            "health_score": health_score,
            "consecutive_failures": consecutive_failures,
            "consecutive_low_quality_runs": consecutive_low_quality,
            "observed_runs": observed_runs,
            "observed_failed_runs": observed_failed_runs,
            "last_run_status": data.status,
            "last_error": data.run_error,
            "last_run_promotion_rate": run_promotion_rate,
            "last_run_failure_rate": run_failure_rate,
            "last_run_completion_rate": run_completion_rate,
            "last_run_candidate_count": data.candidate_count,
            "last_run_curated_candidate_count": data.curated_candidate_count,
            "last_run_quality_filtered_candidate_count": data.quality_filtered_candidate_count,
            "last_run_discovered_pages": data.discovered_pages,
            "last_run_extracted_pages": data.extracted_pages,
            "last_run_failed_pages": data.failed_pages,
            "skipped_by_cadence": False,
            "runtime_policy": data.policy.as_meta(),
            "updated_at": now_iso,
        },
    )

    return SourceHealthPatch(
        last_run_at=now_iso,
        last_success_at=now_iso if successful_run else data.prior.last_success_at,
        rolling_promotion_rate_30d=rolling_promotion,
        rolling_failure_rate_30d=rolling_failure,
        metadata_json=metadata_json,
    )

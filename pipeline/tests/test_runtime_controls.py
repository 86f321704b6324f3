import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from ingestion.jobs.runtime_controls import (
    OperationRateLimiter,
    OperationTimeoutError,
    RetryExhaustedError,
    SourceHealthInput,
    SourceRuntimePolicy,
    compute_source_health_patch,
    evaluate_cadence,
    evaluate_source_compliance_pre_run,
    filter_urls_by_patterns,
    merge_compliance_alert_metadata,
    parse_cadence_interval_ms,
    resolve_source_runtime_policy,
    run_with_retry,
    with_timeout,
)
from ingestion.services.repository import SourceRegistryRecord

HOUR_MS = 60 * 60 * 1000
NOW = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)


def _record(**overrides) -> SourceRegistryRecord:
    values = {
        "source_key": "rak",
        "state": "active",
        "approved_for_prod": True,
        "legal_risk_level": "low",
        "robots_checked_at": "2026-02-27T00:00:00.000Z",
        "terms_checked_at": "2026-02-20T00:00:00.000Z",
        "cadence": "FREQ=DAILY;BYHOUR=2;BYMINUTE=0",
        "config_version": "3",
    }
    values.update(overrides)
    return SourceRegistryRecord(**values)


async def _no_sleep(_seconds: float) -> None:
    return None


def test_resolve_policy_reads_columns_and_runtime_metadata() -> None:
    record = _record(
        max_rps=2.5,
        max_concurrency=4,
        timeout_seconds=45,
        include_url_patterns=["/kindness-ideas"],
        exclude_url_patterns=["/category/"],
        metadata_json={
            "runtime": {
                "retry_max_attempts": 3,
                "retry_backoff_ms": 1200,
                "retry_backoff_multiplier": 1.5,
            }
        },
    )

    policy = resolve_source_runtime_policy(record)

    assert policy.max_rps == 2.5
    assert policy.max_concurrency == 4
    assert policy.timeout_seconds == 45
    assert policy.retry_max_attempts == 3
    assert policy.retry_backoff_ms == 1200
    assert policy.retry_backoff_multiplier == 1.5
    assert policy.include_url_patterns == ["/kindness-ideas"]
    assert policy.exclude_url_patterns == ["/category/"]


def test_resolve_policy_falls_back_through_legacy_aliases_and_clamps() -> None:
    record = _record(
        max_rps=100,
        max_concurrency=0,
        timeout_seconds=1,
        metadata_json={"retryMaxAttempts": "12", "retryBackoffMs": "50", "retry_backoff_multiplier": "bogus"},
    )

    policy = resolve_source_runtime_policy(record)

    assert policy.max_rps == 20
    assert policy.max_concurrency == 1
    assert policy.timeout_seconds == 5
    assert policy.retry_max_attempts == 8
    assert policy.retry_backoff_ms == 100
    assert policy.retry_backoff_multiplier == 2


def test_resolve_policy_prefers_runtime_path_over_top_level_alias() -> None:
    record = _record(metadata_json={"runtime": {"max_retries": 4}, "retry_max_attempts": 6})

    assert resolve_source_runtime_policy(record).retry_max_attempts == 4


def test_resolve_policy_returns_defaults_without_record() -> None:
    policy = resolve_source_runtime_policy(None)

    assert policy == SourceRuntimePolicy()
    assert policy.max_rps == 1
    assert policy.retry_backoff_ms == 750


def test_parse_cadence_interval_supports_hourly_daily_weekly() -> None:
    assert parse_cadence_interval_ms("FREQ=HOURLY;INTERVAL=2") == 2 * HOUR_MS
    assert parse_cadence_interval_ms("FREQ=DAILY") == 24 * HOUR_MS
    assert parse_cadence_interval_ms("freq=weekly;interval=3") == 3 * 7 * 24 * HOUR_MS
    assert parse_cadence_interval_ms("FREQ=MONTHLY") is None
    assert parse_cadence_interval_ms("INTERVAL=2") is None
    assert parse_cadence_interval_ms("FREQ=DAILY;INTERVAL=0") is None
    assert parse_cadence_interval_ms("FREQ=DAILY;INTERVAL=abc") is None


def test_evaluate_cadence_marks_not_due_inside_window() -> None:
    now = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    result = evaluate_cadence("FREQ=HOURLY;INTERVAL=3", "2026-03-01T08:30:00.000Z", now)

    assert result.is_due is False
    assert result.reason == "cadence_not_due"
    assert result.next_run_at == "2026-03-01T11:30:00.000Z"


def test_evaluate_cadence_is_due_exactly_at_interval_boundary() -> None:
    last_run = NOW - timedelta(hours=1)

    due = evaluate_cadence("FREQ=HOURLY", last_run.isoformat(), NOW)
    short = evaluate_cadence("FREQ=HOURLY", (last_run + timedelta(milliseconds=1)).isoformat(), NOW)

    assert due.is_due is True
    assert due.reason == "cadence_due"
    assert short.is_due is False


def test_evaluate_cadence_fails_open() -> None:
    assert evaluate_cadence(None, None, NOW).reason == "no_cadence_configured"
    assert evaluate_cadence("FREQ=YEARLY", None, NOW).reason == "cadence_unparsed_treat_due"
    assert evaluate_cadence("FREQ=DAILY", None, NOW).reason == "no_last_run"
    invalid = evaluate_cadence("FREQ=DAILY", "not-a-date", NOW)
    assert invalid.reason == "invalid_last_run_treat_due"
    assert invalid.is_due is True


def test_filter_urls_applies_include_exclude_with_glob_fallback() -> None:
    result = filter_urls_by_patterns(
        [
            "https://example.com/ideas/1",
            "https://example.com/ideas/2",
            "https://example.com/blog/3",
            "https://example.com/ideas/2",
        ],
        ["/ideas/"],
        ["*ideas/2"],
    )

    assert result.accepted == ["https://example.com/ideas/1"]
    assert result.dropped_by_include == 1
    assert result.dropped_by_exclude == 1
    assert result.invalid_pattern_count == 0


def test_filter_urls_exclude_wins_and_blank_patterns_are_counted() -> None:
    result = filter_urls_by_patterns(
        ["https://example.com/IDEAS/a", "https://example.com/ideas/b"],
        ["/ideas/", "  "],
        ["/ideas/a"],
    )

    assert result.accepted == ["https://example.com/ideas/b"]
    assert result.dropped_by_exclude == 1
    assert result.invalid_pattern_count == 1


def test_run_with_retry_returns_value_and_attempt_count() -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise RuntimeError("transient")
        return "ok"

    result = asyncio.run(
        run_with_retry(
            flaky,
            operation_label="test-op",
            timeout_ms=1000,
            max_attempts=3,
            backoff_ms=0,
            backoff_multiplier=2,
        )
    )

    assert result.value == "ok"
    assert result.attempts == 3


def test_run_with_retry_multiplies_backoff_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def always_fails() -> None:
        raise RuntimeError("boom")

    with caplog.at_level(logging.WARNING):
        with pytest.raises(RetryExhaustedError) as excinfo:
            asyncio.run(
                run_with_retry(
                    always_fails,
                    operation_label="discover:rak",
                    timeout_ms=1000,
                    max_attempts=3,
                    backoff_ms=100,
                    backoff_multiplier=1.5,
                    sleep=record_sleep,
                )
            )

    assert str(excinfo.value) == "discover:rak failed after 3 attempts: boom"
    assert excinfo.value.attempts == 3
    assert sleeps == [0.1, 0.15]
    assert caplog.text.count("Operation attempt failed; retrying") == 2


def test_with_timeout_raises_labelled_error() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(OperationTimeoutError, match=r"fetch \(attempt 1\) timed out after 10ms"):
        asyncio.run(with_timeout(slow, 10, "fetch (attempt 1)"))


def test_rate_limiter_advances_watermark_by_minimum_gap() -> None:
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    limiter = OperationRateLimiter(3, clock=lambda: 100.0, sleep=record_sleep)

    async def take_turns() -> None:
        for _ in range(3):
            await limiter.wait_turn()

    asyncio.run(take_turns())

    assert limiter.minimum_gap_ms == 334
    assert sleeps == pytest.approx([0.334, 0.668])


def test_compliance_blocks_stale_reviews_and_suggests_degraded() -> None:
    record = _record(
        robots_checked_at="2026-02-01T00:00:00.000Z",
        terms_checked_at="2026-01-01T00:00:00.000Z",
        metadata_json={"compliance": {"legal_hold": False}},
    )

    result = evaluate_source_compliance_pre_run("rak", record, NOW, robots_ttl_days=7, terms_ttl_days=30)

    assert result.is_compliant is False
    assert result.should_block is True
    assert result.severity == "warn"
    assert result.transition_state == "degraded"
    assert "robots_check_stale" in result.reason_codes
    assert "terms_check_stale" in result.reason_codes
    assert result.message is not None
    assert "Compliance pre-run check failed" in result.message
    assert result.evidence_bundle["version"] == "ing021_v1"


def test_compliance_escalates_legal_hold_to_pause() -> None:
    record = _record(
        legal_risk_level="high",
        robots_checked_at="2026-02-27T00:00:00.000Z",
        terms_checked_at="2026-02-27T00:00:00.000Z",
        metadata_json={"compliance": {"legal_hold": True}},
    )

    result = evaluate_source_compliance_pre_run("rak", record, NOW)

    assert result.is_compliant is False
    assert result.severity == "critical"
    assert result.transition_state == "paused"
    assert "legal_hold_active" in result.reason_codes


def test_compliance_detects_hold_status_and_unexpired_hold_until() -> None:
    by_status = _record(metadata_json={"compliance": {"legal_hold_status": "ON_HOLD"}})
    by_until = _record(metadata_json={"compliance": {"legal_hold_until": "2026-04-01T00:00:00Z"}})
    expired = _record(metadata_json={"compliance": {"legal_hold_until": "2026-01-01T00:00:00Z"}})

    assert "legal_hold_active" in evaluate_source_compliance_pre_run("rak", by_status, NOW).reason_codes
    assert "legal_hold_active" in evaluate_source_compliance_pre_run("rak", by_until, NOW).reason_codes
    assert evaluate_source_compliance_pre_run("rak", expired, NOW).is_compliant is True


def test_compliance_flags_missing_invalid_and_inactive_sources() -> None:
    record = _record(state="degraded", robots_checked_at=None, terms_checked_at="yesterday")

    result = evaluate_source_compliance_pre_run("rak", record, NOW)

    assert result.reason_codes == ["source_not_active", "robots_check_missing", "terms_check_invalid"]
    assert result.severity == "warn"
    assert result.transition_state is None


def test_compliance_unregistered_source_is_critical_without_transition() -> None:
    result = evaluate_source_compliance_pre_run("ghost", None, NOW)

    assert result.reason_codes == ["source_not_registered"]
    assert result.severity == "critical"
    assert result.transition_state is None
    assert result.evidence_bundle["status"] == "failed"


def test_compliance_passes_with_fresh_reviews() -> None:
    result = evaluate_source_compliance_pre_run("rak", _record(), NOW)

    assert result.is_compliant is True
    assert result.should_block is False
    assert result.message is None
    assert result.evidence_bundle["status"] == "passed"


def test_merge_compliance_alert_metadata_caps_history() -> None:
    merged = merge_compliance_alert_metadata(
        {
            "health": {"health_score": 80},
            "compliance": {"alert_history": [{"id": f"prior-{index}"} for index in range(20)]},
        },
        {"id": "new-alert", "reason_codes": ["robots_check_stale"]},
        NOW,
        failed=True,
    )

    compliance = merged["compliance"]
    assert compliance["last_pre_run_check_status"] == "failed"
    assert len(compliance["alert_history"]) == 20
    assert compliance["alert_history"][0]["id"] == "new-alert"
    assert merged["health"] == {"health_score": 80}


def test_merge_compliance_alert_metadata_records_pass_without_history() -> None:
    merged = merge_compliance_alert_metadata({}, {"id": "ok"}, NOW, failed=False)

    assert merged["compliance"]["last_pre_run_check_status"] == "passed"
    assert "alert_history" not in merged["compliance"]


def _health_input(**overrides) -> SourceHealthInput:
    values = {
        "now": datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
        "status": "partial",
        "discovered_pages": 10,
        "extracted_pages": 8,
        "failed_pages": 2,
        "candidate_count": 6,
        "curated_candidate_count": 3,
        "quality_filtered_candidate_count": 3,
        "skipped_by_cadence": False,
        "policy": SourceRuntimePolicy(cadence="FREQ=DAILY", max_concurrency=2),
        "prior": _record(
            last_success_at="2026-02-28T10:00:00.000Z",
            rolling_promotion_rate_30d=0.4,
            rolling_failure_rate_30d=0.1,
            metadata_json={"health": {"consecutive_failures": 2, "health_score": 67}},
        ),
    }
    values.update(overrides)
    return SourceHealthInput(**values)


def test_health_patch_updates_rolling_rates_and_counters() -> None:
    patch = compute_source_health_patch(_health_input())

    assert patch.last_run_at == "2026-03-01T10:00:00.000Z"
    assert patch.last_success_at == "2026-03-01T10:00:00.000Z"
    assert patch.rolling_promotion_rate_30d == pytest.approx(0.42)
    assert patch.rolling_failure_rate_30d == pytest.approx(0.12)

    health = patch.metadata_json["health"]
    assert health["version"] == "ing022_v1"
    assert health["last_run_status"] == "partial"
    assert health["consecutive_failures"] == 0
    assert health["observed_runs"] == 1
    assert health["observed_failed_runs"] == 0
    assert health["consecutive_low_quality_runs"] == 0
    assert health["skipped_by_cadence"] is False
    assert health["health_score"] == 73


def test_health_patch_counts_failures_and_low_quality_streaks() -> None:
    prior = _record(
        rolling_failure_rate_30d=0.5,
        metadata_json={"health": {"consecutive_failures": 2, "observed_runs": 5, "observed_failed_runs": 2}},
    )
    failed = compute_source_health_patch(
        _health_input(
            status="failed",
            discovered_pages=0,
            extracted_pages=0,
            failed_pages=0,
            candidate_count=0,
            curated_candidate_count=0,
            prior=prior,
            run_error="boom",
        )
    )
    low_quality = compute_source_health_patch(
        _health_input(status="success", failed_pages=0, candidate_count=4, curated_candidate_count=0)
    )

    assert failed.metadata_json["health"]["consecutive_failures"] == 3
    assert failed.metadata_json["health"]["observed_failed_runs"] == 3
    assert failed.metadata_json["health"]["last_error"] == "boom"
    assert failed.rolling_failure_rate_30d == pytest.approx(0.6)
    assert failed.last_success_at is None
    assert low_quality.metadata_json["health"]["consecutive_low_quality_runs"] == 1


def test_health_patch_skipped_run_passes_rolling_state_through() -> None:
    prior = _record(
        rolling_promotion_rate_30d=0.3,
        rolling_failure_rate_30d=0.2,
        last_success_at="2026-02-20T00:00:00.000Z",
        metadata_json={
            "health": {
                "health_score": 71,
                "consecutive_failures": 1,
                "observed_runs": 9,
                "consecutive_low_quality_runs": 2,
            },
            "lifecycle": {"last_alert": {"id": "x"}},
        },
    )

    patch = compute_source_health_patch(
        _health_input(
            status="success",
            discovered_pages=0,
            extracted_pages=0,
            failed_pages=0,
            candidate_count=0,
            curated_candidate_count=0,
            skipped_by_cadence=True,
            prior=prior,
        )
    )

    health = patch.metadata_json["health"]
    assert patch.rolling_promotion_rate_30d == 0.3
    assert patch.rolling_failure_rate_30d == 0.2
    assert patch.last_success_at == "2026-02-20T00:00:00.000Z"
    assert health["health_score"] == 71
    assert health["consecutive_failures"] == 1
    assert health["observed_runs"] == 9
    assert health["consecutive_low_quality_runs"] == 2
    assert patch.metadata_json["lifecycle"] == {"last_alert": {"id": "x"}}


def test_health_patch_skipped_run_keeps_last_run_and_cadence_window() -> None:
    prior = _record(
        cadence="FREQ=DAILY",
        last_run_at="2026-01-01T00:00:00.000Z",
        last_success_at="2026-01-01T00:00:00.000Z",
        metadata_json={
            "health": {
                "last_run_status": "success",
                "last_run_candidate_count": 12,
                "last_run_curated_candidate_count": 7,
                "skipped_by_cadence": False,
            }
        },
    )

    patch = compute_source_health_patch(
        _health_input(
            now=datetime(2026, 1, 1, 20, 0, tzinfo=timezone.utc),
            status="success",
            discovered_pages=0,
            extracted_pages=0,
            failed_pages=0,
            candidate_count=0,
            curated_candidate_count=0,
            quality_filtered_candidate_count=0,
            skipped_by_cadence=True,
            prior=prior,
        )
    )

    health = patch.metadata_json["health"]
    assert patch.last_run_at == "2026-01-01T00:00:00.000Z"
    assert patch.last_success_at == "2026-01-01T00:00:00.000Z"
    assert health["last_run_status"] == "success"
    assert health["last_run_candidate_count"] == 12
    assert health["last_run_curated_candidate_count"] == 7
    assert health["skipped_by_cadence"] is True
    assert health["updated_at"] == "2026-01-01T20:00:00.000Z"
    assert evaluate_cadence("FREQ=DAILY", patch.last_run_at, datetime(2026, 1, 2, 1, 0, tzinfo=timezone.utc)).is_due

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace

from ingestion.core.config import assert_ingest_config, get_settings
from ingestion.core.metadata import (
    INCIDENTS_KEY,
    ComplianceSnapshot,
    HealthSnapshot,
    as_record,
    as_string_list,
    parse_timestamp,
    prepend_history,
    to_iso,
    utc_now,
)
from ingestion.jobs.runtime_controls import parse_cadence_interval_ms
from ingestion.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    SourceRegistryRecord,
    SourceRejectionRateTrend,
    get_repository,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

INCIDENT_ALERT_VERSION = "ing051_v1"
MAX_ALERT_HISTORY = 30
REJECTION_SURGE_WINDOW_DAYS = 7
SEVERITIES = ("sev1", "sev2", "sev3")
_SEVERITY_RANK = {"sev1": 3, "sev2": 2, "sev3": 1}

ROUTING_BY_SEVERITY: dict[str, dict[str, Any]] = {
    "sev1": {
        "channels": ["ingestion-oncall", "compliance-owner", "product-owner"],
        "ack_within_minutes": 15,
        "mitigate_within_minutes": 60,
    },
    "sev2": {
        "channels": ["ingestion-oncall", "source-owner"],
        "ack_within_minutes": 60,
        "mitigate_within_minutes": 240,
    },
    "sev3": {
        "channels": ["source-owner"],
        "ack_within_minutes": 240,
        "mitigate_within_minutes": 1440,
    },
}


@dataclass(slots=True)
class IncidentAlert:
    id: str
    source_key: str
    display_name: str
    code: str
    severity: str
    summary: str
    routing: dict[str, Any]
    generated_at: str
    evidence_bundle: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_key": self.source_key,
            "display_name": self.display_name,
            "code": self.code,
            "severity": self.severity,
            "summary": self.summary,
            "routing": dict(self.routing),
            "generated_at": self.generated_at,
            "evidence_bundle": self.evidence_bundle,
        }


def build_alert_id(source_key: str, code: str, generated_at: str) -> str:
    stamp = re.sub(r"[-:.TZ]", "", generated_at)[:14]
    return f"{source_key}:{code}:{stamp}"


def _alert(
    record: SourceRegistryRecord,
    generated_at: str,
    code: str,
    severity: str,
    summary: str,
    evidence: dict[str, Any],
) -> IncidentAlert:
    return IncidentAlert(
        id=build_alert_id(record.source_key, code, generated_at),
        source_key=record.source_key,
        display_name=record.display_name or record.source_key,
        code=code,
        severity=severity,
        summary=summary,
        routing=ROUTING_BY_SEVERITY[severity],
        generated_at=generated_at,
        evidence_bundle={
            "version": INCIDENT_ALERT_VERSION,
            "source_key": record.source_key,
            "code": code,
            "severity": severity,
            "summary": summary,
            "generated_at": generated_at,
            **evidence,
        },
    )


def _schedule_miss(record: SourceRegistryRecord, now: datetime, generated_at: str) -> IncidentAlert | None:
    if not record.cadence:
        return None
    interval_ms = parse_cadence_interval_ms(record.cadence)
    if interval_ms is None:
        return None

    if not record.last_run_at:
        return _alert(
            record,
            generated_at,
            "schedule_miss",
            "sev2",
            "Scheduled source has no recorded run timestamp.",
            {"cadence": record.cadence, "last_run_at": None, "expected_interval_ms": interval_ms},
        )

    last_run = parse_timestamp(record.last_run_at)
    if last_run is None:
        return None

    interval = timedelta(milliseconds=interval_ms)
    expected_next = last_run + interval
    overdue = now - expected_next
    if overdue < interval:
        return None
    return _alert(
        record,
        generated_at,
        "schedule_miss",
        "sev2",
        "Source appears to have missed at least one scheduled run.",
        {
            "cadence": record.cadence,
            "last_run_at": record.last_run_at,
            "expected_next_run_at": to_iso(expected_next),
            "overdue_ms": int(overdue.total_seconds() * 1000),
        },
    )


def _rejection_surge(
    record: SourceRegistryRecord,
    trend: SourceRejectionRateTrend | None,
    generated_at: str,
) -> IncidentAlert | None:
    if trend is None:
        return None
    recent = trend.recent_rejection_rate
    prior = trend.prior_rejection_rate
    if recent is None or prior is None:
        return None
    if trend.recent_reviewed_count < 20 or trend.prior_reviewed_count < 20:
        return None
    if recent < prior + 0.1 or recent < prior * 1.5:
        return None
    return _alert(
        record,
        generated_at,
        "rejection_rate_surge",
        "sev2",
        "Editorial rejection rate increased sharply versus prior window.",
        {
            "window_days": REJECTION_SURGE_WINDOW_DAYS,
            "recent_reviewed_count": trend.recent_reviewed_count,
            "recent_rejected_count": trend.recent_rejected_count,
            "recent_rejection_rate": recent,
            "prior_reviewed_count": trend.prior_reviewed_count,
            "prior_rejected_count": trend.prior_rejected_count,
            "prior_rejection_rate": prior,
            "delta_rejection_rate": recent - prior,
        },
    )


def evaluate_source_incidents(
    record: SourceRegistryRecord,
    now: datetime,
    rejection_trend: SourceRejectionRateTrend | None = None,
) -> list[IncidentAlert]:
    """Evaluate one registry row; at most one alert per code, highest severity kept."""
    generated_at = to_iso(now)
    health = HealthSnapshot.from_metadata(record.metadata_json)
    compliance = ComplianceSnapshot.from_metadata(record.metadata_json)
    failure_rate = record.rolling_failure_rate_30d or 0.0
    promotion_rate = record.rolling_promotion_rate_30d or 0.0
    in_production = record.state == "active" and record.approved_for_prod

    alerts: list[IncidentAlert] = []
    if (
        in_production
        and promotion_rate >= 0.1
        and health.last_run_candidate_count >= 5
        and health.last_run_curated_candidate_count == 0
    ):
        alerts.append(
            _alert(
                record,
                generated_at,
                "zero_yield_anomaly",
                "sev2",
                "Zero curated yield on historically productive source.",
                {
                    "rolling_promotion_rate_30d": promotion_rate,
                    "last_run_candidate_count": health.last_run_candidate_count,
                    "last_run_curated_candidate_count": health.last_run_curated_candidate_count,
                    "state": record.state,
                    "approved_for_prod": record.approved_for_prod,
                },
            )
        )

    if in_production and (
        health.consecutive_failures >= 3 or (failure_rate >= 0.5 and health.observed_runs >= 6)
    ):
        severity = "sev1" if health.consecutive_failures >= 5 or failure_rate >= 0.8 else "sev2"
        alerts.append(
            _alert(
                record,
                generated_at,
                "failure_spike",
                severity,
                "Failure spike exceeds runtime reliability thresholds.",
                {
                    "consecutive_failures": health.consecutive_failures,
                    "observed_runs": health.observed_runs,
                    "rolling_failure_rate_30d": failure_rate,
                    "last_run_status": health.last_run_status,
                    "last_error": health.last_error,
                },
            )
        )

    if in_production:
        schedule_alert = _schedule_miss(record, now, generated_at)
        if schedule_alert is not None:
            alerts.append(schedule_alert)

    surge_alert = _rejection_surge(record, rejection_trend, generated_at)
    if surge_alert is not None:
        alerts.append(surge_alert)

    if compliance.last_pre_run_check_status == "failed":
        last_check = compliance.last_pre_run_check
        alerts.append(
            _alert(
                record,
                generated_at,
                "compliance_failure",
                "sev1" if last_check.get("severity") == "critical" else "sev2",
                "Recent compliance pre-run failure requires operator triage.",
                {
                    "compliance_check": last_check,
                    "reason_codes": as_string_list(last_check.get("reason_codes")),
                },
            )
        )

    deduped: dict[str, IncidentAlert] = {}
    for alert in alerts:
        existing = deduped.get(alert.code)
        if existing is None or _SEVERITY_RANK[alert.severity] > _SEVERITY_RANK[existing.severity]:
            deduped[alert.code] = alert
    return list(deduped.values())


def count_by_severity(alerts: list[IncidentAlert]) -> dict[str, int]:
    counts = {severity: 0 for severity in SEVERITIES}
    for alert in alerts:
        counts[alert.severity] += 1
    return counts


def merge_incident_alert_metadata(
    metadata_json: Any,
    alerts: list[IncidentAlert],
    now: datetime,
) -> dict[str, Any]:
    metadata = as_record(metadata_json)
    incidents = as_record(metadata.get(INCIDENTS_KEY))
    return {
        **metadata,
        INCIDENTS_KEY: {
            **incidents,
            "version": INCIDENT_ALERT_VERSION,
            "last_alert_run_at": to_iso(now),
            "last_alert_count": len(alerts),
            "last_alerts": [
                {
                    "id": alert.id,
                    "code": alert.code,
                    "severity": alert.severity,
                    "summary": alert.summary,
                    "routing": alert.routing,
                    "generated_at": alert.generated_at,
                }
                for alert in alerts
            ],
            "alert_severity_counts": count_by_severity(alerts),
            "alert_history": prepend_history(
                [alert.evidence_bundle for alert in alerts],
                incidents.get("alert_history"),
                MAX_ALERT_HISTORY,
            ),
        },
    }


def _log_alert(alert: IncidentAlert) -> None:
    message = "%s %s: %s source_key=%s alert_id=%s"
    args = (alert.severity.upper(), alert.code, alert.summary, alert.source_key, alert.id)
    if alert.severity == "sev1":
        logger.error(message, *args)
    elif alert.severity == "sev2":
        logger.warning(message, *args)
    else:
        logger.info(message, *args)


async def incident_alerts(
    source_key: str | None = None,
    *,
    repository=None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if repository is None:
        assert_ingest_config(get_settings())
        repository = get_repository()
    current = now or utc_now()

    with tracer.start_as_current_span("ingest.incident_alerts") as span:
        span.set_attribute("ingest.source_key", source_key or "*")
        records = await repository.list_source_registry_records([source_key] if source_key else None)
        if source_key and not records:
            raise RepositoryNotFoundError(f'No source registry row found for source key "{source_key}"')

        trends = await repository.list_source_rejection_rate_trends(
            [record.source_key for record in records],
            window_days=REJECTION_SURGE_WINDOW_DAYS,
            now=current,
        )
        trend_by_source = {trend.source_key: trend for trend in trends}

        alerts: list[IncidentAlert] = []
        failed_source_count = 0
        for record in records:
            source_alerts = evaluate_source_incidents(record, current, trend_by_source.get(record.source_key))
            if not source_alerts:
                continue
            alerts.extend(source_alerts)

            merged = merge_incident_alert_metadata(record.metadata_json, source_alerts, current)
            try:
                await repository.update_source_runtime(
                    record.source_key,
                    metadata_sections={INCIDENTS_KEY: merged[INCIDENTS_KEY]},
                )
            except RepositoryError as exc:
                failed_source_count += 1
                logger.warning(
                    "Failed to persist incident alert metadata source_key=%s error=%s",
                    record.source_key,
                    exc,
                )

            for alert in source_alerts:
                _log_alert(alert)

        span.set_attribute("ingest.alert_count", len(alerts))

    return {
        "generated_at": to_iso(current),
        "source_count": len(records),
        "alert_count": len(alerts),
        "alerts_by_severity": count_by_severity(alerts),
        "alerts": [alert.as_dict() for alert in alerts],
        "failed_source_count": failed_source_count,
    }

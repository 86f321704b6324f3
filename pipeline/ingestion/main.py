from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from opentelemetry import trace

from ingestion.core.config import Settings, assert_ingest_config, get_settings
from ingestion.core.metadata import utc_now
from ingestion.core.telemetry import (
    configure_pipeline_logging,
    setup_pipeline_telemetry,
    shutdown_pipeline_telemetry,
)
from ingestion.jobs.incident_alerts import incident_alerts
from ingestion.jobs.reconcile_promotions import reconcile_promotions
from ingestion.jobs.run_source import SourceRunFailedError, run_source
from ingestion.jobs.runtime_controls import evaluate_cadence, resolve_source_runtime_policy
from ingestion.services.repository import get_editorial_repository, get_repository
from ingestion.sources.registry import list_sources

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SCHEDULED_STATES = {"active", "degraded"}


@dataclass(slots=True)
class SchedulerState:
    last_incident_at: float | None = None
    last_reconcile_at: float | None = None


def _interval_elapsed(last_at: float | None, now: float, interval_seconds: float) -> bool:
    return last_at is None or now - last_at >= interval_seconds


async def run_due_sources(
    repository,
    *,
    now: datetime | None = None,
    **run_kwargs: Any,
) -> list[dict[str, Any]]:
    """Run every registered, schedulable source whose cadence window is open."""
    current = now or utc_now()
    bundled = {source.key for source in list_sources()}
    results: list[dict[str, Any]] = []

    for record in await repository.list_source_registry_records():
        if record.state not in SCHEDULED_STATES:
            continue
        if record.source_key not in bundled:
            logger.debug("Registry source has no bundled module source_key=%s", record.source_key)
            continue
        cadence = evaluate_cadence(resolve_source_runtime_policy(record).cadence, record.last_run_at, current)
        if not cadence.is_due:
            continue

        with tracer.start_as_current_span("pipeline.scheduled_run") as span:
            span.set_attribute("ingest.source_key", record.source_key)
            try:
                result = await run_source(
                    record.source_key,
                    respect_cadence=True,
                    repository=repository,
                    now=now,
                    **run_kwargs,
                )
            except SourceRunFailedError as exc:
                logger.error(
                    "scheduled run failed source_key=%s run_id=%s error=%s", record.source_key, exc.run_id, exc
                )
                results.append(
                    {"source_key": record.source_key, "run_id": exc.run_id, "status": "failed", "error": str(exc)}
                )
                continue
            except Exception as exc:
                logger.exception("scheduled run failed source_key=%s", record.source_key)
                results.append({"source_key": record.source_key, "status": "failed", "error": str(exc)})
                continue

        results.append({"source_key": record.source_key, "run_id": result.run_id, "status": result.status})
    return results


async def run_scheduler_cycle(
    state: SchedulerState,
    *,
    settings: Settings,
    repository,
    editorial=None,
    monotonic_now: float | None = None,
    now: datetime | None = None,
    **run_kwargs: Any,
) -> dict[str, Any]:
    tick = time.monotonic() if monotonic_now is None else monotonic_now
    summary: dict[str, Any] = {"runs": await run_due_sources(repository, now=now, **run_kwargs)}

    if _interval_elapsed(state.last_incident_at, tick, settings.incident_interval_seconds):
        alerts = await incident_alerts(repository=repository, now=now)
        if alerts["alert_count"]:
            logger.info("incident alerts raised: %s", alerts["alerts_by_severity"])
        summary["incidents"] = alerts
        state.last_incident_at = tick

    if (editorial is not None or settings.app_database_url) and _interval_elapsed(
        state.last_reconcile_at, tick, settings.reconcile_interval_seconds
    ):
        reconciliation = await reconcile_promotions(
            repository=repository,
            editorial=editorial or get_editorial_repository(),
            settings=settings,
            now=now,
        )
        summary["reconciliation"] = reconciliation
        state.last_reconcile_at = tick

    return summary


async def run_scheduler() -> None:
    settings = get_settings()
    configure_pipeline_logging(settings.log_level)
    telemetry_runtime = setup_pipeline_telemetry(settings, component="scheduler")
    assert_ingest_config(settings)
    repository = get_repository()

    state = SchedulerState()
    backoff = settings.poll_interval_seconds
    try:
        while True:
            try:
                with tracer.start_as_current_span("pipeline.scheduler_cycle"):
                    summary = await run_scheduler_cycle(state, settings=settings, repository=repository)
                    if summary["runs"]:
                        logger.info("scheduled runs finished: %s", len(summary["runs"]))
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - scheduler robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("scheduler iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        if get_editorial_repository.cache_info().currsize:
            await get_editorial_repository().close()
        shutdown_pipeline_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_scheduler())


if __name__ == "__main__":
    main()

"""Operator CLI for the ingestion pipeline.

Every subcommand prints one JSON document on stdout. Logs go to stderr.
Expected failures (bad input, missing config, blocked or unavailable sources)
print ``{"error": ...}`` on stderr and exit with status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable

from ingestion.core.config import ConfigurationError, get_settings
from ingestion.core.telemetry import (
    configure_pipeline_logging,
    setup_pipeline_telemetry,
    shutdown_pipeline_telemetry,
)
from ingestion.jobs.incident_alerts import incident_alerts
from ingestion.jobs.reconcile_promotions import reconcile_promotions
from ingestion.jobs.replay_run import replay_run
from ingestion.jobs.run_source import (
    ComplianceBlockedError,
    SourceRunFailedError,
    SourceStateError,
    run_source,
)
from ingestion.jobs.source_health import source_health
from ingestion.jobs.source_probe import SourceProbeInputError, source_probe
from ingestion.services.repository import (
    ONBOARDING_APPROVAL_ACTIONS,
    RepositoryError,
    get_editorial_repository,
    get_repository,
)
from ingestion.sources.contract import SourceContractError
from ingestion.sources.registry import SourceNotFoundError, list_sources

logger = logging.getLogger(__name__)

EXPECTED_ERRORS = (
    ConfigurationError,
    RepositoryError,
    SourceNotFoundError,
    SourceContractError,
    SourceStateError,
    SourceProbeInputError,
)

Command = Callable[[argparse.Namespace], Awaitable[Any]]


async def _list_sources(_: argparse.Namespace) -> list[dict[str, str]]:
    return [{"key": source.key, "display_name": source.display_name} for source in list_sources()]


async def _run_source(args: argparse.Namespace) -> dict[str, Any]:
    result = await run_source(args.source_key, respect_cadence=args.respect_cadence, force=args.force)
    return result.as_dict()


async def _source_health(args: argparse.Namespace) -> dict[str, Any]:
    return (await source_health(args.source_key)).as_dict()


async def _incident_alerts(args: argparse.Namespace) -> dict[str, Any]:
    return await incident_alerts(args.source_key)


async def _replay_run(args: argparse.Namespace) -> dict[str, Any]:
    tolerance = json.loads(args.tolerance) if args.tolerance else None
    result = await replay_run(args.run_id, config_version=args.config_version, tolerance=tolerance)
    return result.as_dict()


async def _reconcile_promotions(_: argparse.Namespace) -> dict[str, Any]:
    return await reconcile_promotions()


async def _source_probe(args: argparse.Namespace) -> dict[str, Any]:
    result = await source_probe(
        args.url,
        source_key=args.source_key,
        display_name=args.display_name,
        owner_team=args.owner_team,
        approval_action=args.approval_action,
        decision_reason=args.decision_reason,
        actor=args.actor,
        max_probe_pages=args.max_pages,
        persist=not args.no_persist,
    )
    return result.as_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ingest-pipeline", description="Run ingestion pipeline jobs.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list-sources", help="List bundled source modules").set_defaults(handler=_list_sources)

    run_parser = subparsers.add_parser("run-source", help="Run one ingestion pass for a source")
    run_parser.add_argument("source_key")
    run_parser.add_argument("--respect-cadence", action="store_true", help="Skip the run when cadence is not due")
    run_parser.add_argument(
        "--force",
        action="store_true",
        help="Run paused or retired sources and continue past a failed compliance check",
    )
    run_parser.set_defaults(handler=_run_source)

    health_parser = subparsers.add_parser("source-health", help="Summarize registry health signals")
    health_parser.add_argument("--source-key")
    health_parser.set_defaults(handler=_source_health)

    incident_parser = subparsers.add_parser("incident-alerts", help="Evaluate incident alerts for sources")
    incident_parser.add_argument("--source-key")
    incident_parser.set_defaults(handler=_incident_alerts)

    replay_parser = subparsers.add_parser("replay-run", help="Replay a finished run and check determinism")
    replay_parser.add_argument("run_id")
    replay_parser.add_argument("--config-version", help="Replay under this source config version")
    replay_parser.add_argument("--tolerance", help="JSON object of determinism tolerance overrides")
    replay_parser.set_defaults(handler=_replay_run)

    subparsers.add_parser(
        "reconcile-promotions",
        help="Repair candidate status and sync logs from editorial drafts",
    ).set_defaults(handler=_reconcile_promotions)

    probe_parser = subparsers.add_parser("source-probe", help="Probe a site and propose a registry entry")
    probe_parser.add_argument("url")
    probe_parser.add_argument("--source-key")
    probe_parser.add_argument("--display-name")
    probe_parser.add_argument("--owner-team")
    probe_parser.add_argument(
        "--approval-action",
        choices=sorted(ONBOARDING_APPROVAL_ACTIONS),
        default="pending_review",
    )
    probe_parser.add_argument("--decision-reason")
    probe_parser.add_argument("--actor")
    probe_parser.add_argument("--max-pages", type=int)
    probe_parser.add_argument("--no-persist", action="store_true", help="Do not write the proposal or report")
    probe_parser.set_defaults(handler=_source_probe)

    return parser


async def _close_repositories() -> None:
    if get_repository.cache_info().currsize:
        await get_repository().close()
    if get_editorial_repository.cache_info().currsize:
        await get_editorial_repository().close()


async def _execute(handler: Command, args: argparse.Namespace) -> Any:
    try:
        return await handler(args)
    finally:
        await _close_repositories()


def _print_json(payload: Any, stream=None) -> None:
    json.dump(payload, stream or sys.stdout, indent=2, sort_keys=True, default=str)
    (stream or sys.stdout).write("\n")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_pipeline_logging(settings.log_level)
    telemetry_runtime = setup_pipeline_telemetry(settings)

    try:
        payload = asyncio.run(_execute(args.handler, args))
    except ComplianceBlockedError as exc:
        logger.error("Command blocked by compliance gate command=%s", args.command)
        _print_json({"error": str(exc), "evidence": exc.evidence_bundle}, sys.stderr)
        return 1
    except SourceRunFailedError as exc:
        logger.error("Command failed command=%s run_id=%s error=%s", args.command, exc.run_id, exc)
        _print_json({"error": str(exc), "run_id": exc.run_id, "run": exc.result.as_dict()}, sys.stderr)
        return 1
    except EXPECTED_ERRORS as exc:
        logger.error("Command failed command=%s error=%s", args.command, exc)
        _print_json({"error": str(exc)}, sys.stderr)
        return 1
    except json.JSONDecodeError as exc:
        _print_json({"error": f"invalid --tolerance JSON: {exc}"}, sys.stderr)
        return 1
    finally:
        shutdown_pipeline_telemetry(telemetry_runtime)

    _print_json(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())

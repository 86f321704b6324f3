import json

import pytest

from ingestion import cli
from ingestion.core.config import get_settings
from ingestion.jobs.run_source import RunSourceResult, SourceRunFailedError


@pytest.fixture(autouse=True)
def _cli_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("INGEST_OTEL_ENABLED", "false")
    monkeypatch.delenv("INGEST_DATABASE_URL", raising=False)
    monkeypatch.delenv("INGEST_APP_DATABASE_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_list_sources_prints_bundled_modules(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["list-sources"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert {"key": "rak", "display_name": "Random Acts of Kindness"} in payload


def test_run_source_dispatches_flags(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    calls = []

    async def fake_run_source(source_key, *, respect_cadence, force):
        calls.append((source_key, respect_cadence, force))
        return RunSourceResult(run_id="run-1", source_key=source_key, mode="live", status="success")

    monkeypatch.setattr(cli, "run_source", fake_run_source)

    assert cli.main(["run-source", "rak", "--respect-cadence"]) == 0

    assert calls == [("rak", True, False)]
    payload = json.loads(capsys.readouterr().out)
    assert payload["run_id"] == "run-1"
    assert payload["status"] == "success"


def test_failed_run_reports_run_id(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    async def fake_run_source(source_key, *, respect_cadence, force):
        result = RunSourceResult(run_id="run-9", source_key=source_key, mode="live", status="failed")
        raise SourceRunFailedError(result, RuntimeError("discover:rak failed after 2 attempts"))

    monkeypatch.setattr(cli, "run_source", fake_run_source)

    assert cli.main(["run-source", "rak"]) == 1

    captured = capsys.readouterr()
    assert captured.out == ""
    assert '"run_id": "run-9"' in captured.err
    assert '"error": "discover:rak failed after 2 attempts"' in captured.err


def test_missing_database_url_exits_with_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["source-health", "--source-key", "rak"]) == 1

    captured = capsys.readouterr()
    assert captured.out == ""
    assert '"error": "INGEST_DATABASE_URL is required for ingestion jobs"' in captured.err


def test_invalid_tolerance_json_exits_with_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["replay-run", "run-1", "--tolerance", "{not json"]) == 1

    assert "invalid --tolerance JSON" in capsys.readouterr().err


def test_unknown_approval_action_is_rejected_by_parser() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["source-probe", "example.org", "--approval-action", "ship_it"])

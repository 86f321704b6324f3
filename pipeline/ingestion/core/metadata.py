"""Typed readers and additive-merge helpers for registry ``metadata_json``.

Each sub-object (``health``, ``compliance``, ``lifecycle``, ``incidents``,
``strategy_performance``) has exactly one owning writer. Writers read through
the models below, build the replacement sub-object, and merge it back with
:func:`merge_metadata_section`, which never touches sibling keys.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

HEALTH_KEY = "health"
COMPLIANCE_KEY = "compliance"
LIFECYCLE_KEY = "lifecycle"
INCIDENTS_KEY = "incidents"
STRATEGY_PERFORMANCE_KEY = "strategy_performance"


def clamp(value: float, minimum: float, maximum: float) -> float:
    return min(maximum, max(minimum, value))


def as_record(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def as_count(value: Any, *, default: int = 0) -> int:
    number = as_float(value)
    if number is None:
        return default
    return max(0, round_half_up(number))


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def as_string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def get_by_path(value: Any, path: tuple[str, ...]) -> Any:
    cursor = value
    for segment in path:
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(segment)
    return cursor


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def merge_metadata_section(metadata_json: Any, key: str, updates: dict[str, Any]) -> dict[str, Any]:
    metadata = as_record(metadata_json)
    return {
        **metadata,
        key: {
            **as_record(metadata.get(key)),
            **updates,
        },
    }


def prepend_history(entries: list[dict[str, Any]], history: Any, cap: int) -> list[dict[str, Any]]:
    prior = [entry for entry in history if isinstance(entry, dict)] if isinstance(history, list) else []
    return [*entries, *prior][: max(0, cap)]


class HealthSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    health_score: float | None = None
    consecutive_failures: int = 0
    consecutive_low_quality_runs: int = 0
    observed_runs: int = 0
    observed_failed_runs: int = 0
    last_run_candidate_count: int = 0
    last_run_curated_candidate_count: int = 0
    last_run_status: str | None = None
    last_error: str | None = None

    @field_validator(
        "consecutive_failures",
        "consecutive_low_quality_runs",
        "observed_runs",
        "observed_failed_runs",
        "last_run_candidate_count",
        "last_run_curated_candidate_count",
        mode="before",
    )
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return as_count(value)

    @field_validator("health_score", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> float | None:
        number = as_float(value)
        return None if number is None else clamp(number, 0.0, 100.0)

    @field_validator("last_run_status", "last_error", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)

    @classmethod
    def from_metadata(cls, metadata_json: Any) -> HealthSnapshot:
        return cls.model_validate(as_record(as_record(metadata_json).get(HEALTH_KEY)))


class ComplianceSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    legal_hold: bool = False
    legal_hold_status: str | None = None
    legal_hold_until: str | None = None
    last_pre_run_check_status: str | None = None
    last_pre_run_check: dict[str, Any] = {}

    @field_validator("legal_hold", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "1", "yes"}
        return value is True

    @field_validator("legal_hold_status", "legal_hold_until", "last_pre_run_check_status", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)

    @field_validator("last_pre_run_check", mode="before")
    @classmethod
    def _coerce_record(cls, value: Any) -> dict[str, Any]:
        return as_record(value)

    @classmethod
    def from_metadata(cls, metadata_json: Any) -> ComplianceSnapshot:
        return cls.model_validate(as_record(as_record(metadata_json).get(COMPLIANCE_KEY)))


class StrategyPerformanceEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    attempts_total: int = 0
    success_total: int = 0
    failure_total: int = 0
    no_candidate_total: int = 0
    rolling_success_rate: float | None = None
    rolling_yield_rate: float | None = None
    last_success_at: str | None = None

    @field_validator("attempts_total", "success_total", "failure_total", "no_candidate_total", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return as_count(value)

    @field_validator("rolling_success_rate", "rolling_yield_rate", mode="before")
    @classmethod
    def _coerce_rate(cls, value: Any) -> float | None:
        number = as_float(value)
        return None if number is None else clamp(number, 0.0, 1.0)

    @field_validator("last_success_at", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)

    @classmethod
    def from_metadata(cls, metadata_json: Any, strategy: str) -> StrategyPerformanceEntry:
        node = as_record(as_record(as_record(metadata_json).get(STRATEGY_PERFORMANCE_KEY)).get(strategy))
        payload = dict(node)
        # success_rate / yield_rate predate the rolling_* names.
        if as_float(payload.get("rolling_success_rate")) is None:
            payload["rolling_success_rate"] = payload.get("success_rate")
        if as_float(payload.get("rolling_yield_rate")) is None:
            payload["rolling_yield_rate"] = payload.get("yield_rate")
        return cls.model_validate(payload)

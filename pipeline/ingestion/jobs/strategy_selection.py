from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar
from urllib.parse import urlparse

from ingestion.core.metadata import (
    STRATEGY_PERFORMANCE_KEY,
    StrategyPerformanceEntry,
    as_count,
    as_float,
    as_record,
    clamp,
    to_iso,
)

STRATEGY_SELECTION_VERSION = "ing031_v1"
INGEST_STRATEGIES = ("api", "feed", "sitemap_html", "pdf", "ics", "headless")
ATTEMPT_STATUSES = ("no_pages", "failed", "partial", "success", "no_candidates")
DEFAULT_ORDER = ["sitemap_html"]
ROLLING_ALPHA = 0.2
NO_MATCH_PENALTY = 0.15

RUNTIME_COST_WEIGHTS = {
    "api": 0.95,
    "feed": 0.9,
    "ics": 0.88,
    "sitemap_html": 0.75,
    "pdf": 0.6,
    "headless": 0.3,
}
LEGAL_RISK_WEIGHTS = {
    "api": 0.85,
    "feed": 0.9,
    "ics": 0.92,
    "sitemap_html": 0.7,
    "pdf": 0.65,
    "headless": 0.35,
}
LEGAL_RISK_MULTIPLIERS = {"high": 0.7, "low": 1.05}

_API_PATH_RE = re.compile(r"(?:^|/)(api|v1|v2|graphql)(?:/|$)", re.IGNORECASE)
_JSON_RE = re.compile(r"\.json$", re.IGNORECASE)
_SITEMAP_RE = re.compile(r"/sitemap(?:[_-].+)?\.xml$", re.IGNORECASE)
_FEED_PATH_RE = re.compile(r"/(feed|rss|atom)(?:/|$)", re.IGNORECASE)
_FEED_EXT_RE = re.compile(r"\.(rss|atom|xml)$", re.IGNORECASE)
_PDF_RE = re.compile(r"\.pdf$", re.IGNORECASE)
_ICS_RE = re.compile(r"\.ics$", re.IGNORECASE)
_MEDIA_RE = re.compile(r"\.(png|jpg|jpeg|gif|svg|webp|mp4|mp3|zip)$", re.IGNORECASE)

PageT = TypeVar("PageT")


@dataclass(slots=True)
class StrategyScore:
    strategy: str
    score: float
    configured_preference: float
    availability: float
    reliability: float
    runtime_cost: float
    legal_risk: float
    matching_url_count: int

    def as_meta(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "score": round(self.score, 5),
            "configured_preference": round(self.configured_preference, 5),
            "availability": round(self.availability, 5),
            "reliability": round(self.reliability, 5),
            "runtime_cost": self.runtime_cost,
            "legal_risk": round(self.legal_risk, 5),
            "matching_url_count": self.matching_url_count,
        }


@dataclass(slots=True)
class StrategySelectionPlan:
    source_key: str
    configured_order: list[str]
    ranked_order: list[str]
    selected_primary: str
    scores: list[StrategyScore]
    reasoning: list[str]
    generated_at: str | None = None

    def as_meta(self) -> dict[str, Any]:
        return {
            "version": STRATEGY_SELECTION_VERSION,
            "source_key": self.source_key,
            "configured_order": list(self.configured_order),
            "ranked_order": list(self.ranked_order),
            "selected_primary": self.selected_primary,
            "scores": [score.as_meta() for score in self.scores],
            "reasoning": list(self.reasoning),
            "generated_at": self.generated_at,
        }


@dataclass(slots=True)
class StrategyExecutionAttempt:
    strategy: str
    status: str
    started_at: str
    finished_at: str
    pages_considered: int = 0
    pages_succeeded: int = 0
    pages_failed: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    duration_ms: int = 0
    fallback_reason: str | None = None

    def as_meta(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "status": self.status,
            "pages_considered": self.pages_considered,
            "pages_succeeded": self.pages_succeeded,
            "pages_failed": self.pages_failed,
            "candidate_count": self.candidate_count,
            "curated_candidate_count": self.curated_candidate_count,
            "quality_filtered_candidate_count": self.quality_filtered_candidate_count,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "fallback_reason": self.fallback_reason,
        }


@dataclass(slots=True)
class _UrlShape:
    is_api: bool = False
    is_feed: bool = False
    is_pdf: bool = False
    is_ics: bool = False
    is_sitemap_xml: bool = False
    path: str = ""


def normalize_strategy_order(configured_order: list[str]) -> list[str]:
    normalized = [entry for entry in dict.fromkeys(configured_order) if entry in INGEST_STRATEGIES]
    return normalized or list(DEFAULT_ORDER)


def _classify_url(url: str) -> _UrlShape:
    path = urlparse(url).path.lower()
    is_sitemap_xml = bool(_SITEMAP_RE.search(path))
    return _UrlShape(
        is_api=bool(_API_PATH_RE.search(path) or _JSON_RE.search(path)),
        is_feed=not is_sitemap_xml and bool(_FEED_PATH_RE.search(path) or _FEED_EXT_RE.search(path)),
        is_pdf=bool(_PDF_RE.search(path)),
        is_ics=bool(_ICS_RE.search(path)),
        is_sitemap_xml=is_sitemap_xml,
        path=path,
    )


def matches_strategy_url(strategy: str, url: str) -> bool:
    shape = _classify_url(url)
    if strategy == "api":
        return shape.is_api
    if strategy == "feed":
        return shape.is_feed
    if strategy == "pdf":
        return shape.is_pdf
    if strategy == "ics":
        return shape.is_ics
    if strategy == "sitemap_html":
        return not (shape.is_api or shape.is_feed or shape.is_pdf or shape.is_ics)
    if strategy == "headless":
        return not (shape.is_pdf or shape.is_ics or _MEDIA_RE.search(shape.path))
    return False


def filter_pages_for_strategy(pages: list[PageT], strategy: str) -> list[PageT]:
    """Keep pages (anything with a ``url`` attribute) whose URL fits the strategy."""
    return [page for page in pages if matches_strategy_url(strategy, getattr(page, "url"))]


def _legal_risk_weight(strategy: str, legal_risk_level: str | None) -> float:
    multiplier = LEGAL_RISK_MULTIPLIERS.get((legal_risk_level or "medium").lower(), 1.0)
    return clamp(LEGAL_RISK_WEIGHTS.get(strategy, 0.5) * multiplier, 0, 1)


def select_strategy_plan(
    source_key: str,
    configured_order: list[str],
    discovered_urls: list[str],
    metadata_json: Any,
    legal_risk_level: str | None = None,
    *,
    now: datetime | None = None,
) -> StrategySelectionPlan:
    order = normalize_strategy_order(configured_order)
    metadata = as_record(metadata_json)

    scores: list[StrategyScore] = []
    for index, strategy in enumerate(order):
        matching = sum(1 for url in discovered_urls if matches_strategy_url(strategy, url))
        availability = clamp(math.log10(matching + 1) / math.log10(8), 0, 1)
        preference = 1.0 if len(order) <= 1 else 1 - index / (len(order) - 1)

        performance = StrategyPerformanceEntry.from_metadata(metadata, strategy)
        success_rate = 0.5 if performance.rolling_success_rate is None else performance.rolling_success_rate
        yield_rate = 0.5 if performance.rolling_yield_rate is None else performance.rolling_yield_rate
        reliability = clamp(success_rate * 0.7 + yield_rate * 0.3, 0, 1)
        runtime_cost = RUNTIME_COST_WEIGHTS.get(strategy, 0.5)
        legal_risk = _legal_risk_weight(strategy, legal_risk_level)

        score = preference * 0.35 + availability * 0.2 + reliability * 0.3 + runtime_cost * 0.1 + legal_risk * 0.05
        if matching == 0:
            score -= NO_MATCH_PENALTY

        scores.append(
            StrategyScore(
                strategy=strategy,
                score=clamp(score, 0, 1),
                configured_preference=preference,
                availability=availability,
                reliability=reliability,
                runtime_cost=runtime_cost,
                legal_risk=legal_risk,
                matching_url_count=matching,
            )
        )

    ranked = sorted(scores, key=lambda entry: (-entry.score, order.index(entry.strategy)))
    top = ranked[0]
    reasoning = [
        f'Selected primary strategy "{top.strategy}" with score {top.score:.3f} '
        f"from configured order [{', '.join(order)}].",
        f"Top strategy signals: matching_urls={top.matching_url_count}, "
        f"reliability={top.reliability:.3f}, runtime_cost={top.runtime_cost:.3f}, "
        f"legal_risk={top.legal_risk:.3f}.",
    ]

    return StrategySelectionPlan(
        source_key=source_key,
        configured_order=order,
        ranked_order=[entry.strategy for entry in ranked],
        selected_primary=top.strategy,
        scores=scores,
        reasoning=reasoning,
        generated_at=to_iso(now) if now else None,
    )


def _smooth(prior: float, current: float) -> float:
    return clamp(prior * (1 - ROLLING_ALPHA) + current * ROLLING_ALPHA, 0, 1)


def merge_strategy_performance_metadata(
    metadata_json: Any,
    attempts: list[StrategyExecutionAttempt],
) -> dict[str, Any]:
    metadata = as_record(metadata_json)
    if not attempts:
        return metadata

    performance = dict(as_record(metadata.get(STRATEGY_PERFORMANCE_KEY)))
    for strategy in INGEST_STRATEGIES:
        strategy_attempts = [attempt for attempt in attempts if attempt.strategy == strategy]
        if not strategy_attempts:
            continue

        node = dict(as_record(performance.get(strategy)))
        attempts_total = as_count(node.get("attempts_total"))
        success_total = as_count(node.get("success_total"))
        failure_total = as_count(node.get("failure_total"))
        no_candidate_total = as_count(node.get("no_candidate_total"))
        prior_success = as_float(node.get("rolling_success_rate"))
        prior_yield = as_float(node.get("rolling_yield_rate"))
        rolling_success = clamp(0.5 if prior_success is None else prior_success, 0, 1)
        rolling_yield = clamp(0.5 if prior_yield is None else prior_yield, 0, 1)
        last_success_at = node.get("last_success_at") if isinstance(node.get("last_success_at"), str) else None

        for attempt in strategy_attempts:
            attempts_total += 1
            successful = attempt.status in {"success", "partial"}
            if successful:
                success_total += 1
                last_success_at = attempt.finished_at
            elif attempt.status == "no_candidates":
                no_candidate_total += 1
            elif attempt.status == "failed":
                failure_total += 1

            rolling_success = _smooth(rolling_success, 1.0 if successful else 0.0)
            rolling_yield = _smooth(rolling_yield, 1.0 if attempt.candidate_count > 0 else 0.0)
            node.update(
                {
                    "attempts_total": attempts_total,
                    "success_total": success_total,
                    "failure_total": failure_total,
                    "no_candidate_total": no_candidate_total,
                    "rolling_success_rate": round(rolling_success, 5),
                    "rolling_yield_rate": round(rolling_yield, 5),
                    "last_status": attempt.status,
                    "last_attempt_at": attempt.finished_at,
                    "last_success_at": last_success_at,
                    "last_candidate_count": attempt.candidate_count,
                    "last_pages_considered": attempt.pages_considered,
                    "updated_at": attempt.finished_at,
                }
            )

        performance[strategy] = node

    return {**metadata, STRATEGY_PERFORMANCE_KEY: performance}

"""Probe an unknown site and propose a registry entry for it.

The probe is a small breadth-first crawl from the site root. It reads
robots.txt and sitemap hints, counts structural signals (feeds, calendars,
PDFs, API paths, repeated detail paths, client-side rendering hints) and turns
them into a recommended strategy order with a confidence score.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urljoin, urlparse, urlunparse

import httpx
from bs4 import BeautifulSoup
from opentelemetry import trace

from ingestion.core.config import Settings, assert_ingest_config, get_settings
from ingestion.core.metadata import clamp, round_half_up
from ingestion.jobs.strategy_selection import INGEST_STRATEGIES
from ingestion.services.repository import ONBOARDING_APPROVAL_ACTIONS, RepositoryError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PROBE_VERSION = "ing030_v1"
DEFAULT_TIMEOUT_SECONDS = 12.0
DEFAULT_MAX_PROBE_PAGES = 6
MIN_PROBE_PAGES = 2
MAX_PROBE_PAGES = 12
DEFAULT_OWNER_TEAM = "ingestion"

LISTING_PATH_HINTS = (
    "idea",
    "ideas",
    "campaign",
    "calendar",
    "event",
    "events",
    "practice",
    "resource",
    "resources",
    "tips",
    "kindness",
    "guide",
    "guides",
)
DYNAMIC_HINTS = (
    "__next_data__",
    "data-reactroot",
    "webpack",
    "hydration",
    "window.__initial_state__",
    "ng-app",
    'id="app"',
)

_ROBOTS_SITEMAP_RE = re.compile(r"^\s*sitemap\s*:\s*(\S+)", re.IGNORECASE)
_SITEMAP_PATH_RE = re.compile(r"/sitemap(?:[_-].+)?\.xml$", re.IGNORECASE)
_FEED_PATH_RE = re.compile(r"(?:^|/)(feed|rss|atom)(?:/|$)")
_FEED_EXT_RE = re.compile(r"\.(rss|atom|xml)$")
_API_PATH_RE = re.compile(r"(?:^|/)(api|v1|v2|graphql)(?:/|$)")
_NON_LISTING_EXT_RE = re.compile(r"\.(pdf|ics|png|jpg|jpeg|gif|svg|xml|json)$")
_FILE_EXT_RE = re.compile(r"\.[a-z0-9]{2,5}$")
_SOURCE_KEY_RE = re.compile(r"[^a-z0-9]+")


class SourceProbeInputError(ValueError):
    """Raised when the probe input cannot be turned into a site URL or source key."""


@dataclass(slots=True)
class ProbePage:
    url: str
    ok: bool
    status: int | None
    content_type: str | None
    duration_ms: int
    error: str | None
    links: list[str] = field(default_factory=list)
    same_origin_links: list[str] = field(default_factory=list)
    dynamic_hint_count: int = 0

    def as_evidence(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "ok": self.ok,
            "status": self.status,
            "content_type": self.content_type,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "link_count": len(self.links),
            "same_origin_link_count": len(self.same_origin_links),
            "dynamic_hint_count": self.dynamic_hint_count,
            "sample_links": self.links[:10],
        }


@dataclass(slots=True)
class ProbeStructureSummary:
    fetched_page_count: int
    successful_page_count: int
    failed_page_count: int
    same_origin_link_count: int
    external_link_count: int
    listing_link_count: int
    detail_pattern_count: int
    detail_patterns: list[dict[str, Any]]
    feed_link_count: int
    ics_link_count: int
    pdf_link_count: int
    api_link_count: int
    sitemap_hint_count: int
    dynamic_hint_count: int


@dataclass(slots=True)
class ProbeRecommendation:
    strategy_order: list[str]
    confidence: float
    scores: dict[str, float]
    reasoning: list[str]


@dataclass(slots=True)
class SourceProbeResult:
    source_key: str
    display_name: str
    input_url: str
    root_url: str
    source_domain: str
    proposal: dict[str, Any]
    proposal_created: bool
    report_id: str | None
    probe_status: str
    fetch_status: str
    scanned_page_count: int
    successful_page_count: int
    recommended_strategy_order: list[str]
    recommendation_confidence: float
    recommendation_reasoning: list[str]
    approval_action: str
    evidence: dict[str, Any]
    warnings: list[str]

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def sanitize_source_key(value: str) -> str:
    return _SOURCE_KEY_RE.sub("_", value.lower()).strip("_")


def display_name_from_source_key(source_key: str) -> str:
    return " ".join(part.capitalize() for part in re.split(r"[_-]+", source_key) if part)


def normalize_probe_input(value: str) -> str:
    """Accept bare domains; return an absolute http(s) URL without a fragment."""
    trimmed = value.strip()
    if not trimmed:
        raise SourceProbeInputError("source-probe input cannot be empty")

    prefixed = trimmed if re.match(r"^https?://", trimmed, re.IGNORECASE) else f"https://{trimmed}"
    parsed = urlparse(prefixed)
    if not parsed.hostname:
        raise SourceProbeInputError(f"source-probe input is not a valid URL: {value}")
    return urlunparse(parsed._replace(path=parsed.path or "/", fragment=""))


def derive_source_key(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return sanitize_source_key(host) or "source_probe"


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def extract_links(html: str, base_url: str) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    links: dict[str, None] = {}
    for element in soup.find_all(href=True) + soup.find_all(src=True):
        raw = element.get("href") or element.get("src")
        if not isinstance(raw, str) or not raw.strip():
            continue
        absolute = urlparse(urljoin(base_url, raw.strip()))
        if absolute.scheme not in {"http", "https"} or not absolute.netloc:
            continue
        links[urlunparse(absolute._replace(fragment=""))] = None
    return list(links)


def parse_robots_sitemaps(content: str) -> list[str]:
    hints: dict[str, None] = {}
    for line in content.splitlines():
        match = _ROBOTS_SITEMAP_RE.match(line)
        if match:
            hints[match.group(1).strip()] = None
    return list(hints)


def extract_sitemap_locations(content: str) -> list[str]:
    soup = BeautifulSoup(content, "html.parser")
    locations: dict[str, None] = {}
    for loc in soup.find_all("loc"):
        value = loc.get_text(strip=True)
        if value:
            locations[value] = None
    return list(locations)


def count_dynamic_hints(html: str) -> int:
    lowered = html.lower()
    return sum(1 for hint in DYNAMIC_HINTS if hint in lowered)


@dataclass(slots=True)
class _LinkShape:
    is_feed: bool
    is_ics: bool
    is_pdf: bool
    is_api: bool
    is_listing: bool
    detail_prefix: str | None


def _classify_link(url: str) -> _LinkShape:
    path = urlparse(url).path.lower()
    segments = [segment for segment in path.split("/") if segment]
    leaf = segments[-1] if segments else ""

    detail_prefix = None
    if len(segments) >= 2 and re.search(r"[-\d]", leaf) and not _FILE_EXT_RE.search(leaf):
        detail_prefix = "/" + "/".join(segments[:2])

    return _LinkShape(
        is_feed=bool(_FEED_PATH_RE.search(path) or _FEED_EXT_RE.search(path)),
        is_ics=path.endswith(".ics"),
        is_pdf=path.endswith(".pdf"),
        is_api=bool(_API_PATH_RE.search(path) or path.endswith(".json")),
        is_listing=any(hint in "/".join(segments) for hint in LISTING_PATH_HINTS),
        detail_prefix=detail_prefix,
    )


def is_likely_listing_link(url: str) -> bool:
    path = urlparse(url).path.lower()
    if _NON_LISTING_EXT_RE.search(path):
        return False
    return any(hint in path for hint in LISTING_PATH_HINTS) or path == "/" or len(path) <= 2


def summarize_probe_signals(root_origin: str, pages: list[ProbePage], sitemap_hints: list[str]) -> ProbeStructureSummary:
    same_origin: set[str] = set()
    external: set[str] = set()
    counts = Counter()
    detail_prefixes: Counter[str] = Counter()

    for page in pages:
        counts["dynamic"] += page.dynamic_hint_count
        for link in page.links:
            if _origin(link) != root_origin:
                external.add(link)
                continue
            if link in same_origin:
                continue
            same_origin.add(link)

            shape = _classify_link(link)
            counts["listing"] += shape.is_listing
            counts["feed"] += shape.is_feed
            counts["ics"] += shape.is_ics
            counts["pdf"] += shape.is_pdf
            counts["api"] += shape.is_api
            if shape.detail_prefix:
                detail_prefixes[shape.detail_prefix] += 1

    repeated = sorted(
        ((prefix, count) for prefix, count in detail_prefixes.items() if count >= 2),
        key=lambda item: -item[1],
    )[:8]

    return ProbeStructureSummary(
        fetched_page_count=len(pages),
        successful_page_count=sum(1 for page in pages if page.ok),
        failed_page_count=sum(1 for page in pages if not page.ok),
        same_origin_link_count=len(same_origin),
        external_link_count=len(external),
        listing_link_count=counts["listing"],
        detail_pattern_count=len(repeated),
        detail_patterns=[{"prefix": prefix, "count": count} for prefix, count in repeated],
        feed_link_count=counts["feed"],
        ics_link_count=counts["ics"],
        pdf_link_count=counts["pdf"],
        api_link_count=counts["api"],
        sitemap_hint_count=len(sitemap_hints),
        dynamic_hint_count=counts["dynamic"],
    )


def recommend_strategy_order(summary: ProbeStructureSummary) -> ProbeRecommendation:
    scores = {
        "api": summary.api_link_count * 2.0,
        "feed": summary.feed_link_count * 2.0 + summary.sitemap_hint_count * 0.5,
        "sitemap_html": (
            summary.listing_link_count * 1.2
            + summary.detail_pattern_count * 2.0
            + summary.sitemap_hint_count * 1.3
            + (1.0 if summary.same_origin_link_count > 0 else 0.0)
        ),
        "pdf": summary.pdf_link_count * 2.2,
        "ics": summary.ics_link_count * 2.5,
        "headless": summary.dynamic_hint_count * 1.8 + (2.0 if summary.successful_page_count == 0 else 0.0),
    }

    ranked = sorted(INGEST_STRATEGIES, key=lambda strategy: (-scores[strategy], INGEST_STRATEGIES.index(strategy)))
    positive = [strategy for strategy in ranked if scores[strategy] > 0]
    strategy_order = positive + [strategy for strategy in INGEST_STRATEGIES if strategy not in positive]

    fetched = summary.fetched_page_count
    coverage = summary.successful_page_count / fetched if fetched else 0.0
    failure_penalty = (summary.failed_page_count / fetched) * 0.25 if fetched else 0.0
    raw_confidence = (
        0.15
        + clamp(max(scores.values()) / 10, 0, 1) * 0.45
        + clamp(len(positive) / 3, 0, 1) * 0.2
        + clamp(coverage, 0, 1) * 0.2
        + clamp(summary.detail_pattern_count / 3, 0, 1) * 0.1
        - failure_penalty
    )
    confidence = round_half_up(clamp(raw_confidence, 0.05, 0.99) * 10_000) / 10_000

    reasoning: list[str] = []
    if summary.feed_link_count:
        reasoning.append(f"Detected {summary.feed_link_count} feed-like links.")
    if summary.ics_link_count:
        reasoning.append(f"Detected {summary.ics_link_count} ICS links.")
    if summary.pdf_link_count:
        reasoning.append(f"Detected {summary.pdf_link_count} PDF links.")
    if summary.detail_pattern_count:
        reasoning.append(f"Detected {summary.detail_pattern_count} repeated detail path patterns.")
    if summary.dynamic_hint_count:
        reasoning.append(f"Detected {summary.dynamic_hint_count} dynamic-rendering hints.")
    if summary.failed_page_count:
        reasoning.append(f"{summary.failed_page_count} pages failed during probe, reducing confidence.")
    if not reasoning:
        reasoning.append("Weak structural evidence; using conservative default strategy ladder.")

    return ProbeRecommendation(strategy_order=strategy_order, confidence=confidence, scores=scores, reasoning=reasoning)


def clamp_probe_pages(value: int | None) -> int:
    if not value:
        return DEFAULT_MAX_PROBE_PAGES
    return round_half_up(clamp(value, MIN_PROBE_PAGES, MAX_PROBE_PAGES))


async def _fetch_page(client: httpx.AsyncClient, url: str, root_origin: str) -> tuple[ProbePage, str]:
    started = time.monotonic()
    try:
        response = await client.get(url, timeout=DEFAULT_TIMEOUT_SECONDS)
    except httpx.HTTPError as exc:
        duration_ms = round_half_up((time.monotonic() - started) * 1000)
        return ProbePage(url, False, None, None, duration_ms, str(exc) or exc.__class__.__name__), ""

    duration_ms = round_half_up((time.monotonic() - started) * 1000)
    body = response.text
    content_type = response.headers.get("content-type")
    ok = response.is_success
    links = extract_links(body, url) if body else []
    page = ProbePage(
        url=url,
        ok=ok,
        status=response.status_code,
        content_type=content_type,
        duration_ms=duration_ms,
        error=None if ok else f"HTTP {response.status_code}",
        links=links,
        same_origin_links=[link for link in links if _origin(link) == root_origin],
        dynamic_hint_count=count_dynamic_hints(body) if content_type and "html" in content_type.lower() else 0,
    )
    return page, body


async def _crawl(
    client: httpx.AsyncClient,
    root_url: str,
    max_pages: int,
    source_key: str,
) -> tuple[list[ProbePage], list[str]]:
    root_origin = _origin(root_url)
    pages: list[ProbePage] = []
    visited: set[str] = set()
    queue: deque[str] = deque([root_url])
    queued = {root_url}
    sitemap_hints: dict[str, None] = {}

    while queue and len(pages) < max_pages:
        url = queue.popleft()
        queued.discard(url)
        if url in visited:
            continue
        visited.add(url)

        page, body = await _fetch_page(client, url, root_origin)
        pages.append(page)
        if not page.ok:
            logger.warning(
                "Probe page fetch failed source_key=%s url=%s status=%s error=%s",
                source_key,
                url,
                page.status,
                page.error,
            )
            continue

        if url.endswith("/robots.txt"):
            sitemap_hints.update(dict.fromkeys(parse_robots_sitemaps(body)))
            continue
        if _SITEMAP_PATH_RE.search(urlparse(url).path) or "xml" in (page.content_type or "").lower():
            sitemap_hints.update(dict.fromkeys(extract_sitemap_locations(body)[:50]))
            continue

        for link in page.same_origin_links:
            if is_likely_listing_link(link) and link not in visited and link not in queued:
                queued.add(link)
                queue.append(link)

    robots_url = f"{root_origin}/robots.txt"
    if robots_url not in visited and len(pages) < max_pages:
        visited.add(robots_url)
        page, body = await _fetch_page(client, robots_url, root_origin)
        pages.append(page)
        if page.ok:
            sitemap_hints.update(dict.fromkeys(parse_robots_sitemaps(body)))

    if not sitemap_hints:
        sitemap_hints[f"{root_origin}/sitemap.xml"] = None

    for sitemap_url in list(sitemap_hints)[:2]:
        if sitemap_url in visited or len(pages) >= max_pages:
            continue
        visited.add(sitemap_url)
        page, body = await _fetch_page(client, sitemap_url, root_origin)
        pages.append(page)
        if page.ok:
            sitemap_hints.update(dict.fromkeys(extract_sitemap_locations(body)[:25]))

    return pages, list(sitemap_hints)


async def source_probe(
    input_url: str,
    *,
    source_key: str | None = None,
    display_name: str | None = None,
    owner_team: str | None = None,
    approval_action: str = "pending_review",
    decision_reason: str | None = None,
    actor: str | None = None,
    max_probe_pages: int | None = None,
    persist: bool = True,
    repository=None,
    http_client: httpx.AsyncClient | None = None,
    settings: Settings | None = None,
) -> SourceProbeResult:
    """Crawl ``input_url`` and build an onboarding report.

    With ``persist`` the proposal is inserted into the registry (an existing
    row is never touched) and the report is stored. Persistence failures are
    returned as warnings.
    """
    settings = settings or get_settings()
    if approval_action not in ONBOARDING_APPROVAL_ACTIONS:
        raise SourceProbeInputError(f"unknown approval action: {approval_action}")

    normalized_input = normalize_probe_input(input_url)
    root_origin = _origin(normalized_input)
    root_url = f"{root_origin}/"
    source_domain = urlparse(normalized_input).hostname or ""

    key = sanitize_source_key(source_key) if source_key else derive_source_key(normalized_input)
    if not key:
        raise SourceProbeInputError("Unable to derive source key from input. Provide --source-key.")
    name = (display_name or "").strip() or display_name_from_source_key(key)
    team = (owner_team or "").strip() or DEFAULT_OWNER_TEAM
    max_pages = clamp_probe_pages(max_probe_pages)

    if persist and repository is None:
        assert_ingest_config(settings)
        repository = get_repository()

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(
        headers={"user-agent": settings.user_agent},
        follow_redirects=True,
    )

    with tracer.start_as_current_span("ingest.source_probe") as span:
        span.set_attribute("ingest.source_key", key)
        try:
            pages, sitemap_hints = await _crawl(client, root_url, max_pages, key)
        finally:
            if owns_client:
                await client.aclose()

        summary = summarize_probe_signals(root_origin, pages, sitemap_hints)
        recommendation = recommend_strategy_order(summary)
        span.set_attribute("ingest.probe_pages", summary.fetched_page_count)

    if summary.failed_page_count == 0:
        fetch_status = "ok"
    elif summary.successful_page_count > 0:
        fetch_status = "partial"
    else:
        fetch_status = "failed"
    probe_status = "completed" if summary.successful_page_count > 0 else "failed"

    proposal = {
        "source_key": key,
        "display_name": name,
        "state": "proposed",
        "approved_for_prod": False,
        "source_domain": source_domain,
        "root_url": root_url,
        "owner_team": team,
        "strategy_order": recommendation.strategy_order,
    }
    evidence = {
        "probe_version": PROBE_VERSION,
        "input_url": normalized_input,
        "root_url": root_url,
        "source_domain": source_domain,
        "scanned_pages": [page.as_evidence() for page in pages],
        "sitemap_hints": sitemap_hints[:25],
        "structure_summary": asdict(summary),
        "recommendation": asdict(recommendation),
    }

    warnings: list[str] = []
    proposal_created = False
    report_id: str | None = None
    if persist:
        try:
            proposal_created = await repository.ensure_source_proposal(
                source_key=key,
                display_name=name,
                source_domain=source_domain,
                root_url=root_url,
                owner_team=team,
                strategy_order=recommendation.strategy_order,
            )
        except RepositoryError as exc:
            warnings.append(f"Failed to create source proposal: {exc}")

        try:
            report_id = await repository.create_source_onboarding_report(
                source_key=key,
                input_url=normalized_input,
                root_url=root_url,
                source_domain=source_domain,
                probe_status=probe_status,
                fetch_status=fetch_status,
                strategy_order=recommendation.strategy_order,
                confidence=recommendation.confidence,
                approval_action=approval_action,
                decision_reason=decision_reason,
                actor=actor,
                evidence_json=evidence,
            )
        except RepositoryError as exc:
            warnings.append(f"Failed to persist onboarding report: {exc}")

    for warning in warnings:
        logger.warning("%s source_key=%s", warning, key)
    logger.info(
        "Source probe finished source_key=%s pages=%s fetch_status=%s strategy=%s confidence=%s",
        key,
        summary.fetched_page_count,
        fetch_status,
        recommendation.strategy_order[0],
        recommendation.confidence,
    )

    return SourceProbeResult(
        source_key=key,
        display_name=name,
        input_url=normalized_input,
        root_url=root_url,
        source_domain=source_domain,
        proposal=proposal,
        proposal_created=proposal_created,
        report_id=report_id,
        probe_status=probe_status,
        fetch_status=fetch_status,
        scanned_page_count=summary.fetched_page_count,
        successful_page_count=summary.successful_page_count,
        recommended_strategy_order=recommendation.strategy_order,
        recommendation_confidence=recommendation.confidence,
        recommendation_reasoning=recommendation.reasoning,
        approval_action=approval_action,
        evidence=evidence,
        warnings=warnings,
    )

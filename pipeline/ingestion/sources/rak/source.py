from __future__ import annotations

import httpx

from ingestion.core.metadata import to_iso, utc_now
from ingestion.sources.base import (
    DiscoveredPage,
    ExtractedCandidate,
    SourceFetchError,
    SourceHealthCheckResult,
    SourceModuleContext,
    fetch_text,
)
from ingestion.sources.rak.parser import (
    BASE_DOMAIN,
    EXTRACTOR_VERSION,
    MAX_DETAIL_CANDIDATES,
    MAX_DISCOVERED_URLS,
    SOURCE_KEY,
    build_candidate_from_detail_page,
    classify_rak_url,
    extract_candidates_from_listing_page,
    extract_detail_links,
    normalize_rak_url,
)

SEED_URLS = [f"{BASE_DOMAIN}/kindness-ideas"]
MAX_DISCOVERY_FETCHES = 24


class RakSource:
    """Random Acts of Kindness idea pages: crawl listings, extract one idea per detail page."""

    key = SOURCE_KEY
    display_name = "Random Acts of Kindness"

    async def discover(self, ctx: SourceModuleContext) -> list[DiscoveredPage]:
        queue = [normalize_rak_url(url) for url in SEED_URLS]
        queued = set(queue)
        visited: set[str] = set()
        detail_pages: dict[str, None] = {}

        while queue and len(visited) < MAX_DISCOVERY_FETCHES and len(detail_pages) < MAX_DISCOVERED_URLS:
            current = normalize_rak_url(queue.pop(0))
            if current in visited:
                continue
            visited.add(current)

            try:
                html = await fetch_text(ctx, current)
            except (SourceFetchError, httpx.HTTPError) as exc:
                ctx.logger.warning("RAK discovery fetch failed url=%s error=%s", current, exc)
                continue

            for link in extract_detail_links(html, current):
                detail_pages[link] = None
                if link not in queued and link not in visited and len(queue) < MAX_DISCOVERED_URLS:
                    queued.add(link)
                    queue.append(link)

        if not detail_pages:
            return [DiscoveredPage(source_key=SOURCE_KEY, url=normalize_rak_url(url)) for url in SEED_URLS]
        return [DiscoveredPage(source_key=SOURCE_KEY, url=url) for url in list(detail_pages)[:MAX_DISCOVERED_URLS]]

    async def extract(self, ctx: SourceModuleContext, page: DiscoveredPage) -> list[ExtractedCandidate]:
        page_url = normalize_rak_url(page.url)
        html = await fetch_text(ctx, page_url)
        classification = classify_rak_url(page_url)

        if classification == "detail":
            candidate = build_candidate_from_detail_page(page_url, html)
            return [candidate][:MAX_DETAIL_CANDIDATES] if candidate else []

        if classification == "listing":
            seen: set[str] = set()
            candidates = []
            for candidate in extract_candidates_from_listing_page(page_url, html):
                if candidate.source_url == page_url:
                    continue
                dedupe_key = f"{candidate.source_url}::{candidate.title.lower()}"
                if dedupe_key in seen:
                    continue
                seen.add(dedupe_key)
                candidates.append(candidate)
            return candidates

        return []

    async def health_check(self, ctx: SourceModuleContext) -> SourceHealthCheckResult:
        invalid_seed_urls = [url for url in SEED_URLS if classify_rak_url(normalize_rak_url(url)) != "listing"]
        return SourceHealthCheckResult(
            status="degraded" if invalid_seed_urls else "ok",
            checked_at=to_iso(utc_now()),
            diagnostics={
                "source_key": SOURCE_KEY,
                "seed_urls": list(SEED_URLS),
                "invalid_seed_urls": invalid_seed_urls,
                "max_discovery_fetches": MAX_DISCOVERY_FETCHES,
                "extractor_version": EXTRACTOR_VERSION,
                "default_locale": ctx.default_locale,
            },
        )

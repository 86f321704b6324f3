import asyncio
import logging
from pathlib import Path

import httpx
import pytest

from ingestion.sources.base import (
    DiscoveredPage,
    ExtractedCandidate,
    SourceFetchError,
    SourceHealthCheckResult,
    SourceModuleContext,
    TraitHint,
)
from ingestion.sources.contract import (
    SourceContractError,
    assert_discovered_pages_contract,
    assert_extracted_candidates_contract,
    assert_health_check_result_contract,
    assert_source_module_contract,
)
from ingestion.sources.rak.parser import (
    build_candidate_from_detail_page,
    classify_rak_url,
    extract_candidates_from_listing_page,
    extract_detail_links,
    normalize_rak_url,
)
from ingestion.sources.rak.source import RakSource
from ingestion.sources.registry import SourceNotFoundError, get_source_by_key, list_sources

FIXTURES = Path(__file__).parent / "fixtures" / "rak"
LISTING_URL = "https://www.randomactsofkindness.org/kindness-ideas"
DETAIL_ACTIONABLE_URL = "https://www.randomactsofkindness.org/kindness-ideas/101-write-a-thank-you-note"
DETAIL_NOISE_URL = "https://www.randomactsofkindness.org/kindness-ideas/102-donate-books-to-library"


def _fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def _context(pages: dict[str, str]) -> SourceModuleContext:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in pages:
            return httpx.Response(200, text=pages[url], headers={"content-type": "text/html; charset=utf-8"})
        return httpx.Response(404, text=f"missing fixture for {url}")

    return SourceModuleContext(
        logger=logging.getLogger("tests.sources"),
        default_locale="en",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _candidate(**overrides) -> ExtractedCandidate:
    values = {
        "source_key": "rak",
        "source_url": DETAIL_ACTIONABLE_URL,
        "title": "Write a thank-you note to a teacher.",
        "meta": {"extraction_strategy": "detail_page", "source_evidence": {"document_region": "li"}},
    }
    values.update(overrides)
    return ExtractedCandidate(**values)


class _BrokenSource:
    key = "broken"
    display_name = ""

    async def discover(self, ctx):
        return []


# Registry


def test_registry_lists_bundled_sources_and_rejects_unknown_keys() -> None:
    assert [source.key for source in list_sources()] == ["rak"]
    assert get_source_by_key("rak").display_name == "Random Acts of Kindness"

    with pytest.raises(SourceNotFoundError, match='Unknown source "nope". Supported sources: rak'):
        get_source_by_key("nope")


# Contract


def test_module_contract_requires_identity_and_capabilities() -> None:
    assert_source_module_contract(RakSource())

    with pytest.raises(SourceContractError, match="source.display_name must be a non-empty string"):
        assert_source_module_contract(_BrokenSource())


def test_discovered_pages_contract_checks_key_and_url_scheme() -> None:
    source = RakSource()
    assert_discovered_pages_contract(source, [DiscoveredPage(source_key="rak", url=LISTING_URL)])

    with pytest.raises(SourceContractError, match=r'discover\(\).url\[0\] must use http or https'):
        assert_discovered_pages_contract(source, [DiscoveredPage(source_key="rak", url="ftp://example.org/a")])
    with pytest.raises(SourceContractError, match=r"discover\(\).url\[0\] must be a valid URL"):
        assert_discovered_pages_contract(source, [DiscoveredPage(source_key="rak", url="not a url")])
    with pytest.raises(SourceContractError, match='mismatched source_key "ggia"'):
        assert_discovered_pages_contract(source, [DiscoveredPage(source_key="ggia", url=LISTING_URL)])


def test_extracted_candidates_contract_requires_strategy_and_evidence() -> None:
    source = RakSource()
    assert_extracted_candidates_contract(
        source,
        [_candidate(traits=[TraitHint(trait_type_slug="effort", trait_option_slug="low")])],
    )

    with pytest.raises(SourceContractError, match=r"candidate.meta.extraction_strategy\[0\] is required"):
        assert_extracted_candidates_contract(source, [_candidate(meta={"listing_url": LISTING_URL})])
    with pytest.raises(SourceContractError, match="must include at least one evidence pointer"):
        assert_extracted_candidates_contract(source, [_candidate(meta={"extraction_strategy": "detail_page"})])
    with pytest.raises(SourceContractError, match=r"candidate.description\[0\] must be a non-empty string"):
        assert_extracted_candidates_contract(source, [_candidate(description="   ")])
    with pytest.raises(SourceContractError, match='mismatched source_key "ggia" at index 1'):
        assert_extracted_candidates_contract(source, [_candidate(), _candidate(source_key="ggia")])


def test_health_check_contract_validates_status_and_timestamp() -> None:
    source = RakSource()
    assert_health_check_result_contract(
        source, SourceHealthCheckResult(status="ok", checked_at="2026-03-01T00:00:00.000Z")
    )

    with pytest.raises(SourceContractError, match="returned invalid status"):
        assert_health_check_result_contract(
            source, SourceHealthCheckResult(status="broken", checked_at="2026-03-01T00:00:00.000Z")
        )
    with pytest.raises(SourceContractError, match="must be a valid ISO datetime string"):
        assert_health_check_result_contract(source, SourceHealthCheckResult(status="ok", checked_at="yesterday"))


# RAK parser


def test_normalize_and_classify_rak_urls() -> None:
    assert normalize_rak_url(f"{DETAIL_ACTIONABLE_URL}/?ref=test#top") == DETAIL_ACTIONABLE_URL
    assert normalize_rak_url(f"{LISTING_URL}/?page=2") == f"{LISTING_URL}?page=2"
    assert classify_rak_url(DETAIL_ACTIONABLE_URL) == "detail"
    assert classify_rak_url(f"{LISTING_URL}?page=2") == "listing"
    assert classify_rak_url("https://www.randomactsofkindness.org/about-us") == "other"
    assert classify_rak_url("https://other.example.org/kindness-ideas/103-help-a-neighbor") == "other"


def test_extract_detail_links_keeps_only_canonical_detail_urls() -> None:
    links = extract_detail_links(_fixture("listing_page.html"), LISTING_URL)

    assert links == [DETAIL_ACTIONABLE_URL, DETAIL_NOISE_URL]


def test_listing_candidates_point_at_detail_urls() -> None:
    listing_url = f"{LISTING_URL}?page=2"
    candidates = extract_candidates_from_listing_page(listing_url, _fixture("listing_page.html"))

    assert [candidate.title for candidate in candidates] == ["Write a thank you note", "Donate books to library"]
    for candidate in candidates:
        assert candidate.source_url != normalize_rak_url(listing_url)
        assert candidate.meta["extraction_strategy"] == "listing_link_slug"
        assert candidate.meta["listing_url"] == listing_url


def test_detail_page_yields_actionable_idea() -> None:
    candidate = build_candidate_from_detail_page(
        f"{DETAIL_ACTIONABLE_URL}?ref=test", _fixture("detail_page_actionable.html")
    )

    assert candidate is not None
    assert candidate.source_url == DETAIL_ACTIONABLE_URL
    assert candidate.title == "Write a thank-you note to a teacher."
    assert candidate.description == "Show a teacher how much their effort means with a short handwritten note."
    assert candidate.raw_excerpt == "Write a thank-you note to a teacher."
    assert candidate.meta["extractor_version"] == "rak_parser_v2"


def test_article_style_detail_page_is_rejected() -> None:
    candidate = build_candidate_from_detail_page(
        "https://www.randomactsofkindness.org/kindness-ideas/999-why-kindness-matters",
        _fixture("detail_page_noise.html"),
    )

    assert candidate is None


# RAK source module


def test_rak_discover_returns_contract_compliant_detail_pages() -> None:
    source = RakSource()
    ctx = _context(
        {
            LISTING_URL: _fixture("listing_page.html"),
            DETAIL_ACTIONABLE_URL: _fixture("detail_page_actionable.html"),
            DETAIL_NOISE_URL: _fixture("detail_page_noise.html"),
        }
    )

    pages = asyncio.run(source.discover(ctx))

    assert_discovered_pages_contract(source, pages)
    assert [page.url for page in pages] == [DETAIL_ACTIONABLE_URL, DETAIL_NOISE_URL]


def test_rak_discover_falls_back_to_seed_when_nothing_is_reachable() -> None:
    pages = asyncio.run(RakSource().discover(_context({})))

    assert pages == [DiscoveredPage(source_key="rak", url=LISTING_URL)]


def test_rak_extract_emits_contract_compliant_candidates() -> None:
    source = RakSource()
    ctx = _context(
        {
            LISTING_URL: _fixture("listing_page.html"),
            DETAIL_ACTIONABLE_URL: _fixture("detail_page_actionable.html"),
        }
    )

    listing = asyncio.run(source.extract(ctx, DiscoveredPage(source_key="rak", url=LISTING_URL)))
    assert_extracted_candidates_contract(source, listing)
    assert {candidate.meta["extraction_strategy"] for candidate in listing} == {"listing_link_slug"}

    detail = asyncio.run(source.extract(ctx, DiscoveredPage(source_key="rak", url=DETAIL_ACTIONABLE_URL)))
    assert_extracted_candidates_contract(source, detail)
    assert len(detail) == 1
    assert detail[0].meta["extraction_strategy"] == "detail_page"


def test_rak_extract_raises_on_http_error() -> None:
    with pytest.raises(SourceFetchError, match="HTTP 404 while fetching"):
        asyncio.run(RakSource().extract(_context({}), DiscoveredPage(source_key="rak", url=DETAIL_NOISE_URL)))


def test_rak_health_check_reports_ok_with_diagnostics() -> None:
    source = RakSource()
    result = asyncio.run(source.health_check(_context({})))

    assert_health_check_result_contract(source, result)
    assert result.status == "ok"
    assert result.diagnostics["extractor_version"] == "rak_parser_v2"
    assert result.diagnostics["default_locale"] == "en"

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from ingestion.core.metadata import parse_timestamp
from ingestion.sources.base import (
    DiscoveredPage,
    ExtractedCandidate,
    SourceHealthCheckResult,
    SourceModule,
)

EVIDENCE_META_KEYS = (
    "source_evidence",
    "selector_path",
    "node_key",
    "document_region",
    "listing_url",
    "detail_url",
)
HEALTH_STATUSES = {"ok", "degraded", "failed"}


class SourceContractError(ValueError):
    """Raised when a source module or its output violates the module contract."""


def assert_source_module_contract(source: Any) -> None:
    _require_text(getattr(source, "key", None), "source.key")
    _require_text(getattr(source, "display_name", None), "source.display_name")
    for method in ("discover", "extract", "health_check"):
        if not callable(getattr(source, method, None)):
            raise SourceContractError(f'Source "{source.key}" is missing {method}()')


def assert_health_check_result_contract(source: SourceModule, result: Any) -> None:
    if not isinstance(result, SourceHealthCheckResult):
        raise SourceContractError(f'Source "{source.key}" health_check must return SourceHealthCheckResult')
    if result.status not in HEALTH_STATUSES:
        raise SourceContractError(f'Source "{source.key}" health_check returned invalid status')
    context = f'Source "{source.key}" health_check.checked_at'
    _require_text(result.checked_at, context)
    if parse_timestamp(result.checked_at) is None:
        raise SourceContractError(f"{context} must be a valid ISO datetime string")
    if not isinstance(result.diagnostics, dict):
        raise SourceContractError(f'Source "{source.key}" health_check.diagnostics must be an object')


def assert_discovered_pages_contract(source: SourceModule, pages: Any) -> None:
    if not isinstance(pages, list):
        raise SourceContractError(f'Source "{source.key}" discover() must return a list')

    for index, page in enumerate(pages):
        if not isinstance(page, DiscoveredPage):
            raise SourceContractError(f'Source "{source.key}" discover() returned invalid page at index {index}')
        if page.source_key != source.key:
            raise SourceContractError(
                f'Source "{source.key}" discover() returned page with mismatched source_key '
                f'"{page.source_key}" at index {index}'
            )
        context = f'Source "{source.key}" discover().url[{index}]'
        _require_http_url(_require_text(page.url, context), context)


def assert_extracted_candidates_contract(source: SourceModule, candidates: Any) -> None:
    if not isinstance(candidates, list):
        raise SourceContractError(f'Source "{source.key}" extract() must return a list')

    for index, candidate in enumerate(candidates):
        if not isinstance(candidate, ExtractedCandidate):
            raise SourceContractError(
                f'Source "{source.key}" extract() returned invalid candidate at index {index}'
            )
        if candidate.source_key != source.key:
            raise SourceContractError(
                f'Source "{source.key}" extract() returned candidate with mismatched source_key '
                f'"{candidate.source_key}" at index {index}'
            )

        _require_text(candidate.title, f'Source "{source.key}" candidate.title[{index}]')
        _require_http_url(candidate.source_url, f'Source "{source.key}" candidate.source_url[{index}]')

        for field_name in ("description", "reason_snippet", "raw_excerpt"):
            value = getattr(candidate, field_name)
            if value is not None:
                _require_text(value, f'Source "{source.key}" candidate.{field_name}[{index}]')

        meta = candidate.meta
        if not isinstance(meta, dict):
            raise SourceContractError(
                f'Source "{source.key}" candidate.meta[{index}] must be an object with extraction metadata'
            )
        strategy = meta.get("extraction_strategy")
        if not isinstance(strategy, str) or not strategy.strip():
            raise SourceContractError(
                f'Source "{source.key}" candidate.meta.extraction_strategy[{index}] is required'
            )
        if not _has_evidence_pointer(meta):
            raise SourceContractError(
                f'Source "{source.key}" candidate.meta[{index}] must include at least one evidence pointer '
                f"({', '.join(EVIDENCE_META_KEYS)})"
            )

        for trait_index, trait in enumerate(candidate.traits):
            _require_text(
                trait.trait_type_slug,
                f'Source "{source.key}" candidate.traits[{index}].trait_type_slug[{trait_index}]',
            )
            _require_text(
                trait.trait_option_slug,
                f'Source "{source.key}" candidate.traits[{index}].trait_option_slug[{trait_index}]',
            )


def _has_evidence_pointer(meta: dict[str, Any]) -> bool:
    for key in EVIDENCE_META_KEYS:
        value = meta.get(key)
        if isinstance(value, str) and value.strip():
            return True
        if isinstance(value, (dict, list)):
            return True
    return False


def _require_text(value: Any, context: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SourceContractError(f"{context} must be a non-empty string")
    return value


def _require_http_url(value: Any, context: str) -> None:
    if not isinstance(value, str):
        raise SourceContractError(f"{context} must be a valid URL")
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.netloc:
        raise SourceContractError(f"{context} must be a valid URL")
    if parsed.scheme not in {"http", "https"}:
        raise SourceContractError(f"{context} must use http or https")

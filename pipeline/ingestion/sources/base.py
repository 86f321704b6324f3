from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

import httpx

SourceHealthStatus = Literal["ok", "degraded", "failed"]


@dataclass(slots=True)
class TraitHint:
    trait_type_slug: str
    trait_option_slug: str
    confidence: float | None = None
    source: str | None = None


@dataclass(slots=True)
class DiscoveredPage:
    source_key: str
    url: str


@dataclass(slots=True)
class ExtractedCandidate:
    source_key: str
    source_url: str
    title: str
    description: str | None = None
    reason_snippet: str | None = None
    raw_excerpt: str | None = None
    traits: list[TraitHint] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SourceHealthCheckResult:
    status: SourceHealthStatus
    checked_at: str
    diagnostics: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SourceModuleContext:
    logger: logging.Logger
    default_locale: str
    http_client: httpx.AsyncClient


@runtime_checkable
class SourceModule(Protocol):
    """Capability set every source module exposes to the run orchestrator."""

    key: str
    display_name: str

    async def discover(self, ctx: SourceModuleContext) -> list[DiscoveredPage]: ...

    async def extract(self, ctx: SourceModuleContext, page: DiscoveredPage) -> list[ExtractedCandidate]: ...

    async def health_check(self, ctx: SourceModuleContext) -> SourceHealthCheckResult: ...


class SourceFetchError(Exception):
    """Raised when a source module receives a non-success HTTP response."""


async def fetch_text(ctx: SourceModuleContext, url: str) -> str:
    response = await ctx.http_client.get(url)
    if response.status_code >= 400:
        raise SourceFetchError(f"HTTP {response.status_code} while fetching {url}")
    return response.text

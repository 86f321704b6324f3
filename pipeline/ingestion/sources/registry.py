from __future__ import annotations

from ingestion.sources.base import SourceModule
from ingestion.sources.contract import assert_source_module_contract
from ingestion.sources.rak.source import RakSource


class SourceNotFoundError(LookupError):
    """Raised when no bundled source module matches the requested key."""


_SOURCES: list[SourceModule] = [RakSource()]
for _source in _SOURCES:
    assert_source_module_contract(_source)


def list_sources() -> list[SourceModule]:
    return list(_SOURCES)


def get_source_by_key(key: str) -> SourceModule:
    for source in _SOURCES:
        if source.key == key:
            return source
    supported = ", ".join(source.key for source in _SOURCES)
    raise SourceNotFoundError(f'Unknown source "{key}". Supported sources: {supported}')

from __future__ import annotations

import hashlib
import re

from bs4 import BeautifulSoup

_WHITESPACE_RE = re.compile(r"\s+")


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def html_to_text(value: str) -> str:
    soup = BeautifulSoup(value, "html.parser")
    for node in soup(["script", "style"]):
        node.decompose()
    return collapse_whitespace(soup.get_text(" "))


def normalize_for_hash(value: str) -> str:
    collapsed = collapse_whitespace(value).lower()
    return "".join(char for char in collapsed if char.isalnum() or char.isspace())


def normalize_optional_text(value: str | None) -> str | None:
    if not value:
        return None
    collapsed = collapse_whitespace(value)
    return collapsed or None


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_candidate_key(
    *,
    source_key: str,
    source_url: str,
    title: str,
    description: str | None = None,
) -> str:
    payload = "|".join(
        [
            normalize_for_hash(source_key),
            normalize_for_hash(source_url),
            normalize_for_hash(title),
            normalize_for_hash(description or ""),
        ]
    )
    return sha256_hex(payload)

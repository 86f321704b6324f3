"""HTML parsing for randomactsofkindness.org listing and detail pages."""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from ingestion.core.normalize import collapse_whitespace, html_to_text
from ingestion.sources.base import ExtractedCandidate

SOURCE_KEY = "rak"
BASE_DOMAIN = "https://www.randomactsofkindness.org"
EXTRACTOR_VERSION = "rak_parser_v2"
MAX_DISCOVERED_URLS = 80
MAX_DETAIL_CANDIDATES = 1

DETAIL_PAGE_PATTERN = re.compile(r"^/kindness-ideas/\d+-[a-z0-9-]+/?$", re.IGNORECASE)
LISTING_PAGE_PATTERN = re.compile(r"^/kindness-ideas(?:/|$)", re.IGNORECASE)

ACTION_STARTERS = frozenset(
    {
        "add", "adopt", "ask", "attend", "be", "bring", "build", "buy", "call", "celebrate",
        "check", "clean", "compliment", "cook", "create", "deliver", "do", "donate", "drop",
        "encourage", "forgive", "give", "go", "help", "hold", "host", "invite", "join", "leave",
        "listen", "mail", "make", "offer", "organize", "pick", "plan", "prepare", "say",
        "schedule", "send", "share", "smile", "start", "surprise", "support", "take", "teach",
        "tell", "text", "thank", "try", "visit", "volunteer", "write",
    }
)

NON_IDEA_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bcalendar\b",
        r"\bcertificate\b",
        r"\bcurriculum\b",
        r"\bfaq\b",
        r"\blesson\b",
        r"\bposter\b",
        r"\bprintable\b",
        r"\bquotes?\b",
        r"\bresearch\b",
        r"\bstories?\b",
        r"\bvideos?\b",
        r"\babout\s+us\b",
        r"\bprivacy\b",
        r"\bterms?\b",
    )
]
ARTICLE_STYLE_PATTERNS = [
    re.compile(r"^(how|why|what|when|where)\b", re.IGNORECASE),
    re.compile(r"\b\d+\s+(ways|reasons|tips|benefits)\b", re.IGNORECASE),
    re.compile(r"\bkindness\s+ideas\b", re.IGNORECASE),
]
LEADING_NOISE_PATTERNS = [
    re.compile(r"^kindness idea\s*[:\-]\s*", re.IGNORECASE),
    re.compile(r"^idea\s*[:\-]\s*", re.IGNORECASE),
    re.compile(r"^\d+\.\s*"),
    re.compile(r"^[-*]\s*"),
]
TRAILING_NOISE_PATTERNS = [re.compile(r"\s+read more\.?$", re.IGNORECASE)]
_TOKEN_STRIP_RE = re.compile(r"[^a-z0-9\s]")


def normalize_rak_url(value: str) -> str:
    parts = urlsplit(value)
    path = parts.path
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    path = path or "/"
    query = "" if DETAIL_PAGE_PATTERN.match(path) else parts.query
    return urlunsplit((parts.scheme, parts.netloc, path, query, ""))


def classify_rak_url(url: str) -> str:
    parts = urlsplit(url)
    if f"{parts.scheme}://{parts.netloc}" != BASE_DOMAIN:
        return "other"
    if DETAIL_PAGE_PATTERN.match(parts.path):
        return "detail"
    if LISTING_PAGE_PATTERN.match(parts.path):
        return "listing"
    return "other"


def _tokenize(value: str) -> list[str]:
    return _TOKEN_STRIP_RE.sub(" ", value.lower()).split()


def normalize_idea_text(value: str) -> str | None:
    text = collapse_whitespace(value)
    if not text:
        return None
    for pattern in LEADING_NOISE_PATTERNS:
        text = pattern.sub("", text).strip()
    for pattern in TRAILING_NOISE_PATTERNS:
        text = pattern.sub("", text).strip()
    text = collapse_whitespace(text)
    if len(text) < 8 or len(text) > 180:
        return None
    return text


def is_likely_idea(value: str) -> bool:
    trimmed = value.strip()
    tokens = _tokenize(trimmed)
    if len(tokens) < 3 or len(tokens) > 20:
        return False
    if trimmed.endswith("?"):
        return False
    if tokens[0] not in ACTION_STARTERS:
        return False
    return not any(pattern.search(trimmed) for pattern in NON_IDEA_PATTERNS)


def is_article_style_title(value: str) -> bool:
    return any(pattern.search(value) for pattern in ARTICLE_STYLE_PATTERNS)


def idea_title_from_url(url: str) -> str | None:
    path = urlsplit(url).path
    if not DETAIL_PAGE_PATTERN.match(path):
        return None
    segments = [segment for segment in path.split("/") if segment]
    slug = re.sub(r"^\d+-", "", segments[-1])
    if not slug:
        return None
    text = slug.replace("-", " ").strip()
    normalized = normalize_idea_text(text[:1].upper() + text[1:])
    if normalized and is_likely_idea(normalized):
        return normalized
    return None


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def _meta_content(soup: BeautifulSoup, key: str) -> str | None:
    for attribute in ("name", "property"):
        tag = soup.find("meta", attrs={attribute: key})
        content = tag.get("content") if tag else None
        if isinstance(content, str):
            normalized = normalize_idea_text(html_to_text(content))
            if normalized:
                return normalized
    return None


def _tag_texts(soup: BeautifulSoup, tag: str) -> list[str]:
    values = []
    for node in soup.find_all(tag):
        normalized = normalize_idea_text(node.get_text(" "))
        if normalized:
            values.append(normalized)
    return values


def extract_action_lines(soup: BeautifulSoup) -> list[str]:
    lines = []
    for node in soup.find_all(["li", "p"]):
        line = normalize_idea_text(node.get_text(" "))
        if line and is_likely_idea(line) and not is_article_style_title(line):
            lines.append(line)
    return _unique(lines)


def extract_detail_links(html: str, base_url: str) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    links = []
    for anchor in soup.find_all("a", href=True):
        absolute = urljoin(base_url, anchor["href"])
        if not absolute.startswith(("http://", "https://")):
            continue
        normalized = normalize_rak_url(absolute)
        if classify_rak_url(normalized) == "detail":
            links.append(normalized)
    return _unique(links)[:MAX_DISCOVERED_URLS]


def build_candidate_from_detail_page(page_url: str, html: str) -> ExtractedCandidate | None:
    source_url = normalize_rak_url(page_url)
    if classify_rak_url(source_url) != "detail":
        return None

    soup = BeautifulSoup(html, "html.parser")
    action_lines = extract_action_lines(soup)
    url_title = idea_title_from_url(source_url)
    meta_title = _meta_content(soup, "og:title")
    meta_description = _meta_content(soup, "description") or _meta_content(soup, "og:description")

    title_candidates = _unique(
        [
            *action_lines,
            *([url_title] if url_title else []),
            *([meta_title] if meta_title else []),
            *_tag_texts(soup, "h1"),
        ]
    )
    title = next(
        (value for value in title_candidates if is_likely_idea(value) and not is_article_style_title(value)),
        None,
    )
    if title is None:
        return None

    other_line = next((line for line in action_lines if line != title), None)
    description = next(
        (
            value
            for value in (meta_description, other_line, title)
            if value and not any(pattern.search(value) for pattern in NON_IDEA_PATTERNS)
        ),
        title,
    )

    return ExtractedCandidate(
        source_key=SOURCE_KEY,
        source_url=source_url,
        title=title,
        description=description,
        raw_excerpt=action_lines[0] if action_lines else description,
        meta={
            "extraction_strategy": "detail_page",
            "source_evidence": {
                "document_region": "li_or_p_action_line",
                "selector_hint": "li,p",
            },
            "extractor_version": EXTRACTOR_VERSION,
        },
    )


def extract_candidates_from_listing_page(page_url: str, html: str) -> list[ExtractedCandidate]:
    listing_url = normalize_rak_url(page_url)
    candidates: list[ExtractedCandidate] = []
    for detail_url in extract_detail_links(html, listing_url):
        if detail_url == listing_url:
            continue
        title = idea_title_from_url(detail_url)
        if not title or is_article_style_title(title):
            continue
        candidates.append(
            ExtractedCandidate(
                source_key=SOURCE_KEY,
                source_url=detail_url,
                title=title,
                description=title,
                raw_excerpt=title,
                meta={
                    "extraction_strategy": "listing_link_slug",
                    "listing_url": listing_url,
                    "source_evidence": {"document_region": "anchor_href_slug"},
                    "extractor_version": EXTRACTOR_VERSION,
                },
            )
        )
        if len(candidates) >= MAX_DISCOVERED_URLS:
            break
    return candidates

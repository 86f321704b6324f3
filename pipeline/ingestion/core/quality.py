from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ingestion.core.normalize import normalize_optional_text

QUALITY_RULE_VERSION = "v1"
DEFAULT_QUALITY_THRESHOLD = 0.6

ACTION_STARTERS = frozenset(
    {
        "add",
        "adopt",
        "ask",
        "attend",
        "be",
        "bring",
        "build",
        "buy",
        "call",
        "celebrate",
        "check",
        "clean",
        "compliment",
        "cook",
        "create",
        "deliver",
        "do",
        "donate",
        "drop",
        "encourage",
        "forgive",
        "give",
        "go",
        "help",
        "hold",
        "host",
        "invite",
        "join",
        "leave",
        "listen",
        "mail",
        "make",
        "offer",
        "organize",
        "pick",
        "plan",
        "prepare",
        "say",
        "schedule",
        "send",
        "share",
        "smile",
        "start",
        "surprise",
        "support",
        "take",
        "teach",
        "tell",
        "text",
        "thank",
        "try",
        "visit",
        "volunteer",
        "write",
    }
)

NON_IDEA_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\babout us\b",
        r"\bcalendar\b",
        r"\bcertificate\b",
        r"\bcurriculum\b",
        r"\bfaq\b",
        r"\blesson\b",
        r"\bposter\b",
        r"\bprintable\b",
        r"\bprivacy\b",
        r"\bquotes?\b",
        r"\bresearch\b",
        r"\bstories?\b",
        r"\bterms?\b",
        r"\bvideos?\b",
    )
)

ARTICLE_STYLE_PATTERNS = (
    re.compile(r"^(how|why|what|when|where)\b", re.IGNORECASE),
    re.compile(r"\b\d+\s+(ways|reasons|tips|benefits)\b", re.IGNORECASE),
)

_TOKEN_STRIP_RE = re.compile(r"[^a-z0-9\s]")


@dataclass(slots=True)
class CandidateQuality:
    score: float
    passed: bool
    threshold: float
    flags: list[str] = field(default_factory=list)

    def as_meta(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "passed": self.passed,
            "threshold": self.threshold,
            "flags": list(self.flags),
            "rule_version": QUALITY_RULE_VERSION,
        }


def tokenize(value: str) -> list[str]:
    return [token for token in _TOKEN_STRIP_RE.sub(" ", value.lower()).split() if token]


def evaluate_candidate_quality(
    title: str,
    description: str | None = None,
    *,
    threshold: float = DEFAULT_QUALITY_THRESHOLD,
) -> CandidateQuality:
    normalized_title = normalize_optional_text(title) or ""
    normalized_description = normalize_optional_text(description) or ""
    flags: list[str] = []
    score = 1.0

    if len(normalized_title) < 8:
        flags.append("title_too_short")
        score -= 0.4
    if len(normalized_title) > 160:
        flags.append("title_too_long")
        score -= 0.25
    if len(normalized_description) > 500:
        flags.append("description_too_long")
        score -= 0.2

    title_tokens = tokenize(normalized_title)
    if len(title_tokens) < 3:
        flags.append("title_not_actionable_length")
        score -= 0.25

    if normalized_title.endswith("?"):
        flags.append("title_question_form")
        score -= 0.2

    first_word = title_tokens[0] if title_tokens else ""
    if first_word not in ACTION_STARTERS:
        flags.append("weak_action_start")
        score -= 0.3

    for pattern in NON_IDEA_PATTERNS:
        if pattern.search(normalized_title) or pattern.search(normalized_description):
            flags.append("non_idea_pattern")
            score -= 0.5
            break

    for pattern in ARTICLE_STYLE_PATTERNS:
        if pattern.search(normalized_title):
            flags.append("article_style_title")
            score -= 0.35
            break

    final_score = _clamp_score(score)
    passed = "non_idea_pattern" not in flags and final_score >= threshold
    return CandidateQuality(score=final_score, passed=passed, threshold=threshold, flags=flags)


def _clamp_score(score: float) -> float:
    if score <= 0:
        return 0.0
    if score >= 1:
        return 1.0
    return round(score, 4)

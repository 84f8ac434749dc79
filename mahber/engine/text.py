"""
mahber.engine.text — Text Normalization Helpers
================================================

Pure string functions shared by the classifier, the moderation pipeline,
the rate gate (similar-content prefixes), and the search index.
"""

from __future__ import annotations

import re
from collections import Counter

URL_RE = re.compile(r"(?:https?://|www\.)[^\s]+", re.IGNORECASE)
EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]")

LINK_PLACEHOLDER = "[LINK REMOVED]"
EMAIL_PLACEHOLDER = "[EMAIL REMOVED]"

STOPWORDS = frozenset({
    "this", "that", "with", "from", "have", "been", "will", "would",
})


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def find_links(text: str) -> list[str]:
    """Distinct links in order of first appearance, trailing punctuation dropped."""
    seen: dict[str, None] = {}
    for match in URL_RE.findall(text):
        seen.setdefault(match.rstrip(".,;:!?)]}'\"").lower(), None)
    return list(seen)


def sanitize(text: str) -> str:
    """Trim, strip links and emails, and collapse whitespace."""
    cleaned = URL_RE.sub(LINK_PLACEHOLDER, text)
    cleaned = EMAIL_RE.sub(EMAIL_PLACEHOLDER, cleaned)
    return collapse_whitespace(cleaned)


def normalize(text: str) -> str:
    """Lowercase, punctuation stripped, single-spaced."""
    return collapse_whitespace(_PUNCT_RE.sub("", text.lower()))


def content_prefix(text: str, length: int = 20) -> str:
    return normalize(text)[:length]


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Most frequent words longer than three characters, stopwords removed.

    Ties keep first-appearance order.
    """
    words = [w for w in normalize(text).split() if len(w) > 3 and w not in STOPWORDS]
    return [word for word, _ in Counter(words).most_common(limit)]

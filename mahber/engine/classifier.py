"""
mahber.engine.classifier — Content Classifier
==============================================

Scores free text for spam, abuse, link and PII leakage, and noisy
formatting.  Each rule contributes independently; the total is clamped
to 100.

This module is pure calculation — no database I/O.  The rule lists come
from :class:`~mahber.config.ModerationConfig`, so a trained model could
replace :func:`classify` behind the same signature.

=====================  ===========  =====================
Rule                   Weight       Flag
=====================  ===========  =====================
spam phrase            +15 each     ``spam_<phrase>``
two or more links      +15          ``multi_url``
profanity              +10 each     ``abusive_language``
caps ratio > 0.8       +10          ``excessive_caps``
run of 5 same chars    +10          ``char_repetition``
``!``/``?`` runs       +5 per run   ``punct_spam``
length < 10            +5           ``too_short``
length > 2000          +10          ``too_long``
email / long digits    +15          ``pii_email`` / ``pii_digits``
=====================  ===========  =====================
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from mahber.config import DEFAULT_PROFANITY, DEFAULT_SPAM_KEYWORDS, ModerationConfig
from mahber.engine.text import EMAIL_RE, find_links

MAX_SCORE = 100

SPAM_WEIGHT = 15
MULTI_URL_WEIGHT = 15
PROFANITY_WEIGHT = 10
CAPS_WEIGHT = 10
REPETITION_WEIGHT = 10
PUNCT_WEIGHT = 5
TOO_SHORT_WEIGHT = 5
TOO_LONG_WEIGHT = 10
PII_WEIGHT = 15

MIN_LENGTH = 10
MAX_LENGTH = 2000
CAPS_MIN_LENGTH = 20
CAPS_RATIO = 0.8

_REPETITION_RE = re.compile(r"(\S)\1{4,}")
_PUNCT_RUN_RE = re.compile(r"[!?]{2,}")
_DIGITS_RE = re.compile(r"\d{9,}")
_NON_WORD_RE = re.compile(r"\W+")


@dataclass(frozen=True, slots=True)
class ClassifierRules:
    spam_keywords: tuple[str, ...] = DEFAULT_SPAM_KEYWORDS
    profanity: tuple[str, ...] = DEFAULT_PROFANITY

    @classmethod
    def from_config(cls, cfg: ModerationConfig) -> ClassifierRules:
        return cls(spam_keywords=cfg.spam_keywords, profanity=cfg.profanity)


@dataclass(frozen=True, slots=True)
class Classification:
    score: int
    flags: tuple[str, ...]

    def has_any(self, flags: frozenset[str]) -> bool:
        return any(flag in flags for flag in self.flags)


def spam_flag(keyword: str) -> str:
    """``"buy now"`` → ``"spam_buy_now"``."""
    return "spam_" + _NON_WORD_RE.sub("_", keyword.strip().lower()).strip("_")


@lru_cache(maxsize=256)
def _word_pattern(word: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(word)}(?!\w)", re.IGNORECASE)


def classify(text: str, rules: ClassifierRules = ClassifierRules()) -> Classification:
    """Score *text*.  Identical input always yields identical output."""
    score = 0
    flags: list[str] = []

    for keyword in rules.spam_keywords:
        if keyword and _word_pattern(keyword).search(text):
            score += SPAM_WEIGHT
            flags.append(spam_flag(keyword))

    if len(find_links(text)) >= 2:
        score += MULTI_URL_WEIGHT
        flags.append("multi_url")

    profanity_hits = sum(1 for word in rules.profanity if word and _word_pattern(word).search(text))
    if profanity_hits:
        score += PROFANITY_WEIGHT * profanity_hits
        flags.append("abusive_language")

    stripped = text.strip()
    letters = [ch for ch in stripped if ch.isalpha()]
    if len(stripped) >= CAPS_MIN_LENGTH and letters:
        upper = sum(1 for ch in letters if ch.isupper())
        if upper / len(letters) > CAPS_RATIO:
            score += CAPS_WEIGHT
            flags.append("excessive_caps")

    if _REPETITION_RE.search(text):
        score += REPETITION_WEIGHT
        flags.append("char_repetition")

    punct_runs = len(_PUNCT_RUN_RE.findall(text))
    if punct_runs:
        score += PUNCT_WEIGHT * punct_runs
        flags.append("punct_spam")

    if len(stripped) < MIN_LENGTH:
        score += TOO_SHORT_WEIGHT
        flags.append("too_short")
    elif len(stripped) > MAX_LENGTH:
        score += TOO_LONG_WEIGHT
        flags.append("too_long")

    pii_flags = []
    if EMAIL_RE.search(text):
        pii_flags.append("pii_email")
    if _DIGITS_RE.search(text):
        pii_flags.append("pii_digits")
    if pii_flags:
        score += PII_WEIGHT
        flags.extend(pii_flags)

    return Classification(score=min(score, MAX_SCORE), flags=tuple(flags))

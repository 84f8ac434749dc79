"""
mahber.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` into one immutable :class:`MahberConfig`.  Every
section is optional; anything left out keeps its default, so
``MahberConfig()`` is a complete working configuration.

Secrets (``DATABASE_URL``, ``JWT_SECRET``) never live here; they come from
the environment (``.env`` via python-dotenv).

Usage::

    from mahber.config import load_config

    cfg = load_config()                    # reads ./config.yaml by default
    print(cfg.spam_score_threshold)        # 70
    print(cfg.rate.posts_per_minute)       # 5
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SPAM_KEYWORDS: tuple[str, ...] = (
    "buy now",
    "click here",
    "make money",
    "earn cash",
    "limited offer",
    "act now",
    "urgent",
    "guaranteed",
    "work from home",
    "get rich",
    "financial freedom",
    "free money",
)

DEFAULT_PROFANITY: tuple[str, ...] = (
    "idiot",
    "stupid",
    "hate you",
    "shut up",
    "loser",
    "damn",
)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RateConfig:
    """Rate & history gate windows."""

    posts_per_minute: int = 5
    posts_per_hour: int = 20
    topics_per_day: int = 10
    similar_content_per_day: int = 3
    similar_prefix_chars: int = 20
    max_flags_per_day: int = 5
    cache_ttl_seconds: float = 5.0  # staleness bound, never above 10 s


@dataclass(frozen=True, slots=True)
class ArchiveConfig:
    forum_days: int = 90
    chapter_days: int = 180
    period_seconds: int = 300


@dataclass(frozen=True, slots=True)
class UpdateConfig:
    """Badge / leaderboard queue processing."""

    worker_period_seconds: int = 60
    batch_size: int = 100
    max_attempts: int = 3
    expiry_seconds: int = 300
    backpressure_depth: int = 1000
    publisher_period_seconds: int = 300


@dataclass(frozen=True, slots=True)
class SearchConfig:
    min_term_length: int = 3
    max_keywords: int = 10
    default_limit: int = 20


@dataclass(frozen=True, slots=True)
class PointsConfig:
    """Points earned per ledger event type."""

    topic: int = 10
    post: int = 5
    forum: int = 25
    lesson: int = 10


@dataclass(frozen=True, slots=True)
class ModerationConfig:
    spam_keywords: tuple[str, ...] = DEFAULT_SPAM_KEYWORDS
    profanity: tuple[str, ...] = DEFAULT_PROFANITY
    high_severity_flags: frozenset[str] = frozenset({"abusive_language", "multi_url"})


@dataclass(frozen=True, slots=True)
class MahberConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    spam_score_threshold: int = 70
    youth_role_name: str = "youth"
    rate: RateConfig = field(default_factory=RateConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    update: UpdateConfig = field(default_factory=UpdateConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    points: PointsConfig = field(default_factory=PointsConfig)
    moderation: ModerationConfig = field(default_factory=ModerationConfig)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _section(cls: type, raw: dict[str, Any] | None):
    """Build a section dataclass from *raw*, ignoring unknown keys."""
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _moderation(raw: dict[str, Any] | None) -> ModerationConfig:
    raw = raw or {}
    defaults = ModerationConfig()
    return ModerationConfig(
        spam_keywords=tuple(
            str(kw).lower() for kw in raw.get("spam_keywords", defaults.spam_keywords)
        ),
        profanity=tuple(
            str(word).lower() for word in raw.get("profanity", defaults.profanity)
        ),
        high_severity_flags=frozenset(
            raw.get("high_severity_flags", defaults.high_severity_flags)
        ),
    )


def config_from_dict(raw: dict[str, Any]) -> MahberConfig:
    """Build a :class:`MahberConfig` from an already-parsed mapping."""
    rate = _section(RateConfig, raw.get("rate"))
    if rate.cache_ttl_seconds > 10:
        raise ValueError("rate.cache_ttl_seconds must not exceed 10 seconds")

    youth = raw.get("youth") or {}
    return MahberConfig(
        spam_score_threshold=int(raw.get("spam_score_threshold", 70)),
        youth_role_name=str(youth.get("role_name", "youth")),
        rate=rate,
        archive=_section(ArchiveConfig, raw.get("archive")),
        update=_section(UpdateConfig, raw.get("update")),
        search=_section(SearchConfig, raw.get("search")),
        points=_section(PointsConfig, raw.get("points")),
        moderation=_moderation(raw.get("moderation")),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def default_config_path() -> Path:
    """``$MAHBER_CONFIG`` if set, otherwise ``./config.yaml``."""
    return Path(os.getenv("MAHBER_CONFIG", "config.yaml"))


def load_config(path: str | Path | None = None) -> MahberConfig:
    """Read *path* and return a :class:`MahberConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value is outside its allowed range.
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return config_from_dict(raw)

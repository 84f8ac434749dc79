"""
mahber.engine.privacy — Privacy Filter
=======================================

Every outbound projection of user identity passes through this module.
It runs on data that has already been read; nothing here writes back, so a
redacted projection never changes what is stored.

Rules, in order:

1. The viewer always sees their own identity.
2. Moderators and admins see identity on moderation surfaces only.
3. Youth members are shown as ``User <4 hex>`` regardless of preference.
4. Anonymous members are shown as ``Anonymous``.
5. Everyone else gets a public profile (no email, age, or location).

Ranks, points, chapter and role always survive redaction.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from mahber.constants import MODERATOR_ROLES

ANONYMOUS_NAME = "Anonymous"

PUBLIC_SURFACE = "public"
MODERATION_SURFACE = "moderation"

# Fields never shown on a public projection.
PRIVATE_FIELDS = ("email", "age", "location")


@dataclass(frozen=True, slots=True)
class Viewer:
    """Who is looking.  ``id=None`` is an unauthenticated reader."""

    id: int | None = None
    role: str | None = None
    chapter_id: int | None = None

    @property
    def is_moderator(self) -> bool:
        return self.role in MODERATOR_ROLES

    @classmethod
    def of(cls, user: Any) -> Viewer:
        if user is None:
            return cls()
        return cls(id=user.id, role=user.role, chapter_id=user.chapter_id)


def user_hash(user_id: int) -> str:
    return hashlib.sha256(str(user_id).encode("utf-8")).hexdigest()


def youth_display_name(user_id: int) -> str:
    return f"User {user_hash(user_id)[-4:]}"


def full_name(first_name: str | None, last_name: str | None) -> str:
    return " ".join(part for part in (first_name, last_name) if part)


def identity_fields(user: Any) -> dict[str, Any]:
    """Flatten a User row into the mapping :func:`project_user` expects."""
    return {
        "user_id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "age": user.age,
        "location": user.location,
        "role": user.role,
        "chapter_id": user.chapter_id,
        "is_anonymous": user.is_anonymous,
    }


def project_user(
    viewer: Viewer,
    target: Mapping[str, Any],
    *,
    youth_role: str = "youth",
    surface: str = PUBLIC_SURFACE,
) -> dict[str, Any]:
    """Return a redacted copy of *target* suitable for *viewer*.

    *target* carries ``user_id``, name fields, ``role``, ``is_anonymous``
    and any non-identity keys (``rank``, ``points`` …) which pass through.
    """
    projected = dict(target)
    owner = viewer.id is not None and viewer.id == target.get("user_id")

    if owner or (surface == MODERATION_SURFACE and viewer.is_moderator):
        projected["display_name"] = full_name(target.get("first_name"), target.get("last_name"))
        return projected

    for key in PRIVATE_FIELDS:
        if key in projected:
            projected[key] = None

    if target.get("role") == youth_role:
        projected.update(
            user_id=None,
            first_name=None,
            last_name=None,
            display_name=youth_display_name(target["user_id"]),
        )
    elif target.get("is_anonymous"):
        projected.update(
            user_id=None,
            first_name=ANONYMOUS_NAME,
            last_name="",
            display_name=ANONYMOUS_NAME,
        )
    else:
        projected["display_name"] = full_name(target.get("first_name"), target.get("last_name"))
    return projected


def filter_leaderboard(
    entries: Iterable[Mapping[str, Any]],
    viewer: Viewer,
    *,
    include_anonymous: bool = True,
    youth_role: str = "youth",
) -> list[dict[str, Any]]:
    """Project every entry; optionally drop other members' anonymous rows."""
    result = []
    for entry in entries:
        own = viewer.id is not None and viewer.id == entry.get("user_id")
        hidden = entry.get("is_anonymous") or entry.get("role") == youth_role
        if hidden and not include_anonymous and not own:
            continue
        result.append(project_user(viewer, entry, youth_role=youth_role))
    return result


def filter_forum_post(
    post: Mapping[str, Any],
    viewer: Viewer,
    *,
    youth_role: str = "youth",
    surface: str = PUBLIC_SURFACE,
) -> dict[str, Any]:
    """Redact the nested ``author`` mapping of a serialized post."""
    projected = dict(post)
    author = post.get("author")
    if author is not None:
        projected["author"] = project_user(viewer, author, youth_role=youth_role, surface=surface)
    return projected


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------
def age_bucket(age: int | None) -> str:
    if age is None:
        return "unknown"
    if age < 13:
        return "<13"
    if age <= 17:
        return "13_17"
    if age <= 24:
        return "18_24"
    if age <= 34:
        return "25_34"
    return "35+"


def analytics_row(user: Mapping[str, Any], **metrics: Any) -> dict[str, Any]:
    """Hashed id, bucketed age, no names."""
    return {
        "user_hash": user_hash(user["user_id"]),
        "age_bucket": age_bucket(user.get("age")),
        "role": user.get("role"),
        "chapter_id": user.get("chapter_id"),
        **metrics,
    }

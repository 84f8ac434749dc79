"""
tests/test_privacy.py — Privacy Filter & Access Rule Tests
===========================================================
"""

from __future__ import annotations

import re
from types import SimpleNamespace

from mahber.engine.access import can_access_forum, can_read, can_view_topic
from mahber.engine.privacy import (
    MODERATION_SURFACE,
    Viewer,
    age_bucket,
    analytics_row,
    filter_forum_post,
    filter_leaderboard,
    project_user,
    user_hash,
    youth_display_name,
)


def _target(**overrides) -> dict:
    base = {
        "user_id": 7,
        "first_name": "Abebe",
        "last_name": "Kebede",
        "email": "abebe@example.org",
        "age": 19,
        "location": "Addis Ababa",
        "role": "member",
        "chapter_id": 1,
        "is_anonymous": False,
    }
    base.update(overrides)
    return base


class TestProjectUser:
    def test_public_profile_hides_contact_fields(self):
        out = project_user(Viewer(id=99, role="member"), _target())
        assert out["first_name"] == "Abebe"
        assert out["display_name"] == "Abebe Kebede"
        assert out["email"] is None
        assert out["age"] is None
        assert out["location"] is None

    def test_owner_sees_everything(self):
        out = project_user(Viewer(id=7, role="member"), _target(is_anonymous=True))
        assert out["user_id"] == 7
        assert out["first_name"] == "Abebe"
        assert out["email"] == "abebe@example.org"

    def test_anonymous_member(self):
        out = project_user(Viewer(id=99), _target(is_anonymous=True))
        assert out["user_id"] is None
        assert out["first_name"] == "Anonymous"
        assert out["last_name"] == ""
        assert out["display_name"] == "Anonymous"

    def test_youth_always_pseudonymous(self):
        for anonymous in (False, True):
            out = project_user(Viewer(id=99), _target(role="youth", is_anonymous=anonymous))
            assert out["user_id"] is None
            assert out["first_name"] is None
            assert out["last_name"] is None
            assert out["email"] is None
            assert re.fullmatch(r"User [0-9a-f]{4}", out["display_name"])

    def test_youth_display_name_is_stable(self):
        assert youth_display_name(7) == f"User {user_hash(7)[-4:]}"
        assert youth_display_name(7) == youth_display_name(7)

    def test_custom_youth_role(self):
        out = project_user(Viewer(id=99), _target(role="junior"), youth_role="junior")
        assert out["display_name"].startswith("User ")

    def test_moderator_sees_identity_only_on_moderation_surface(self):
        moderator = Viewer(id=50, role="moderator")
        public = project_user(moderator, _target(is_anonymous=True))
        scoped = project_user(moderator, _target(is_anonymous=True), surface=MODERATION_SURFACE)
        assert public["user_id"] is None
        assert scoped["user_id"] == 7
        assert scoped["email"] == "abebe@example.org"

    def test_non_moderator_gets_nothing_from_moderation_surface(self):
        out = project_user(Viewer(id=99, role="teacher"), _target(is_anonymous=True),
                           surface=MODERATION_SURFACE)
        assert out["user_id"] is None

    def test_non_identity_fields_pass_through(self):
        out = project_user(Viewer(), _target(is_anonymous=True, rank=2, points=30))
        assert out["rank"] == 2
        assert out["points"] == 30

    def test_source_mapping_not_mutated(self):
        target = _target(is_anonymous=True)
        project_user(Viewer(), target)
        assert target["first_name"] == "Abebe"


class TestFilterLeaderboard:
    def _entries(self):
        return [
            _target(user_id=1, rank=1, points=50),
            _target(user_id=2, rank=2, points=30, is_anonymous=True),
            _target(user_id=3, rank=3, points=10, role="youth"),
        ]

    def test_include_anonymous_keeps_redacted_rows(self):
        rows = filter_leaderboard(self._entries(), Viewer(id=1))
        assert [r["points"] for r in rows] == [50, 30, 10]
        assert rows[1]["user_id"] is None
        assert rows[2]["display_name"].startswith("User ")

    def test_exclude_anonymous_drops_other_hidden_rows(self):
        rows = filter_leaderboard(self._entries(), Viewer(id=1), include_anonymous=False)
        assert [r["user_id"] for r in rows] == [1]

    def test_exclude_anonymous_keeps_own_row(self):
        rows = filter_leaderboard(self._entries(), Viewer(id=2), include_anonymous=False)
        assert [r["user_id"] for r in rows] == [1, 2]
        assert rows[1]["first_name"] == "Abebe"


class TestFilterForumPost:
    def test_author_redacted(self):
        post = {"id": 1, "content": "hello", "author": _target(role="youth")}
        out = filter_forum_post(post, Viewer(id=99))
        assert out["author"]["user_id"] is None
        assert out["content"] == "hello"

    def test_post_without_author(self):
        assert filter_forum_post({"id": 1}, Viewer()) == {"id": 1}


class TestAnalytics:
    def test_age_buckets(self):
        assert [age_bucket(a) for a in (None, 10, 15, 20, 30, 60)] == [
            "unknown", "<13", "13_17", "18_24", "25_34", "35+",
        ]

    def test_analytics_row_has_no_names(self):
        row = analytics_row(_target(), posts=3)
        assert row["user_hash"] == user_hash(7)
        assert row["age_bucket"] == "18_24"
        assert row["posts"] == 3
        assert "first_name" not in row
        assert "email" not in row


class TestAccessRules:
    def _forum(self, **kw):
        return SimpleNamespace(**{"chapter_id": 1, "is_public": False, "is_active": True, **kw})

    def test_chapter_forum(self):
        forum = self._forum()
        assert can_access_forum(SimpleNamespace(chapter_id=1), forum)
        assert not can_access_forum(SimpleNamespace(chapter_id=2), forum)
        assert not can_access_forum(None, forum)

    def test_public_forum(self):
        forum = self._forum(is_public=True)
        assert can_access_forum(SimpleNamespace(chapter_id=2), forum)
        assert can_access_forum(None, forum)

    def test_inactive_forum_closed_to_everyone(self):
        forum = self._forum(is_public=True, is_active=False)
        assert not can_access_forum(SimpleNamespace(chapter_id=1), forum)

    def test_private_topic(self):
        topic = SimpleNamespace(is_private=True, allowed_chapter_id=1)
        assert can_view_topic(SimpleNamespace(chapter_id=1), topic)
        assert not can_view_topic(SimpleNamespace(chapter_id=None), topic)
        assert not can_read(SimpleNamespace(chapter_id=2), self._forum(is_public=True), topic)

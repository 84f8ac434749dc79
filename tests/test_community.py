"""
tests/test_community.py — Bonuses, Badges, Analytics & Oversight
=================================================================
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW, make_user
from sqlalchemy import select
from sqlalchemy.orm import Session

from mahber.database.models import EngagementEvent
from mahber.engine.privacy import user_hash
from mahber.errors import ContentFlaggedError, ForbiddenError, InvalidFieldError, NotFoundError
from mahber.services import community_service, forum_service


class TestBonus:
    def test_teacher_awards_bonus(self, ctx, db_engine, community):
        result = community_service.award_bonus(
            ctx, community["teacher_id"], community["member_id"], 15, "Led the choir", now=NOW
        )
        assert result["points"] == 15
        with Session(db_engine) as session:
            event = session.get(EngagementEvent, result["event_id"])
            assert event.metadata_["granted_by"] == community["teacher_id"]
            assert event.chapter_id == community["chapter_id"]

    def test_member_cannot_award(self, ctx, community):
        with pytest.raises(ForbiddenError):
            community_service.award_bonus(
                ctx, community["member_id"], community["teacher_id"], 15, "thanks", now=NOW
            )

    @pytest.mark.parametrize("points", [0, -5, 5000])
    def test_points_bounds(self, ctx, community, points):
        with pytest.raises(InvalidFieldError) as exc:
            community_service.award_bonus(
                ctx, community["teacher_id"], community["member_id"], points, "x", now=NOW
            )
        assert exc.value.details["field"] == "points"

    def test_reason_required(self, ctx, community):
        with pytest.raises(InvalidFieldError):
            community_service.award_bonus(
                ctx, community["teacher_id"], community["member_id"], 5, "  ", now=NOW
            )

    def test_unknown_recipient(self, ctx, community):
        with pytest.raises(NotFoundError):
            community_service.award_bonus(ctx, community["teacher_id"], 9999, 5, "x", now=NOW)


class TestBadges:
    def test_progress_lists_unearned_badges(self, ctx, community):
        progress = {p["name"]: p for p in community_service.get_badge_progress(ctx, community["member_id"])}
        assert progress["first_post"]["requirements"] == {"forum_posts": {"current": 0, "required": 1}}
        assert "first_lesson" in progress

    def test_grant_requires_moderator(self, ctx, community):
        with pytest.raises(ForbiddenError):
            community_service.grant_badge(ctx, community["teacher_id"], community["member_id"], 1)

    def test_grant_unknown_badge(self, ctx, community):
        with pytest.raises(NotFoundError):
            community_service.grant_badge(ctx, community["moderator_id"], community["member_id"], 9999)

    def test_granted_badge_listed(self, ctx, community):
        community_service.grant_badge(ctx, community["moderator_id"], community["member_id"], 1, now=NOW)
        badges = community_service.get_user_badges(ctx, community["member_id"])
        assert [b["badge_id"] for b in badges] == [1]
        assert badges[0]["points"] > 0


class TestPrivacySettings:
    def test_settings_round_trip(self, ctx, community):
        result = community_service.update_privacy_settings(
            ctx, community["member_id"], allow_analytics=False
        )
        assert result == {
            "user_id": community["member_id"],
            "show_on_leaderboard": True,
            "allow_analytics": False,
        }

    def test_non_boolean_rejected(self, ctx, community):
        with pytest.raises(InvalidFieldError) as exc:
            community_service.update_privacy_settings(
                ctx, community["member_id"], show_on_leaderboard="no"
            )
        assert exc.value.details["field"] == "show_on_leaderboard"

    def test_profile_hides_contact_details(self, ctx, community):
        profile = community_service.get_profile(ctx, community["teacher_id"], community["member_id"])
        assert profile["first_name"] == "Abebe"
        assert profile["email"] is None

    def test_own_profile(self, ctx, community):
        profile = community_service.get_profile(ctx, community["member_id"], community["member_id"])
        assert profile["email"] == "abebe@example.org"


class TestAnalytics:
    def test_admin_export_respects_opt_out(self, ctx, db_engine, community):
        admin = make_user(db_engine, "Tsion", "Abera", role="admin")
        forum_service.create_topic(
            ctx, community["member_id"], community["forum_id"],
            title="Question", content="When does the Fasika service start?", now=NOW,
        )
        community_service.update_privacy_settings(ctx, community["teacher_id"], allow_analytics=False)

        rows = {row["user_hash"]: row for row in community_service.analytics_export(ctx, admin)}
        member_row = rows[user_hash(community["member_id"])]
        assert member_row["topics"] == 1
        assert member_row["posts"] == 0
        assert "first_name" not in member_row
        assert user_hash(community["teacher_id"]) not in rows

    def test_only_admins(self, ctx, community):
        with pytest.raises(ForbiddenError):
            community_service.analytics_export(ctx, community["moderator_id"])


class TestOversight:
    def test_chapter_stats(self, ctx, community):
        forum_service.create_topic(
            ctx, community["member_id"], community["forum_id"],
            title="Question", content="When does the Fasika service start?", now=NOW,
        )
        stats = community_service.chapter_stats(ctx, community["chapter_id"])
        assert stats["event_points"] == 10
        assert stats["events"] == 1
        assert stats["active_members"] == 1

    def test_chapter_stats_since(self, ctx, community):
        community_service.award_bonus(
            ctx, community["teacher_id"], community["member_id"], 5, "old", now=NOW - timedelta(days=40)
        )
        stats = community_service.chapter_stats(
            ctx, community["chapter_id"], since=NOW - timedelta(days=7)
        )
        assert stats["events"] == 0

    def test_moderation_overview(self, ctx, community):
        topic = forum_service.create_topic(
            ctx, community["member_id"], community["forum_id"],
            title="Question", content="When does the Fasika service start?", now=NOW,
        )
        with pytest.raises(ContentFlaggedError):
            forum_service.create_post(
                ctx, community["member_id"], topic["topic"]["id"],
                content="Buy now! Click here! Free money!! Visit www.x.com www.y.com", now=NOW,
            )
        for _ in range(3):
            ctx.monitor.record_violation(community["member_id"])

        overview = community_service.moderation_overview(ctx, community["moderator_id"])
        assert overview["pending_review"] == 1
        assert overview["by_status"]["approved"] == 1
        assert overview["queues"]["badge"] == 1
        assert overview["archive"]["active_forums"] == 1
        assert overview["suspicious_users"] == [community["member_id"]]

    def test_overview_requires_moderator(self, ctx, community):
        with pytest.raises(ForbiddenError):
            community_service.moderation_overview(ctx, community["teacher_id"])

    def test_unknown_user(self, ctx):
        with pytest.raises(NotFoundError):
            community_service.get_user_badges(ctx, 9999)

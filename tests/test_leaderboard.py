"""
tests/test_leaderboard.py — Ranked Leaderboards & Privacy
==========================================================
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW, make_chapter, make_user
from sqlalchemy.orm import Session

from mahber.constants import LIFETIME_PERIOD, Horizon
from mahber.database.models import LeaderboardEntry
from mahber.errors import ForbiddenError, InvalidFieldError
from mahber.services import community_service
from mahber.services.update_processor import run_update_cycle


def _give_points(ctx, cfg, community, user_id, points, *, now=NOW):
    community_service.award_bonus(ctx, community["teacher_id"], user_id, points, "choir service", now=now)
    run_update_cycle(ctx.engine, cfg, now=now + timedelta(seconds=1))


def _entry(session, user_id, chapter_id, points, updated_at):
    session.add(LeaderboardEntry(
        user_id=user_id,
        chapter_id=chapter_id,
        horizon=Horizon.CHAPTER,
        period_start=LIFETIME_PERIOD,
        points=points,
        updated_at=updated_at,
    ))


class TestRankDerivation:
    def test_points_then_earliest_update(self, ctx, db_engine, community):
        chapter = community["chapter_id"]
        a = make_user(db_engine, "Tigist", "Worku", chapter_id=chapter)
        b = make_user(db_engine, "Kidus", "Yohannes", chapter_id=chapter)
        c = make_user(db_engine, "Saba", "Negash", chapter_id=chapter)
        with Session(db_engine) as session:
            _entry(session, a, chapter, 30, NOW - timedelta(hours=1))
            _entry(session, b, chapter, 30, NOW - timedelta(hours=2))
            _entry(session, c, chapter, 10, NOW - timedelta(hours=3))
            session.commit()

        board = community_service.get_leaderboard(ctx, community["member_id"], now=NOW)
        assert [(row["user_id"], row["rank"]) for row in board] == [(b, 1), (a, 2), (c, 3)]

    def test_full_tie_shares_rank(self, ctx, db_engine, community):
        chapter = community["chapter_id"]
        a = make_user(db_engine, "Tigist", "Worku", chapter_id=chapter)
        b = make_user(db_engine, "Kidus", "Yohannes", chapter_id=chapter)
        with Session(db_engine) as session:
            _entry(session, a, chapter, 30, NOW)
            _entry(session, b, chapter, 30, NOW)
            session.commit()

        board = community_service.get_leaderboard(ctx, community["member_id"], now=NOW)
        assert [row["rank"] for row in board] == [1, 1]

    def test_partitioned_by_chapter(self, ctx, db_engine, community):
        other_chapter = make_chapter(db_engine, "Hawassa")
        outsider = make_user(db_engine, "Eden", "Fikre", chapter_id=other_chapter)
        with Session(db_engine) as session:
            _entry(session, outsider, other_chapter, 500, NOW)
            _entry(session, community["member_id"], community["chapter_id"], 5, NOW)
            session.commit()

        board = community_service.get_leaderboard(ctx, community["member_id"], now=NOW)
        assert [row["user_id"] for row in board] == [community["member_id"]]
        assert board[0]["rank"] == 1


class TestAnonymity:
    def test_anonymous_row_keeps_rank_and_points(self, ctx, cfg, community):
        member = community["member_id"]
        _give_points(ctx, cfg, community, member, 30)

        changed = community_service.update_anonymity(ctx, member, True)
        assert changed["entries_updated"] == 4

        board = community_service.get_leaderboard(ctx, community["teacher_id"], now=NOW)
        row = board[0]
        assert row["points"] == 30
        assert row["rank"] == 1
        assert row["first_name"] == "Anonymous"
        assert row["last_name"] == ""
        assert row["user_id"] is None

        own = community_service.get_leaderboard(ctx, member, now=NOW)
        assert own[0]["user_id"] == member
        assert own[0]["first_name"] == "Abebe"

    def test_exclude_anonymous(self, ctx, cfg, community):
        _give_points(ctx, cfg, community, community["member_id"], 30)
        community_service.update_anonymity(ctx, community["member_id"], True)
        board = community_service.get_leaderboard(
            ctx, community["teacher_id"], include_anonymous=False, now=NOW
        )
        assert board == []

    def test_anonymity_must_be_boolean(self, ctx, community):
        with pytest.raises(InvalidFieldError):
            community_service.update_anonymity(ctx, community["member_id"], "yes")

    def test_hidden_from_leaderboard(self, ctx, cfg, community):
        _give_points(ctx, cfg, community, community["member_id"], 30)
        community_service.update_privacy_settings(
            ctx, community["member_id"], show_on_leaderboard=False
        )
        assert community_service.get_leaderboard(ctx, community["teacher_id"], now=NOW) == []


class TestYouth:
    def test_youth_pseudonym_everywhere(self, ctx, cfg, db_engine, community):
        youth = make_user(
            db_engine, "Liya", "Mekonnen", role="youth", chapter_id=community["chapter_id"]
        )
        _give_points(ctx, cfg, community, youth, 15)

        board = community_service.get_leaderboard(ctx, community["member_id"], now=NOW)
        row = board[0]
        assert row["display_name"].startswith("User ")
        assert row["first_name"] is None
        assert row.get("email") is None
        assert row["points"] == 15

        profile = community_service.get_profile(ctx, community["member_id"], youth)
        assert profile["display_name"] == row["display_name"]
        assert profile["last_name"] is None
        assert profile["points"] == 15

    def test_moderator_public_profile_is_redacted(self, ctx, db_engine, community):
        youth = make_user(
            db_engine, "Liya", "Mekonnen", role="youth", chapter_id=community["chapter_id"]
        )
        hidden = make_user(
            db_engine, "Dawit", "Alemu", chapter_id=community["chapter_id"], is_anonymous=True
        )
        youth_profile = community_service.get_profile(ctx, community["moderator_id"], youth)
        assert youth_profile["first_name"] is None
        assert youth_profile["user_id"] is None
        assert youth_profile["email"] is None

        hidden_profile = community_service.get_profile(ctx, community["moderator_id"], hidden)
        assert hidden_profile["first_name"] == "Anonymous"
        assert hidden_profile["user_id"] is None

    def test_moderation_profile_shows_identity(self, ctx, db_engine, community):
        youth = make_user(
            db_engine, "Liya", "Mekonnen", role="youth", chapter_id=community["chapter_id"]
        )
        profile = community_service.member_profile(ctx, community["moderator_id"], youth)
        assert profile["first_name"] == "Liya"
        assert profile["email"] == "liya@example.org"

    def test_moderation_profile_requires_moderator(self, ctx, community):
        with pytest.raises(ForbiddenError):
            community_service.member_profile(ctx, community["teacher_id"], community["member_id"])


class TestValidation:
    def test_unknown_board(self, ctx, community):
        with pytest.raises(InvalidFieldError) as exc:
            community_service.get_leaderboard(ctx, community["member_id"], board_type="regional")
        assert exc.value.details["field"] == "type"

    def test_unknown_period(self, ctx, community):
        with pytest.raises(InvalidFieldError) as exc:
            community_service.get_leaderboard(ctx, community["member_id"], period="yearly")
        assert exc.value.details["field"] == "period"

    @pytest.mark.parametrize("limit", [0, 101])
    def test_limit_bounds(self, ctx, community, limit):
        with pytest.raises(InvalidFieldError):
            community_service.get_leaderboard(ctx, community["member_id"], limit=limit)

    def test_chapter_board_needs_a_chapter(self, ctx):
        with pytest.raises(InvalidFieldError):
            community_service.get_leaderboard(ctx, None, board_type="chapter")

    def test_global_board_for_guests(self, ctx, cfg, community):
        _give_points(ctx, cfg, community, community["member_id"], 12)
        board = community_service.get_leaderboard(ctx, None, board_type="global", now=NOW)
        assert board[0]["points"] == 12
        assert board[0].get("email") is None

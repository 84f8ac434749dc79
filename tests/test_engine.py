"""
tests/test_engine.py — Badge Rules, Horizons & Update Messages
===============================================================

Pure-logic tests: no database.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from mahber.constants import LIFETIME_PERIOD, EventType, Horizon, start_of_week
from mahber.engine.badges import (
    BadgeContext,
    BadgeSpec,
    evaluate_badges,
    is_relevant,
    meets_requirements,
    progress,
)
from mahber.engine.ranking import horizon_windows, select_board
from mahber.engine.updates import BadgeUpdate, LeaderboardUpdate, decode

FIRST_POST = BadgeSpec(1, "first_post", 10, {"forum_posts": 1})
FIRST_LESSON = BadgeSpec(2, "first_lesson", 10, {"lessons_completed": 1})
MANUAL = BadgeSpec(3, "volunteer", 20, {})
COMBO = BadgeSpec(4, "well_rounded", 30, {"forum_posts": 1, "lessons_completed": 1})


class TestRequirements:
    def test_all_requirements_must_pass(self):
        assert not meets_requirements(COMBO.requirements, BadgeContext(forum_posts=3))
        assert meets_requirements(
            COMBO.requirements, BadgeContext(forum_posts=3, lessons_completed=1)
        )

    def test_empty_requirements_never_auto_award(self):
        assert not meets_requirements({}, BadgeContext(forum_posts=100))

    def test_unknown_requirement_is_not_met(self):
        assert not meets_requirements({"prayers_said": 1}, BadgeContext(forum_posts=1))

    def test_relevance(self):
        assert is_relevant(FIRST_POST.requirements, EventType.POST_CREATED)
        assert is_relevant(FIRST_POST.requirements, EventType.TOPIC_CREATED)
        assert not is_relevant(FIRST_POST.requirements, EventType.LESSON_COMPLETED)
        assert is_relevant(FIRST_POST.requirements, None)
        assert not is_relevant(MANUAL.requirements, None)

    def test_evaluate_skips_owned_and_irrelevant(self):
        ctx = BadgeContext(forum_posts=1, lessons_completed=1)
        badges = [FIRST_POST, FIRST_LESSON, MANUAL, COMBO]
        earned = evaluate_badges(badges, ctx, event_type=EventType.POST_CREATED, owned={1})
        assert [b.name for b in earned] == ["well_rounded"]

    def test_progress(self):
        ctx = BadgeContext(forum_posts=4)
        assert progress({"forum_posts": 10}, ctx) == {
            "forum_posts": {"current": 4, "required": 10}
        }


class TestHorizons:
    def test_windows_for_wednesday(self):
        now = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)
        windows = {w.horizon: w for w in horizon_windows(now)}
        assert windows[Horizon.CHAPTER].period_start == LIFETIME_PERIOD
        assert windows[Horizon.CHAPTER].since is None
        assert windows[Horizon.WEEKLY].period_start == date(2026, 3, 16)
        assert windows[Horizon.MONTHLY].period_start == date(2026, 3, 1)
        assert windows[Horizon.WEEKLY].since == datetime(2026, 3, 16, tzinfo=UTC)

    def test_start_of_week_on_monday(self):
        assert start_of_week(datetime(2026, 3, 16, 0, 5, tzinfo=UTC)) == date(2026, 3, 16)

    @pytest.mark.parametrize(
        ("board", "period", "horizon", "scoped"),
        [
            ("chapter", "current", Horizon.CHAPTER, True),
            ("global", "current", Horizon.GLOBAL, False),
            ("chapter", "weekly", Horizon.WEEKLY, True),
            ("global", "monthly", Horizon.MONTHLY, False),
        ],
    )
    def test_select_board(self, board, period, horizon, scoped):
        selection = select_board(board, period, datetime(2026, 3, 18, tzinfo=UTC))
        assert selection.horizon == horizon
        assert selection.chapter_scoped is scoped

    def test_select_board_rejects_unknown(self):
        with pytest.raises(ValueError):
            select_board("regional", "current", datetime(2026, 3, 18, tzinfo=UTC))
        with pytest.raises(ValueError):
            select_board("chapter", "yearly", datetime(2026, 3, 18, tzinfo=UTC))


class TestUpdateMessages:
    def test_decode_badge(self):
        msg = BadgeUpdate(5, EventType.POST_CREATED, 12)
        assert decode(5, msg.to_payload()) == msg

    def test_decode_leaderboard(self):
        msg = LeaderboardUpdate(5, "badge_awarded", 3)
        assert decode(5, msg.to_payload()) == msg

    def test_decode_unknown_kind(self):
        with pytest.raises(ValueError):
            decode(5, {"kind": "karma"})

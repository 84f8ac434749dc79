"""
tests/test_gate.py — Rate & History Gate and Security Monitor Tests
====================================================================
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from conftest import NOW, make_chapter, make_user
from sqlalchemy.exc import OperationalError

from mahber.config import RateConfig
from mahber.constants import ActionType, ModerationAction, ModerationStatus
from mahber.database.models import ModerationLog, ModerationRecord, User, UserAction
from mahber.services.gate import RateGate, prune_actions
from mahber.services.security_monitor import SecurityMonitor


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(clock):
    return RateGate(RateConfig(cache_ttl_seconds=0), clock=clock)


@pytest.fixture
def user(db_engine, db_session):
    chapter_id = make_chapter(db_engine)
    return db_session.get(User, make_user(db_engine, chapter_id=chapter_id))


def _post(gate, session, user, n, now, action=ActionType.POST):
    decision = gate.may_act(session, user, action, content=f"Reply number {n} to the thread", now=now)
    if decision.allowed:
        gate.register_action(session, user, action, content=f"Reply number {n} to the thread", now=now)
    return decision


class TestPostWindows:
    def test_sixth_post_in_a_minute_is_denied(self, gate, db_session, user, clock):
        for i in range(5):
            clock.value += 1
            assert _post(gate, db_session, user, i, NOW + timedelta(seconds=i)).allowed

        clock.value += 1
        denied = _post(gate, db_session, user, 6, NOW + timedelta(seconds=10))
        assert not denied.allowed
        assert denied.reason == "posts_per_minute"
        assert 1 <= denied.retry_after <= 60

    def test_allowed_again_after_window(self, gate, db_session, user, clock):
        for i in range(5):
            clock.value += 1
            _post(gate, db_session, user, i, NOW + timedelta(seconds=i))
        clock.value += 1
        assert _post(gate, db_session, user, 9, NOW + timedelta(seconds=65)).allowed

    def test_hourly_limit(self, gate, db_session, user, clock):
        for i in range(20):
            clock.value += 1
            assert _post(gate, db_session, user, i, NOW + timedelta(minutes=2 * i)).allowed
        clock.value += 1
        denied = _post(gate, db_session, user, 99, NOW + timedelta(minutes=41))
        assert denied.reason == "posts_per_hour"

    def test_topics_per_day(self, gate, db_session, user, clock):
        for i in range(10):
            clock.value += 1
            assert _post(
                gate, db_session, user, i, NOW + timedelta(hours=i), ActionType.TOPIC
            ).allowed
        clock.value += 1
        denied = _post(gate, db_session, user, 99, NOW + timedelta(hours=11), ActionType.TOPIC)
        assert denied.reason == "topics_per_day"
        # replies are still fine
        assert _post(gate, db_session, user, 100, NOW + timedelta(hours=11)).allowed

    def test_similar_content(self, gate, db_session, user, clock):
        text = "Selam everyone, please join the Timket procession"
        for i in range(3):
            clock.value += 1
            now = NOW + timedelta(hours=i)
            assert gate.may_act(db_session, user, ActionType.POST, content=text, now=now).allowed
            gate.register_action(db_session, user, ActionType.POST, content=text, now=now)
        clock.value += 1
        denied = gate.may_act(
            db_session, user, ActionType.POST, content=text.upper() + "!!", now=NOW + timedelta(hours=4)
        )
        assert denied.reason == "similar_content"


class TestHistoryChecks:
    def test_banned(self, gate, db_session, user):
        user.is_banned = True
        decision = gate.may_act(db_session, user, ActionType.POST, content="hello there", now=NOW)
        assert (decision.allowed, decision.reason) == (False, "banned")

    def test_too_many_flags(self, gate, db_session, user):
        for i in range(6):
            db_session.add(ModerationRecord(
                target_type="post", author_id=user.id, content_text=f"spam {i}",
                status=ModerationStatus.AUTO_FLAGGED, spam_score=80, flags=["multi_url"],
                created_at=NOW - timedelta(hours=i + 1),
            ))
        decision = gate.may_act(db_session, user, ActionType.POST, content="hello there", now=NOW)
        assert decision.reason == "too_many_flags"

    def test_five_flags_is_still_allowed(self, gate, db_session, user):
        for i in range(5):
            db_session.add(ModerationRecord(
                target_type="post", author_id=user.id, content_text=f"spam {i}",
                status=ModerationStatus.AUTO_FLAGGED, spam_score=80, flags=["multi_url"],
                created_at=NOW - timedelta(hours=i + 1),
            ))
        assert gate.may_act(db_session, user, ActionType.POST, content="hello there", now=NOW).allowed

    def test_old_flags_expire(self, gate, db_session, user):
        for i in range(6):
            db_session.add(ModerationRecord(
                target_type="post", author_id=user.id, content_text=f"spam {i}",
                status=ModerationStatus.AUTO_FLAGGED, spam_score=80, flags=["multi_url"],
                created_at=NOW - timedelta(days=2),
            ))
        assert gate.may_act(db_session, user, ActionType.POST, content="hello there", now=NOW).allowed


class TestSnapshotCache:
    def test_cache_serves_until_ttl(self, db_session, user, clock):
        gate = RateGate(RateConfig(cache_ttl_seconds=5), clock=clock)
        assert gate.may_act(db_session, user, ActionType.POST, content="first one", now=NOW).allowed

        # Rows written behind the gate's back are invisible until the TTL passes.
        for i in range(5):
            db_session.add(UserAction(
                user_id=user.id, action_type="post", content_prefix=f"x{i}",
                occurred_at=NOW - timedelta(seconds=i),
            ))
        db_session.flush()
        assert gate.may_act(db_session, user, ActionType.POST, content="second", now=NOW).allowed

        clock.value += 6
        assert not gate.may_act(db_session, user, ActionType.POST, content="third", now=NOW).allowed

    def test_invalidate(self, db_session, user, clock):
        gate = RateGate(RateConfig(cache_ttl_seconds=5), clock=clock)
        gate.may_act(db_session, user, ActionType.POST, content="first one", now=NOW)
        for i in range(5):
            db_session.add(UserAction(
                user_id=user.id, action_type="post", occurred_at=NOW - timedelta(seconds=i),
            ))
        db_session.flush()
        gate.invalidate(user.id)
        assert not gate.may_act(db_session, user, ActionType.POST, content="again", now=NOW).allowed

    def test_committed_actions_fold_into_snapshot(self, db_session, user, clock):
        gate = RateGate(RateConfig(cache_ttl_seconds=5), clock=clock)
        for i in range(5):
            assert _post(gate, db_session, user, i, NOW).allowed
        db_session.commit()

        decision = gate.may_act(db_session, user, ActionType.POST, content="sixth", now=NOW)
        assert not decision.allowed
        assert decision.reason == "posts_per_minute"

    def test_rolled_back_actions_are_forgotten(self, db_session, user, clock):
        gate = RateGate(RateConfig(cache_ttl_seconds=5), clock=clock)
        for i in range(5):
            assert _post(gate, db_session, user, i, NOW).allowed
        db_session.rollback()

        assert db_session.query(UserAction).count() == 0
        assert gate.may_act(db_session, user, ActionType.POST, content="retry", now=NOW).allowed

    def test_savepoint_rollback_drops_pending_action(self, db_session, user, clock):
        gate = RateGate(RateConfig(cache_ttl_seconds=5), clock=clock)
        for i in range(4):
            _post(gate, db_session, user, i, NOW)
        with pytest.raises(RuntimeError):
            with db_session.begin_nested():
                _post(gate, db_session, user, 4, NOW)
                raise RuntimeError("insert failed")
        db_session.commit()

        assert gate.may_act(db_session, user, ActionType.POST, content="fifth", now=NOW).allowed


class TestFailOpen:
    def test_datastore_error_allows(self, gate):
        session = MagicMock()
        session.begin_nested.return_value.__exit__.return_value = False
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))
        user = MagicMock(id=1, is_banned=False)
        assert gate.may_act(session, user, ActionType.POST, content="hello", now=NOW).allowed


class TestPruneActions:
    def test_removes_rows_older_than_a_day(self, db_session, user):
        db_session.add_all([
            UserAction(user_id=user.id, action_type="post", occurred_at=NOW - timedelta(days=2)),
            UserAction(user_id=user.id, action_type="post", occurred_at=NOW - timedelta(hours=1)),
        ])
        db_session.flush()
        assert prune_actions(db_session, NOW) == 1


class TestSecurityMonitor:
    def test_threshold_within_window(self):
        monitor = SecurityMonitor()
        assert monitor.record_violation(1, NOW) == 1
        monitor.record_violation(1, NOW + timedelta(minutes=10))
        assert not monitor.is_suspicious(1, NOW + timedelta(minutes=10))
        monitor.record_violation(1, NOW + timedelta(minutes=20))
        assert monitor.is_suspicious(1, NOW + timedelta(minutes=20))
        assert monitor.suspicious_users(NOW + timedelta(minutes=20)) == [1]

    def test_window_slides(self):
        monitor = SecurityMonitor()
        for minutes in (0, 10, 20):
            monitor.record_violation(1, NOW + timedelta(minutes=minutes))
        assert not monitor.is_suspicious(1, NOW + timedelta(minutes=65))
        assert monitor.violation_count(1, NOW + timedelta(minutes=65)) == 2

    def test_cleanup(self):
        monitor = SecurityMonitor()
        monitor.record_violation(1, NOW)
        monitor.record_violation(2, NOW + timedelta(minutes=50))
        assert monitor.cleanup(NOW + timedelta(minutes=70)) == 1

    def test_rebuild_from_logs(self, db_engine, db_session, user):
        for minutes in (5, 10, 15):
            db_session.add(ModerationLog(
                user_id=user.id, action=ModerationAction.RATE_LIMITED,
                created_at=NOW - timedelta(minutes=minutes),
            ))
        db_session.add(ModerationLog(
            user_id=user.id, action=ModerationAction.RATE_LIMITED,
            created_at=NOW - timedelta(hours=3),
        ))
        db_session.commit()

        monitor = SecurityMonitor()
        assert monitor.rebuild(db_engine, NOW) == 3
        assert monitor.is_suspicious(user.id, NOW)

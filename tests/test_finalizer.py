"""
Tests for session finalization.
"""

from datetime import datetime, timedelta, timezone

from streamledger.models.db import EventType, SessionStatus
from streamledger.sessions.finalizer import SessionFinalizer
from streamledger.sessions.rebuild import RebuildOrchestrator

BASE = datetime(2025, 12, 25, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    return BASE + timedelta(hours=hour, minutes=minute)


def rebuild(db_session, config):
    RebuildOrchestrator(db_session, config, holder="test").run(now=at(23))


class TestSessionFinalizer:
    def test_nothing_due_before_summary_delay(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(9))
        make_event(EventType.STREAM_STOP, at(10))
        rebuild(db_session, config)

        finalizer = SessionFinalizer(db_session, config)

        # finalize_at = 10:00 + 30 minutes
        assert finalizer.promote_due(at(10, 29)) == 0
        assert finalizer.finalize_ready(at(10, 29)) == []

    def test_promote_then_finalize(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(9))
        make_event(EventType.TIP, at(9, 15), username="alice", tokens=25)
        make_event(EventType.STREAM_STOP, at(10))
        rebuild(db_session, config)
        finalizer = SessionFinalizer(db_session, config)

        assert finalizer.promote_due(at(10, 30)) == 1
        ready = finalizer.get_ready_to_finalize(at(10, 30))
        assert len(ready) == 1
        assert ready[0].status == SessionStatus.PENDING_FINALIZE

        finalized = finalizer.finalize_ready(at(10, 30))

        assert len(finalized) == 1
        assert finalized[0].status == SessionStatus.FINALIZED
        assert finalized[0].total_tokens == 25
        assert finalizer.get_ready_to_finalize(at(11)) == []

    def test_active_sessions_never_finalize(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(9))
        rebuild(db_session, config)

        finalized = SessionFinalizer(db_session, config).finalize_ready(at(23))

        assert finalized == []

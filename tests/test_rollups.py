import uuid
from datetime import datetime, timedelta, timezone

import pytest

from streamledger.exceptions import NegativeDurationError
from streamledger.models.db import EventType
from streamledger.sessions.rollups import (
    RollupComputer,
    aggregate_sessions,
    compute_rollup,
    format_minutes,
    session_duration_ms,
    time_weighted_average,
)
from streamledger.sessions.segments import SegmentBuilder
from streamledger.sessions.stitcher import SessionStitcher, StitchConfig

BASE = datetime(2025, 12, 25, tzinfo=timezone.utc)
FIVE_MINUTES_MS = 5 * 60_000


def at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return BASE + timedelta(hours=hour, minutes=minute, seconds=second)


class DummyEvent:
    def __init__(self, event_type, ts, username=None, **payload):
        self.event_type = event_type
        self.timestamp = ts
        self.username = username
        self.payload = payload


class DummySession:
    def __init__(self, started_at, ended_at, **stats):
        self.started_at = started_at
        self.ended_at = ended_at
        self.total_tokens = stats.get("total_tokens", 0)
        self.followers_gained = stats.get("followers_gained", 0)
        self.peak_viewers = stats.get("peak_viewers", 0)
        self.avg_viewers = stats.get("avg_viewers", 0.0)


def test_tokens_sum_tip_amounts():
    events = [
        DummyEvent(EventType.TIP, at(9, 1), "a", tokens=10),
        DummyEvent(EventType.TIP, at(9, 2), "b", tokens=5),
        DummyEvent(EventType.TIP, at(9, 3), "c", tokens=0),
    ]
    rollup = compute_rollup(events, at(10), FIVE_MINUTES_MS)
    assert rollup.total_tokens == 15


def test_followers_are_net_of_unfollows():
    events = [
        DummyEvent(EventType.FOLLOW, at(9, 1), "a"),
        DummyEvent(EventType.FOLLOW, at(9, 2), "b"),
        DummyEvent(EventType.UNFOLLOW, at(9, 3), "a"),
    ]
    rollup = compute_rollup(events, at(10), FIVE_MINUTES_MS)
    assert rollup.followers_gained == 1


def test_empty_session_has_zero_rollups():
    rollup = compute_rollup([], at(10), FIVE_MINUTES_MS)
    assert rollup.total_tokens == 0
    assert rollup.followers_gained == 0
    assert rollup.peak_viewers == 0
    assert rollup.avg_viewers == 0.0
    assert rollup.unique_visitors == 0
    assert rollup.room_subject is None


def test_peak_and_unique_visitors():
    events = [
        DummyEvent(EventType.VIEWER_SAMPLE, at(9), viewers=10),
        DummyEvent(EventType.VIEWER_SAMPLE, at(9, 1), viewers=40),
        DummyEvent(EventType.VIEWER_SAMPLE, at(9, 2), viewers=25),
        DummyEvent(EventType.VISITOR_SEEN, at(9, 3), "alice"),
        DummyEvent(EventType.TIP, at(9, 4), "alice", tokens=1),
        DummyEvent(EventType.FOLLOW, at(9, 5), "bob"),
        DummyEvent(EventType.CHAT_MESSAGE, at(9, 6), "carol"),
    ]
    rollup = compute_rollup(events, at(10), FIVE_MINUTES_MS)
    assert rollup.peak_viewers == 40
    # chat alone does not count as a visit
    assert rollup.unique_visitors == 2


def test_latest_room_subject_wins():
    events = [
        DummyEvent(EventType.ROOM_SUBJECT_CHANGE, at(9, 30), subject="later"),
        DummyEvent(EventType.ROOM_SUBJECT_CHANGE, at(9), subject="first"),
    ]
    rollup = compute_rollup(events, at(10), FIVE_MINUTES_MS)
    assert rollup.room_subject == "later"


def test_malformed_tip_payload_counts_as_zero():
    events = [
        DummyEvent(EventType.TIP, at(9), "a", tokens="lots"),
        DummyEvent(EventType.TIP, at(9, 1), "b"),
        DummyEvent(EventType.TIP, at(9, 2), "c", tokens=7),
    ]
    rollup = compute_rollup(events, at(10), FIVE_MINUTES_MS)
    assert rollup.total_tokens == 7


def test_time_weighted_average_weights_by_holding_time():
    # 10 viewers for 1 minute, then 40 viewers for 3 minutes
    samples = [(at(9), 10), (at(9, 1), 40)]
    avg = time_weighted_average(samples, at(9, 4), FIVE_MINUTES_MS)
    assert avg == pytest.approx((10 * 1 + 40 * 3) / 4)


def test_time_weighted_average_caps_stale_samples():
    # First sample holds for an hour but only counts for five minutes
    samples = [(at(9), 100), (at(10), 0)]
    avg = time_weighted_average(samples, at(10, 5), FIVE_MINUTES_MS)
    assert avg == pytest.approx(50.0)


def test_time_weighted_average_zero_weights_fall_back_to_mean():
    samples = [(at(9), 10), (at(9), 20)]
    assert time_weighted_average(samples, None, FIVE_MINUTES_MS) == pytest.approx(15.0)


def test_time_weighted_average_no_samples():
    assert time_weighted_average([], at(10), FIVE_MINUTES_MS) == 0.0


def test_format_minutes_truncates():
    assert format_minutes(0) == "0.0"
    assert format_minutes(59_999) == "0.9"
    assert format_minutes(60_000) == "1.0"
    assert format_minutes(4 * 60_000 + 5_999) == "4.0"
    assert format_minutes(90 * 60_000) == "90.0"


def test_session_duration_open_session_runs_until_now():
    session = DummySession(at(9), None)
    assert session_duration_ms(session, at(9, 30)) == 30 * 60_000


def test_session_duration_rejects_negative():
    with pytest.raises(NegativeDurationError):
        session_duration_ms(DummySession(at(10), at(9)), at(11))


def test_aggregate_sessions():
    sessions = [
        DummySession(at(9), at(10), total_tokens=10, followers_gained=2,
                     peak_viewers=30, avg_viewers=20.0),
        DummySession(at(11), at(11, 30), total_tokens=5, followers_gained=-1,
                     peak_viewers=50, avg_viewers=0.0),
        DummySession(at(12), None, total_tokens=1, followers_gained=0,
                     peak_viewers=10, avg_viewers=10.0),
    ]
    stats = aggregate_sessions(sessions, at(12, 15))

    assert stats.total_sessions == 3
    assert stats.total_tokens == 16
    assert stats.total_followers == 1
    assert stats.peak_viewers == 50
    # sessions with no viewer data are excluded from the average
    assert stats.avg_viewers == pytest.approx(15.0)
    assert stats.total_ms == (60 + 30 + 15) * 60_000
    assert stats.total_minutes == pytest.approx(105.0)


def test_aggregate_no_sessions():
    stats = aggregate_sessions([], at(12))
    assert stats.total_sessions == 0
    assert stats.avg_viewers == 0.0
    assert stats.total_ms == 0


class TestRollupComputer:
    """Database-backed rollup computation."""

    def stitch(self, db_session, config):
        builder = SegmentBuilder(db_session, config)
        builder.build_segments()
        builder.assign_all_events_to_segments()
        stitcher = SessionStitcher(db_session)
        result = stitcher.stitch_segments(
            builder.segments.list_ordered(), StitchConfig(merge_gap_minutes=30)
        )
        stitcher.apply_assignments(result.assignments)
        stitcher.propagate_session_ids_to_events()
        return result.sessions

    def test_compute_and_update_session(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(9))
        make_event(EventType.TIP, at(9, 5), username="alice", tokens=10)
        make_event(EventType.TIP, at(9, 6), username="bob", tokens=5)
        make_event(EventType.FOLLOW, at(9, 7), username="carol")
        make_event(EventType.VIEWER_SAMPLE, at(9, 8), viewers=12)
        make_event(EventType.STREAM_STOP, at(9, 30))

        sessions = self.stitch(db_session, config)
        computer = RollupComputer(db_session, config)
        rollup = computer.compute_and_update_session(sessions[0].id)

        assert rollup.total_tokens == 15
        assert rollup.followers_gained == 1
        assert rollup.peak_viewers == 12
        assert rollup.unique_visitors == 3

        stored = computer.sessions.get(sessions[0].id)
        assert stored.total_tokens == 15
        assert stored.avg_viewers == pytest.approx(12.0)
        assert stored.rollups_computed_at is not None

    def test_unknown_session_raises(self, db_session, config):
        with pytest.raises(LookupError):
            RollupComputer(db_session, config).compute_and_update_session(uuid.uuid4())

    def test_aggregate_stats_date_filter(self, db_session, config, make_event):
        for hour, tokens in ((1, 10), (5, 20)):
            make_event(EventType.STREAM_START, at(hour))
            make_event(EventType.TIP, at(hour, 5), username="a", tokens=tokens)
            make_event(EventType.STREAM_STOP, at(hour, 30))

        self.stitch(db_session, config)
        computer = RollupComputer(db_session, config)
        computer.compute_all(now=at(12))

        everything = computer.get_aggregate_stats(now=at(12))
        later = computer.get_aggregate_stats(start_date=at(3), now=at(12))

        assert everything.total_sessions == 2
        assert everything.total_tokens == 30
        assert everything.total_ms == 60 * 60_000
        assert later.total_sessions == 1
        assert later.total_tokens == 20

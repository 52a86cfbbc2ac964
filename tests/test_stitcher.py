"""
Tests for session stitching.
"""

import random
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from streamledger.db.repositories import SettingRepository
from streamledger.db.repositories.setting import MERGE_GAP_KEY, SUMMARY_DELAY_KEY
from streamledger.models.db import EventType, SessionStatus
from streamledger.sessions.segments import SegmentBuilder
from streamledger.sessions.stitcher import (
    SessionStitcher,
    StitchConfig,
    plan_sessions,
    session_uuid,
)
from streamledger.utils.timeutil import ensure_utc, optional_utc

BASE = datetime(2025, 12, 25, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    return BASE + timedelta(hours=hour, minutes=minute)


class DummySegment:
    def __init__(self, started_at, ended_at):
        self.id = uuid.uuid4()
        self.started_at = started_at
        self.ended_at = ended_at


def spans(plans):
    return [(p.started_at, p.ended_at) for p in plans]


class TestStitchConfig:
    def test_summary_delay_defaults_to_merge_gap(self):
        assert StitchConfig(merge_gap_minutes=45).effective_summary_delay_minutes == 45

    def test_summary_delay_override(self):
        config = StitchConfig(merge_gap_minutes=45, summary_delay_minutes=10)

        assert config.effective_summary_delay_minutes == 10

    def test_negative_merge_gap_rejected(self):
        with pytest.raises(ValueError):
            StitchConfig(merge_gap_minutes=-1)

    def test_reads_settings_store(self, db_session, config, set_setting):
        set_setting(MERGE_GAP_KEY, 20)
        set_setting(SUMMARY_DELAY_KEY, 5)

        stitch_config = StitchConfig.from_settings_store(
            SettingRepository(db_session, config)
        )

        assert stitch_config.merge_gap_minutes == 20
        assert stitch_config.summary_delay_minutes == 5

    def test_explicit_merge_gap_overrides_store(self, db_session, config, set_setting):
        set_setting(MERGE_GAP_KEY, 20)

        stitch_config = StitchConfig.from_settings_store(
            SettingRepository(db_session, config), merge_gap_minutes=90
        )

        assert stitch_config.merge_gap_minutes == 90


class TestPlanSessions:
    """Tests for the merge-gap rule."""

    def setup_method(self):
        self.segments = [DummySegment(at(9), at(9, 30)), DummySegment(at(9, 50), at(10, 10))]

    def test_gap_within_merge_gap_stitches(self):
        plans = plan_sessions(self.segments, StitchConfig(merge_gap_minutes=30))

        assert spans(plans) == [(at(9), at(10, 10))]
        assert plans[0].segment_ids == [s.id for s in self.segments]

    def test_gap_beyond_merge_gap_separates(self):
        plans = plan_sessions(self.segments, StitchConfig(merge_gap_minutes=15))

        assert spans(plans) == [(at(9), at(9, 30)), (at(9, 50), at(10, 10))]

    def test_gap_equal_to_merge_gap_stitches(self):
        plans = plan_sessions(self.segments, StitchConfig(merge_gap_minutes=20))

        assert len(plans) == 1

    def test_zero_merge_gap_only_joins_touching_segments(self):
        segments = [DummySegment(at(9), at(10)), DummySegment(at(10), at(11))]

        plans = plan_sessions(segments, StitchConfig(merge_gap_minutes=0))

        assert spans(plans) == [(at(9), at(11))]

    def test_chained_stitching_uses_latest_end(self):
        segments = [
            DummySegment(at(9), at(9, 30)),
            DummySegment(at(9, 50), at(10, 10)),
            DummySegment(at(10, 30), at(11)),
        ]

        plans = plan_sessions(segments, StitchConfig(merge_gap_minutes=20))

        assert spans(plans) == [(at(9), at(11))]

    def test_open_segment_makes_active_session(self):
        plans = plan_sessions([DummySegment(at(8), None)], StitchConfig())

        assert len(plans) == 1
        assert plans[0].status == SessionStatus.ACTIVE
        assert plans[0].ended_at is None
        assert plans[0].finalize_at is None

    def test_open_segment_joins_previous_session(self):
        segments = [DummySegment(at(9), at(9, 30)), DummySegment(at(9, 40), None)]

        plans = plan_sessions(segments, StitchConfig(merge_gap_minutes=30))

        assert len(plans) == 1
        assert plans[0].status == SessionStatus.ACTIVE
        assert plans[0].ended_at is None

    def test_finalize_at_uses_summary_delay(self):
        plans = plan_sessions(
            self.segments, StitchConfig(merge_gap_minutes=30, summary_delay_minutes=5)
        )

        assert plans[0].status == SessionStatus.ENDED
        assert plans[0].finalize_at == at(10, 15)

    def test_input_order_does_not_matter(self):
        segments = [
            DummySegment(at(hour), at(hour, 20)) for hour in (1, 2, 4, 5, 7)
        ]
        shuffled = list(segments)
        random.Random(42).shuffle(shuffled)
        config = StitchConfig(merge_gap_minutes=45)

        assert spans(plan_sessions(segments, config)) == spans(
            plan_sessions(shuffled, config)
        )

    @pytest.mark.parametrize("open_first", [True, False])
    def test_zero_length_segment_before_open_segment_on_shared_start(self, open_first):
        point = DummySegment(at(9), at(9))
        live = DummySegment(at(9), None)
        segments = [live, point] if open_first else [point, live]

        plans = plan_sessions(segments, StitchConfig(merge_gap_minutes=0))

        assert len(plans) == 1
        assert plans[0].segment_ids == [point.id, live.id]
        assert plans[0].status == SessionStatus.ACTIVE

    def test_larger_merge_gap_never_increases_session_count(self):
        segments = [
            DummySegment(at(hour, minute), at(hour, minute + 10))
            for hour, minute in [(1, 0), (1, 25), (2, 0), (3, 30), (3, 45), (6, 0)]
        ]

        counts = [
            len(plan_sessions(segments, StitchConfig(merge_gap_minutes=gap)))
            for gap in (0, 10, 15, 30, 60, 120, 240)
        ]

        assert counts == sorted(counts, reverse=True)

    def test_session_id_derives_from_first_segment(self):
        plans = plan_sessions(self.segments, StitchConfig(merge_gap_minutes=30))

        assert plans[0].id == session_uuid(self.segments[0].id)

    def test_empty_input(self):
        assert plan_sessions([], StitchConfig()) == []


class TestSessionStitcher:
    """Database-backed stitching and linkage."""

    def build(self, db_session, config):
        builder = SegmentBuilder(db_session, config)
        builder.build_segments()
        builder.assign_all_events_to_segments()
        return builder.segments.list_ordered()

    def test_stitch_apply_and_propagate(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(9))
        make_event(EventType.STREAM_STOP, at(9, 30))
        make_event(EventType.STREAM_START, at(9, 50))
        tip = make_event(EventType.TIP, at(10), username="alice", tokens=10)
        make_event(EventType.STREAM_STOP, at(10, 10))

        segments = self.build(db_session, config)
        stitcher = SessionStitcher(db_session)
        result = stitcher.stitch_segments(segments, StitchConfig(merge_gap_minutes=30))
        applied = stitcher.apply_assignments(result.assignments)
        propagated = stitcher.propagate_session_ids_to_events()

        assert len(result.sessions) == 1
        session_id = result.sessions[0].id
        assert applied == 2
        assert result.segment_count(session_id) == 2
        assert propagated == 5
        assert tip.session_id == session_id

        broadcast_session, linked = stitcher.get_with_segments(session_id)
        assert ensure_utc(broadcast_session.started_at) == at(9)
        assert optional_utc(broadcast_session.ended_at) == at(10, 10)
        assert broadcast_session.status == SessionStatus.ENDED
        assert len(linked) == 2

    def test_active_session_lookup(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(8))

        segments = self.build(db_session, config)
        stitcher = SessionStitcher(db_session)
        stitcher.stitch_segments(segments, StitchConfig())

        active = stitcher.get_active_session()
        assert active is not None
        assert active.ended_at is None

    def test_clear_all_unlinks_everything(self, db_session, config, make_event):
        make_event(EventType.STREAM_START, at(9))
        stop = make_event(EventType.STREAM_STOP, at(9, 30))

        segments = self.build(db_session, config)
        stitcher = SessionStitcher(db_session)
        result = stitcher.stitch_segments(segments, StitchConfig())
        stitcher.apply_assignments(result.assignments)
        stitcher.propagate_session_ids_to_events()

        assert stitcher.clear_all() == 1
        assert stop.session_id is None
        assert stop.segment_id is not None
        assert stitcher.segments.list_ordered()[0].session_id is None

    def test_list_sessions_newest_first(self, db_session, config, make_event):
        for hour in (1, 3, 5):
            make_event(EventType.STREAM_START, at(hour))
            make_event(EventType.STREAM_STOP, at(hour, 30))

        segments = self.build(db_session, config)
        stitcher = SessionStitcher(db_session)
        stitcher.stitch_segments(segments, StitchConfig(merge_gap_minutes=30))

        page, total = stitcher.list_sessions(limit=2)

        assert total == 3
        assert [ensure_utc(s.started_at) for s in page] == [at(5), at(3)]

"""
Session rollups.

Per-session statistics computed from the events linked to a session, and
aggregate statistics across sessions.

Durations are computed in whole milliseconds and only converted to minutes
for display, where they are truncated (never rounded) to one decimal.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from streamledger.config import Settings, settings as default_settings
from streamledger.db.repositories import BroadcastSessionRepository, EventRepository
from streamledger.exceptions import NegativeDurationError
from streamledger.models.db import BroadcastSession, EventType
from streamledger.utils.timeutil import (
    duration_ms,
    ensure_utc,
    minutes_to_ms,
    optional_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

VISITOR_EVENT_TYPES = (EventType.VISITOR_SEEN, EventType.TIP, EventType.FOLLOW)


@dataclass
class Rollup:
    """Statistics for one session."""

    total_tokens: int = 0
    followers_gained: int = 0
    peak_viewers: int = 0
    avg_viewers: float = 0.0
    unique_visitors: int = 0
    room_subject: Optional[str] = None


@dataclass
class AggregateStats:
    """Statistics across many sessions."""

    total_sessions: int
    total_tokens: int
    total_followers: int
    peak_viewers: int
    avg_viewers: float
    total_ms: int

    @property
    def total_minutes(self) -> float:
        return self.total_ms / 60_000


def format_minutes(ms: int) -> str:
    """Render a millisecond duration as minutes, truncated to one decimal."""
    tenths = math.trunc(ms / 6_000)
    return f"{tenths / 10:.1f}"


def _int_field(payload: Optional[dict], key: str) -> int:
    if not payload:
        return 0
    try:
        return int(payload.get(key) or 0)
    except (TypeError, ValueError):
        return 0


def time_weighted_average(
    samples: Sequence[tuple[datetime, int]],
    window_end: Optional[datetime],
    max_gap_ms: int,
) -> float:
    """
    Time-weighted mean of viewer samples.

    Each sample holds until the next one (or ``window_end`` for the last),
    with the holding time capped at ``max_gap_ms`` so a stale sample cannot
    dominate. If every weight is zero the plain mean is returned.

    Args:
        samples: (timestamp, viewers) pairs, any order
        window_end: End of the averaging window, None = last sample only
        max_gap_ms: Cap on any single sample's weight

    Returns:
        Weighted mean viewers (0.0 when there are no samples)
    """
    if not samples:
        return 0.0
    ordered = sorted(((ensure_utc(ts), value) for ts, value in samples), key=lambda s: s[0])

    weighted_sum = 0
    total_weight = 0
    for i, (ts, value) in enumerate(ordered):
        if i + 1 < len(ordered):
            until = ordered[i + 1][0]
        elif window_end is not None:
            until = ensure_utc(window_end)
        else:
            until = ts
        weight = min(max(duration_ms(ts, until), 0), max_gap_ms)
        weighted_sum += value * weight
        total_weight += weight

    if total_weight == 0:
        return sum(value for _, value in ordered) / len(ordered)
    return weighted_sum / total_weight


def compute_rollup(
    events: Iterable[Any],
    window_end: Optional[datetime],
    max_gap_ms: int,
) -> Rollup:
    """
    Compute session statistics from its events.

    Args:
        events: Objects with ``event_type``, ``timestamp``, ``username`` and ``payload``
        window_end: Session end (or "now" for an active session)
        max_gap_ms: Viewer-sample weight cap

    Returns:
        Rollup
    """
    rollup = Rollup()
    follows = unfollows = 0
    samples: List[tuple[datetime, int]] = []
    visitors: set[str] = set()
    subject_at: Optional[datetime] = None

    for event in events:
        event_type = event.event_type
        if event_type == EventType.TIP:
            rollup.total_tokens += _int_field(event.payload, "tokens")
        elif event_type == EventType.FOLLOW:
            follows += 1
        elif event_type == EventType.UNFOLLOW:
            unfollows += 1
        elif event_type == EventType.VIEWER_SAMPLE:
            samples.append((event.timestamp, _int_field(event.payload, "viewers")))
        elif event_type == EventType.ROOM_SUBJECT_CHANGE:
            ts = ensure_utc(event.timestamp)
            subject = (event.payload or {}).get("subject")
            if subject and (subject_at is None or ts >= subject_at):
                rollup.room_subject = subject
                subject_at = ts

        if event_type in VISITOR_EVENT_TYPES and event.username:
            visitors.add(event.username)

    rollup.followers_gained = follows - unfollows
    rollup.peak_viewers = max((value for _, value in samples), default=0)
    rollup.avg_viewers = time_weighted_average(samples, window_end, max_gap_ms)
    rollup.unique_visitors = len(visitors)
    return rollup


def session_duration_ms(session: Any, now: datetime) -> int:
    """
    Duration of a session in milliseconds; open sessions run until ``now``.

    Raises:
        NegativeDurationError: If the session ends before it starts
    """
    started_at = ensure_utc(session.started_at)
    ended_at = optional_utc(session.ended_at) or ensure_utc(now)
    if ended_at < started_at:
        raise NegativeDurationError(started_at, ended_at)
    return duration_ms(started_at, ended_at)


def aggregate_sessions(sessions: Iterable[Any], now: datetime) -> AggregateStats:
    """Sum/max session rollups; avg_viewers is the mean of non-zero averages."""
    sessions = list(sessions)
    averages = [s.avg_viewers for s in sessions if s.avg_viewers]
    return AggregateStats(
        total_sessions=len(sessions),
        total_tokens=sum(s.total_tokens or 0 for s in sessions),
        total_followers=sum(s.followers_gained or 0 for s in sessions),
        peak_viewers=max((s.peak_viewers or 0 for s in sessions), default=0),
        avg_viewers=sum(averages) / len(averages) if averages else 0.0,
        total_ms=sum(session_duration_ms(s, now) for s in sessions),
    )


class RollupComputer:
    """Computes and persists session rollups."""

    def __init__(self, session: Session, config: Optional[Settings] = None):
        self.session = session
        self.config = config or default_settings
        self.events = EventRepository(session)
        self.sessions = BroadcastSessionRepository(session)

    @property
    def max_gap_ms(self) -> int:
        return minutes_to_ms(self.config.viewer_sample_max_gap_minutes)

    def compute_rollups(
        self, broadcast_session: BroadcastSession, now: Optional[datetime] = None
    ) -> Rollup:
        """Compute rollups for a session without writing them."""
        window_end = optional_utc(broadcast_session.ended_at) or (now or utc_now())
        events = self.events.list_by_session(broadcast_session.id)
        return compute_rollup(events, window_end, self.max_gap_ms)

    def compute_and_update_session(
        self, session_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Rollup:
        """
        Compute rollups for a session and write them to the session row.

        Raises:
            LookupError: If the session does not exist
        """
        broadcast_session = self.sessions.get(session_id)
        if broadcast_session is None:
            raise LookupError(f"Session {session_id} not found")

        rollup = self.compute_rollups(broadcast_session, now)
        broadcast_session.total_tokens = rollup.total_tokens
        broadcast_session.followers_gained = rollup.followers_gained
        broadcast_session.peak_viewers = rollup.peak_viewers
        broadcast_session.avg_viewers = rollup.avg_viewers
        broadcast_session.unique_visitors = rollup.unique_visitors
        broadcast_session.room_subject = rollup.room_subject
        broadcast_session.rollups_computed_at = now or utc_now()
        self.session.flush()

        logger.debug(
            f"Rollups for {session_id}: tokens={rollup.total_tokens}, "
            f"followers={rollup.followers_gained}, peak={rollup.peak_viewers}, "
            f"avg={rollup.avg_viewers:.1f}, unique={rollup.unique_visitors}"
        )
        return rollup

    def compute_all(
        self, now: Optional[datetime] = None
    ) -> List[tuple[BroadcastSession, Rollup]]:
        """Compute and persist rollups for every session, oldest first."""
        results = []
        for broadcast_session in self.sessions.list_ordered():
            rollup = self.compute_and_update_session(broadcast_session.id, now)
            results.append((broadcast_session, rollup))
        logger.info(f"Computed rollups for {len(results)} sessions")
        return results

    def get_aggregate_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> AggregateStats:
        """
        Aggregate rollups across sessions starting within an optional range.

        Open sessions are counted up to ``now``.
        """
        sessions = self.sessions.list_in_range(start_date, end_date)
        return aggregate_sessions(sessions, now or utc_now())

"""
Segment building.

Partitions the event timeline into non-overlapping segments of broadcast
activity and links every event to the segment covering it:

1. Explicit segments come from StreamStart/StreamStop pairs.
2. Events still unassigned after that are orphans; orphans close together in
   time are clustered into implicit segments.

The planning functions are pure and operate on anything with ``id``,
``event_type`` and ``timestamp`` attributes; ``SegmentBuilder`` wires them to
the repositories.
"""

from __future__ import annotations

import logging
import uuid
from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from streamledger.config import Settings, settings as default_settings
from streamledger.db.repositories import EventRepository, SegmentRepository
from streamledger.exceptions import NegativeDurationError, SegmentOverlapError
from streamledger.models.db import BroadcastSegment, EventType, SegmentKind
from streamledger.utils.timeutil import ensure_utc, optional_utc

logger = logging.getLogger(__name__)

# A start that arrives while a segment is still open closes that segment
# just before itself.
IMPLICIT_CLOSE_EPSILON = timedelta(milliseconds=1)

SEGMENT_NAMESPACE = uuid.UUID("6f1c2a8e-3d4b-5c6d-8e7f-9a0b1c2d3e4f")


def segment_uuid(kind: SegmentKind, anchor_event_id: int) -> uuid.UUID:
    """Deterministic segment id, so rebuilding an unchanged log yields the same rows."""
    return uuid.uuid5(SEGMENT_NAMESPACE, f"segment:{kind.value}:{anchor_event_id}")


@dataclass
class Anomaly:
    """A recoverable oddity in the event log, reported but never raised."""

    kind: str  # unmatched_start, orphan_stop
    timestamp: datetime
    detail: str


@dataclass
class SegmentPlan:
    """A segment computed in memory, not yet persisted."""

    started_at: datetime
    ended_at: Optional[datetime]
    kind: SegmentKind
    anchor_event_id: int
    start_event_id: Optional[int] = None
    end_event_id: Optional[int] = None
    event_ids: List[int] = field(default_factory=list)

    @property
    def id(self) -> uuid.UUID:
        return segment_uuid(self.kind, self.anchor_event_id)

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "kind": self.kind,
            "start_event_id": self.start_event_id,
            "end_event_id": self.end_event_id,
            "event_count": len(self.event_ids),
        }


def _event_sort_key(event: Any) -> tuple[datetime, int]:
    return ensure_utc(event.timestamp), event.id


def segment_order_key(segment: Any) -> tuple[datetime, bool, datetime]:
    """
    Order segments by start, then closed before open, then by end.

    A zero-length segment sorts before an open segment sharing its start.
    """
    started_at = ensure_utc(segment.started_at)
    ended_at = optional_utc(segment.ended_at)
    return started_at, ended_at is None, ended_at or started_at


def plan_explicit_segments(
    events: Iterable[Any],
) -> tuple[List[SegmentPlan], List[Anomaly]]:
    """
    Pair StreamStart/StreamStop events into explicit segments.

    Events are re-sorted by (timestamp, id); storage order is not trusted.

    - A start opens a segment; the next stop closes it.
    - A start while a segment is open closes the open one at the new start
      minus one millisecond (``unmatched_start`` anomaly).
    - A stop with nothing open is discarded (``orphan_stop`` anomaly).
    - A trailing start leaves an open segment (the live one).

    Args:
        events: StreamStart/StreamStop events; other types are ignored

    Returns:
        Tuple of (segment plans in time order, anomalies)
    """
    plans: List[SegmentPlan] = []
    anomalies: List[Anomaly] = []
    current: Optional[Any] = None

    for event in sorted(events, key=_event_sort_key):
        timestamp = ensure_utc(event.timestamp)
        if event.event_type == EventType.STREAM_START:
            if current is not None:
                current_start = ensure_utc(current.timestamp)
                closed_at = max(current_start, timestamp - IMPLICIT_CLOSE_EPSILON)
                anomalies.append(
                    Anomaly(
                        kind="unmatched_start",
                        timestamp=current_start,
                        detail=(
                            f"StreamStart {current.id} had no StreamStop; closed at "
                            f"{closed_at.isoformat()} by StreamStart {event.id}"
                        ),
                    )
                )
                plans.append(
                    SegmentPlan(
                        started_at=current_start,
                        ended_at=closed_at,
                        kind=SegmentKind.EXPLICIT,
                        anchor_event_id=current.id,
                        start_event_id=current.id,
                    )
                )
            current = event
        elif event.event_type == EventType.STREAM_STOP:
            if current is None:
                anomalies.append(
                    Anomaly(
                        kind="orphan_stop",
                        timestamp=timestamp,
                        detail=f"StreamStop {event.id} has no preceding StreamStart",
                    )
                )
                continue
            plans.append(
                SegmentPlan(
                    started_at=ensure_utc(current.timestamp),
                    ended_at=timestamp,
                    kind=SegmentKind.EXPLICIT,
                    anchor_event_id=current.id,
                    start_event_id=current.id,
                    end_event_id=event.id,
                )
            )
            current = None

    if current is not None:
        plans.append(
            SegmentPlan(
                started_at=ensure_utc(current.timestamp),
                ended_at=None,
                kind=SegmentKind.EXPLICIT,
                anchor_event_id=current.id,
                start_event_id=current.id,
            )
        )

    return plans, anomalies


def check_non_overlap(segments: Iterable[Any]) -> None:
    """
    Verify segments are well-formed and pairwise non-overlapping.

    Segments may touch at a single instant. An open segment must be the last.

    Raises:
        NegativeDurationError: If a segment ends before it starts
        SegmentOverlapError: If two segments overlap
    """
    ordered = sorted(segments, key=segment_order_key)
    previous = None
    for segment in ordered:
        started_at = ensure_utc(segment.started_at)
        ended_at = optional_utc(segment.ended_at)
        if ended_at is not None and ended_at < started_at:
            raise NegativeDurationError(started_at, ended_at)
        if previous is not None:
            prev_start = ensure_utc(previous.started_at)
            prev_end = optional_utc(previous.ended_at)
            if prev_end is None or started_at < prev_end:
                raise SegmentOverlapError(prev_start, prev_end, started_at)
        previous = segment


class SegmentIndex:
    """Sorted, non-overlapping segments with point lookup."""

    def __init__(self, segments: Sequence[Any]):
        self.segments = sorted(segments, key=segment_order_key)
        self.starts = [ensure_utc(s.started_at) for s in self.segments]
        self.ends = [optional_utc(s.ended_at) for s in self.segments]

    def __len__(self) -> int:
        return len(self.segments)

    def _covers(self, i: int, timestamp: datetime) -> bool:
        end = self.ends[i]
        return self.starts[i] <= timestamp and (end is None or timestamp <= end)

    def find(self, timestamp: datetime, event_type: Optional[EventType] = None) -> Any:
        """
        Find the segment whose closed interval contains a timestamp.

        Where two segments touch, a StreamStart belongs to the later segment
        and every other event to the earlier one.

        Returns:
            The covering segment, or None for an orphan
        """
        timestamp = ensure_utc(timestamp)
        i = bisect_right(self.starts, timestamp) - 1
        if i < 0:
            return None
        if (
            event_type != EventType.STREAM_START
            and i > 0
            and self.ends[i - 1] == timestamp
        ):
            i -= 1
        return self.segments[i] if self._covers(i, timestamp) else None

    def has_start_between(self, after: datetime, until: datetime) -> bool:
        """True if some segment starts in the interval (after, until]."""
        i = bisect_right(self.starts, ensure_utc(after))
        return i < len(self.starts) and self.starts[i] <= ensure_utc(until)


def find_covering_segment(
    segments: Sequence[Any],
    timestamp: datetime,
    event_type: Optional[EventType] = None,
) -> Any:
    """One-off lookup; build a ``SegmentIndex`` when assigning many events."""
    return SegmentIndex(segments).find(timestamp, event_type)


def cluster_orphans(
    events: Iterable[Any],
    index: SegmentIndex,
    gap: timedelta,
    min_events: int = 1,
) -> List[SegmentPlan]:
    """
    Cluster orphan events into implicit segments.

    Consecutive orphans stay in one cluster while the gap between them is
    below ``gap`` and no existing segment starts between them.

    Args:
        events: Orphan events
        index: Existing segments (clusters never straddle one)
        gap: Clustering threshold
        min_events: Smallest cluster that becomes a segment

    Returns:
        Implicit segment plans in time order
    """
    clusters: List[List[Any]] = []
    previous_ts: Optional[datetime] = None

    for event in sorted(events, key=_event_sort_key):
        timestamp = ensure_utc(event.timestamp)
        if (
            previous_ts is None
            or timestamp - previous_ts >= gap
            or index.has_start_between(previous_ts, timestamp)
        ):
            clusters.append([])
        clusters[-1].append(event)
        previous_ts = timestamp

    plans = []
    for cluster in clusters:
        if len(cluster) < min_events:
            logger.debug(
                f"Skipping orphan cluster of {len(cluster)} event(s) at "
                f"{ensure_utc(cluster[0].timestamp).isoformat()}"
            )
            continue
        first, last = cluster[0], cluster[-1]
        stop_ids = [e.id for e in cluster if e.event_type == EventType.STREAM_STOP]
        plans.append(
            SegmentPlan(
                started_at=ensure_utc(first.timestamp),
                ended_at=ensure_utc(last.timestamp),
                kind=SegmentKind.IMPLICIT,
                anchor_event_id=first.id,
                start_event_id=first.id,
                end_event_id=stop_ids[-1] if stop_ids else None,
                event_ids=[e.id for e in cluster],
            )
        )
    return plans


class SegmentBuilder:
    """Builds, assigns and clears segments against the database."""

    def __init__(
        self,
        session: Session,
        config: Optional[Settings] = None,
        max_event_id: Optional[int] = None,
    ):
        self.session = session
        self.config = config or default_settings
        self.max_event_id = max_event_id
        self.events = EventRepository(session)
        self.segments = SegmentRepository(session)
        self.anomalies: List[Anomaly] = []

    def _record(self, anomalies: List[Anomaly]) -> None:
        for anomaly in anomalies:
            logger.warning(f"Event log anomaly ({anomaly.kind}): {anomaly.detail}")
        self.anomalies.extend(anomalies)

    def _persist(self, plans: List[SegmentPlan]) -> List[BroadcastSegment]:
        check_non_overlap([*self.segments.list_ordered(), *plans])
        return self.segments.bulk_create([plan.to_row() for plan in plans])

    def build_segments(self, from_date: Optional[datetime] = None) -> List[BroadcastSegment]:
        """
        Build explicit segments from StreamStart/StreamStop events.

        Args:
            from_date: Only consider boundary events at or after this time

        Returns:
            Created segments

        Raises:
            SegmentOverlapError: If a new segment would overlap an existing one
        """
        scope = f" since {from_date.isoformat()}" if from_date else ""
        logger.info(f"Building segments from events{scope}")

        events = self.events.list_boundary_events(from_date, self.max_event_id)
        logger.info(f"Found {len(events)} stream start/stop events")

        plans, anomalies = plan_explicit_segments(events)
        self._record(anomalies)
        if plans and plans[-1].ended_at is None:
            logger.info(
                f"Live segment detected, started at {plans[-1].started_at.isoformat()}"
            )

        created = self._persist(plans)
        logger.info(f"Built {len(created)} explicit segments")
        return created

    def assign_all_events_to_segments(self) -> int:
        """
        Link every unassigned event to the segment covering its timestamp.

        Returns:
            Number of events assigned
        """
        index = SegmentIndex(self.segments.list_ordered())
        if not len(index):
            logger.info("No segments to assign events to")
            return 0

        unassigned = self.events.list_unassigned(max_id=self.max_event_id)
        by_segment: dict[uuid.UUID, List[int]] = {}
        for event in unassigned:
            segment = index.find(event.timestamp, event.event_type)
            if segment is not None:
                by_segment.setdefault(segment.id, []).append(event.id)

        total = 0
        for segment_id, event_ids in by_segment.items():
            assigned = self.events.assign_segment(segment_id, event_ids)
            logger.debug(f"Assigned {assigned} events to segment {segment_id}")
            total += assigned

        orphans = len(unassigned) - total
        logger.info(
            f"Assigned {total} events to {len(by_segment)} segments "
            f"({orphans} orphan(s) remaining)"
        )
        return total

    def build_implicit_segments(self) -> List[BroadcastSegment]:
        """
        Build implicit segments from clusters of orphaned events.

        Returns:
            Created segments (kind = implicit)
        """
        logger.info("Looking for orphaned events to build implicit segments...")
        orphans = self.events.list_unassigned(max_id=self.max_event_id)
        if not orphans:
            logger.info("No orphaned events found")
            return []

        index = SegmentIndex(self.segments.list_ordered())
        plans = cluster_orphans(
            orphans,
            index,
            gap=timedelta(minutes=self.config.implicit_cluster_gap_minutes),
            min_events=self.config.implicit_min_events,
        )
        created = self._persist(plans)
        for plan in plans:
            logger.info(
                f"Created implicit segment: {plan.started_at.isoformat()} -> "
                f"{plan.ended_at.isoformat()} ({len(plan.event_ids)} events)"
            )
        logger.info(
            f"Created {len(created)} implicit segments from {len(orphans)} orphaned events"
        )
        return created

    def effective_cutoff(self, from_date: datetime) -> datetime:
        """
        Move an incremental cutoff back past any segment later events can change.

        - An open segment, or one ending at/after the cutoff, straddles it.
        - An implicit segment ending less than one cluster gap before the
          cutoff can absorb orphans after it.
        """
        cluster_gap = timedelta(minutes=self.config.implicit_cluster_gap_minutes)
        cutoff = ensure_utc(from_date)
        while True:
            last = self.segments.get_last_started_before(cutoff)
            if last is None:
                return cutoff
            ended_at = optional_utc(last.ended_at)
            if ended_at is not None and ended_at < cutoff:
                extendable = (
                    last.kind == SegmentKind.IMPLICIT and ended_at + cluster_gap > cutoff
                )
                if not extendable:
                    return cutoff
            cutoff = ensure_utc(last.started_at)

    def clear_from(self, from_date: datetime) -> int:
        """Delete segments starting at or after a cutoff and unlink their events."""
        self.events.clear_linkage(from_date)
        count = self.segments.delete_all(from_date)
        logger.info(f"Cleared {count} segments since {from_date.isoformat()}")
        return count

    def clear_all(self) -> int:
        """Delete every segment and unlink all events. Full rebuild only."""
        self.events.clear_linkage()
        count = self.segments.delete_all()
        logger.info(f"Cleared {count} segments")
        return count

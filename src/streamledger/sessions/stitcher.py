"""
Session stitching.

Merge rule: segment B joins the session holding segment A iff

    B.started_at - A_session.ended_at <= merge_gap_minutes

and the session has no open segment. The comparison is inclusive, and
stitching repeats: a later segment within the gap of the merged session's
latest end keeps extending it. Segments are always re-sorted, so the
partition does not depend on input order.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional

from sqlalchemy.orm import Session

from streamledger.db.repositories import (
    BroadcastSessionRepository,
    EventRepository,
    SegmentRepository,
    SettingRepository,
)
from streamledger.models.db import BroadcastSegment, BroadcastSession, SessionStatus
from streamledger.sessions.segments import segment_order_key
from streamledger.utils.timeutil import ensure_utc, optional_utc

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = uuid.UUID("0b9d7c6e-5f4a-5b3c-9d2e-1f0a9b8c7d6e")


def session_uuid(first_segment_id: uuid.UUID) -> uuid.UUID:
    """Deterministic session id derived from the session's first segment."""
    return uuid.uuid5(SESSION_NAMESPACE, f"session:{first_segment_id}")


@dataclass(frozen=True)
class StitchConfig:
    """Tunables for one stitching pass, passed explicitly at call time."""

    merge_gap_minutes: int = 30
    summary_delay_minutes: Optional[int] = None  # None = use the merge gap

    def __post_init__(self) -> None:
        if self.merge_gap_minutes < 0:
            raise ValueError(f"merge_gap_minutes must be >= 0, got {self.merge_gap_minutes}")

    @property
    def merge_gap(self) -> timedelta:
        return timedelta(minutes=self.merge_gap_minutes)

    @property
    def effective_summary_delay_minutes(self) -> int:
        if self.summary_delay_minutes is not None:
            return self.summary_delay_minutes
        return self.merge_gap_minutes

    @classmethod
    def from_settings_store(
        cls, repo: SettingRepository, merge_gap_minutes: Optional[int] = None
    ) -> "StitchConfig":
        """Read the settings store; an explicit merge gap overrides it."""
        return cls(
            merge_gap_minutes=(
                merge_gap_minutes
                if merge_gap_minutes is not None
                else repo.get_merge_gap_minutes()
            ),
            summary_delay_minutes=repo.get_ai_summary_delay_minutes(),
        )


@dataclass(frozen=True)
class SegmentAssignment:
    """Staging link between a segment and the session it was stitched into."""

    segment_id: uuid.UUID
    session_id: uuid.UUID


@dataclass
class SessionPlan:
    """A session computed in memory, not yet persisted."""

    started_at: datetime
    ended_at: Optional[datetime]
    segment_ids: List[uuid.UUID] = field(default_factory=list)
    has_open_segment: bool = False
    finalize_at: Optional[datetime] = None

    @property
    def id(self) -> uuid.UUID:
        return session_uuid(self.segment_ids[0])

    @property
    def status(self) -> SessionStatus:
        return SessionStatus.ACTIVE if self.has_open_segment else SessionStatus.ENDED

    @property
    def last_event_at(self) -> datetime:
        return self.ended_at or self.started_at

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "last_event_at": self.last_event_at,
            "finalize_at": self.finalize_at,
            "status": self.status,
        }


@dataclass
class StitchResult:
    sessions: List[BroadcastSession]
    assignments: List[SegmentAssignment]

    def segment_count(self, session_id: uuid.UUID) -> int:
        return sum(1 for a in self.assignments if a.session_id == session_id)


def _segment_sort_key(segment: Any) -> tuple:
    return (*segment_order_key(segment), str(segment.id))


def plan_sessions(segments: Iterable[Any], config: StitchConfig) -> List[SessionPlan]:
    """
    Partition segments into sessions under the merge-gap rule.

    Args:
        segments: Objects with ``id``, ``started_at`` and ``ended_at``
        config: Merge gap and summary delay

    Returns:
        Session plans in time order, each owning at least one segment
    """
    plans: List[SessionPlan] = []
    current: Optional[SessionPlan] = None

    for segment in sorted(segments, key=_segment_sort_key):
        started_at = ensure_utc(segment.started_at)
        ended_at = optional_utc(segment.ended_at)

        joins = (
            current is not None
            and not current.has_open_segment
            and current.ended_at is not None
            and started_at - current.ended_at <= config.merge_gap
        )
        if joins:
            gap_minutes = (started_at - current.ended_at).total_seconds() / 60
            logger.debug(f"Stitching segment {segment.id} (gap: {gap_minutes:.1f} min)")
            current.segment_ids.append(segment.id)
            if ended_at is None:
                current.has_open_segment = True
                current.ended_at = None
            else:
                current.ended_at = max(current.ended_at, ended_at)
            continue

        if current is not None:
            logger.debug(f"Separating segment {segment.id}")
        current = SessionPlan(
            started_at=started_at,
            ended_at=ended_at,
            segment_ids=[segment.id],
            has_open_segment=ended_at is None,
        )
        plans.append(current)

    delay = timedelta(minutes=config.effective_summary_delay_minutes)
    for plan in plans:
        if not plan.has_open_segment:
            plan.finalize_at = plan.last_event_at + delay

    return plans


class SessionStitcher:
    """Stitches segments into sessions and maintains the resulting links."""

    def __init__(self, session: Session):
        self.session = session
        self.events = EventRepository(session)
        self.segments = SegmentRepository(session)
        self.sessions = BroadcastSessionRepository(session)

    def stitch_segments(
        self, segments: Iterable[BroadcastSegment], config: StitchConfig
    ) -> StitchResult:
        """
        Stitch segments into sessions and persist the sessions.

        Segment links are returned as assignments, not written; call
        ``apply_assignments`` to persist them.

        Args:
            segments: Segments to stitch
            config: Merge gap and summary delay in effect

        Returns:
            StitchResult with created sessions and segment assignments
        """
        segments = list(segments)
        logger.info(
            f"Stitching {len(segments)} segments with "
            f"{config.merge_gap_minutes} minute merge gap"
        )
        plans = plan_sessions(segments, config)
        created = self.sessions.bulk_create([plan.to_row() for plan in plans])
        assignments = [
            SegmentAssignment(segment_id=segment_id, session_id=plan.id)
            for plan in plans
            for segment_id in plan.segment_ids
        ]
        logger.info(f"Stitched {len(segments)} segments into {len(created)} sessions")
        return StitchResult(sessions=created, assignments=assignments)

    def apply_assignments(self, assignments: Iterable[SegmentAssignment]) -> int:
        """
        Persist segment.session_id for each assignment.

        Each session's segment set is written with a single UPDATE, so a
        session is never left partially linked.

        Returns:
            Number of segments linked
        """
        by_session: dict[uuid.UUID, List[uuid.UUID]] = {}
        for assignment in assignments:
            by_session.setdefault(assignment.session_id, []).append(assignment.segment_id)

        applied = 0
        for session_id, segment_ids in by_session.items():
            applied += self.segments.set_session(session_id, segment_ids)
        logger.info(f"Applied {applied} segment-session assignments")
        return applied

    def propagate_session_ids_to_events(self) -> int:
        """Copy session_id from each event's segment onto the event."""
        count = self.events.propagate_session_ids()
        logger.info(f"Propagated session_id to {count} events")
        return count

    def clear_all(self) -> int:
        """Delete every session, unlinking segments and events first."""
        self.events.clear_session_linkage()
        self.segments.clear_session_links()
        count = self.sessions.delete_all()
        logger.info(f"Cleared {count} sessions")
        return count

    def list_sessions(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[SessionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> tuple[List[BroadcastSession], int]:
        """Page through sessions, newest first. Returns (sessions, total)."""
        return self.sessions.search(limit, offset, status, start_date, end_date)

    def get_with_segments(
        self, session_id: uuid.UUID
    ) -> tuple[Optional[BroadcastSession], List[BroadcastSegment]]:
        session = self.sessions.get(session_id)
        if session is None:
            return None, []
        return session, self.segments.list_by_session(session_id)

    def get_active_session(self) -> Optional[BroadcastSession]:
        return self.sessions.get_active()

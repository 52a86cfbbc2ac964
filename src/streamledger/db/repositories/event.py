"""
Event log repository.

Read access to the broadcaster's event log in time order, plus the bulk
linkage writes (segment_id / session_id) owned by the session pipeline.
Raw event fields are never modified here.
"""

import uuid
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from streamledger.db.repositories.base import BaseRepository
from streamledger.models.db import BroadcastSegment, Event, EventType

# Keep IN (...) lists well below driver parameter limits
UPDATE_CHUNK_SIZE = 500

BOUNDARY_TYPES = (EventType.STREAM_START, EventType.STREAM_STOP)


def _chunks(values: Sequence[int], size: int = UPDATE_CHUNK_SIZE) -> Iterator[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class EventRepository(BaseRepository[Event]):
    """Repository for Event model."""

    def __init__(self, session: Session):
        super().__init__(Event, session)

    def bulk_create(self, events: List[dict]) -> List[Event]:
        """Bulk create events (used by seeding and tests; ingestion lives elsewhere)."""
        instances = [Event(**event) for event in events]
        self.session.add_all(instances)
        self.session.flush()
        return instances

    def max_id(self) -> int:
        """
        Get the highest event id currently stored.

        Used as the snapshot watermark for a rebuild: events appended after
        this point are not observed by that rebuild.
        """
        return self.session.query(func.max(Event.id)).scalar() or 0

    def _scoped(self, query, from_date: Optional[datetime], max_id: Optional[int]):
        if from_date is not None:
            query = query.filter(Event.timestamp >= from_date)
        if max_id is not None:
            query = query.filter(Event.id <= max_id)
        return query

    def list_boundary_events(
        self, from_date: Optional[datetime] = None, max_id: Optional[int] = None
    ) -> List[Event]:
        """
        Get StreamStart/StreamStop events ordered by timestamp, then insertion order.

        Args:
            from_date: Only events at or after this time
            max_id: Snapshot watermark

        Returns:
            List of boundary events
        """
        query = self.session.query(Event).filter(Event.event_type.in_(BOUNDARY_TYPES))
        query = self._scoped(query, from_date, max_id)
        return query.order_by(Event.timestamp, Event.id).all()

    def list_unassigned(
        self, from_date: Optional[datetime] = None, max_id: Optional[int] = None
    ) -> List[Event]:
        """Get events with no segment, ordered by timestamp then id."""
        query = self.session.query(Event).filter(Event.segment_id.is_(None))
        query = self._scoped(query, from_date, max_id)
        return query.order_by(Event.timestamp, Event.id).all()

    def list_by_session(self, session_id: uuid.UUID) -> List[Event]:
        """Get all events linked to a session, ordered by timestamp then id."""
        return (
            self.session.query(Event)
            .filter(Event.session_id == session_id)
            .order_by(Event.timestamp, Event.id)
            .all()
        )

    def count_in_scope(
        self, from_date: Optional[datetime] = None, max_id: Optional[int] = None
    ) -> int:
        query = self.session.query(func.count(Event.id))
        return self._scoped(query, from_date, max_id).scalar() or 0

    def count_unassigned(self, max_id: Optional[int] = None) -> int:
        query = self.session.query(func.count(Event.id)).filter(
            Event.segment_id.is_(None)
        )
        return self._scoped(query, None, max_id).scalar() or 0

    def assign_segment(self, segment_id: uuid.UUID, event_ids: Iterable[int]) -> int:
        """
        Link events to a segment, skipping events that already have one.

        Args:
            segment_id: Segment UUID
            event_ids: Ids of the events to link

        Returns:
            Number of events updated
        """
        self.session.flush()
        ids = sorted(set(event_ids))
        updated = 0
        for chunk in _chunks(ids):
            result = self.session.execute(
                update(Event)
                .where(Event.id.in_(chunk), Event.segment_id.is_(None))
                .values(segment_id=segment_id)
                .execution_options(synchronize_session=False)
            )
            updated += result.rowcount or 0
        self.session.expire_all()
        return updated

    def clear_linkage(self, from_date: Optional[datetime] = None) -> int:
        """
        Null out segment_id and session_id, optionally only from a cutoff on.

        Returns:
            Number of events updated
        """
        stmt = update(Event).where(
            (Event.segment_id.is_not(None)) | (Event.session_id.is_not(None))
        )
        if from_date is not None:
            stmt = stmt.where(Event.timestamp >= from_date)
        self.session.flush()
        result = self.session.execute(
            stmt.values(segment_id=None, session_id=None).execution_options(
                synchronize_session=False
            )
        )
        self.session.expire_all()
        return result.rowcount or 0

    def clear_session_linkage(self) -> int:
        """Null out session_id on every event."""
        self.session.flush()
        result = self.session.execute(
            update(Event)
            .where(Event.session_id.is_not(None))
            .values(session_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0

    def propagate_session_ids(self) -> int:
        """
        Copy each event's segment session_id onto the event.

        Only events whose session_id is still null and whose segment has been
        assigned to a session are touched.

        Returns:
            Number of events updated
        """
        segment_session = (
            select(BroadcastSegment.session_id)
            .where(BroadcastSegment.id == Event.segment_id)
            .scalar_subquery()
        )
        self.session.flush()
        result = self.session.execute(
            update(Event)
            .where(
                Event.segment_id.is_not(None),
                Event.session_id.is_(None),
                segment_session.is_not(None),
            )
            .values(session_id=segment_session)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0

"""
Broadcast segment repository.
"""

import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from streamledger.db.repositories.base import BaseRepository
from streamledger.models.db import BroadcastSegment


class SegmentRepository(BaseRepository[BroadcastSegment]):
    """Repository for BroadcastSegment model."""

    def __init__(self, session: Session):
        super().__init__(BroadcastSegment, session)

    def bulk_create(self, segments: List[dict]) -> List[BroadcastSegment]:
        """Create many segments in one flush."""
        instances = [BroadcastSegment(**segment) for segment in segments]
        self.session.add_all(instances)
        self.session.flush()
        return instances

    def list_ordered(self) -> List[BroadcastSegment]:
        """Get all segments by start, closed before open, then end (id breaks ties)."""
        return (
            self.session.query(BroadcastSegment)
            .order_by(
                BroadcastSegment.started_at,
                BroadcastSegment.ended_at.is_(None),
                BroadcastSegment.ended_at,
                BroadcastSegment.id,
            )
            .all()
        )

    def list_by_session(self, session_id: uuid.UUID) -> List[BroadcastSegment]:
        return (
            self.session.query(BroadcastSegment)
            .filter(BroadcastSegment.session_id == session_id)
            .order_by(
                BroadcastSegment.started_at,
                BroadcastSegment.ended_at.is_(None),
                BroadcastSegment.ended_at,
            )
            .all()
        )

    def get_open(self) -> Optional[BroadcastSegment]:
        """Get the live segment (ended_at is NULL), if any."""
        return (
            self.session.query(BroadcastSegment)
            .filter(BroadcastSegment.ended_at.is_(None))
            .order_by(BroadcastSegment.started_at.desc())
            .first()
        )

    def get_last_started_before(self, cutoff: datetime) -> Optional[BroadcastSegment]:
        """
        Get the latest segment that started strictly before a cutoff.

        Among segments sharing that start, the open or latest-ending one wins.
        """
        return (
            self.session.query(BroadcastSegment)
            .filter(BroadcastSegment.started_at < cutoff)
            .order_by(
                BroadcastSegment.started_at.desc(),
                BroadcastSegment.ended_at.is_(None).desc(),
                BroadcastSegment.ended_at.desc(),
            )
            .first()
        )

    def delete_all(self, from_date: Optional[datetime] = None) -> int:
        """
        Delete segments, optionally only those starting at or after a cutoff.

        Returns:
            Number of segments deleted
        """
        self.session.flush()
        stmt = delete(BroadcastSegment)
        if from_date is not None:
            stmt = stmt.where(BroadcastSegment.started_at >= from_date)
        result = self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0

    def set_session(self, session_id: uuid.UUID, segment_ids: Iterable[uuid.UUID]) -> int:
        """
        Link a set of segments to one session in a single statement.

        Returns:
            Number of segments updated
        """
        ids = list(segment_ids)
        if not ids:
            return 0
        self.session.flush()
        result = self.session.execute(
            update(BroadcastSegment)
            .where(BroadcastSegment.id.in_(ids))
            .values(session_id=session_id)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0

    def clear_session_links(self) -> int:
        """Null out session_id on every segment."""
        self.session.flush()
        result = self.session.execute(
            update(BroadcastSegment)
            .where(BroadcastSegment.session_id.is_not(None))
            .values(session_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0

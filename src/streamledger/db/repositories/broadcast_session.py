"""
Broadcast session repository.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from streamledger.db.repositories.base import BaseRepository
from streamledger.models.db import BroadcastSession, SessionStatus


class BroadcastSessionRepository(BaseRepository[BroadcastSession]):
    """Repository for BroadcastSession model."""

    def __init__(self, session: Session):
        super().__init__(BroadcastSession, session)

    def bulk_create(self, sessions: List[dict]) -> List[BroadcastSession]:
        """Create many sessions in one flush."""
        instances = [BroadcastSession(**data) for data in sessions]
        self.session.add_all(instances)
        self.session.flush()
        return instances

    def _filtered(
        self,
        status: Optional[SessionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        query = self.session.query(BroadcastSession)
        if status is not None:
            query = query.filter(BroadcastSession.status == status)
        if start_date is not None:
            query = query.filter(BroadcastSession.started_at >= start_date)
        if end_date is not None:
            query = query.filter(BroadcastSession.started_at <= end_date)
        return query

    def list_ordered(self) -> List[BroadcastSession]:
        """Get all sessions, oldest first."""
        return (
            self.session.query(BroadcastSession)
            .order_by(BroadcastSession.started_at, BroadcastSession.id)
            .all()
        )

    def list_in_range(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[BroadcastSession]:
        """Get sessions whose start falls within an optional date range."""
        return (
            self._filtered(start_date=start_date, end_date=end_date)
            .order_by(BroadcastSession.started_at)
            .all()
        )

    def search(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[SessionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> tuple[List[BroadcastSession], int]:
        """
        Page through sessions, newest first.

        Args:
            limit: Page size
            offset: Number of sessions to skip
            status: Only sessions with this status
            start_date: Only sessions starting at or after this time
            end_date: Only sessions starting at or before this time

        Returns:
            Tuple of (sessions on this page, total matching sessions)
        """
        query = self._filtered(status, start_date, end_date)
        total = query.with_entities(func.count(BroadcastSession.id)).scalar() or 0
        sessions = (
            query.order_by(BroadcastSession.started_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return sessions, total

    def get_active(self) -> Optional[BroadcastSession]:
        """Get the most recent active session, if any."""
        return (
            self.session.query(BroadcastSession)
            .filter(BroadcastSession.status == SessionStatus.ACTIVE)
            .order_by(BroadcastSession.started_at.desc())
            .first()
        )

    def list_due(self, status: SessionStatus, now: datetime) -> List[BroadcastSession]:
        """Get sessions in a status whose finalize_at has passed."""
        return (
            self.session.query(BroadcastSession)
            .filter(
                BroadcastSession.status == status,
                BroadcastSession.finalize_at.is_not(None),
                BroadcastSession.finalize_at <= now,
            )
            .order_by(BroadcastSession.finalize_at)
            .all()
        )

    def delete_all(self) -> int:
        """Delete every session. Callers clear segment/event links first."""
        self.session.flush()
        result = self.session.execute(
            delete(BroadcastSession).execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount or 0

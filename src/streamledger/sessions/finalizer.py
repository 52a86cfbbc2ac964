"""
Session finalization.

An ended session becomes eligible for finalization once its ``finalize_at``
(last activity + summary delay) has passed: it moves to pending_finalize, and
finalizing recomputes its rollups one last time and marks it finalized.
Downstream consumers (e.g. the AI summary generator) pick up finalized sessions.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from streamledger.config import Settings
from streamledger.db.repositories import BroadcastSessionRepository
from streamledger.models.db import BroadcastSession, SessionStatus
from streamledger.sessions.rollups import RollupComputer
from streamledger.utils.timeutil import utc_now

logger = logging.getLogger(__name__)


class SessionFinalizer:
    """Moves ended sessions through pending_finalize to finalized."""

    def __init__(self, session: Session, config: Optional[Settings] = None):
        self.session = session
        self.sessions = BroadcastSessionRepository(session)
        self.rollups = RollupComputer(session, config)

    def promote_due(self, now: Optional[datetime] = None) -> int:
        """
        Mark ended sessions past their finalize_at as pending_finalize.

        Returns:
            Number of sessions promoted
        """
        now = now or utc_now()
        due = self.sessions.list_due(SessionStatus.ENDED, now)
        for broadcast_session in due:
            broadcast_session.status = SessionStatus.PENDING_FINALIZE
        self.session.flush()
        if due:
            logger.info(f"{len(due)} session(s) ready to finalize")
        return len(due)

    def get_ready_to_finalize(self, now: Optional[datetime] = None) -> List[BroadcastSession]:
        return self.sessions.list_due(SessionStatus.PENDING_FINALIZE, now or utc_now())

    def finalize_ready(self, now: Optional[datetime] = None) -> List[BroadcastSession]:
        """
        Promote due sessions, then finalize everything pending.

        Returns:
            Sessions finalized in this call
        """
        now = now or utc_now()
        self.promote_due(now)

        finalized = []
        for broadcast_session in self.get_ready_to_finalize(now):
            self.rollups.compute_and_update_session(broadcast_session.id, now)
            broadcast_session.status = SessionStatus.FINALIZED
            self.session.flush()
            logger.info(f"Session finalized: {broadcast_session.id}")
            finalized.append(broadcast_session)
        return finalized

"""
Rebuild lock repository.

A coarse, row-based mutual-exclusion lock: one row per broadcaster while a
rebuild is rewriting segment/session linkage. The live ingester checks
``is_locked`` before touching linkage; it may keep appending raw events.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from streamledger.db.repositories.base import BaseRepository
from streamledger.exceptions import RebuildInProgressError
from streamledger.models.db import RebuildLock
from streamledger.utils.timeutil import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class RebuildLockRepository(BaseRepository[RebuildLock]):
    """Repository for RebuildLock model."""

    def __init__(self, session: Session):
        super().__init__(RebuildLock, session)

    def is_locked(self, broadcaster: str) -> bool:
        return self.get(broadcaster) is not None

    def acquire(
        self,
        broadcaster: str,
        holder: str,
        stale_after_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RebuildLock:
        """
        Take the rebuild lock for a broadcaster.

        Args:
            broadcaster: Lock scope
            holder: Identifier of the caller (e.g. "cli:<pid>")
            stale_after_minutes: Take over an existing lock older than this
            now: Current time (defaults to UTC now)

        Returns:
            The lock row (flushed, not committed)

        Raises:
            RebuildInProgressError: If a live lock is held by someone else
        """
        now = now or utc_now()
        existing = self.get(broadcaster)
        if existing is not None:
            acquired_at = ensure_utc(existing.acquired_at)
            is_stale = stale_after_minutes is not None and (
                now - acquired_at >= timedelta(minutes=stale_after_minutes)
            )
            if not is_stale:
                raise RebuildInProgressError(broadcaster, existing.holder, acquired_at)

            logger.warning(
                f"Taking over stale rebuild lock for {broadcaster!r} "
                f"(holder={existing.holder}, since {acquired_at.isoformat()})"
            )
            existing.holder = holder
            existing.acquired_at = now
            self.session.flush()
            return existing

        try:
            lock = self.create(broadcaster=broadcaster, holder=holder, acquired_at=now)
        except IntegrityError:
            # Another process inserted the row between our read and insert
            self.session.rollback()
            current = self.get(broadcaster)
            if current is None:
                raise
            raise RebuildInProgressError(
                broadcaster, current.holder, ensure_utc(current.acquired_at)
            )

        logger.debug(f"Acquired rebuild lock for {broadcaster!r} as {holder}")
        return lock

    def release(self, broadcaster: str, holder: Optional[str] = None) -> bool:
        """
        Release the lock.

        Args:
            broadcaster: Lock scope
            holder: Only release if held by this holder (None = unconditional)

        Returns:
            True if a lock row was removed
        """
        lock = self.get(broadcaster)
        if lock is None:
            return False
        if holder is not None and lock.holder != holder:
            logger.warning(
                f"Not releasing rebuild lock for {broadcaster!r}: held by "
                f"{lock.holder}, not {holder}"
            )
            return False
        self.session.delete(lock)
        self.session.flush()
        return True

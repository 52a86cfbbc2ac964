"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from streamledger.db.repositories.base import BaseRepository
from streamledger.db.repositories.broadcast_session import BroadcastSessionRepository
from streamledger.db.repositories.event import EventRepository
from streamledger.db.repositories.rebuild_lock import RebuildLockRepository
from streamledger.db.repositories.segment import SegmentRepository
from streamledger.db.repositories.setting import SettingRepository

__all__ = [
    "BaseRepository",
    "BroadcastSessionRepository",
    "EventRepository",
    "RebuildLockRepository",
    "SegmentRepository",
    "SettingRepository",
]

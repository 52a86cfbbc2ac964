"""
SQLAlchemy database models for StreamLedger.

These models represent the event log of a single broadcaster and the
segments and sessions derived from it.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

# Integer primary keys only autoincrement on SQLite when declared as INTEGER
EventIdType = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class EventType(str, enum.Enum):
    """Kind of broadcast-platform event."""

    STREAM_START = "stream_start"
    STREAM_STOP = "stream_stop"
    VIEWER_SAMPLE = "viewer_sample"  # payload: {"viewers": int}
    TIP = "tip"  # payload: {"tokens": int}
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    VISITOR_SEEN = "visitor_seen"
    VISITOR_LEFT = "visitor_left"
    CHAT_MESSAGE = "chat_message"
    PRIVATE_MESSAGE = "private_message"
    ROOM_SUBJECT_CHANGE = "room_subject_change"  # payload: {"subject": str}


class SegmentKind(str, enum.Enum):
    """How a segment's bounds were established."""

    EXPLICIT = "explicit"  # Bounded by a start/stop pair
    IMPLICIT = "implicit"  # Inferred from clustered orphan events


class SessionStatus(str, enum.Enum):
    """Lifecycle of a broadcast session."""

    ACTIVE = "active"  # Has an open segment
    ENDED = "ended"  # All segments closed, still inside the finalize delay
    PENDING_FINALIZE = "pending_finalize"  # Finalize delay elapsed
    FINALIZED = "finalized"  # Final rollups computed


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class Event(Base):
    """A raw, immutable broadcast-platform event.

    Only ``segment_id`` and ``session_id`` are ever rewritten, and only by
    the session pipeline.
    """

    __tablename__ = "event_logs"

    id: Mapped[int] = mapped_column(EventIdType, primary_key=True, autoincrement=True)
    event_type: Mapped[EventType] = mapped_column(
        _enum_column(EventType), nullable=False, index=True
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    username: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )  # Visitor identifier, when the event has one
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict
    )

    segment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("broadcast_segments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("broadcast_sessions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_event_logs_type_timestamp", "event_type", "timestamp"),)

    def __repr__(self) -> str:
        return (
            f"<Event(id={self.id}, type={self.event_type.value}, "
            f"timestamp={self.timestamp.isoformat()})>"
        )


class BroadcastSegment(Base):
    """A contiguous interval of confirmed or inferred broadcast activity."""

    __tablename__ = "broadcast_segments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )  # NULL = still live
    kind: Mapped[SegmentKind] = mapped_column(
        _enum_column(SegmentKind),
        nullable=False,
        server_default=SegmentKind.EXPLICIT.value,
    )
    session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("broadcast_sessions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # References to the bounding events, for debugging
    start_event_id: Mapped[Optional[int]] = mapped_column(EventIdType, nullable=True)
    end_event_id: Mapped[Optional[int]] = mapped_column(EventIdType, nullable=True)
    event_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )  # Orphans clustered into an implicit segment

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    session: Mapped[Optional["BroadcastSession"]] = relationship(
        back_populates="segments"
    )

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    def __repr__(self) -> str:
        return (
            f"<BroadcastSegment(id={self.id}, kind={self.kind.value}, "
            f"started_at={self.started_at}, ended_at={self.ended_at})>"
        )


class BroadcastSession(Base):
    """One or more segments stitched together; the user-facing "stream"."""

    __tablename__ = "broadcast_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )  # NULL = active
    last_event_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    finalize_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )  # last_event_at + summary delay; NULL while active
    status: Mapped[SessionStatus] = mapped_column(
        _enum_column(SessionStatus),
        nullable=False,
        server_default=SessionStatus.ACTIVE.value,
        index=True,
    )

    # Rollups (computed from events)
    total_tokens: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    followers_gained: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    peak_viewers: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    avg_viewers: Mapped[float] = mapped_column(
        Float, nullable=False, server_default="0"
    )
    unique_visitors: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    room_subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rollups_computed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    segments: Mapped[list["BroadcastSegment"]] = relationship(
        back_populates="session", order_by="BroadcastSegment.started_at"
    )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<BroadcastSession(id={self.id}, status={self.status.value}, "
            f"started_at={self.started_at}, ended_at={self.ended_at})>"
        )


class AppSetting(Base):
    """Key/value settings row owned by the settings UI; read-only here."""

    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONB, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AppSetting(key={self.key!r}, value={self.value!r})>"


class RebuildLock(Base):
    """Single-rebuild-at-a-time lock, one row per broadcaster."""

    __tablename__ = "rebuild_locks"

    broadcaster: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<RebuildLock(broadcaster={self.broadcaster!r}, holder={self.holder!r})>"
        )

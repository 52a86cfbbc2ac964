"""
Pytest configuration and fixtures for StreamLedger tests.

This module provides shared fixtures for testing database models, repositories,
and the session pipeline.
"""

import os

# Must be set before streamledger is imported: the connection module builds
# its engine from settings at import time.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_FILE_ENABLED"] = "false"

from datetime import datetime  # noqa: E402
from typing import Any, Callable, Generator, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import JSON, create_engine, event  # noqa: E402
from sqlalchemy.dialects import postgresql  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from streamledger.config import Settings  # noqa: E402
from streamledger.models.db import AppSetting, Base, Event, EventType  # noqa: E402

# Replace JSONB with JSON for SQLite
@event.listens_for(Base.metadata, "before_create")
def _set_json_type(target, connection, **kw):
    for table in target.tables.values():
        for column in table.columns:
            if isinstance(column.type, postgresql.JSONB):
                column.type = JSON()


@pytest.fixture
def test_engine():
    """
    Create a test database engine using SQLite in-memory.

    Each test gets its own database: the pipeline commits and rolls back on
    its own, so an outer rollback-only transaction cannot isolate it.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a new database session for a test."""
    session = sessionmaker(bind=test_engine)()
    yield session
    session.close()


@pytest.fixture
def config() -> Settings:
    """Settings with defaults, independent of the developer's environment."""
    return Settings(
        merge_gap_minutes=30,
        ai_summary_delay_minutes=None,
        implicit_cluster_gap_minutes=10,
        implicit_min_events=1,
        viewer_sample_max_gap_minutes=5,
        log_file_enabled=False,
    )


@pytest.fixture
def make_event(db_session: Session) -> Callable[..., Event]:
    """
    Factory for persisted events.

    Usage:
        make_event(EventType.TIP, base + timedelta(minutes=5), username="alice", tokens=10)
    """

    def _make(
        event_type: EventType,
        timestamp: datetime,
        username: Optional[str] = None,
        **payload: Any,
    ) -> Event:
        event_row = Event(
            event_type=event_type,
            timestamp=timestamp,
            username=username,
            payload=payload,
        )
        db_session.add(event_row)
        db_session.flush()
        return event_row

    return _make


@pytest.fixture
def set_setting(db_session: Session) -> Callable[[str, Any], AppSetting]:
    """Factory for settings-store rows."""

    def _set(key: str, value: Any) -> AppSetting:
        row = AppSetting(key=key, value=value)
        db_session.merge(row)
        db_session.commit()
        return row

    return _set

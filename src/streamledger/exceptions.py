"""Custom exceptions for StreamLedger."""

from datetime import datetime
from typing import Optional


class StreamLedgerError(Exception):
    """Base class for StreamLedger errors."""


class InvariantViolationError(StreamLedgerError):
    """Raised when derived data breaks a structural invariant.

    Always fatal: continuing would silently corrupt rollups.
    """


class SegmentOverlapError(InvariantViolationError):
    """Raised when two segments cover overlapping time intervals."""

    def __init__(
        self,
        first_start: datetime,
        first_end: Optional[datetime],
        second_start: datetime,
    ):
        self.first_start = first_start
        self.first_end = first_end
        self.second_start = second_start
        end_label = first_end.isoformat() if first_end else "open"
        super().__init__(
            f"Segment starting {second_start.isoformat()} overlaps segment "
            f"{first_start.isoformat()} -> {end_label}"
        )


class NegativeDurationError(InvariantViolationError):
    """Raised when an interval ends before it starts."""

    def __init__(self, started_at: datetime, ended_at: datetime):
        self.started_at = started_at
        self.ended_at = ended_at
        super().__init__(
            f"Interval ends before it starts: "
            f"{started_at.isoformat()} -> {ended_at.isoformat()}"
        )


class RebuildInProgressError(StreamLedgerError):
    """Raised when another rebuild already holds the broadcaster lock."""

    def __init__(self, broadcaster: str, holder: str, acquired_at: datetime):
        self.broadcaster = broadcaster
        self.holder = holder
        self.acquired_at = acquired_at
        super().__init__(
            f"Rebuild for {broadcaster!r} already running "
            f"(holder={holder}, since {acquired_at.isoformat()})"
        )


class RebuildAbortedError(StreamLedgerError):
    """Raised when a rebuild is cancelled between steps."""

    def __init__(self, step: str):
        self.step = step
        super().__init__(f"Rebuild aborted before step {step!r}")


class RebuildStepError(StreamLedgerError):
    """Raised when a pipeline step fails; the cause is chained."""

    def __init__(self, step: str, processed: int, cause: BaseException):
        self.step = step
        self.processed = processed
        self.cause = cause
        super().__init__(
            f"Step {step!r} failed after {processed} item(s): "
            f"{type(cause).__name__}: {cause}"
        )

"""
Session rebuild orchestration.

Runs the full pipeline as one sequential batch job:

    idle -> clearing_old_data -> building_explicit_segments -> assigning_events
    -> building_implicit_segments -> reassigning_events -> stitching
    -> applying_assignments -> propagating_session_ids -> computing_rollups -> done

Each step commits on success. A failing step is rolled back and aborts the
run; earlier steps stay committed, which is safe because every step is
idempotent and a re-run converges to the same state.

The rebuild sees a repeatable-read snapshot of the event log as of its start:
events appended after the snapshot watermark are ignored until the next run.
"""

from __future__ import annotations

import enum
import logging
import os
import socket
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy.orm import Session

from streamledger.config import Settings, settings as default_settings
from streamledger.db.repositories import (
    BroadcastSessionRepository,
    EventRepository,
    RebuildLockRepository,
    SegmentRepository,
    SettingRepository,
)
from streamledger.exceptions import RebuildAbortedError, RebuildStepError
from streamledger.models.db import BroadcastSegment, SegmentKind, SessionStatus
from streamledger.sessions.rollups import AggregateStats, Rollup, RollupComputer
from streamledger.sessions.segments import Anomaly, SegmentBuilder
from streamledger.sessions.stitcher import SessionStitcher, StitchConfig, StitchResult
from streamledger.utils.timeutil import ensure_utc, optional_utc, utc_now

logger = logging.getLogger(__name__)


class RebuildStep(str, enum.Enum):
    """States of one rebuild invocation, in execution order."""

    IDLE = "idle"
    CLEARING_OLD_DATA = "clearing_old_data"
    BUILDING_EXPLICIT_SEGMENTS = "building_explicit_segments"
    ASSIGNING_EVENTS = "assigning_events"
    BUILDING_IMPLICIT_SEGMENTS = "building_implicit_segments"
    REASSIGNING_EVENTS = "reassigning_events"
    STITCHING = "stitching"
    APPLYING_ASSIGNMENTS = "applying_assignments"
    PROPAGATING_SESSION_IDS = "propagating_session_ids"
    COMPUTING_ROLLUPS = "computing_rollups"
    DONE = "done"


PIPELINE_STEPS = [
    step for step in RebuildStep if step not in (RebuildStep.IDLE, RebuildStep.DONE)
]


@dataclass
class StepResult:
    step: RebuildStep
    count: int
    duration_ms: int


@dataclass
class SegmentSummary:
    id: uuid.UUID
    kind: SegmentKind
    started_at: datetime
    ended_at: Optional[datetime]

    @classmethod
    def from_model(cls, segment: BroadcastSegment) -> "SegmentSummary":
        return cls(
            id=segment.id,
            kind=segment.kind,
            started_at=ensure_utc(segment.started_at),
            ended_at=optional_utc(segment.ended_at),
        )


@dataclass
class SessionSummary:
    id: uuid.UUID
    started_at: datetime
    ended_at: Optional[datetime]
    status: SessionStatus
    segment_count: int
    rollup: Optional[Rollup] = None


@dataclass
class RebuildReport:
    """Everything a caller needs to describe a rebuild run."""

    dry_run: bool
    merge_gap_minutes: int
    summary_delay_minutes: int
    from_date: Optional[datetime] = None
    effective_from: Optional[datetime] = None
    snapshot_event_id: Optional[int] = None
    state: RebuildStep = RebuildStep.IDLE
    steps: List[StepResult] = field(default_factory=list)
    planned_steps: List[RebuildStep] = field(default_factory=list)
    cleared_segments: int = 0
    cleared_sessions: int = 0
    explicit_segments: List[SegmentSummary] = field(default_factory=list)
    implicit_segments: List[SegmentSummary] = field(default_factory=list)
    sessions: List[SessionSummary] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    aggregate: Optional[AggregateStats] = None
    # Read-only counts gathered for dry runs
    events_in_scope: int = 0
    existing_segments: int = 0
    existing_sessions: int = 0

    def count(self, step: RebuildStep) -> int:
        for result in self.steps:
            if result.step == step:
                return result.count
        return 0

    @property
    def segment_count(self) -> int:
        return len(self.explicit_segments) + len(self.implicit_segments)

    @property
    def events_assigned(self) -> int:
        return self.count(RebuildStep.ASSIGNING_EVENTS) + self.count(
            RebuildStep.REASSIGNING_EVENTS
        )


ProgressCallback = Callable[[RebuildStep, Optional[StepResult]], None]


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class RebuildOrchestrator:
    """Drives segment building, stitching and rollups end to end."""

    def __init__(
        self,
        session: Session,
        config: Optional[Settings] = None,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        holder: Optional[str] = None,
    ):
        self.session = session
        self.config = config or default_settings
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.holder = holder or default_holder()
        self.locks = RebuildLockRepository(session)
        self._processed = 0

    def _stitch_config(self, merge_gap_minutes: Optional[int]) -> StitchConfig:
        return StitchConfig.from_settings_store(
            SettingRepository(self.session, self.config), merge_gap_minutes
        )

    def run(
        self,
        from_date: Optional[datetime] = None,
        dry_run: bool = False,
        merge_gap_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RebuildReport:
        """
        Rebuild segments, sessions and rollups.

        Args:
            from_date: Incremental rebuild cutoff (None = full rebuild)
            dry_run: Report settings and planned work without writing anything
            merge_gap_minutes: Override the settings-store merge gap (what-if runs)
            now: Reference time for open-session durations

        Returns:
            RebuildReport

        Raises:
            RebuildInProgressError: If another rebuild holds the lock
            RebuildAbortedError: If cancelled between steps
            RebuildStepError: If a step fails (names the step)
        """
        now = now or utc_now()
        from_date = ensure_utc(from_date) if from_date else None
        stitch_config = self._stitch_config(merge_gap_minutes)
        report = RebuildReport(
            dry_run=dry_run,
            merge_gap_minutes=stitch_config.merge_gap_minutes,
            summary_delay_minutes=stitch_config.effective_summary_delay_minutes,
            from_date=from_date,
        )
        logger.info(
            f"Rebuild starting (dry_run={dry_run}, from={from_date}, "
            f"merge_gap={stitch_config.merge_gap_minutes}m, "
            f"summary_delay={stitch_config.effective_summary_delay_minutes}m)"
        )

        if dry_run:
            return self._plan(report)

        self.locks.acquire(
            self.config.broadcaster,
            self.holder,
            stale_after_minutes=self.config.rebuild_lock_stale_minutes,
            now=now,
        )
        self.session.commit()
        locked = True
        try:
            report.snapshot_event_id = EventRepository(self.session).max_id()
            builder = SegmentBuilder(
                self.session, self.config, max_event_id=report.snapshot_event_id
            )
            stitcher = SessionStitcher(self.session)
            stitched: dict[str, StitchResult] = {}

            self._step(report, RebuildStep.CLEARING_OLD_DATA,
                       lambda: self._clear(report, builder, stitcher, from_date))
            self._step(report, RebuildStep.BUILDING_EXPLICIT_SEGMENTS,
                       lambda: self._build_explicit(report, builder))
            self._step(report, RebuildStep.ASSIGNING_EVENTS,
                       builder.assign_all_events_to_segments)
            self._step(report, RebuildStep.BUILDING_IMPLICIT_SEGMENTS,
                       lambda: self._build_implicit(report, builder))
            self._step(report, RebuildStep.REASSIGNING_EVENTS,
                       lambda: self._reassign(report, builder))
            self._step(report, RebuildStep.STITCHING,
                       lambda: self._stitch(stitcher, stitch_config, stitched))
            self._step(report, RebuildStep.APPLYING_ASSIGNMENTS,
                       lambda: stitcher.apply_assignments(stitched["result"].assignments))
            self._step(report, RebuildStep.PROPAGATING_SESSION_IDS,
                       stitcher.propagate_session_ids_to_events)

            self._release_lock()
            locked = False

            self._step(report, RebuildStep.COMPUTING_ROLLUPS,
                       lambda: self._compute_rollups(report, stitched["result"], now))
        finally:
            if locked:
                self._release_lock()

        report.aggregate = RollupComputer(self.session, self.config).get_aggregate_stats(
            now=now
        )
        report.state = RebuildStep.DONE
        logger.info(
            f"Rebuild complete: {report.segment_count} segments, "
            f"{len(report.sessions)} sessions, {len(report.anomalies)} anomalies"
        )
        return report

    def _step(
        self, report: RebuildReport, step: RebuildStep, action: Callable[[], Any]
    ) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.warning(f"Rebuild cancelled before {step.value}")
            raise RebuildAbortedError(step.value)

        report.state = step
        self._processed = 0
        if self.on_progress:
            self.on_progress(step, None)

        started = time.perf_counter()
        try:
            count = action()
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"Rebuild step {step.value} failed: {e}")
            raise RebuildStepError(step.value, self._processed, e) from e

        result = StepResult(
            step=step,
            count=count if isinstance(count, int) else self._processed,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        report.steps.append(result)
        logger.info(f"Step {step.value}: {result.count} ({result.duration_ms}ms)")
        if self.on_progress:
            self.on_progress(step, result)

    def _release_lock(self) -> None:
        # The failing step has already been rolled back, so this commit only
        # carries the lock release.
        self.locks.release(self.config.broadcaster, self.holder)
        self.session.commit()

    def _plan(self, report: RebuildReport) -> RebuildReport:
        report.events_in_scope = EventRepository(self.session).count_in_scope(
            report.from_date
        )
        report.existing_segments = SegmentRepository(self.session).count()
        report.existing_sessions = BroadcastSessionRepository(self.session).count()
        report.planned_steps = list(PIPELINE_STEPS)
        logger.info(
            f"Dry run: {report.events_in_scope} events in scope, would clear "
            f"{report.existing_segments} segments and "
            f"{report.existing_sessions} sessions"
        )
        return report

    def _clear(
        self,
        report: RebuildReport,
        builder: SegmentBuilder,
        stitcher: SessionStitcher,
        from_date: Optional[datetime],
    ) -> int:
        report.cleared_sessions = stitcher.clear_all()
        if from_date is None:
            report.cleared_segments = builder.clear_all()
        else:
            report.effective_from = builder.effective_cutoff(from_date)
            if report.effective_from != from_date:
                logger.info(
                    f"Incremental cutoff moved back to "
                    f"{report.effective_from.isoformat()} to cover a straddling segment"
                )
            report.cleared_segments = builder.clear_from(report.effective_from)
        return report.cleared_segments + report.cleared_sessions

    def _build_explicit(self, report: RebuildReport, builder: SegmentBuilder) -> int:
        segments = builder.build_segments(report.effective_from)
        report.explicit_segments = [SegmentSummary.from_model(s) for s in segments]
        report.anomalies.extend(builder.anomalies)
        return len(segments)

    def _build_implicit(self, report: RebuildReport, builder: SegmentBuilder) -> int:
        segments = builder.build_implicit_segments()
        report.implicit_segments = [SegmentSummary.from_model(s) for s in segments]
        return len(segments)

    def _reassign(self, report: RebuildReport, builder: SegmentBuilder) -> int:
        if not report.implicit_segments:
            return 0
        return builder.assign_all_events_to_segments()

    def _stitch(
        self,
        stitcher: SessionStitcher,
        config: StitchConfig,
        stitched: dict[str, StitchResult],
    ) -> int:
        segments = SegmentRepository(self.session).list_ordered()
        result = stitcher.stitch_segments(segments, config)
        stitched["result"] = result
        return len(result.sessions)

    def _compute_rollups(
        self, report: RebuildReport, result: StitchResult, now: datetime
    ) -> int:
        computer = RollupComputer(self.session, self.config)
        for broadcast_session in result.sessions:
            rollup = computer.compute_and_update_session(broadcast_session.id, now)
            self._processed += 1
            report.sessions.append(
                SessionSummary(
                    id=broadcast_session.id,
                    started_at=ensure_utc(broadcast_session.started_at),
                    ended_at=optional_utc(broadcast_session.ended_at),
                    status=broadcast_session.status,
                    segment_count=result.segment_count(broadcast_session.id),
                    rollup=rollup,
                )
            )
        return self._processed

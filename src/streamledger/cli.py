"""
StreamLedger CLI - Main command-line interface for StreamLedger.

Minimal CLI for operators: rebuild derived session data, inspect sessions and
statistics, and run finalization.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from streamledger.logging_config import setup_logging

app = typer.Typer(
    name="streamledger",
    help="StreamLedger - Broadcast session reconstruction and analytics",
    no_args_is_help=True,
)

console = Console()


def _init_logging() -> None:
    # Fall back to console logging if file logging is not permitted
    try:
        setup_logging(context="cli")
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _parse_date_option(value: Optional[str], option: str):
    if value is None:
        return None
    from streamledger.utils.timeutil import parse_date

    try:
        return parse_date(value)
    except ValueError:
        console.print(f"[bold red]Error:[/bold red] Invalid date for {option}: {value}")
        raise typer.Exit(1)


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "live"


@app.command()
def rebuild(
    from_date: str = typer.Option(
        None, "--from", help="Only rebuild from this date (ISO 8601); default is full"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show settings and planned work without writing"
    ),
    merge_gap: int = typer.Option(
        None, "--merge-gap", min=0, help="Override the merge gap in minutes"
    ),
) -> None:
    """
    Rebuild broadcast segments and sessions from the event log.

    Clears derived data, rebuilds segments, stitches sessions and computes
    rollups. Ctrl-C cancels cleanly between steps.
    """
    import signal

    from streamledger.db.connection import db_session
    from streamledger.exceptions import (
        RebuildAbortedError,
        RebuildInProgressError,
        RebuildStepError,
        StreamLedgerError,
    )
    from streamledger.sessions.rebuild import RebuildOrchestrator
    from streamledger.sessions.rollups import format_minutes

    _init_logging()
    start = _parse_date_option(from_date, "--from")

    cancel_event = threading.Event()

    def _on_interrupt(signum, frame):
        console.print("\n[yellow]Cancelling after the current step...[/yellow]")
        cancel_event.set()

    def _on_progress(step, result):
        if result is None:
            console.print(f"[blue]{step.value}[/blue]... ", end="")
        else:
            console.print(f"[green]✓[/green] {result.count} ({result.duration_ms}ms)")

    previous_handler = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        with db_session() as session:
            orchestrator = RebuildOrchestrator(
                session,
                cancel_event=cancel_event,
                on_progress=None if dry_run else _on_progress,
            )
            report = orchestrator.run(
                from_date=start, dry_run=dry_run, merge_gap_minutes=merge_gap
            )
    except RebuildInProgressError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        console.print("  Use 'streamledger unlock' if the previous run crashed.")
        raise typer.Exit(1)
    except RebuildAbortedError as e:
        console.print(f"[yellow]Aborted:[/yellow] before step {e.step}")
        raise typer.Exit(1)
    except RebuildStepError as e:
        console.print(f"\n[bold red]✗ Step {e.step} failed:[/bold red] {e.cause}")
        console.print(f"  Processed before failure: {e.processed}")
        raise typer.Exit(1)
    except StreamLedgerError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    console.print()
    console.print("[bold]Settings:[/bold]")
    console.print(f"  Merge gap: {report.merge_gap_minutes} minutes")
    console.print(f"  Summary delay: {report.summary_delay_minutes} minutes")
    if report.from_date:
        console.print(f"  From: {report.from_date.isoformat()}")
    if report.effective_from and report.effective_from != report.from_date:
        console.print(f"  Effective from: {report.effective_from.isoformat()}")

    if report.dry_run:
        console.print()
        console.print("[bold yellow]Dry run - nothing written[/bold yellow]")
        console.print(f"  Events in scope: {report.events_in_scope}")
        console.print(f"  Existing segments: {report.existing_segments}")
        console.print(f"  Existing sessions: {report.existing_sessions}")
        console.print("  Planned steps:")
        for i, step in enumerate(report.planned_steps, 1):
            console.print(f"    {i}. {step.value}")
        return

    console.print()
    console.print("[bold]Summary:[/bold]")
    console.print(f"  Cleared: {report.cleared_segments} segments, {report.cleared_sessions} sessions")
    console.print(
        f"  Segments: {len(report.explicit_segments)} explicit, "
        f"{len(report.implicit_segments)} implicit"
    )
    console.print(f"  Events assigned: {report.events_assigned}")
    console.print(f"  Sessions: {len(report.sessions)}")

    for summary in report.sessions:
        rollup = summary.rollup
        console.print(
            f"    {_fmt_time(summary.started_at)} -> {_fmt_time(summary.ended_at)} "
            f"({summary.status.value}) {summary.segment_count} segment(s), "
            f"{rollup.total_tokens} tokens, {rollup.followers_gained:+d} followers"
        )

    if report.anomalies:
        console.print(f"  [yellow]Anomalies: {len(report.anomalies)}[/yellow]")
        for anomaly in report.anomalies:
            console.print(f"    {anomaly.kind}: {anomaly.detail}")

    if report.aggregate:
        stats = report.aggregate
        console.print()
        console.print("[bold]Totals:[/bold]")
        console.print(f"  Broadcast time: {format_minutes(stats.total_ms)} minutes")
        console.print(f"  Tokens: {stats.total_tokens}")
        console.print(f"  Followers: {stats.total_followers:+d}")
        console.print(f"  Peak viewers: {stats.peak_viewers}")
        console.print(f"  Avg viewers: {stats.avg_viewers:.1f}")


@app.command()
def stats(
    start: str = typer.Option(None, help="Sessions starting on/after (ISO 8601)"),
    end: str = typer.Option(None, help="Sessions starting on/before (ISO 8601)"),
) -> None:
    """Show aggregate statistics across sessions."""
    from streamledger.db.connection import db_session
    from streamledger.sessions.rollups import RollupComputer, format_minutes

    start_date = _parse_date_option(start, "--start")
    end_date = _parse_date_option(end, "--end")

    with db_session() as session:
        aggregate = RollupComputer(session).get_aggregate_stats(start_date, end_date)

    console.print("[bold]Broadcast statistics[/bold]")
    console.print(f"  Sessions: {aggregate.total_sessions}")
    console.print(f"  Broadcast time: {format_minutes(aggregate.total_ms)} minutes")
    console.print(f"  Tokens: {aggregate.total_tokens}")
    console.print(f"  Followers: {aggregate.total_followers:+d}")
    console.print(f"  Peak viewers: {aggregate.peak_viewers}")
    console.print(f"  Avg viewers: {aggregate.avg_viewers:.1f}")


@app.command()
def sessions(
    status: str = typer.Option(
        None, help="Filter by status (active, ended, pending_finalize, finalized)"
    ),
    limit: int = typer.Option(20, min=1, help="Page size"),
    offset: int = typer.Option(0, min=0, help="Sessions to skip"),
) -> None:
    """List broadcast sessions, newest first."""
    from streamledger.db.connection import db_session
    from streamledger.models.db import SessionStatus
    from streamledger.sessions.rollups import format_minutes, session_duration_ms
    from streamledger.sessions.stitcher import SessionStitcher
    from streamledger.utils.timeutil import utc_now

    status_filter = None
    if status is not None:
        try:
            status_filter = SessionStatus(status)
        except ValueError:
            console.print(f"[bold red]Error:[/bold red] Unknown status: {status}")
            raise typer.Exit(1)

    now = utc_now()
    with db_session() as session:
        rows, total = SessionStitcher(session).list_sessions(
            limit=limit, offset=offset, status=status_filter
        )

        table = Table(title=f"Sessions ({offset + 1}-{offset + len(rows)} of {total})")
        table.add_column("ID", no_wrap=True)
        table.add_column("Started")
        table.add_column("Ended")
        table.add_column("Status")
        table.add_column("Minutes", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Peak", justify="right")
        for row in rows:
            table.add_row(
                str(row.id),
                _fmt_time(row.started_at),
                _fmt_time(row.ended_at),
                row.status.value,
                format_minutes(session_duration_ms(row, now)),
                str(row.total_tokens),
                str(row.peak_viewers),
            )

    if not rows:
        console.print("[yellow]No sessions found[/yellow]")
        return
    console.print(table)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session UUID"),
) -> None:
    """Show one session with its segments and rollups."""
    import uuid

    from streamledger.db.connection import db_session
    from streamledger.sessions.rollups import format_minutes, session_duration_ms
    from streamledger.sessions.stitcher import SessionStitcher
    from streamledger.utils.timeutil import utc_now

    try:
        parsed_id = uuid.UUID(session_id)
    except ValueError:
        console.print(f"[bold red]Error:[/bold red] Invalid session id: {session_id}")
        raise typer.Exit(1)

    with db_session() as session:
        broadcast_session, segments = SessionStitcher(session).get_with_segments(parsed_id)
        if broadcast_session is None:
            console.print(f"[bold red]Error:[/bold red] Session not found: {session_id}")
            raise typer.Exit(1)

        duration = session_duration_ms(broadcast_session, utc_now())
        console.print(f"[bold blue]Session {broadcast_session.id}[/bold blue]")
        console.print(f"  Status: {broadcast_session.status.value}")
        console.print(f"  Started: {_fmt_time(broadcast_session.started_at)}")
        console.print(f"  Ended: {_fmt_time(broadcast_session.ended_at)}")
        console.print(f"  Duration: {format_minutes(duration)} minutes")
        if broadcast_session.finalize_at:
            console.print(f"  Finalize at: {_fmt_time(broadcast_session.finalize_at)}")
        console.print(f"  Tokens: {broadcast_session.total_tokens}")
        console.print(f"  Followers: {broadcast_session.followers_gained:+d}")
        console.print(f"  Peak viewers: {broadcast_session.peak_viewers}")
        console.print(f"  Avg viewers: {broadcast_session.avg_viewers:.1f}")
        console.print(f"  Unique visitors: {broadcast_session.unique_visitors}")
        if broadcast_session.room_subject:
            console.print(f"  Room subject: {broadcast_session.room_subject}")

        console.print()
        console.print(f"[bold]Segments ({len(segments)}):[/bold]")
        for segment in segments:
            console.print(
                f"  {_fmt_time(segment.started_at)} -> {_fmt_time(segment.ended_at)} "
                f"({segment.kind.value}) {segment.event_count} events"
            )


@app.command()
def finalize() -> None:
    """Finalize ended sessions whose summary delay has passed."""
    from streamledger.db.connection import db_session
    from streamledger.sessions.finalizer import SessionFinalizer

    _init_logging()
    with db_session() as session:
        finalized = SessionFinalizer(session).finalize_ready()
        finalized_ids = [str(s.id) for s in finalized]

    if not finalized_ids:
        console.print("[green]✓ No sessions ready to finalize[/green]")
        return
    console.print(f"[green]✓ Finalized {len(finalized_ids)} session(s)[/green]")
    for session_id in finalized_ids:
        console.print(f"  {session_id}")


@app.command()
def unlock(
    force: bool = typer.Option(False, "--force", help="Do not ask for confirmation"),
) -> None:
    """Release a rebuild lock left behind by a crashed run."""
    from streamledger.config import settings
    from streamledger.db.connection import db_session
    from streamledger.db.repositories import RebuildLockRepository

    with db_session() as session:
        locks = RebuildLockRepository(session)
        lock = locks.get(settings.broadcaster)
        if lock is None:
            console.print(f"[green]✓ No rebuild lock held for {settings.broadcaster}[/green]")
            return
        console.print(f"Lock held by {lock.holder} since {_fmt_time(lock.acquired_at)}")
        if not force and not typer.confirm("Release it?"):
            raise typer.Exit(1)
        locks.release(settings.broadcaster)

    console.print("[green]✓ Rebuild lock released[/green]")


@app.command("init-db")
def init_db_command() -> None:
    """Create database tables (development / SQLite deployments)."""
    from streamledger.db.connection import check_connection, init_db

    if not check_connection():
        console.print("[bold red]Error:[/bold red] Cannot connect to database")
        raise typer.Exit(1)
    init_db()
    console.print("[green]✓ Database tables created[/green]")


@app.command()
def migrate(
    revision: str = typer.Option("head", "--revision", "-r", help="Target revision"),
) -> None:
    """Apply Alembic schema migrations (PostgreSQL deployments)."""
    from alembic import command
    from alembic.config import Config

    from streamledger.db import migrations

    _init_logging()

    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(Path(migrations.__file__).parent))
    try:
        command.upgrade(alembic_cfg, revision)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] Migration failed: {e}")
        raise typer.Exit(1)
    console.print(f"[green]✓ Database upgraded to {revision}[/green]")


if __name__ == "__main__":
    app()

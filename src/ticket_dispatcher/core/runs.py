"""Agent run records: start, classify, complete, and stale-run sweeping."""

import json
import logging
import sqlite3
from datetime import datetime, timedelta

from ticket_dispatcher.config import MIN_OUTPUT_CHARS, STALE_RUN_MINUTES
from ticket_dispatcher.core.runner import RunResult
from ticket_dispatcher.db.models import (
    RUN_ABANDONED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    RUN_TIMEOUT,
    AgentRun,
    parse_dt,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


def start_run(
    db: sqlite3.Connection,
    ticket_id: int,
    persona_id: str,
    phase: str,
    tools: list[str],
    session_dir: str | None = None,
    dispatch_source: str = "heartbeat",
    now: datetime | None = None,
) -> AgentRun:
    """Insert a running row. Any other running row for the persona is abandoned first."""
    now = now or utcnow()
    abandoned = db.execute(
        """UPDATE agent_runs SET status = ?, completed_at = ?
           WHERE persona_id = ? AND status = ?""",
        (RUN_ABANDONED, to_iso(now), persona_id, RUN_RUNNING),
    ).rowcount
    if abandoned:
        logger.warning("Abandoned %d stale run(s) for persona %s", abandoned, persona_id)
    cur = db.execute(
        """INSERT INTO agent_runs
           (ticket_id, persona_id, phase, status, tools, session_dir, dispatch_source, started_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (ticket_id, persona_id, phase, RUN_RUNNING, json.dumps(tools),
         session_dir, dispatch_source, to_iso(now)),
    )
    db.commit()
    return _get(db, cur.lastrowid)


def classify_outcome(result: RunResult, min_output: int = MIN_OUTPUT_CHARS) -> tuple[str, str | None]:
    """Map a process result to (status, error_message)."""
    if result.timed_out:
        return RUN_TIMEOUT, "timed out"
    content = result.stdout.strip()
    if result.exit_code == 0 and len(content) > min_output:
        return RUN_COMPLETED, None
    return RUN_FAILED, f"exit code {result.exit_code}, output {len(content)} chars"


def complete_run(
    db: sqlite3.Connection,
    run_id: int,
    status: str,
    error_message: str | None = None,
    now: datetime | None = None,
) -> AgentRun | None:
    """Finalize a run with its terminal status and duration."""
    now = now or utcnow()
    run = _get(db, run_id)
    if not run:
        return None
    duration_ms = None
    if run.started_at:
        duration_ms = int((now - run.started_at).total_seconds() * 1000)
    db.execute(
        """UPDATE agent_runs
           SET status = ?, completed_at = ?, duration_ms = ?, error_message = ?
           WHERE id = ?""",
        (status, to_iso(now), duration_ms, error_message, run_id),
    )
    db.commit()
    return _get(db, run_id)


def touch_run_report(
    db: sqlite3.Connection,
    ticket_id: int,
    persona_id: str | None,
    now: datetime | None = None,
):
    """Record a progress report on the active run for this ticket."""
    now = now or utcnow()
    query = "UPDATE agent_runs SET last_report_at = ? WHERE ticket_id = ? AND status = ?"
    params: list = [to_iso(now), ticket_id, RUN_RUNNING]
    if persona_id:
        query += " AND persona_id = ?"
        params.append(persona_id)
    db.execute(query, params)
    db.commit()


def sweep_stale_runs(
    db: sqlite3.Connection,
    now: datetime | None = None,
    threshold: timedelta = timedelta(minutes=STALE_RUN_MINUTES),
) -> int:
    """Reclassify running rows older than the threshold as timed out."""
    now = now or utcnow()
    cur = db.execute(
        """UPDATE agent_runs
           SET status = ?, completed_at = ?, error_message = 'stale: no completion recorded'
           WHERE status = ? AND datetime(started_at) < datetime(?)""",
        (RUN_TIMEOUT, to_iso(now), RUN_RUNNING, to_iso(now - threshold)),
    )
    db.commit()
    if cur.rowcount:
        logger.info("Marked %d stale run(s) as timeout", cur.rowcount)
    return cur.rowcount


def list_runs(
    db: sqlite3.Connection,
    status: str | None = None,
    ticket_id: int | None = None,
    limit: int = 50,
    now: datetime | None = None,
) -> list[AgentRun]:
    """List runs newest first. Stale running rows are swept before reading."""
    sweep_stale_runs(db, now)
    query = "SELECT * FROM agent_runs WHERE 1=1"
    params: list = []
    if status:
        query += " AND status = ?"
        params.append(status)
    if ticket_id is not None:
        query += " AND ticket_id = ?"
        params.append(ticket_id)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent_run(r) for r in rows]


def get_run(db: sqlite3.Connection, run_id: int, now: datetime | None = None) -> AgentRun | None:
    sweep_stale_runs(db, now)
    return _get(db, run_id)


def has_running_run(db: sqlite3.Connection, ticket_id: int, persona_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM agent_runs WHERE ticket_id = ? AND persona_id = ? AND status = ? LIMIT 1",
        (ticket_id, persona_id, RUN_RUNNING),
    ).fetchone()
    return row is not None


def running_personas(db: sqlite3.Connection) -> set[str]:
    """Persona ids with a live run from any source."""
    rows = db.execute(
        "SELECT DISTINCT persona_id FROM agent_runs WHERE status = ?", (RUN_RUNNING,)
    ).fetchall()
    return {row["persona_id"] for row in rows}


def _get(db: sqlite3.Connection, run_id: int) -> AgentRun | None:
    row = db.execute("SELECT * FROM agent_runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def _parse_tools(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(t) for t in value] if isinstance(value, list) else []


def _row_to_agent_run(row: sqlite3.Row) -> AgentRun:
    return AgentRun(
        id=row["id"],
        ticket_id=row["ticket_id"],
        persona_id=row["persona_id"],
        phase=row["phase"],
        status=row["status"],
        tools=_parse_tools(row["tools"]),
        session_dir=row["session_dir"],
        dispatch_source=row["dispatch_source"],
        started_at=parse_dt(row["started_at"]),
        last_report_at=parse_dt(row["last_report_at"]),
        completed_at=parse_dt(row["completed_at"]),
        duration_ms=row["duration_ms"],
        error_message=row["error_message"],
    )

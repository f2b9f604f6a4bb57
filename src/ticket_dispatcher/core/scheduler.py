"""Work scheduler: which tickets are actionable, in what order, and which phase they need."""

import sqlite3
from datetime import datetime, timedelta

from ticket_dispatcher.config import CANDIDATES_PER_PROJECT, LOCK_WINDOW_MINUTES
from ticket_dispatcher.core.tickets import _row_to_ticket
from ticket_dispatcher.db.models import (
    AWAITING_APPROVAL,
    PHASE_IMPLEMENT,
    PHASE_PLAN,
    PHASE_RESEARCH,
    TERMINAL_STATES,
    Ticket,
    to_iso,
)


def get_actionable_tickets(
    db: sqlite3.Connection,
    project_id: int,
    now: datetime,
    lock_window: timedelta = timedelta(minutes=LOCK_WINDOW_MINUTES),
    limit: int = CANDIDATES_PER_PROJECT,
) -> list[Ticket]:
    """Unlocked, non-terminal tickets of a project in dispatch order.

    Human feedback first, then tickets bounced back from verification, then
    in-flight implementation, then unstarted work; priority and age break ties.
    """
    placeholders = ", ".join("?" for _ in TERMINAL_STATES)
    rows = db.execute(
        f"""SELECT * FROM tickets
            WHERE project_id = ?
              AND state NOT IN ({placeholders})
              AND (last_agent_activity IS NULL
                   OR datetime(last_agent_activity) < datetime(?))
            ORDER BY
              CASE WHEN last_human_comment_at IS NOT NULL THEN 1 ELSE 2 END,
              CASE WHEN returned_from_verification = 1 THEN 1 ELSE 2 END,
              CASE WHEN state = 'building' THEN 1 ELSE 2 END,
              CASE WHEN state = 'backlog' THEN 1 ELSE 2 END,
              priority DESC,
              datetime(created_at) ASC,
              id ASC
            LIMIT ?""",
        (project_id, *TERMINAL_STATES, to_iso(now - lock_window), limit),
    ).fetchall()
    return [_row_to_ticket(r) for r in rows]


def needed_phase(ticket: Ticket) -> str:
    """Next phase for a ticket, or AWAITING_APPROVAL when a human must sign off."""
    if not ticket.research_completed_at:
        return PHASE_RESEARCH
    if not ticket.research_approved_at:
        return AWAITING_APPROVAL
    if not ticket.plan_completed_at:
        return PHASE_PLAN
    if not ticket.plan_approved_at:
        return AWAITING_APPROVAL
    return PHASE_IMPLEMENT

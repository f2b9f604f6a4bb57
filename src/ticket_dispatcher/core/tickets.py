"""Ticket, comment, and document operations."""

import re
import sqlite3
from datetime import datetime

from ticket_dispatcher.db.models import (
    DOCUMENT_TYPES,
    PHASE_PLAN,
    PHASE_RESEARCH,
    TICKET_STATES,
    Comment,
    Document,
    Ticket,
    parse_dt,
    to_iso,
    utcnow,
)

_UNCHECKED = re.compile(r"^(\s*)-\s*\[ \]")
_CHECKED = re.compile(r"^(\s*)-\s*\[x\]", re.IGNORECASE)


def create_ticket(
    db: sqlite3.Connection,
    title: str,
    project_id: int,
    description: str = "",
    type: str = "feature",
    priority: int = 0,
    acceptance_criteria: str | None = None,
) -> Ticket:
    """Create a new ticket in the backlog."""
    cur = db.execute(
        """INSERT INTO tickets (title, description, type, priority, project_id, acceptance_criteria)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (title, description, type, priority, project_id, acceptance_criteria),
    )
    db.commit()
    return get_ticket(db, cur.lastrowid)


def get_ticket(db: sqlite3.Connection, ticket_id: int) -> Ticket | None:
    """Get a ticket by ID."""
    row = db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)).fetchone()
    if not row:
        return None
    return _row_to_ticket(row)


def set_state(db: sqlite3.Connection, ticket_id: int, state: str):
    if state not in TICKET_STATES:
        raise ValueError(f"Invalid state: {state}")
    db.execute("UPDATE tickets SET state = ? WHERE id = ?", (state, ticket_id))
    db.commit()


# ── Soft lock ───────────────────────────────────────────────────────────────


def mark_agent_activity(db: sqlite3.Connection, ticket_id: int, persona_id: str, now: datetime):
    """Stamp the soft lock and assignee."""
    db.execute(
        "UPDATE tickets SET last_agent_activity = ?, assignee_id = ? WHERE id = ?",
        (to_iso(now), persona_id, ticket_id),
    )
    db.commit()


def mark_picked_up(db: sqlite3.Connection, ticket_id: int, now: datetime):
    """Clear the human-comment and returned-from-verification markers."""
    db.execute(
        """UPDATE tickets
           SET last_human_comment_at = NULL,
               returned_from_verification = 0,
               last_agent_activity = ?
           WHERE id = ?""",
        (to_iso(now), ticket_id),
    )
    db.commit()


def clear_lock(db: sqlite3.Connection, ticket_id: int):
    """Release the soft lock so the next cycle can retry."""
    db.execute(
        "UPDATE tickets SET last_agent_activity = NULL, assignee_id = NULL WHERE id = ?",
        (ticket_id,),
    )
    db.commit()


def refresh_activity(db: sqlite3.Connection, ticket_id: int, now: datetime):
    db.execute(
        "UPDATE tickets SET last_agent_activity = ? WHERE id = ?",
        (to_iso(now), ticket_id),
    )
    db.commit()


# ── Phase bookkeeping ───────────────────────────────────────────────────────


def mark_phase_completed(
    db: sqlite3.Connection,
    ticket_id: int,
    phase: str,
    persona_id: str,
    now: datetime,
):
    """Record research/plan completion. Research completion also leaves the backlog."""
    if phase == PHASE_RESEARCH:
        db.execute(
            """UPDATE tickets
               SET research_completed_at = ?, research_completed_by = ?,
                   state = CASE WHEN state = 'backlog' THEN 'planning' ELSE state END
               WHERE id = ?""",
            (to_iso(now), persona_id, ticket_id),
        )
    elif phase == PHASE_PLAN:
        db.execute(
            "UPDATE tickets SET plan_completed_at = ?, plan_completed_by = ? WHERE id = ?",
            (to_iso(now), persona_id, ticket_id),
        )
    else:
        raise ValueError(f"Phase has no completion marker: {phase}")
    db.commit()


def approve_phase(
    db: sqlite3.Connection,
    ticket_id: int,
    phase: str,
    approved_by: str = "human",
    now: datetime | None = None,
) -> Ticket:
    """Approve a completed research or plan phase."""
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        raise ValueError(f"Ticket not found: {ticket_id}")
    now = now or utcnow()
    if phase == PHASE_RESEARCH:
        if not ticket.research_completed_at:
            raise ValueError(f"Ticket {ticket_id} has no completed research to approve")
        db.execute(
            "UPDATE tickets SET research_approved_at = ?, research_approved_by = ? WHERE id = ?",
            (to_iso(now), approved_by, ticket_id),
        )
    elif phase == PHASE_PLAN:
        if not ticket.plan_completed_at:
            raise ValueError(f"Ticket {ticket_id} has no completed plan to approve")
        db.execute(
            "UPDATE tickets SET plan_approved_at = ?, plan_approved_by = ? WHERE id = ?",
            (to_iso(now), approved_by, ticket_id),
        )
    else:
        raise ValueError(f"Phase cannot be approved: {phase}")
    db.commit()
    return get_ticket(db, ticket_id)


def check_criterion(db: sqlite3.Connection, ticket_id: int, index: int) -> dict:
    """Check off the index-th acceptance-criteria checkbox (0-based).

    Already-checked boxes count as success. Raises ValueError when the ticket
    has no criteria or the index is out of range.
    """
    if index < 0:
        raise ValueError("index must be a non-negative number")
    ticket = get_ticket(db, ticket_id)
    if not ticket:
        raise LookupError(f"Ticket not found: {ticket_id}")
    if not ticket.acceptance_criteria:
        raise ValueError("no acceptance criteria")

    lines = ticket.acceptance_criteria.split("\n")
    count = 0
    found = False
    for i, line in enumerate(lines):
        unchecked = _UNCHECKED.match(line)
        if not unchecked and not _CHECKED.match(line):
            continue
        if count == index:
            found = True
            if unchecked:
                lines[i] = line.replace("- [ ]", "- [x]", 1)
            break
        count += 1

    if not found:
        raise ValueError(f"checkbox index {index} not found")

    criteria = "\n".join(lines)
    db.execute("UPDATE tickets SET acceptance_criteria = ? WHERE id = ?", (criteria, ticket_id))
    db.commit()
    all_checked = not any(_UNCHECKED.match(line) for line in lines)
    return {"ok": True, "acceptanceCriteria": criteria, "allChecked": all_checked}


# ── Comments ────────────────────────────────────────────────────────────────


def post_comment(
    db: sqlite3.Connection,
    ticket_id: int,
    content: str,
    author_type: str = "agent",
    persona_id: str | None = None,
    now: datetime | None = None,
) -> Comment:
    """Append a comment and bump the ticket's comment count."""
    created = to_iso(now or utcnow())
    cur = db.execute(
        """INSERT INTO comments (ticket_id, author_type, persona_id, content, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (ticket_id, author_type, persona_id, content, created),
    )
    db.execute(
        "UPDATE tickets SET comment_count = comment_count + 1 WHERE id = ?",
        (ticket_id,),
    )
    if author_type == "human":
        db.execute(
            "UPDATE tickets SET last_human_comment_at = ? WHERE id = ?",
            (created, ticket_id),
        )
    db.commit()
    row = db.execute("SELECT * FROM comments WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_comment(row)


def list_recent_comments(db: sqlite3.Connection, ticket_id: int, limit: int = 10) -> list[Comment]:
    """Most recent comments, returned oldest first."""
    rows = db.execute(
        "SELECT * FROM comments WHERE ticket_id = ? ORDER BY id DESC LIMIT ?",
        (ticket_id, limit),
    ).fetchall()
    return [_row_to_comment(r) for r in reversed(rows)]


# ── Documents ───────────────────────────────────────────────────────────────


def latest_document(db: sqlite3.Connection, ticket_id: int, doc_type: str) -> Document | None:
    row = db.execute(
        """SELECT * FROM ticket_documents WHERE ticket_id = ? AND type = ?
           ORDER BY version DESC LIMIT 1""",
        (ticket_id, doc_type),
    ).fetchone()
    if not row:
        return None
    return _row_to_document(row)


def latest_version(db: sqlite3.Connection, ticket_id: int, doc_type: str) -> int:
    row = db.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM ticket_documents WHERE ticket_id = ? AND type = ?",
        (ticket_id, doc_type),
    ).fetchone()
    return row["v"]


def list_documents(db: sqlite3.Connection, ticket_id: int) -> list[Document]:
    rows = db.execute(
        "SELECT * FROM ticket_documents WHERE ticket_id = ? ORDER BY type, version DESC",
        (ticket_id,),
    ).fetchall()
    return [_row_to_document(r) for r in rows]


def save_document(
    db: sqlite3.Connection,
    ticket_id: int,
    doc_type: str,
    content: str,
    persona_id: str | None = None,
) -> Document:
    """Append a new version of a document (max + 1). Versions are never rewritten."""
    if doc_type not in DOCUMENT_TYPES:
        raise ValueError(f"Invalid document type: {doc_type}")
    content = content.strip()
    if not content:
        raise ValueError("Content is required")
    version = latest_version(db, ticket_id, doc_type) + 1
    cur = db.execute(
        """INSERT INTO ticket_documents (ticket_id, type, content, version, author_persona_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (ticket_id, doc_type, content, version, persona_id, to_iso(utcnow())),
    )
    db.commit()
    row = db.execute("SELECT * FROM ticket_documents WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_document(row)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_ticket(row: sqlite3.Row) -> Ticket:
    return Ticket(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        type=row["type"],
        state=row["state"],
        priority=row["priority"],
        project_id=row["project_id"],
        assignee_id=row["assignee_id"],
        acceptance_criteria=row["acceptance_criteria"],
        comment_count=row["comment_count"] or 0,
        last_agent_activity=parse_dt(row["last_agent_activity"]),
        last_human_comment_at=parse_dt(row["last_human_comment_at"]),
        returned_from_verification=bool(row["returned_from_verification"]),
        research_completed_at=parse_dt(row["research_completed_at"]),
        research_completed_by=row["research_completed_by"],
        research_approved_at=parse_dt(row["research_approved_at"]),
        research_approved_by=row["research_approved_by"],
        plan_completed_at=parse_dt(row["plan_completed_at"]),
        plan_completed_by=row["plan_completed_by"],
        plan_approved_at=parse_dt(row["plan_approved_at"]),
        plan_approved_by=row["plan_approved_by"],
        created_at=parse_dt(row["created_at"]),
    )


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        ticket_id=row["ticket_id"],
        author_type=row["author_type"],
        content=row["content"],
        persona_id=row["persona_id"],
        created_at=parse_dt(row["created_at"]),
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        ticket_id=row["ticket_id"],
        type=row["type"],
        content=row["content"],
        version=row["version"],
        author_persona_id=row["author_persona_id"],
        created_at=parse_dt(row["created_at"]),
    )

"""Route recent @-mentions in agent comments to the mentioned persona."""

import logging
import re
import sqlite3
from datetime import datetime, timedelta

from ticket_dispatcher.config import MENTION_WINDOW_MINUTES
from ticket_dispatcher.core.personas import list_personas
from ticket_dispatcher.core.runs import has_running_run
from ticket_dispatcher.db.models import TERMINAL_STATES, Persona, to_iso
from ticket_dispatcher.integrations.api import ApiClient

logger = logging.getLogger(__name__)


def mention_pattern(persona: Persona) -> re.Pattern:
    """@name or @role, not matching inside a longer handle."""
    names = [re.escape(persona.name)]
    if persona.role:
        names.append(re.escape(persona.role))
    return re.compile(r"(?<![\w])@(?:" + "|".join(names) + r")(?![\w])", re.IGNORECASE)


def _has_replied_since(db: sqlite3.Connection, ticket_id: int, persona_id: str, comment_id: int) -> bool:
    row = db.execute(
        "SELECT 1 FROM comments WHERE ticket_id = ? AND persona_id = ? AND id > ? LIMIT 1",
        (ticket_id, persona_id, comment_id),
    ).fetchone()
    return row is not None


def dispatch_mentions(
    db: sqlite3.Connection,
    api: ApiClient,
    now: datetime,
    window: timedelta = timedelta(minutes=MENTION_WINDOW_MINUTES),
) -> int:
    """Fire a conversational dispatch for each unanswered mention. Returns the count fired."""
    placeholders = ", ".join("?" for _ in TERMINAL_STATES)
    rows = db.execute(
        f"""SELECT c.id, c.ticket_id, c.persona_id, c.content, t.project_id
            FROM comments c JOIN tickets t ON t.id = c.ticket_id
            WHERE c.author_type = 'agent'
              AND datetime(c.created_at) >= datetime(?)
              AND t.state NOT IN ({placeholders})
            ORDER BY c.id ASC""",
        (to_iso(now - window), *TERMINAL_STATES),
    ).fetchall()
    if not rows:
        return 0

    personas = list_personas(db)
    patterns = {p.id: mention_pattern(p) for p in personas}
    fired: set[tuple[int, str]] = set()

    for row in rows:
        ticket_id = row["ticket_id"]
        for persona in personas:
            if persona.id == row["persona_id"] or not persona.in_scope(row["project_id"]):
                continue
            if (ticket_id, persona.id) in fired:
                continue
            if not patterns[persona.id].search(row["content"]):
                continue
            if has_running_run(db, ticket_id, persona.id):
                logger.info("Mention of %s on %s skipped: run in progress", persona.name, ticket_id)
                continue
            if _has_replied_since(db, ticket_id, persona.id, row["id"]):
                continue

            fired.add((ticket_id, persona.id))
            logger.info("Mention: dispatching %s on ticket %s", persona.name, ticket_id)
            api.dispatch(ticket_id, row["content"], persona.id)

    return len(fired)

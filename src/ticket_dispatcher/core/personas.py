"""Personas and the role-based matcher that assigns them to ticket phases."""

import json
import logging
import sqlite3

from ticket_dispatcher.db.models import PHASE_RESEARCH, Persona

logger = logging.getLogger(__name__)

RESEARCH_ROLE = "researcher"
IMPLEMENTER_ROLE = "developer"


def create_persona(
    db: sqlite3.Connection,
    persona_id: str,
    name: str,
    role: str = IMPLEMENTER_ROLE,
    personality: str | None = None,
    skills: list[str] | None = None,
    project_id: int | None = None,
) -> Persona:
    """Create a persona. project_id=None makes it company-wide."""
    db.execute(
        """INSERT INTO personas (id, name, role, personality, skills, project_id)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (persona_id, name, role, personality, json.dumps(skills or []), project_id),
    )
    db.commit()
    return get_persona(db, persona_id)


def get_persona(db: sqlite3.Connection, persona_id: str) -> Persona | None:
    row = db.execute("SELECT * FROM personas WHERE id = ?", (persona_id,)).fetchone()
    if not row:
        return None
    return _row_to_persona(row)


def list_personas(db: sqlite3.Connection) -> list[Persona]:
    rows = db.execute("SELECT * FROM personas ORDER BY rowid ASC").fetchall()
    return [_row_to_persona(r) for r in rows]


def required_role(phase: str, personas: list[Persona], project_id: int | None = None) -> str:
    """Research goes to a researcher when one is in scope; everything else to a developer."""
    if phase == PHASE_RESEARCH:
        in_scope = (p for p in personas if project_id is None or p.in_scope(project_id))
        if any(p.role == RESEARCH_ROLE for p in in_scope):
            return RESEARCH_ROLE
    return IMPLEMENTER_ROLE


def match_persona(
    phase: str,
    project_id: int,
    personas: list[Persona],
    busy: set[str],
) -> Persona | None:
    """First persona with the required role, scoped to the project, not busy this cycle."""
    role = required_role(phase, personas, project_id)
    for persona in personas:
        if persona.role != role or persona.id in busy:
            continue
        if not persona.in_scope(project_id):
            continue
        return persona
    return None


def _parse_skills(raw: str | None, persona_id: str) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Persona %s has malformed skills JSON; ignoring", persona_id)
        return ()
    if not isinstance(value, list):
        return ()
    return tuple(str(s) for s in value)


def _row_to_persona(row: sqlite3.Row) -> Persona:
    return Persona(
        id=row["id"],
        name=row["name"],
        role=row["role"] or IMPLEMENTER_ROLE,
        personality=row["personality"],
        skills=_parse_skills(row["skills"], row["id"]),
        project_id=row["project_id"],
    )

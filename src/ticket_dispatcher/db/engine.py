"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    github_repo TEXT,
    local_path TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS personas (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT DEFAULT 'developer',
    personality TEXT,
    skills TEXT,
    project_id INTEGER REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS tickets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT,
    type TEXT NOT NULL DEFAULT 'feature' CHECK (type IN ('feature', 'bug', 'chore')),
    state TEXT NOT NULL DEFAULT 'backlog'
        CHECK (state IN ('backlog', 'planning', 'building', 'test', 'shipped')),
    priority INTEGER NOT NULL DEFAULT 0,
    project_id INTEGER REFERENCES projects(id),
    assignee_id TEXT REFERENCES personas(id),
    acceptance_criteria TEXT,
    comment_count INTEGER DEFAULT 0,
    last_agent_activity TEXT,
    last_human_comment_at TEXT,
    returned_from_verification INTEGER DEFAULT 0,
    research_completed_at TEXT,
    research_completed_by TEXT REFERENCES personas(id),
    research_approved_at TEXT,
    research_approved_by TEXT,
    plan_completed_at TEXT,
    plan_completed_by TEXT REFERENCES personas(id),
    plan_approved_at TEXT,
    plan_approved_by TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    author_type TEXT NOT NULL CHECK (author_type IN ('human', 'agent', 'system')),
    persona_id TEXT REFERENCES personas(id),
    content TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS ticket_documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
    type TEXT NOT NULL CHECK (type IN ('research', 'implementation_plan', 'design')),
    content TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    author_persona_id TEXT REFERENCES personas(id),
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(ticket_id, type, version)
);

CREATE TABLE IF NOT EXISTS agent_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id INTEGER NOT NULL REFERENCES tickets(id),
    persona_id TEXT NOT NULL REFERENCES personas(id),
    phase TEXT NOT NULL,
    status TEXT DEFAULT 'running'
        CHECK (status IN ('running', 'completed', 'failed', 'timeout', 'abandoned')),
    tools TEXT,
    session_dir TEXT,
    dispatch_source TEXT,
    started_at TEXT DEFAULT (datetime('now')),
    last_report_at TEXT,
    completed_at TEXT,
    duration_ms INTEGER,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_agent_runs_status ON agent_runs(status, persona_id);
CREATE INDEX IF NOT EXISTS idx_comments_ticket ON comments(ticket_id, created_at);
"""


class StoreNotFoundError(Exception):
    """Raised when the persisted store does not exist."""


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = _connect(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open an existing store. Raises StoreNotFoundError if the file is missing."""
    if not db_path.exists():
        raise StoreNotFoundError(f"database not found at {db_path}")
    conn = _connect(db_path)
    conn.executescript(SCHEMA)
    return conn


@contextmanager
def get_db(db_path: Path, create: bool = False):
    """Context manager for database connections."""
    conn = init_db(db_path) if create else open_db(db_path)
    try:
        yield conn
    finally:
        conn.close()

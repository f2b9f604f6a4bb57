"""Project management operations."""

import sqlite3

from ticket_dispatcher.db.models import Project, parse_dt


def create_project(
    db: sqlite3.Connection,
    name: str,
    slug: str,
    github_repo: str | None = None,
    local_path: str | None = None,
) -> Project:
    """Create a new project."""
    cur = db.execute(
        """INSERT INTO projects (name, slug, github_repo, local_path)
           VALUES (?, ?, ?, ?)""",
        (name, slug, github_repo, local_path),
    )
    db.commit()
    return get_project(db, cur.lastrowid)


def get_project(db: sqlite3.Connection, project_id: int) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def get_project_by_slug(db: sqlite3.Connection, slug: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE slug = ?", (slug,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects in creation order."""
    rows = db.execute("SELECT * FROM projects ORDER BY id ASC").fetchall()
    return [_row_to_project(r) for r in rows]


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        github_repo=row["github_repo"],
        local_path=row["local_path"],
        created_at=parse_dt(row["created_at"]),
    )

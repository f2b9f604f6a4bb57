"""Key/value settings persisted in the store."""

import sqlite3


def get_setting(db: sqlite3.Connection, key: str) -> str | None:
    row = db.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return None
    return row["value"]


def set_setting(db: sqlite3.Connection, key: str, value: str):
    db.execute(
        """INSERT INTO settings (key, value) VALUES (?, ?)
           ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = datetime('now')""",
        (key, value),
    )
    db.commit()


def delete_setting(db: sqlite3.Connection, key: str):
    db.execute("DELETE FROM settings WHERE key = ?", (key,))
    db.commit()

"""Session directories: the files handed to and produced by one agent run."""

import json
import sys
from datetime import datetime
from pathlib import Path

from ticket_dispatcher.db.models import to_iso

MCP_SERVER_NAME = "ticket"


def session_dir_for(sessions_dir: Path, ticket_id: int, phase: str) -> Path:
    return Path(sessions_dir) / f"{ticket_id}-{phase}"


def write_session(
    sessions_dir: Path,
    ticket_id: int,
    phase: str,
    persona_id: str,
    system_prompt: str,
    task: str,
    side_channel_url: str,
) -> Path:
    """Write task.md, system-prompt.txt and mcp-config.json. Returns the session dir."""
    session_dir = session_dir_for(sessions_dir, ticket_id, phase)
    session_dir.mkdir(parents=True, exist_ok=True)
    (session_dir / "system-prompt.txt").write_text(system_prompt)
    (session_dir / "task.md").write_text(task)
    write_mcp_config(session_dir, ticket_id, persona_id, side_channel_url)
    return session_dir


def write_mcp_config(session_dir: Path, ticket_id: int, persona_id: str, side_channel_url: str) -> Path:
    """Register the ticket capability server for this run only.

    The server calls back into `td serve`, not the external application.
    """
    config = {
        "mcpServers": {
            MCP_SERVER_NAME: {
                "command": sys.executable,
                "args": ["-m", "ticket_dispatcher.cli", "mcp", "serve"],
                "env": {
                    "TD_TICKET_ID": str(ticket_id),
                    "TD_PERSONA_ID": persona_id,
                    "TD_SIDE_CHANNEL_URL": side_channel_url,
                },
            }
        }
    }
    path = session_dir / "mcp-config.json"
    path.write_text(json.dumps(config, indent=2))
    return path


def append_event(session_dir: Path, event: str, exit_code: int, output_length: int,
                 stderr_length: int, now: datetime):
    line = json.dumps({
        "event": event,
        "exitCode": exit_code,
        "outputLength": output_length,
        "stderrLength": stderr_length,
        "timestamp": to_iso(now),
    })
    with open(session_dir / "session.jsonl", "a") as f:
        f.write(line + "\n")

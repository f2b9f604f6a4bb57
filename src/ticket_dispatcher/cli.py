"""CLI entry point for the ticket dispatcher."""

import json
import logging
import sys

import click

from ticket_dispatcher.config import SERVE_HOST, SERVE_PORT, Config, get_config
from ticket_dispatcher.core import pause as pause_mod
from ticket_dispatcher.core import personas as personas_mod
from ticket_dispatcher.core import projects as projects_mod
from ticket_dispatcher.core import runs as runs_mod
from ticket_dispatcher.core import tickets as tickets_mod
from ticket_dispatcher.db.engine import StoreNotFoundError, get_db
from ticket_dispatcher.db.models import utcnow

logger = logging.getLogger("ticket_dispatcher.cli")

LOG_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s %(message)s"


def _setup_logging(config: Config):
    root = logging.getLogger("ticket_dispatcher")
    root.setLevel(logging.INFO)
    root.handlers.clear()
    fmt = logging.Formatter(LOG_FORMAT)

    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    config.log_file.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(config.log_file, encoding="utf-8")
    fh.setFormatter(fmt)
    root.addHandler(fh)


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """td - ticket dispatcher CLI"""
    pass


@main.command("init-db")
def init_db_cmd():
    """Create the store if it does not exist."""
    config = get_config()
    with get_db(config.db_path, create=True):
        click.echo(f"Store ready at {config.db_path}")


@main.command("dispatch")
@click.option("--limit", default=None, type=int, help="Max jobs this cycle")
@click.option("--concurrency", default=None, type=int, help="Worker pool size")
def dispatch_cmd(limit, concurrency):
    """Run one dispatch cycle (call from cron or a timer)."""
    from ticket_dispatcher.core.dispatch import Dispatcher

    config = get_config()
    if concurrency:
        config.concurrency = max(1, concurrency)
    _setup_logging(config)

    try:
        result = Dispatcher(config).run_cycle(limit=limit)
    except StoreNotFoundError as e:
        logger.error("%s", e)
        sys.exit(1)

    if result.aborted:
        click.echo(f"Skipped: {result.aborted}")
        return
    click.echo(
        f"{result.dispatched} dispatched, {result.completed} completed, "
        f"{result.skipped} skipped, {result.mentions} mention(s)"
    )


@main.command("status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_cmd(json_output):
    """Show heartbeat and pause status."""
    with _get_db() as db:
        status = pause_mod.get_heartbeat_status(db)
        state = pause_mod.load_pause_state(db)
        now = utcnow()
        status["quotaPaused"] = state.quota_active(now)
        status["quotaPausedUntil"] = (
            state.quota_paused_until.isoformat() if state.quota_paused_until else None
        )

    if json_output:
        click.echo(json.dumps(status, indent=2))
        return
    click.echo(f"Heartbeat: {status['status']}")
    click.echo(f"  Last ping: {status['lastPing'] or '-'}")
    click.echo(f"  Last completed: {status['lastCompleted'] or '-'}")
    if status["lastResult"]:
        r = status["lastResult"]
        click.echo(f"  Last result: {r['dispatched']} dispatched, {r['completed']} completed, {r['skipped']} skipped")
    if status["authExpired"]:
        click.echo("  Auth: EXPIRED")
    if status["quotaPaused"]:
        click.echo(f"  Quota paused until {status['quotaPausedUntil']}")


@main.command("runs")
@click.option("--status", default=None, help="Filter: running, completed, failed, timeout, abandoned")
@click.option("--limit", default=20, type=int)
def runs_cmd(status, limit):
    """List agent runs."""
    with _get_db() as db:
        runs = runs_mod.list_runs(db, status=status, limit=limit)
    if not runs:
        click.echo("No runs found.")
        return
    for r in runs:
        duration = f" {r.duration_ms // 1000}s" if r.duration_ms is not None else ""
        err = f" ({r.error_message})" if r.error_message else ""
        click.echo(f"  #{r.id} ticket {r.ticket_id} {r.phase} by {r.persona_id}: {r.status}{duration}{err}")


# ── Pause Commands ────────────────────────────────────────────────────────────


@main.group("pause")
def pause_group():
    """Inspect or control the quota pause."""
    pass


@pause_group.command("show")
def pause_show():
    with _get_db() as db:
        state = pause_mod.load_pause_state(db)
    now = utcnow()
    if state.quota_active(now):
        minutes = int(state.remaining(now).total_seconds() // 60)
        click.echo(f"Paused until {state.quota_paused_until.isoformat()} ({minutes} min left)")
        if state.quota_reason:
            click.echo(f"  Reason: {state.quota_reason[:200]}")
    else:
        click.echo("Not paused.")
    if state.auth_expired:
        click.echo("Auth expired: dispatch halted until `td auth clear`.")


@pause_group.command("set")
def pause_set():
    """Pause dispatching until cleared."""
    with _get_db() as db:
        pause_mod.set_manual_pause(db)
    click.echo("Paused.")


@pause_group.command("clear")
def pause_clear():
    """Resume dispatching."""
    with _get_db() as db:
        pause_mod.clear_quota_pause(db)
    click.echo("Pause cleared.")


@main.group("auth")
def auth_group():
    """Credential-expiry flag."""
    pass


@auth_group.command("clear")
def auth_clear():
    """Clear the auth-expired flag after re-authenticating."""
    with _get_db() as db:
        pause_mod.clear_auth_expired(db)
    click.echo("Auth flag cleared.")


# ── Project, Persona, Ticket Commands ─────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("add")
@click.argument("name")
@click.option("--slug", required=True, help="Short unique name, used for worktree paths")
@click.option("--github-repo", default=None, help="Repo name under the repos dir")
@click.option("--local-path", default=None, help="Explicit path to the main checkout")
def project_add(name, slug, github_repo, local_path):
    with _get_db() as db:
        project = projects_mod.create_project(db, name, slug, github_repo, local_path)
    click.echo(f"Project created: {project.id} ({project.slug})")


@main.group("persona")
def persona_group():
    """Manage personas."""
    pass


@persona_group.command("add")
@click.argument("persona_id")
@click.argument("name")
@click.option("--role", default="developer", help="researcher, developer, ...")
@click.option("--project", "project_id", default=None, type=int, help="Project ID (omit for company-wide)")
@click.option("--skills", default=None, help="Comma-separated skills")
@click.option("--personality", default=None)
def persona_add(persona_id, name, role, project_id, skills, personality):
    skill_list = [s.strip() for s in skills.split(",")] if skills else []
    with _get_db() as db:
        persona = personas_mod.create_persona(
            db, persona_id, name, role, personality, skill_list, project_id
        )
    click.echo(f"Persona created: {persona.id} ({persona.name}, {persona.role})")


@main.group("ticket")
def ticket_group():
    """Manage tickets."""
    pass


@ticket_group.command("add")
@click.argument("title")
@click.option("--project", "project_id", required=True, type=int, help="Project ID")
@click.option("--description", "-d", default="", help="Ticket description")
@click.option("--type", "ticket_type", default="feature", type=click.Choice(["feature", "bug", "chore"]))
@click.option("--priority", "-p", default=0, type=int, help="Higher is more urgent")
@click.option("--criteria", default=None, help="Acceptance criteria as a markdown checklist")
def ticket_add(title, project_id, description, ticket_type, priority, criteria):
    with _get_db() as db:
        ticket = tickets_mod.create_ticket(
            db, title, project_id, description, ticket_type, priority, criteria
        )
    click.echo(f"Created ticket: {ticket.id}")
    click.echo(f"  Title: {ticket.title}")
    click.echo(f"  State: {ticket.state}")


@ticket_group.command("approve")
@click.argument("ticket_id", type=int)
@click.argument("phase", type=click.Choice(["research", "plan"]))
@click.option("--by", "approved_by", default="human")
def ticket_approve(ticket_id, phase, approved_by):
    """Approve a completed research or plan phase."""
    with _get_db() as db:
        try:
            tickets_mod.approve_phase(db, ticket_id, phase, approved_by)
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)
    click.echo(f"Ticket {ticket_id}: {phase} approved")


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=SERVE_HOST, help="Host to bind to")
@click.option("--port", default=SERVE_PORT, type=int, help="Port to listen on")
def serve_command(host, port):
    """Start the control/status HTTP API."""
    from ticket_dispatcher.web.app import run_server

    _setup_logging(get_config())
    click.echo(f"Serving on http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the ticket capability server (stdio transport)."""
    from ticket_dispatcher.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

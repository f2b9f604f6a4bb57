"""Tests for the CLI."""

import json
import logging
import os
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from ticket_dispatcher.cli import main
from ticket_dispatcher.config import Config, get_config
from ticket_dispatcher.core import pause as pause_mod
from ticket_dispatcher.core import tickets as tickets_mod
from ticket_dispatcher.db.engine import get_db
from ticket_dispatcher.db.models import utcnow


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {
            "TD_DB_PATH": str(db_path),
            "TD_HOME": tmp,
            "TD_REPOS_DIR": str(Path(tmp) / "repos"),
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), db_path

        logging.getLogger("ticket_dispatcher").handlers.clear()
        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _seed(runner):
    assert runner.invoke(main, ["init-db"]).exit_code == 0
    assert runner.invoke(main, ["project", "add", "Demo", "--slug", "demo"]).exit_code == 0
    assert runner.invoke(main, ["ticket", "add", "Fix CSV import", "--project", "1"]).exit_code == 0


class TestSetup:
    def test_init_db(self, cli_env):
        runner, db_path = cli_env
        result = runner.invoke(main, ["init-db"])
        assert result.exit_code == 0
        assert db_path.exists()

    def test_project_persona_ticket(self, cli_env):
        runner, db_path = cli_env
        _seed(runner)
        result = runner.invoke(
            main, ["persona", "add", "ada", "Ada", "--role", "researcher", "--skills", "python, sql"]
        )
        assert result.exit_code == 0
        assert "ada (Ada, researcher)" in result.output

        result = runner.invoke(
            main, ["ticket", "add", "Second", "--project", "1", "-p", "3", "--criteria", "- [ ] done"]
        )
        assert result.exit_code == 0
        assert "Created ticket: 2" in result.output
        with get_db(db_path) as db:
            ticket = tickets_mod.get_ticket(db, 2)
            assert ticket.priority == 3
            assert ticket.acceptance_criteria == "- [ ] done"

    def test_approve(self, cli_env):
        runner, db_path = cli_env
        _seed(runner)
        runner.invoke(main, ["persona", "add", "dev", "Dev"])

        result = runner.invoke(main, ["ticket", "approve", "1", "research"])
        assert result.exit_code == 1

        with get_db(db_path) as db:
            tickets_mod.mark_phase_completed(db, 1, "research", "dev", utcnow())
        result = runner.invoke(main, ["ticket", "approve", "1", "research", "--by", "alice"])
        assert result.exit_code == 0
        with get_db(db_path) as db:
            assert tickets_mod.get_ticket(db, 1).research_approved_by == "alice"


class TestDispatch:
    def test_missing_store_exits_nonzero(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["dispatch"])
        assert result.exit_code == 1

    def test_paused_cycle_is_skipped(self, cli_env):
        runner, _ = cli_env
        _seed(runner)
        runner.invoke(main, ["pause", "set"])
        result = runner.invoke(main, ["dispatch"])
        assert result.exit_code == 0
        assert "Skipped: quota paused until" in result.output

    def test_cycle_without_personas(self, cli_env):
        runner, _ = cli_env
        _seed(runner)
        result = runner.invoke(main, ["dispatch", "--limit", "1"])
        assert result.exit_code == 0
        assert "0 dispatched, 0 completed, 1 skipped" in result.output


class TestStatus:
    def test_status_json(self, cli_env):
        runner, _ = cli_env
        _seed(runner)
        result = runner.invoke(main, ["status", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "unknown"
        assert data["quotaPaused"] is False

    def test_pause_show_set_clear(self, cli_env):
        runner, _ = cli_env
        _seed(runner)
        assert "Not paused." in runner.invoke(main, ["pause", "show"]).output
        runner.invoke(main, ["pause", "set"])
        assert "Paused until" in runner.invoke(main, ["pause", "show"]).output
        runner.invoke(main, ["pause", "clear"])
        assert "Not paused." in runner.invoke(main, ["pause", "show"]).output

    def test_auth_clear(self, cli_env):
        runner, db_path = cli_env
        _seed(runner)
        with get_db(db_path) as db:
            pause_mod.set_auth_expired(db)
        assert "Auth expired" in runner.invoke(main, ["pause", "show"]).output
        runner.invoke(main, ["auth", "clear"])
        with get_db(db_path) as db:
            assert not pause_mod.load_pause_state(db).auth_expired

    def test_runs_empty(self, cli_env):
        runner, _ = cli_env
        _seed(runner)
        result = runner.invoke(main, ["runs"])
        assert result.exit_code == 0
        assert "No runs found." in result.output


class TestConfig:
    def test_side_channel_points_at_serve(self, cli_env, monkeypatch):
        monkeypatch.delenv("TD_API_BASE_URL", raising=False)
        serve = main.commands["serve"]
        defaults = {p.name: p.default for p in serve.params}
        assert Config().side_channel_url == f"http://{defaults['host']}:{defaults['port']}"
        assert get_config().api_base_url == "http://localhost:3000"

    def test_side_channel_override(self, cli_env, monkeypatch):
        monkeypatch.delenv("TD_API_BASE_URL", raising=False)
        monkeypatch.setenv("TD_SIDE_CHANNEL_URL", "http://10.0.0.5:9000/")
        config = get_config()
        assert config.side_channel_url == "http://10.0.0.5:9000"
        assert config.api_base_url == "http://localhost:3000"

"""Tests for the dispatch cycle, with a fake agent runner and workspace."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ticket_dispatcher.config import Config
from ticket_dispatcher.core import pause
from ticket_dispatcher.core import personas as personas_mod
from ticket_dispatcher.core import projects as projects_mod
from ticket_dispatcher.core import runs as runs_mod
from ticket_dispatcher.core import tickets as tickets_mod
from ticket_dispatcher.core.dispatch import Dispatcher
from ticket_dispatcher.core.runner import RunResult
from ticket_dispatcher.db.engine import StoreNotFoundError, get_db, init_db

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

RESEARCH_OUTPUT = (
    "## Summary\nThe importer drops rows on DST boundaries because it parses naive datetimes.\n\n"
    "## Current State\n" + "Details about src/importer.py:42. " * 10
)
RESEARCH_RESULT = RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0)


class FakeApi:
    def __init__(self):
        self.reauth_calls = 0
        self.dispatched = []

    def reauthorize(self):
        self.reauth_calls += 1
        return {"ok": True}

    def dispatch(self, ticket_id, comment, persona_id, retries=1):
        self.dispatched.append((ticket_id, persona_id))
        return True


class FakeWorkspaces:
    def __init__(self, path):
        self.path = path
        self.calls = []

    def ensure(self, project, ticket_id):
        self.calls.append(ticket_id)
        return self.path


class FakeRunner:
    """Records invocations and returns a canned result, optionally running a hook first."""

    def __init__(self, result, hook=None):
        self.result = result
        self.hook = hook
        self.invocations = []

    def __call__(self, invocation, cancel=None):
        self.invocations.append(invocation)
        if self.hook:
            self.hook(invocation, cancel)
        return self.result


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        config = Config(home_dir=tmp / "home", repos_dir=tmp / "repos", max_jobs=2, concurrency=2)
        db = init_db(config.db_path)
        projects_mod.create_project(db, "Demo", "demo")
        workspace = tmp / "ws"
        workspace.mkdir()
        yield config, db, workspace
        db.close()


def _dispatcher(config, workspace, runner, api=None, workspaces=None):
    return Dispatcher(
        config,
        api=api or FakeApi(),
        runner=runner,
        workspaces=workspaces or FakeWorkspaces(workspace),
        clock=lambda: NOW,
    )


def _approved_for_implement(db, ticket_id):
    tickets_mod.mark_phase_completed(db, ticket_id, "research", "dev", NOW)
    tickets_mod.approve_phase(db, ticket_id, "research", now=NOW)
    tickets_mod.mark_phase_completed(db, ticket_id, "plan", "dev", NOW)
    tickets_mod.approve_phase(db, ticket_id, "plan", now=NOW)


class TestResearchPhase:
    def test_stdout_becomes_research_document(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        t = tickets_mod.create_ticket(db, "Fix CSV import", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        result = _dispatcher(config, workspace, runner).run_cycle()

        assert (result.dispatched, result.completed, result.skipped) == (1, 1, 0)
        ticket = tickets_mod.get_ticket(db, t.id)
        assert ticket.state == "planning"
        assert ticket.research_completed_by == "ada"
        assert ticket.assignee_id == "ada"
        assert ticket.last_agent_activity == NOW

        doc = tickets_mod.latest_document(db, t.id, "research")
        assert doc.version == 1
        assert doc.content == RESEARCH_OUTPUT.strip()

        comment = tickets_mod.list_recent_comments(db, t.id)[-1]
        assert comment.content.startswith("**Research complete**\n\n")
        assert "naive datetimes" in comment.content
        assert comment.persona_id == "ada"

        runs = runs_mod.list_runs(db, now=NOW)
        assert [(r.status, r.phase) for r in runs] == [("completed", "research")]

    def test_invocation_is_read_only(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        tickets_mod.create_ticket(db, "Fix CSV import", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        _dispatcher(config, workspace, runner).run_cycle()

        inv = runner.invocations[0]
        assert inv.cwd == workspace
        assert "Write" not in inv.tools
        assert inv.timeout == 300
        assert inv.task_file.read_text().startswith("# Research Ticket: 1")
        assert str(workspace) in inv.prompt_file.read_text()
        assert (inv.session_dir / "session.jsonl").exists()

        mcp = json.loads(inv.mcp_config.read_text())["mcpServers"]["ticket"]
        assert mcp["env"]["TD_SIDE_CHANNEL_URL"] == config.side_channel_url == "http://127.0.0.1:8787"

    def test_side_channel_document_completes_phase(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        t = tickets_mod.create_ticket(db, "Fix CSV import", 1)

        def save_mid_run(invocation, cancel):
            with get_db(config.db_path) as conn:
                tickets_mod.save_document(conn, t.id, "research", "## Summary\nSaved through the tool channel by the agent.")

        runner = FakeRunner(RunResult(stdout="", stderr="", exit_code=0), hook=save_mid_run)
        result = _dispatcher(config, workspace, runner).run_cycle()

        assert result.completed == 1
        assert tickets_mod.latest_version(db, t.id, "research") == 1
        ticket = tickets_mod.get_ticket(db, t.id)
        assert ticket.research_completed_at == NOW
        assert "tool channel" in tickets_mod.list_recent_comments(db, t.id)[-1].content

    def test_short_output_fails_and_releases_lock(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        t = tickets_mod.create_ticket(db, "Fix CSV import", 1)
        runner = FakeRunner(RunResult(stdout="ok", stderr="", exit_code=0))

        result = _dispatcher(config, workspace, runner).run_cycle()

        assert result.completed == 0
        ticket = tickets_mod.get_ticket(db, t.id)
        assert ticket.last_agent_activity is None
        assert ticket.assignee_id is None
        assert ticket.research_completed_at is None
        assert tickets_mod.latest_document(db, t.id, "research") is None
        run = runs_mod.list_runs(db, now=NOW)[0]
        assert run.status == "failed"
        assert run.error_message == "exit code 0, output 2 chars"

    def test_timeout_recorded(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        tickets_mod.create_ticket(db, "Fix CSV import", 1)
        runner = FakeRunner(RunResult(stdout="partial", stderr="", exit_code=-15, timed_out=True))

        _dispatcher(config, workspace, runner).run_cycle()

        assert runs_mod.list_runs(db, now=NOW)[0].status == "timeout"
        assert pause.load_pause_state(db) == pause.PauseState()


class TestImplementPhase:
    def test_moves_to_building_then_test(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        t = tickets_mod.create_ticket(db, "Fix CSV import", 1)
        _approved_for_implement(db, t.id)
        seen_states = []

        def check_state(invocation, cancel):
            with get_db(config.db_path) as conn:
                seen_states.append(tickets_mod.get_ticket(conn, t.id).state)

        runner = FakeRunner(
            RunResult(stdout="## Implementation Summary\n" + "changed things. " * 20, stderr="", exit_code=0),
            hook=check_state,
        )
        result = _dispatcher(config, workspace, runner).run_cycle()

        assert result.completed == 1
        assert seen_states == ["building"]
        assert tickets_mod.get_ticket(db, t.id).state == "test"
        comment = tickets_mod.list_recent_comments(db, t.id)[-1]
        assert comment.content.startswith("**Implementation complete**, moved to test")

        inv = runner.invocations[0]
        assert "Write" in inv.tools
        assert inv.timeout == 600


class TestSelection:
    def test_max_jobs(self, env):
        config, db, workspace = env
        for i in range(3):
            personas_mod.create_persona(db, f"dev{i}", f"Dev{i}")
            tickets_mod.create_ticket(db, f"T{i}", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        result = _dispatcher(config, workspace, runner).run_cycle()
        assert result.dispatched == 2
        assert len(runner.invocations) == 2

    def test_limit_override(self, env):
        config, db, workspace = env
        for i in range(3):
            personas_mod.create_persona(db, f"dev{i}", f"Dev{i}")
            tickets_mod.create_ticket(db, f"T{i}", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        assert _dispatcher(config, workspace, runner).run_cycle(limit=1).dispatched == 1

    def test_persona_used_once_per_cycle(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        tickets_mod.create_ticket(db, "B", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        result = _dispatcher(config, workspace, runner).run_cycle()
        assert (result.dispatched, result.skipped) == (1, 1)

    def test_awaiting_approval_skipped(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        t = tickets_mod.create_ticket(db, "A", 1)
        tickets_mod.mark_phase_completed(db, t.id, "research", "dev", NOW)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        result = _dispatcher(config, workspace, runner).run_cycle()
        assert (result.dispatched, result.skipped) == (0, 1)
        assert runner.invocations == []

    def test_locked_ticket_not_redispatched(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        tickets_mod.create_ticket(db, "A", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))
        dispatcher = _dispatcher(config, workspace, runner)

        dispatcher.run_cycle()
        assert dispatcher.run_cycle().dispatched == 0

    def test_missing_workspace_releases_lock(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        t = tickets_mod.create_ticket(db, "A", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))
        workspaces = FakeWorkspaces(None)

        result = _dispatcher(config, workspace, runner, workspaces=workspaces).run_cycle()

        assert result.completed == 0
        assert runner.invocations == []
        assert tickets_mod.get_ticket(db, t.id).last_agent_activity is None

    def test_crashing_job_releases_lock(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        t = tickets_mod.create_ticket(db, "A", 1)

        def boom(invocation, cancel):
            raise RuntimeError("runner exploded")

        runner = FakeRunner(None, hook=boom)
        result = _dispatcher(config, workspace, runner).run_cycle()

        assert (result.dispatched, result.completed) == (1, 0)
        assert tickets_mod.get_ticket(db, t.id).last_agent_activity is None

    def test_cancel_reaches_running_job(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        seen = []
        holder = {}

        def cancel_self(invocation, cancel):
            holder["dispatcher"].cancel()
            seen.append(cancel.is_set())

        runner = FakeRunner(RunResult(stdout="", stderr="", exit_code=-15, cancelled=True), hook=cancel_self)
        holder["dispatcher"] = _dispatcher(config, workspace, runner)
        holder["dispatcher"].run_cycle()
        assert seen == [True]

    def test_persona_with_live_run_is_busy(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        first = tickets_mod.create_ticket(db, "A", 1)
        tickets_mod.create_ticket(db, "B", 1)
        live = runs_mod.start_run(
            db, first.id, "dev", "research", [], dispatch_source="mention", now=NOW - timedelta(minutes=2)
        )
        runner = FakeRunner(RESEARCH_RESULT)

        result = _dispatcher(config, workspace, runner).run_cycle()

        assert (result.dispatched, result.skipped) == (0, 2)
        assert runner.invocations == []
        assert runs_mod.get_run(db, live.id, now=NOW).status == "running"

    def test_other_persona_takes_ticket_while_one_is_busy(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        personas_mod.create_persona(db, "dev2", "Dev Two")
        first = tickets_mod.create_ticket(db, "A", 1)
        tickets_mod.set_state(db, first.id, "shipped")
        live = runs_mod.start_run(db, first.id, "dev", "research", [], dispatch_source="mention", now=NOW)
        tickets_mod.create_ticket(db, "B", 1)
        runner = FakeRunner(RESEARCH_RESULT)

        result = _dispatcher(config, workspace, runner).run_cycle()

        assert result.dispatched == 1
        assert runs_mod.get_run(db, live.id, now=NOW).status == "running"
        assert [r.persona_id for r in runs_mod.list_runs(db, status="completed", now=NOW)] == ["dev2"]


class TestPauseHandling:
    def test_quota_failure_pauses_future_cycles(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        runner = FakeRunner(RunResult(
            stdout="", stderr="You've hit your limit · resets 9pm (America/Mexico_City)", exit_code=1,
        ))
        dispatcher = _dispatcher(config, workspace, runner)

        dispatcher.run_cycle()
        state = pause.load_pause_state(db)
        assert state.quota_paused_until == datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)
        assert "hit your limit" in state.quota_reason

        again = dispatcher.run_cycle()
        assert again.aborted.startswith("quota paused until")
        assert len(runner.invocations) == 1

    def test_auth_failure_halts_and_requests_reauth(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        api = FakeApi()
        runner = FakeRunner(RunResult(stdout="", stderr="OAuth token has expired", exit_code=1))
        dispatcher = _dispatcher(config, workspace, runner, api=api)

        dispatcher.run_cycle()
        assert pause.load_pause_state(db).auth_expired
        assert api.reauth_calls == 1
        assert dispatcher.run_cycle().aborted is not None

    def test_failed_run_output_does_not_pause(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        api = FakeApi()
        runner = FakeRunner(RunResult(
            stdout="Looked at src/billing.py:401 and the HTTP 401 handler, rate limit code too. " * 5,
            stderr="Traceback: segfault",
            exit_code=1,
        ))
        dispatcher = _dispatcher(config, workspace, runner, api=api)

        dispatcher.run_cycle()

        assert pause.load_pause_state(db) == pause.PauseState()
        assert api.reauth_calls == 0
        assert runs_mod.list_runs(db, now=NOW)[0].status == "failed"

    def test_reset_time_read_from_error_stream_only(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        runner = FakeRunner(RunResult(
            stdout="The banner says it resets 9pm (America/Mexico_City)",
            stderr="Rate limit reached",
            exit_code=1,
        ))

        _dispatcher(config, workspace, runner).run_cycle()

        state = pause.load_pause_state(db)
        assert state.quota_paused_until == NOW + timedelta(hours=1)
        assert state.quota_reason == "Rate limit reached"

    def test_expired_quota_is_cleared(self, env):
        config, db, workspace = env
        pause.set_quota_pause(db, NOW - timedelta(minutes=1), "old")
        runner = FakeRunner(RunResult(stdout="", stderr="", exit_code=0))

        result = _dispatcher(config, workspace, runner).run_cycle()
        assert result.aborted is None
        assert pause.load_pause_state(db).quota_paused_until is None

    def test_aborted_cycle_leaves_heartbeat_alone(self, env):
        config, db, workspace = env
        pause.set_auth_expired(db)
        runner = FakeRunner(RunResult(stdout="", stderr="", exit_code=0))

        _dispatcher(config, workspace, runner).run_cycle()
        assert pause.get_heartbeat_status(db)["status"] == "unknown"


class TestCycleBookkeeping:
    def test_heartbeat_idle_after_cycle(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        tickets_mod.create_ticket(db, "A", 1)
        runner = FakeRunner(RunResult(stdout=RESEARCH_OUTPUT, stderr="", exit_code=0))

        _dispatcher(config, workspace, runner).run_cycle()

        status = pause.get_heartbeat_status(db)
        assert status["status"] == "idle"
        assert status["lastResult"] == {"dispatched": 1, "completed": 1, "skipped": 0}

    def test_heartbeat_idle_after_worker_error(self, env, monkeypatch):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        tickets_mod.create_ticket(db, "A", 1)
        dispatcher = _dispatcher(config, workspace, FakeRunner(RESEARCH_RESULT))

        def lost_store(job):
            raise StoreNotFoundError("store vanished")

        monkeypatch.setattr(dispatcher, "_execute_job", lost_store)
        with pytest.raises(StoreNotFoundError):
            dispatcher.run_cycle()

        status = pause.get_heartbeat_status(db)
        assert status["status"] == "idle"
        assert status["lastResult"] == {"dispatched": 1, "completed": 0, "skipped": 0}

    def test_stale_runs_swept(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        t = tickets_mod.create_ticket(db, "A", 1)
        tickets_mod.set_state(db, t.id, "shipped")
        run = runs_mod.start_run(db, t.id, "dev", "research", [], now=NOW - timedelta(hours=1))

        _dispatcher(config, workspace, FakeRunner(None)).run_cycle()
        assert runs_mod.get_run(db, run.id, now=NOW).status == "timeout"

    def test_mentions_routed_after_jobs(self, env):
        config, db, workspace = env
        personas_mod.create_persona(db, "dev", "Dev")
        personas_mod.create_persona(db, "ada", "Ada", role="researcher")
        t = tickets_mod.create_ticket(db, "A", 1)
        tickets_mod.set_state(db, t.id, "building")
        tickets_mod.mark_agent_activity(db, t.id, "dev", NOW)
        tickets_mod.post_comment(db, t.id, "@Ada is the schema final?", persona_id="dev", now=NOW)
        api = FakeApi()

        result = _dispatcher(config, workspace, FakeRunner(None), api=api).run_cycle()
        assert result.mentions == 1
        assert api.dispatched == [(t.id, "ada")]

    def test_missing_store(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = Config(home_dir=Path(tmp))
            with pytest.raises(StoreNotFoundError):
                _dispatcher(config, Path(tmp), FakeRunner(None)).run_cycle()

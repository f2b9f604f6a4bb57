"""The periodic dispatch cycle.

One cycle: check the pause gate, pick actionable tickets per project, match
each to an idle persona, run the agents in a bounded worker pool, reconcile
the results into ticket state, then route any fresh @-mentions.
"""

import logging
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime

from ticket_dispatcher.config import (
    IMPLEMENT_TIMEOUT_SECONDS,
    RESEARCH_TIMEOUT_SECONDS,
    Config,
)
from ticket_dispatcher.core.classifier import (
    ErrorCategory,
    ErrorClassifier,
    compute_pause_until,
)
from ticket_dispatcher.core.mentions import dispatch_mentions
from ticket_dispatcher.core.pause import (
    clear_quota_pause,
    gate,
    load_pause_state,
    mark_heartbeat_idle,
    mark_heartbeat_running,
    set_auth_expired,
    set_quota_pause,
)
from ticket_dispatcher.core.personas import list_personas, match_persona
from ticket_dispatcher.core.projects import list_projects
from ticket_dispatcher.core.prompts import build_system_prompt, build_task
from ticket_dispatcher.core.runner import (
    TOOLS_FULL,
    TOOLS_READONLY,
    AgentInvocation,
    RunResult,
    run_agent,
)
from ticket_dispatcher.core.runs import (
    classify_outcome,
    complete_run,
    running_personas,
    start_run,
    sweep_stale_runs,
)
from ticket_dispatcher.core.scheduler import get_actionable_tickets, needed_phase
from ticket_dispatcher.core.session import append_event, write_session
from ticket_dispatcher.core.summary import extract_summary
from ticket_dispatcher.core.tickets import (
    clear_lock,
    latest_document,
    latest_version,
    list_recent_comments,
    mark_agent_activity,
    mark_phase_completed,
    mark_picked_up,
    post_comment,
    save_document,
    set_state,
)
from ticket_dispatcher.core.workspace import WorkspaceManager
from ticket_dispatcher.db.engine import get_db
from ticket_dispatcher.db.models import (
    AWAITING_APPROVAL,
    PHASE_DOCUMENT,
    PHASE_IMPLEMENT,
    PHASE_PLAN,
    PHASE_RESEARCH,
    RUN_COMPLETED,
    Persona,
    Project,
    Ticket,
    utcnow,
)
from ticket_dispatcher.integrations.api import ApiClient

logger = logging.getLogger(__name__)

COMPLETION_HEADINGS = {
    PHASE_RESEARCH: "**Research complete**",
    PHASE_PLAN: "**Implementation plan complete**",
    PHASE_IMPLEMENT: "**Implementation complete**, moved to test",
}


@dataclass
class Job:
    ticket: Ticket
    persona: Persona
    project: Project
    phase: str
    task: str
    tools: list[str]
    timeout: float
    source: str = "heartbeat"
    cancel: threading.Event = field(default_factory=threading.Event)


@dataclass
class CycleResult:
    dispatched: int = 0
    completed: int = 0
    skipped: int = 0
    mentions: int = 0
    aborted: str | None = None


def phase_limits(phase: str) -> tuple[list[str], float]:
    """Tool allowlist and timeout for a phase."""
    if phase == PHASE_IMPLEMENT:
        return list(TOOLS_FULL), IMPLEMENT_TIMEOUT_SECONDS
    return list(TOOLS_READONLY), RESEARCH_TIMEOUT_SECONDS


class Dispatcher:
    def __init__(
        self,
        config: Config,
        api: ApiClient | None = None,
        runner: Callable[..., RunResult] = run_agent,
        workspaces: WorkspaceManager | None = None,
        classifier: ErrorClassifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.api = api or ApiClient(config.api_base_url)
        self.runner = runner
        self.workspaces = workspaces or WorkspaceManager(config.worktrees_dir, config.repos_dir)
        self.classifier = classifier or ErrorClassifier()
        self.clock = clock
        self._active: list[Job] = []
        self._lock = threading.Lock()

    # ── Cycle ───────────────────────────────────────────────────────────────

    def run_cycle(self, limit: int | None = None) -> CycleResult:
        """Run one dispatch cycle. Raises StoreNotFoundError if the store is missing."""
        now = self.clock()
        with get_db(self.config.db_path) as db:
            decision = gate(load_pause_state(db), now)
            if not decision.proceed:
                logger.warning("Dispatch skipped: %s", decision.reason)
                return CycleResult(aborted=decision.reason)
            if decision.clear_expired_quota:
                clear_quota_pause(db)

            logger.info("Heartbeat dispatch starting")
            mark_heartbeat_running(db, now)
            sweep_stale_runs(db, now)
            jobs, skipped = self.collect_jobs(db, now, limit or self.config.max_jobs)

        result = CycleResult(dispatched=len(jobs), skipped=skipped)
        try:
            if jobs:
                result.completed = self.execute_jobs(jobs)
            with get_db(self.config.db_path) as db:
                result.mentions = dispatch_mentions(db, self.api, self.clock())
        finally:
            with get_db(self.config.db_path) as db:
                mark_heartbeat_idle(
                    db, self.clock(), result.dispatched, result.completed, result.skipped
                )

        logger.info(
            "Dispatch complete: %d dispatched, %d completed, %d skipped, %d mention(s)",
            result.dispatched, result.completed, result.skipped, result.mentions,
        )
        return result

    def collect_jobs(self, db: sqlite3.Connection, now: datetime, max_jobs: int) -> tuple[list[Job], int]:
        """Walk projects and their candidates, claiming tickets and personas in memory."""
        personas = list_personas(db)
        claimed: set[int] = set()
        busy: set[str] = running_personas(db)
        if busy:
            logger.info("Busy with live runs: %s", ", ".join(sorted(busy)))
        jobs: list[Job] = []
        skipped = 0

        for project in list_projects(db):
            if len(jobs) >= max_jobs:
                break
            for ticket in get_actionable_tickets(db, project.id, now):
                if len(jobs) >= max_jobs:
                    break
                if ticket.id in claimed:
                    continue
                phase = needed_phase(ticket)
                if phase == AWAITING_APPROVAL:
                    skipped += 1
                    continue
                persona = match_persona(phase, project.id, personas, busy)
                if persona is None:
                    logger.info("SKIP: %s %r: no idle persona for %s", ticket.id, ticket.title, phase)
                    skipped += 1
                    continue

                claimed.add(ticket.id)
                busy.add(persona.id)
                tools, timeout = phase_limits(phase)
                research = latest_document(db, ticket.id, PHASE_DOCUMENT[PHASE_RESEARCH])
                plan = latest_document(db, ticket.id, PHASE_DOCUMENT[PHASE_PLAN])
                task = build_task(
                    phase,
                    ticket,
                    research_doc=research.content if research else None,
                    plan_doc=plan.content if plan else None,
                )
                jobs.append(Job(ticket, persona, project, phase, task, tools, timeout))

        return jobs, skipped

    def execute_jobs(self, jobs: list[Job]) -> int:
        """Run jobs on a bounded pool. Returns how many completed."""
        completed = 0
        workers = max(1, self.config.concurrency)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
            futures = {pool.submit(self._execute_job, job): job for job in jobs}
            for future in as_completed(futures):
                if future.result():
                    completed += 1
        return completed

    def cancel(self):
        """Signal every in-flight job to stop."""
        with self._lock:
            for job in self._active:
                job.cancel.set()

    # ── Single job ──────────────────────────────────────────────────────────

    def _execute_job(self, job: Job) -> bool:
        with self._lock:
            self._active.append(job)
        try:
            with get_db(self.config.db_path) as db:
                try:
                    return self._run_job(db, job)
                except Exception:
                    logger.exception("Job for ticket %s (%s) crashed", job.ticket.id, job.phase)
                    clear_lock(db, job.ticket.id)
                    return False
        finally:
            with self._lock:
                self._active.remove(job)

    def _run_job(self, db: sqlite3.Connection, job: Job) -> bool:
        ticket, persona, project = job.ticket, job.persona, job.project
        now = self.clock()
        logger.info("DISPATCH: %s %r -> %s (phase: %s)", ticket.id, ticket.title, persona.name, job.phase)
        mark_agent_activity(db, ticket.id, persona.id, now)
        mark_picked_up(db, ticket.id, now)
        if job.phase == PHASE_IMPLEMENT and ticket.state != "building":
            set_state(db, ticket.id, "building")

        doc_type = PHASE_DOCUMENT.get(job.phase)
        version_before = latest_version(db, ticket.id, doc_type) if doc_type else 0

        workspace = self.workspaces.ensure(project, ticket.id)
        if workspace is None:
            logger.error("FAILED: %s: no workspace for project %s", ticket.id, project.slug)
            clear_lock(db, ticket.id)
            return False

        system_prompt = build_system_prompt(
            persona, project, ticket, workspace, list_recent_comments(db, ticket.id), job.phase
        )
        session_dir = write_session(
            self.config.sessions_dir, ticket.id, job.phase, persona.id,
            system_prompt, job.task, self.config.side_channel_url,
        )
        run = start_run(
            db, ticket.id, persona.id, job.phase, job.tools,
            str(session_dir), job.source, now=now,
        )

        invocation = AgentInvocation(
            session_dir=session_dir,
            cwd=workspace,
            timeout=job.timeout,
            claude_bin=self.config.claude_bin,
            model=self.config.model,
            tools=job.tools,
            mcp_config=session_dir / "mcp-config.json",
        )
        result = self.runner(invocation, job.cancel)

        finished = self.clock()
        event = "timeout" if result.timed_out else "cancelled" if result.cancelled else "complete"
        append_event(session_dir, event, result.exit_code, len(result.stdout), len(result.stderr), finished)
        logger.info(
            "[%s] %s finished: code=%s, output=%d chars, timedOut=%s",
            ticket.id, job.phase, result.exit_code, len(result.stdout), result.timed_out,
        )

        status, error = classify_outcome(result)
        complete_run(db, run.id, status, error, now=finished)
        return self.reconcile(db, job, result, status, version_before, finished)

    def reconcile(
        self,
        db: sqlite3.Connection,
        job: Job,
        result: RunResult,
        status: str,
        version_before: int,
        now: datetime,
    ) -> bool:
        """Fold a finished run back into ticket state. Returns True when the phase completed."""
        ticket, persona = job.ticket, job.persona
        if result.exit_code != 0 and not result.timed_out:
            self._record_pause(db, result, now)

        doc_type = PHASE_DOCUMENT.get(job.phase)
        if doc_type and latest_version(db, ticket.id, doc_type) > version_before:
            doc = latest_document(db, ticket.id, doc_type)
            mark_phase_completed(db, ticket.id, job.phase, persona.id, now)
            self._post_completion(db, job, doc.content, now)
            logger.info("COMPLETE: %s: %s saved via side channel (v%d)", ticket.id, doc_type, doc.version)
            return True

        if status == RUN_COMPLETED:
            content = result.stdout.strip()
            if job.phase == PHASE_IMPLEMENT:
                set_state(db, ticket.id, "test")
                logger.info("COMPLETE: %s: implementation done, moved to test", ticket.id)
            else:
                save_document(db, ticket.id, doc_type, content, persona.id)
                mark_phase_completed(db, ticket.id, job.phase, persona.id, now)
                logger.info("COMPLETE: %s: %s stored (%d chars)", ticket.id, doc_type, len(content))
            self._post_completion(db, job, content, now)
            return True

        if result.timed_out:
            logger.warning("FAILED: %s: timed out after %ss", ticket.id, int(job.timeout))
        else:
            logger.warning(
                "FAILED: %s: exit code %s, output %d chars",
                ticket.id, result.exit_code, len(result.stdout.strip()),
            )
        clear_lock(db, ticket.id)
        return False

    def _post_completion(self, db: sqlite3.Connection, job: Job, content: str, now: datetime):
        summary = extract_summary(content)
        post_comment(
            db, job.ticket.id, f"{COMPLETION_HEADINGS[job.phase]}\n\n{summary}",
            author_type="agent", persona_id=job.persona.id, now=now,
        )

    def _record_pause(self, db: sqlite3.Connection, result: RunResult, now: datetime):
        category = self.classifier.classify(result.stderr)
        if category == ErrorCategory.AUTH_EXPIRED:
            set_auth_expired(db)
            self.api.reauthorize()
        elif category == ErrorCategory.QUOTA_EXHAUSTED:
            text = result.stderr.strip()
            set_quota_pause(db, compute_pause_until(text, now), text)

"""Supervised execution of the claude CLI for a single agent phase."""

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

CAPABILITY_TOOLS = [
    "mcp__ticket__report",
    "mcp__ticket__save_document",
    "mcp__ticket__check_criteria",
]
TOOLS_READONLY = ["Read", "Grep", "Glob", "Bash(git:*)"] + CAPABILITY_TOOLS
TOOLS_FULL = ["Read", "Grep", "Glob", "Write", "Edit", "Bash"] + CAPABILITY_TOOLS

KILL_GRACE_SECONDS = 10.0
POLL_INTERVAL = 0.2
SPAWN_FAILURE_EXIT_CODE = 127


@dataclass
class AgentInvocation:
    session_dir: Path
    cwd: Path
    timeout: float
    claude_bin: Path
    model: str = "sonnet"
    tools: list[str] = field(default_factory=lambda: list(TOOLS_READONLY))
    mcp_config: Path | None = None

    @property
    def task_file(self) -> Path:
        return self.session_dir / "task.md"

    @property
    def prompt_file(self) -> Path:
        return self.session_dir / "system-prompt.txt"

    @property
    def output_file(self) -> Path:
        return self.session_dir / "output.md"

    @property
    def stderr_file(self) -> Path:
        return self.session_dir / "stderr.log"


@dataclass
class RunResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False


def build_command(invocation: AgentInvocation) -> list[str]:
    system_prompt = invocation.prompt_file.read_text() if invocation.prompt_file.exists() else ""
    cmd = [
        str(invocation.claude_bin),
        "-p",
        "--model", invocation.model,
        "--allowedTools", ",".join(invocation.tools),
        "--output-format", "text",
        "--no-session-persistence",
        "--append-system-prompt", system_prompt,
    ]
    if invocation.mcp_config and invocation.mcp_config.exists():
        cmd += ["--mcp-config", str(invocation.mcp_config)]
    return cmd


def _read(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text(errors="replace")


def _stop(proc: subprocess.Popen, grace: float):
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("PID %s ignored SIGTERM, sending SIGKILL", proc.pid)
        proc.kill()
        proc.wait()


def run_agent(
    invocation: AgentInvocation,
    cancel: threading.Event | None = None,
    kill_grace: float = KILL_GRACE_SECONDS,
) -> RunResult:
    """Run the agent to completion, timeout, or cancellation. Never raises."""
    env = {**os.environ, "DISABLE_AUTOUPDATER": "1"}
    try:
        cmd = build_command(invocation)
        with open(invocation.task_file, "rb") as stdin, \
                open(invocation.output_file, "wb") as stdout, \
                open(invocation.stderr_file, "wb") as stderr:
            proc = subprocess.Popen(
                cmd,
                cwd=invocation.cwd,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                env=env,
            )
    except OSError as e:
        logger.error("Failed to start agent in %s: %s", invocation.cwd, e)
        return RunResult(stdout="", stderr=str(e), exit_code=SPAWN_FAILURE_EXIT_CODE)

    deadline = time.monotonic() + invocation.timeout
    timed_out = False
    cancelled = False
    while proc.poll() is None:
        if cancel is not None and cancel.is_set():
            cancelled = True
            _stop(proc, kill_grace)
            break
        if time.monotonic() >= deadline:
            timed_out = True
            _stop(proc, kill_grace)
            break
        if cancel is not None:
            cancel.wait(POLL_INTERVAL)
        else:
            time.sleep(POLL_INTERVAL)

    return RunResult(
        stdout=_read(invocation.output_file),
        stderr=_read(invocation.stderr_file),
        exit_code=proc.returncode,
        timed_out=timed_out,
        cancelled=cancelled,
    )

"""Data models for the ticket dispatcher."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Ticket lifecycle columns. The dispatcher never touches tickets in TERMINAL_STATES.
TICKET_STATES = ("backlog", "planning", "building", "test", "shipped")
TERMINAL_STATES = ("test", "shipped")

PHASE_RESEARCH = "research"
PHASE_PLAN = "plan"
PHASE_IMPLEMENT = "implement"
AWAITING_APPROVAL = "awaiting_approval"

# Document type each phase is expected to produce (implement produces none).
PHASE_DOCUMENT = {
    PHASE_RESEARCH: "research",
    PHASE_PLAN: "implementation_plan",
}
DOCUMENT_TYPES = ("research", "implementation_plan", "design")

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_TIMEOUT = "timeout"
RUN_ABANDONED = "abandoned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(val: datetime) -> str:
    if val.tzinfo is None:
        val = val.replace(tzinfo=timezone.utc)
    return val.astimezone(timezone.utc).isoformat()


def parse_dt(val: str | None) -> datetime | None:
    """Parse a stored timestamp. Naive values (SQLite defaults) are UTC."""
    if val is None:
        return None
    parsed = datetime.fromisoformat(val)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Project:
    id: int
    name: str
    slug: str
    github_repo: str | None = None
    local_path: str | None = None
    created_at: datetime | None = None


@dataclass
class Persona:
    id: str
    name: str
    role: str = "developer"
    personality: str | None = None
    skills: tuple[str, ...] = ()
    project_id: int | None = None

    def in_scope(self, project_id: int) -> bool:
        return self.project_id is None or self.project_id == project_id


@dataclass
class Ticket:
    id: int
    title: str
    description: str | None = None
    type: str = "feature"
    state: str = "backlog"
    priority: int = 0
    project_id: int | None = None
    assignee_id: str | None = None
    acceptance_criteria: str | None = None
    comment_count: int = 0
    last_agent_activity: datetime | None = None
    last_human_comment_at: datetime | None = None
    returned_from_verification: bool = False
    research_completed_at: datetime | None = None
    research_completed_by: str | None = None
    research_approved_at: datetime | None = None
    research_approved_by: str | None = None
    plan_completed_at: datetime | None = None
    plan_completed_by: str | None = None
    plan_approved_at: datetime | None = None
    plan_approved_by: str | None = None
    created_at: datetime | None = None


@dataclass
class Comment:
    id: int
    ticket_id: int
    author_type: str
    content: str
    persona_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Document:
    id: int
    ticket_id: int
    type: str
    content: str
    version: int = 1
    author_persona_id: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentRun:
    id: int | None = None
    ticket_id: int = 0
    persona_id: str = ""
    phase: str = ""
    status: str = RUN_RUNNING
    tools: list[str] = field(default_factory=list)
    session_dir: str | None = None
    dispatch_source: str | None = None
    started_at: datetime | None = None
    last_report_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None

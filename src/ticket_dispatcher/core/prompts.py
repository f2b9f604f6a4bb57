"""System prompt and task assembly for each agent phase."""

from pathlib import Path

from ticket_dispatcher.db.models import (
    PHASE_IMPLEMENT,
    PHASE_PLAN,
    PHASE_RESEARCH,
    Comment,
    Persona,
    Project,
    Ticket,
)

RESEARCH_GUIDELINES = """\
You are researching a ticket before anyone plans or writes code for it.
Your stdout is the research document. Output only the markdown document,
starting directly with its headings. No preamble, no sign-off.

1. Read the actual code before making claims about it.
2. Cite exact file paths and line numbers.
3. Keep each section to what a planner needs.
4. Keep facts apart from recommendations.
5. Put anything uncertain under Open Questions.
6. Stop exploring once there is enough to plan from."""

RESEARCH_FORMAT = """\
## Research Document

### Summary
One paragraph overview of findings

### Problem Statement
### Current State
How things work today, with file:line references
### Affected Areas
### Constraints
### Edge Cases
### Open Questions
### Recommended Approach
High-level direction only"""

PLAN_GUIDELINES = """\
You are turning an approved research document into a step-by-step
implementation plan that a developer can follow without asking questions.

1. Name exact files, functions and line numbers.
2. Order steps so that no step depends on a later one.
3. Keep each step small and independently verifiable.
4. Give a concrete verification for every step.
5. Call out steps that could break existing behavior.
6. Plan only what the ticket asks for.

You cannot run the application or modify files in this phase."""

PLAN_FORMAT = """\
## Implementation Plan

### Overview
One paragraph summary of the approach

### Prerequisites
### Steps
#### Step 1: [Title]
- File(s):
- Change:
- Tests:
### Test Plan
### Risks & Mitigations
### Out of Scope"""

IMPLEMENT_GUIDELINES = """\
You are implementing a ticket from its research document and approved plan.

1. Implement the plan's steps in order.
2. Follow the conventions already used in the codebase.
3. Change only what the plan calls for.
4. Run the tests after each significant change and add the tests the plan lists.
5. Commit after each logical step with a clear message.
6. Note out-of-scope problems instead of fixing them."""

IMPLEMENT_FORMAT = """\
## Implementation Summary

### Changes Made
### Tests Added
### How to Verify
### Notes"""

PHASE_SECTIONS = {
    PHASE_RESEARCH: ("Research Guidelines", RESEARCH_GUIDELINES, RESEARCH_FORMAT),
    PHASE_PLAN: ("Planning Guidelines", PLAN_GUIDELINES, PLAN_FORMAT),
    PHASE_IMPLEMENT: ("Development Guidelines", IMPLEMENT_GUIDELINES, IMPLEMENT_FORMAT),
}

COMMENT_LIMIT = 10


def _persona_section(persona: Persona) -> str:
    parts = [f"# You are {persona.name}", f"Role: {persona.role}"]
    if persona.personality:
        parts.append(f"\n{persona.personality}")
    if persona.skills:
        parts.append("\nSkills: " + ", ".join(persona.skills))
    return "\n".join(parts)


def _workspace_section(workspace: Path) -> str:
    return "\n".join([
        "## Workspace Boundary",
        f"Your workspace is: {workspace}",
        f"Only read, write, or search files inside {workspace}.",
        "Do not use absolute paths to other directories or climb out with ../",
    ])


def _ticket_section(ticket: Ticket) -> str:
    parts = [
        f"## Ticket {ticket.id}: {ticket.title}",
        f"Type: {ticket.type} | State: {ticket.state}",
    ]
    if ticket.description:
        parts.append(f"\n{ticket.description}")
    if ticket.acceptance_criteria:
        parts.append(f"\n### Acceptance Criteria\n{ticket.acceptance_criteria}")
    return "\n".join(parts)


def _comments_section(comments: list[Comment]) -> str:
    lines = ["## Recent Conversation"]
    for c in comments[-COMMENT_LIMIT:]:
        author = c.persona_id if c.author_type == "agent" and c.persona_id else c.author_type
        lines.append(f"- **{author}**: {c.content}")
    return "\n".join(lines)


def _tools_section(phase: str) -> str:
    lines = [
        "## Ticket Tools",
        "- `report(message)`: post a short progress update to the ticket thread.",
    ]
    if phase in (PHASE_RESEARCH, PHASE_PLAN):
        doc_type = "research" if phase == PHASE_RESEARCH else "implementation_plan"
        lines.append(
            f"- `save_document(doc_type, file_path)`: save a finished markdown file as the "
            f"ticket's `{doc_type}` document. Optional; your stdout is saved otherwise."
        )
    lines.append(
        "- `check_criteria(index)`: tick off acceptance criterion number `index` (0-based) "
        "once it is met."
    )
    return "\n".join(lines)


def build_system_prompt(
    persona: Persona,
    project: Project,
    ticket: Ticket,
    workspace: Path,
    comments: list[Comment],
    phase: str,
) -> str:
    """Persona, workspace boundary, project, ticket, conversation, then phase guidance."""
    title, guidelines, output_format = PHASE_SECTIONS[phase]
    sections = [
        _persona_section(persona),
        _workspace_section(workspace),
        f"## Project\n{project.name} ({project.github_repo or project.slug})",
        _ticket_section(ticket),
    ]
    if comments:
        sections.append(_comments_section(comments))
    sections.append(_tools_section(phase))
    sections.append(f"## {title}\n{guidelines}")
    sections.append(f"## Required Output Format\n{output_format}")
    return "\n\n".join(sections)


def _ticket_header(ticket: Ticket) -> list[str]:
    parts = [f"## {ticket.title}"]
    if ticket.description:
        parts.append(f"\n### Description\n{ticket.description}")
    if ticket.acceptance_criteria:
        parts.append(f"\n### Acceptance Criteria\n{ticket.acceptance_criteria}")
    return parts


def build_task(
    phase: str,
    ticket: Ticket,
    research_doc: str | None = None,
    plan_doc: str | None = None,
) -> str:
    """The task text piped to the agent on stdin."""
    if phase == PHASE_RESEARCH:
        parts = [f"# Research Ticket: {ticket.id}", *_ticket_header(ticket)]
        parts.append(
            "\nResearch this ticket thoroughly. Explore the codebase, understand the "
            "current state, identify constraints and edge cases. Output your complete "
            "research document in markdown format."
        )
    elif phase == PHASE_PLAN:
        parts = [f"# Implementation Plan for: {ticket.id}", *_ticket_header(ticket)]
        parts.append(
            f"\n---\n\n## Research Document (approved)\n\n{research_doc or '(No research document found)'}"
        )
        parts.append(
            "\n---\n\nUsing the research above, create a detailed implementation plan. "
            "Be specific about files, functions, and the order of changes. Output your "
            "complete implementation plan in markdown format."
        )
    elif phase == PHASE_IMPLEMENT:
        parts = [f"# Implement: {ticket.id}", *_ticket_header(ticket)]
        parts.append(f"\n---\n\n## Research Document\n\n{research_doc or '(No research document)'}")
        parts.append(
            f"\n---\n\n## Implementation Plan (approved)\n\n{plan_doc or '(No implementation plan)'}"
        )
        parts.append(
            "\n---\n\nFollow the implementation plan above step by step. Make the actual "
            "code changes. When done, summarize what you implemented."
        )
    else:
        raise ValueError(f"Unknown phase: {phase}")
    return "\n".join(parts)

"""Per-ticket git worktrees, one branch per ticket."""

import logging
from pathlib import Path

from ticket_dispatcher.db.models import Project
from ticket_dispatcher.integrations.git import (
    GitError,
    branch_exists,
    create_branch,
    worktree_add,
)

logger = logging.getLogger(__name__)


def branch_name(ticket_id: int) -> str:
    return f"ticket/{ticket_id}"


class WorkspaceManager:
    """Resolves main checkouts and provisions isolated worktrees for tickets.

    Falls back to the main checkout when it is not a git repo or when worktree
    creation fails. Returns None only when the main checkout is missing.
    """

    def __init__(self, worktrees_dir: Path, repos_dir: Path):
        self.worktrees_dir = Path(worktrees_dir)
        self.repos_dir = Path(repos_dir)

    def main_checkout(self, project: Project) -> Path:
        if project.local_path:
            return Path(project.local_path).expanduser()
        return self.repos_dir / (project.github_repo or project.slug)

    def worktree_path(self, project: Project, ticket_id: int) -> Path:
        return self.worktrees_dir / project.slug / f"tkt_{ticket_id}"

    def ensure(self, project: Project, ticket_id: int) -> Path | None:
        main = self.main_checkout(project)
        if not main.exists():
            logger.error("Main checkout not found for project %s at %s", project.slug, main)
            return None

        if not (main / ".git").exists():
            logger.warning("%s is not a git repo, using it directly", main)
            return main

        path = self.worktree_path(project, ticket_id)
        if path.exists():
            logger.info("[%s] reusing worktree at %s", ticket_id, path)
            return path

        branch = branch_name(ticket_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if branch_exists(main, branch):
                logger.info("[%s] branch %s exists", ticket_id, branch)
            else:
                create_branch(main, branch)
                logger.info("[%s] created branch %s", ticket_id, branch)
            worktree_add(main, path, branch)
        except (GitError, OSError) as e:
            logger.error(
                "[%s] worktree creation failed, falling back to %s: %s",
                ticket_id, main, str(e)[:200],
            )
            return main

        logger.info("[%s] created worktree at %s", ticket_id, path)
        return path

"""Git subprocess wrappers for worktree and branch operations."""

import subprocess
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path, branch: str) -> str:
    """Create a branch at the current HEAD without checking it out."""
    return run_git(["branch", branch], cwd=repo_path)


def worktree_add(repo_path: str | Path, worktree_path: str | Path, branch: str) -> str:
    """Check out an existing branch into a new worktree."""
    return run_git(["worktree", "add", str(worktree_path), branch], cwd=repo_path)

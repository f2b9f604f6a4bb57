"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

LOCK_WINDOW_MINUTES = 30
STALE_RUN_MINUTES = 30
MENTION_WINDOW_MINUTES = 15
RESEARCH_TIMEOUT_SECONDS = 5 * 60
IMPLEMENT_TIMEOUT_SECONDS = 10 * 60
MIN_OUTPUT_CHARS = 100
CANDIDATES_PER_PROJECT = 10

SERVE_HOST = "127.0.0.1"
SERVE_PORT = 8787
SIDE_CHANNEL_URL = f"http://{SERVE_HOST}:{SERVE_PORT}"


def _default_home(env: str) -> Path:
    suffix = "-dev" if env == "dev" else ""
    return Path.home() / f".ticket-dispatcher{suffix}"


@dataclass
class Config:
    env: str = "prod"
    home_dir: Path = field(default_factory=lambda: _default_home("prod"))
    db_path: Path | None = None
    api_base_url: str = "http://localhost:3000"
    side_channel_url: str = SIDE_CHANNEL_URL
    max_jobs: int = 2
    concurrency: int = 2
    claude_bin: Path = field(default_factory=lambda: Path.home() / ".local" / "bin" / "claude")
    model: str = "sonnet"
    repos_dir: Path = field(default_factory=lambda: Path.home() / "development")
    worktrees_dir: Path | None = None

    def __post_init__(self):
        if self.db_path is None:
            name = "tickets-dev.db" if self.env == "dev" else "tickets.db"
            self.db_path = self.home_dir / name
        if self.worktrees_dir is None:
            self.worktrees_dir = self.home_dir / "worktrees"

    @property
    def sessions_dir(self) -> Path:
        return self.home_dir / "sessions"

    @property
    def log_file(self) -> Path:
        return self.home_dir / "logs" / "heartbeat.log"

    @classmethod
    def from_env(cls) -> "Config":
        env = os.environ.get("TD_ENV", "prod")
        kwargs: dict = {"env": env, "home_dir": _default_home(env)}

        if home := os.environ.get("TD_HOME"):
            kwargs["home_dir"] = Path(home)

        if db := os.environ.get("TD_DB_PATH"):
            kwargs["db_path"] = Path(db)

        if base_url := os.environ.get("TD_API_BASE_URL"):
            kwargs["api_base_url"] = base_url.rstrip("/")

        if side_url := os.environ.get("TD_SIDE_CHANNEL_URL"):
            kwargs["side_channel_url"] = side_url.rstrip("/")

        if max_jobs := os.environ.get("TD_MAX_JOBS"):
            kwargs["max_jobs"] = int(max_jobs)

        if concurrency := os.environ.get("TD_CONCURRENCY"):
            kwargs["concurrency"] = max(1, int(concurrency))

        if claude_bin := os.environ.get("TD_CLAUDE_BIN"):
            kwargs["claude_bin"] = Path(claude_bin)

        if model := os.environ.get("TD_MODEL"):
            kwargs["model"] = model

        if repos := os.environ.get("TD_REPOS_DIR"):
            kwargs["repos_dir"] = Path(repos)

        if wt_dir := os.environ.get("TD_WORKTREES_DIR"):
            kwargs["worktrees_dir"] = Path(wt_dir)

        return cls(**kwargs)


def get_config() -> Config:
    return Config.from_env()

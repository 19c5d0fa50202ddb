"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _state_dir() -> Path:
    return Path.home() / ".review_studio"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: _state_dir() / "crs.db")
    repos_dir: Path = field(default_factory=lambda: _state_dir() / "repos")
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    target_org: str = "macroscope-gtm"
    min_operation_delay: float = 60.0
    stuck_timeout_minutes: int = 10
    fork_settle_seconds: float = 3.0
    git_user_name: str = "Macroscope PR Creator"
    git_user_email: str = "macroscope-pr-creator@example.com"
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CRS_DB_PATH"):
            config.db_path = Path(db)

        if repos := os.environ.get("CRS_REPOS_DIR"):
            config.repos_dir = Path(repos)

        config.github_token = os.environ.get("GITHUB_BOT_TOKEN") or os.environ.get("GITHUB_TOKEN")

        if api_url := os.environ.get("CRS_GITHUB_API_URL"):
            config.github_api_url = api_url.rstrip("/")

        if org := os.environ.get("CRS_TARGET_ORG"):
            config.target_org = org

        if delay := os.environ.get("CRS_MIN_OPERATION_DELAY"):
            config.min_operation_delay = float(delay)

        if stuck := os.environ.get("CRS_STUCK_TIMEOUT_MINUTES"):
            config.stuck_timeout_minutes = int(stuck)

        if settle := os.environ.get("CRS_FORK_SETTLE_SECONDS"):
            config.fork_settle_seconds = float(settle)

        if name := os.environ.get("CRS_GIT_USER_NAME"):
            config.git_user_name = name

        if email := os.environ.get("CRS_GIT_USER_EMAIL"):
            config.git_user_email = email

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CRS_SLACK_CHANNEL")

        if level := os.environ.get("CRS_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()

"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(
        default_factory=lambda: Path.home() / ".delivery_orchestrator" / "dorch.db"
    )
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    state_dir: str = ".dorch"
    poll_interval: float = 30.0
    output_timeout: float = 120.0
    check_interval: float = 5.0
    diagnosis_model: str = "claude-haiku-4-5"
    anthropic_api_key: str | None = None
    slack_bot_token: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("DORCH_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("DORCH_REPO_PATH"):
            config.repo_path = Path(repo)

        if state_dir := os.environ.get("DORCH_STATE_DIR"):
            config.state_dir = state_dir

        if poll := os.environ.get("DORCH_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if timeout := os.environ.get("DORCH_OUTPUT_TIMEOUT"):
            config.output_timeout = float(timeout)

        if check := os.environ.get("DORCH_CHECK_INTERVAL"):
            config.check_interval = float(check)

        if model := os.environ.get("DORCH_DIAGNOSIS_MODEL"):
            config.diagnosis_model = model

        config.anthropic_api_key = os.environ.get("ANTHROPIC_API_KEY") or None
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN") or None

        return config


def get_config() -> Config:
    return Config.from_env()

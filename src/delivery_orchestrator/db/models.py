"""Data models for the delivery orchestrator registry."""

from dataclasses import dataclass
from datetime import datetime

TASK_STATUSES = ("running", "completed", "failed", "stuck", "killed")
JOB_RUN_STATUSES = ("pending", "running", "completed", "failed", "skipped")
TERMINAL_RUN_STATUSES = ("completed", "failed", "skipped")


@dataclass
class Project:
    id: str
    name: str
    root_path: str
    default_branch: str = "main"
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AgentBackend:
    slug: str
    name: str
    command: str
    command_path: str | None = None
    version: str | None = None
    preferred_model: str | None = None
    is_default: bool = False
    is_available: bool = True


@dataclass
class Task:
    id: str
    agent_slug: str
    command_name: str = "task"
    project_id: str | None = None
    pid: int | None = None
    status: str = "running"
    log_path: str | None = None
    exit_code: int | None = None
    diagnosis: str | None = None
    output_bytes: int = 0
    last_output_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Job:
    id: str
    project_id: str
    name: str
    prompt: str
    schedule: str
    is_enabled: bool = True
    last_run_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class JobRun:
    id: int | None = None
    job_id: str = ""
    status: str = "pending"
    slug_used: str | None = None
    branch_name: str | None = None
    pr_url: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

"""Task registry: one row per spawned agent process.

Writes fall into two classes. Control writes (``insert_task``) decide whether a
pipeline can proceed and raise :class:`RegistryError` on failure. Telemetry
writes (output byte counts, terminal status recorded by the heartbeat) go
through :func:`best_effort`, which logs and swallows database errors so a
flaky registry never kills a healthy agent.
"""

import logging
import sqlite3
from collections.abc import Callable
from typing import Any

from delivery_orchestrator.db.engine import parse_dt
from delivery_orchestrator.db.models import Task

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when a pipeline-controlling registry write fails."""


def best_effort(fn: Callable[..., Any], *args, **kwargs) -> bool:
    """Run a telemetry write, logging and swallowing database errors.

    Returns True if the write went through.
    """
    try:
        fn(*args, **kwargs)
        return True
    except sqlite3.Error as e:
        logger.warning("Telemetry write %s failed: %s", fn.__name__, e)
        return False


def insert_task(
    db: sqlite3.Connection,
    task_id: str,
    project_id: str | None,
    agent_slug: str,
    command_name: str,
    prompt: str,
    pid: int,
    log_path: str,
) -> Task:
    """Register a freshly spawned task as running."""
    try:
        db.execute(
            """INSERT INTO tasks
               (id, project_id, agent_slug, command_name, prompt, pid, status,
                log_path, last_output_at, started_at)
               VALUES (?, ?, ?, ?, ?, ?, 'running', ?, datetime('now'), datetime('now'))""",
            (task_id, project_id, agent_slug, command_name, prompt, pid, log_path),
        )
        db.commit()
    except sqlite3.Error as e:
        raise RegistryError(f"Could not register task {task_id}: {e}") from e
    return get_task(db, task_id)


def update_task_output(db: sqlite3.Connection, task_id: str, output_bytes: int):
    db.execute(
        """UPDATE tasks
           SET output_bytes = ?, last_output_at = datetime('now'), updated_at = datetime('now')
           WHERE id = ?""",
        (output_bytes, task_id),
    )
    db.commit()


def complete_task(db: sqlite3.Connection, task_id: str, exit_code: int, status: str):
    """Record a natural process exit as completed or failed."""
    if status not in ("completed", "failed"):
        raise ValueError(f"Invalid completion status: {status}")
    db.execute(
        """UPDATE tasks
           SET status = ?, exit_code = ?, completed_at = datetime('now'),
               updated_at = datetime('now')
           WHERE id = ?""",
        (status, exit_code, task_id),
    )
    db.commit()


def mark_task_stuck(db: sqlite3.Connection, task_id: str, diagnosis: str):
    db.execute(
        """UPDATE tasks
           SET status = 'stuck', diagnosis = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (diagnosis, task_id),
    )
    db.commit()


def mark_task_killed(db: sqlite3.Connection, task_id: str, diagnosis: str):
    db.execute(
        """UPDATE tasks
           SET status = 'killed', diagnosis = ?, completed_at = datetime('now'),
               updated_at = datetime('now')
           WHERE id = ?""",
        (diagnosis, task_id),
    )
    db.commit()


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Task]:
    """List tasks, newest first, with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        agent_slug=row["agent_slug"],
        command_name=row["command_name"],
        pid=row["pid"],
        status=row["status"],
        log_path=row["log_path"],
        exit_code=row["exit_code"],
        diagnosis=row["diagnosis"],
        output_bytes=row["output_bytes"] or 0,
        last_output_at=parse_dt(row["last_output_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )

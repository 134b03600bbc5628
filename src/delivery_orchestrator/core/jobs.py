"""Recurring jobs, their runs, and cron schedule matching."""

import sqlite3
from datetime import datetime, timedelta, timezone

from delivery_orchestrator.core.projects import get_project
from delivery_orchestrator.db.engine import parse_dt, utc_timestamp
from delivery_orchestrator.db.models import JOB_RUN_STATUSES, Job, JobRun

# (name, minimum, maximum) for the five cron fields, in order.
CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
)

_JOB_UPDATABLE = ("name", "prompt", "schedule", "is_enabled", "last_run_at")
_RUN_UPDATABLE = (
    "status", "slug_used", "branch_name", "pr_url", "error_message", "started_at", "completed_at",
)


# ── Cron ────────────────────────────────────────────────────────────────────


def _parse_number(text: str, lo: int, hi: int) -> int:
    if not text.isdigit():
        raise ValueError(f"not a number: {text!r}")
    value = int(text)
    if not lo <= value <= hi:
        raise ValueError(f"{value} outside {lo}-{hi}")
    return value


def _parse_field(field: str, lo: int, hi: int) -> set[int]:
    """Expand one cron field into the set of values it matches."""
    values: set[int] = set()
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = _parse_number(step_text, 1, hi)
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = _parse_number(start_text, lo, hi), _parse_number(end_text, lo, hi)
            if start > end:
                raise ValueError(f"empty range {part!r}")
        else:
            start = end = _parse_number(part, lo, hi)
            if step != 1:
                end = hi
        values.update(range(start, end + 1, step))
    return values


def parse_schedule(expression: str) -> list[set[int]]:
    fields = expression.split()
    if len(fields) != len(CRON_FIELDS):
        raise ValueError(f"expected 5 fields, got {len(fields)}")
    parsed = []
    for text, (name, lo, hi) in zip(fields, CRON_FIELDS):
        try:
            parsed.append(_parse_field(text, lo, hi))
        except ValueError as e:
            raise ValueError(f"invalid {name} field {text!r}: {e}") from e
    # 7 is an alias for Sunday.
    if 7 in parsed[4]:
        parsed[4] = (parsed[4] - {7}) | {0}
    return parsed


def validate_schedule(expression: str) -> str:
    """Raise ValueError if the expression can't be parsed. Returns it normalised."""
    try:
        parse_schedule(expression)
    except ValueError as e:
        raise ValueError(f"Invalid schedule {expression!r}: {e}") from e
    return " ".join(expression.split())


def should_run_now(expression: str, now: datetime | None = None) -> bool:
    """Whether a five-field cron expression matches the given local minute.

    Day of month and day of week must both match. Malformed expressions never match.
    """
    now = now or datetime.now()
    try:
        minute, hour, dom, month, dow = parse_schedule(expression)
    except ValueError:
        return False
    cron_weekday = (now.weekday() + 1) % 7  # Sunday = 0
    return (
        now.minute in minute
        and now.hour in hour
        and now.day in dom
        and now.month in month
        and cron_weekday in dow
    )


def minute_key(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%dT%H:%M")


# ── Jobs ────────────────────────────────────────────────────────────────────


def create_job(
    db: sqlite3.Connection,
    job_id: str,
    project_id: str,
    name: str,
    prompt: str,
    schedule: str,
    is_enabled: bool = True,
) -> Job:
    if not get_project(db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    if get_job(db, job_id):
        raise ValueError(f"Job already exists: {job_id}")
    schedule = validate_schedule(schedule)
    db.execute(
        """INSERT INTO jobs (id, project_id, name, prompt, schedule, is_enabled)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (job_id, project_id, name, prompt, schedule, int(is_enabled)),
    )
    db.commit()
    return get_job(db, job_id)


def get_job(db: sqlite3.Connection, job_id: str) -> Job | None:
    row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(db: sqlite3.Connection, project_id: str | None = None) -> list[Job]:
    sql = "SELECT * FROM jobs"
    params: list = []
    if project_id:
        sql += " WHERE project_id = ?"
        params.append(project_id)
    sql += " ORDER BY created_at DESC, id"
    return [_row_to_job(r) for r in db.execute(sql, params).fetchall()]


def get_enabled_jobs(db: sqlite3.Connection) -> list[Job]:
    rows = db.execute("SELECT * FROM jobs WHERE is_enabled = 1 ORDER BY id").fetchall()
    return [_row_to_job(r) for r in rows]


def update_job(db: sqlite3.Connection, job_id: str, **kwargs) -> Job:
    if not get_job(db, job_id):
        raise ValueError(f"Job not found: {job_id}")
    updates = {k: v for k, v in kwargs.items() if k in _JOB_UPDATABLE and v is not None}
    if "schedule" in updates:
        updates["schedule"] = validate_schedule(updates["schedule"])
    if "is_enabled" in updates:
        updates["is_enabled"] = int(updates["is_enabled"])
    if isinstance(updates.get("last_run_at"), datetime):
        updates["last_run_at"] = utc_timestamp(updates["last_run_at"])
    if updates:
        set_clauses = [f"{k} = ?" for k in updates] + ["updated_at = datetime('now')"]
        db.execute(
            f"UPDATE jobs SET {', '.join(set_clauses)} WHERE id = ?",
            [*updates.values(), job_id],
        )
        db.commit()
    return get_job(db, job_id)


def delete_job(db: sqlite3.Connection, job_id: str) -> bool:
    cursor = db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
    db.commit()
    return cursor.rowcount > 0


# ── Job runs ────────────────────────────────────────────────────────────────


def create_job_run(db: sqlite3.Connection, job_id: str, created_at: datetime | None = None) -> JobRun:
    cursor = db.execute(
        "INSERT INTO job_runs (job_id, status, created_at) VALUES (?, 'pending', ?)",
        (job_id, utc_timestamp(created_at)),
    )
    db.commit()
    return get_job_run(db, cursor.lastrowid)


def get_job_run(db: sqlite3.Connection, run_id: int) -> JobRun | None:
    row = db.execute("SELECT * FROM job_runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def list_job_runs(db: sqlite3.Connection, job_id: str | None = None, limit: int = 20) -> list[JobRun]:
    sql = "SELECT * FROM job_runs"
    params: list = []
    if job_id:
        sql += " WHERE job_id = ?"
        params.append(job_id)
    sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(limit)
    return [_row_to_run(r) for r in db.execute(sql, params).fetchall()]


def update_job_run(db: sqlite3.Connection, run_id: int, **kwargs) -> JobRun:
    updates = {k: v for k, v in kwargs.items() if k in _RUN_UPDATABLE and v is not None}
    if "status" in updates and updates["status"] not in JOB_RUN_STATUSES:
        raise ValueError(f"Invalid job run status: {updates['status']}")
    for key in ("started_at", "completed_at"):
        if isinstance(updates.get(key), datetime):
            updates[key] = utc_timestamp(updates[key])
    if updates:
        set_clauses = [f"{k} = ?" for k in updates] + ["updated_at = datetime('now')"]
        db.execute(
            f"UPDATE job_runs SET {', '.join(set_clauses)} WHERE id = ?",
            [*updates.values(), run_id],
        )
        db.commit()
    run = get_job_run(db, run_id)
    if run is None:
        raise ValueError(f"Job run not found: {run_id}")
    return run


def get_pending_runs(db: sqlite3.Connection) -> list[JobRun]:
    rows = db.execute(
        "SELECT * FROM job_runs WHERE status = 'pending' ORDER BY created_at, id"
    ).fetchall()
    return [_row_to_run(r) for r in rows]


def get_active_run_for_job(db: sqlite3.Connection, job_id: str) -> JobRun | None:
    row = db.execute(
        "SELECT * FROM job_runs WHERE job_id = ? AND status = 'running' ORDER BY id LIMIT 1",
        (job_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def get_stale_runs(
    db: sqlite3.Connection, max_age_minutes: float, now: datetime | None = None
) -> list[JobRun]:
    """Pending runs created more than max_age_minutes ago."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=max_age_minutes)
    rows = db.execute(
        "SELECT * FROM job_runs WHERE status = 'pending' AND created_at < ? ORDER BY created_at, id",
        (utc_timestamp(cutoff),),
    ).fetchall()
    return [_row_to_run(r) for r in rows]


def get_stuck_running_runs(db: sqlite3.Connection) -> list[JobRun]:
    rows = db.execute(
        "SELECT * FROM job_runs WHERE status = 'running' ORDER BY created_at, id"
    ).fetchall()
    return [_row_to_run(r) for r in rows]


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        prompt=row["prompt"],
        schedule=row["schedule"],
        is_enabled=bool(row["is_enabled"]),
        last_run_at=parse_dt(row["last_run_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def _row_to_run(row: sqlite3.Row) -> JobRun:
    return JobRun(
        id=row["id"],
        job_id=row["job_id"],
        status=row["status"],
        slug_used=row["slug_used"],
        branch_name=row["branch_name"],
        pr_url=row["pr_url"],
        error_message=row["error_message"],
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        created_at=parse_dt(row["created_at"]),
    )

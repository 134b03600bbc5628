"""Job scheduler: turn cron schedules into job runs and execute them one at a time.

Every tick evaluates the enabled jobs against the current minute, creates a
pending run for each match, then executes at most one pending run. Only one
pipeline runs at a time across all jobs. At startup, runs left over from a
previous scheduler lifetime are closed out.
"""

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from delivery_orchestrator.config import Config
from delivery_orchestrator.core.jobs import (
    create_job_run,
    get_active_run_for_job,
    get_enabled_jobs,
    get_job,
    get_pending_runs,
    get_stale_runs,
    get_stuck_running_runs,
    minute_key,
    should_run_now,
    update_job,
    update_job_run,
)
from delivery_orchestrator.core.pipeline import (
    PipelineOptions,
    PipelineResult,
    run_pipeline,
    slug_for_run,
)
from delivery_orchestrator.core.projects import get_project
from delivery_orchestrator.core.tasks import best_effort
from delivery_orchestrator.db.engine import get_db
from delivery_orchestrator.db.models import Job, JobRun
from delivery_orchestrator.integrations.slack import (
    SlackError,
    format_job_run_notification,
    send_message,
)

logger = logging.getLogger(__name__)

STALE_PENDING_MINUTES = 60


@dataclass
class SchedulerContext:
    """Everything a tick needs. One per scheduler instance."""

    db_path: Path
    config: Config = field(default_factory=Config)
    pipeline_fn: Callable[[PipelineOptions], PipelineResult] = run_pipeline
    last_checked_minute: dict[str, str] = field(default_factory=dict)
    pipeline_lock: threading.Lock = field(default_factory=threading.Lock)
    tick_guard: threading.Lock = field(default_factory=threading.Lock)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Startup recovery ────────────────────────────────────────────────────────


def recover_on_startup(db: sqlite3.Connection, now: datetime | None = None) -> tuple[int, int]:
    """Skip stale pending runs and fail runs a previous process left running.

    Returns (skipped, failed).
    """
    stale = get_stale_runs(db, STALE_PENDING_MINUTES, now=now)
    for run in stale:
        update_job_run(
            db,
            run.id,
            status="skipped",
            error_message=(
                f"Skipped: run was pending for over {STALE_PENDING_MINUTES} minutes "
                "(the scheduler was likely not running)"
            ),
            completed_at=_utcnow(),
        )
        logger.info("Marked stale pending run %s as skipped", run.id)

    stuck = get_stuck_running_runs(db)
    for run in stuck:
        update_job_run(
            db,
            run.id,
            status="failed",
            error_message=(
                "Failed: run was still running when the scheduler restarted "
                "(previous crash or shutdown)"
            ),
            completed_at=_utcnow(),
        )
        logger.info("Marked interrupted run %s as failed", run.id)

    if stale or stuck:
        logger.info("Startup recovery: %d stale, %d interrupted runs cleaned up", len(stale), len(stuck))
    return len(stale), len(stuck)


# ── Schedule evaluation ─────────────────────────────────────────────────────


def check_schedules(
    db: sqlite3.Connection, context: SchedulerContext, now: datetime | None = None
) -> list[JobRun]:
    """Create a pending run for every enabled job whose schedule matches this minute."""
    now = now or datetime.now()
    current_minute = minute_key(now)
    created = []

    for job in get_enabled_jobs(db):
        if context.last_checked_minute.get(job.id) == current_minute:
            continue
        if should_run_now(job.schedule, now):
            try:
                created.append(create_job_run(db, job.id))
                logger.info("Created pending run for job %s", job.id)
            except sqlite3.Error as e:
                logger.error("Failed to create run for job %s: %s", job.id, e)
        context.last_checked_minute[job.id] = current_minute

    return created


# ── Run execution ───────────────────────────────────────────────────────────


def process_pending_runs(db: sqlite3.Connection, context: SchedulerContext) -> JobRun | None:
    """Execute at most one pending run. Returns the run that was executed, if any."""
    if not context.pipeline_lock.acquire(blocking=False):
        return None
    try:
        for run in get_pending_runs(db):
            job = get_job(db, run.job_id)
            if job is None:
                update_job_run(
                    db, run.id, status="skipped",
                    error_message=f"Skipped: job {run.job_id} no longer exists",
                    completed_at=_utcnow(),
                )
                continue

            active = get_active_run_for_job(db, job.id)
            if active is not None:
                update_job_run(
                    db, run.id, status="skipped",
                    error_message=f'Skipped: job "{job.name}" already has an active run ({active.id})',
                    completed_at=_utcnow(),
                )
                logger.info("Skipped run %s: job %s already has an active run", run.id, job.id)
                continue

            try:
                return execute_run(db, context, run, job)
            except Exception as e:
                logger.exception("Unexpected error executing run %s", run.id)
                best_effort(
                    update_job_run, db, run.id, status="failed",
                    error_message=f"Unexpected error: {e}", completed_at=_utcnow(),
                )
                return run
        return None
    finally:
        context.pipeline_lock.release()


def _fail(db: sqlite3.Connection, run: JobRun, job: Job, message: str) -> JobRun:
    logger.error("Run %s failed: %s", run.id, message)
    run = update_job_run(db, run.id, status="failed", error_message=message, completed_at=_utcnow())
    best_effort(update_job, db, job.id, last_run_at=_utcnow())
    return run


def execute_run(
    db: sqlite3.Connection, context: SchedulerContext, run: JobRun, job: Job
) -> JobRun:
    """Run the pipeline for one pending run and record its outcome."""
    config = context.config
    run_slug = slug_for_run(job.id)
    update_job_run(db, run.id, status="running", started_at=_utcnow(), slug_used=run_slug)
    logger.info("Executing run %s for job %s with slug %s", run.id, job.id, run_slug)

    project = get_project(db, job.project_id)
    if project is None:
        return _fail(db, run, job, f"Project {job.project_id} not found")
    if not Path(project.root_path).is_dir():
        return _fail(db, run, job, f"Project root path does not exist: {project.root_path}")

    options = PipelineOptions(
        db_path=context.db_path,
        prompt=job.prompt,
        root_path=Path(project.root_path),
        slug=run_slug,
        project_id=project.id,
        state_dir=config.state_dir,
        planning_timeout=config.output_timeout,
        check_interval=config.check_interval,
        diagnosis_model=config.diagnosis_model,
        anthropic_api_key=config.anthropic_api_key,
        base_branch=project.default_branch,
    )
    try:
        result = context.pipeline_fn(options)
    except Exception as e:
        logger.exception("Pipeline raised for run %s", run.id)
        result = PipelineResult("failed", None, error=f"Unexpected error: {e}")

    if result.status == "completed":
        finished = update_job_run(
            db, run.id, status="completed",
            branch_name=result.branch_name, pr_url=result.pr_url, completed_at=_utcnow(),
        )
        logger.info(
            "Run %s completed. Branch: %s, PR: %s", run.id, result.branch_name, result.pr_url or "none"
        )
    else:
        finished = update_job_run(
            db, run.id, status="failed",
            branch_name=result.branch_name,
            error_message=result.error or "Pipeline returned failed status",
            completed_at=_utcnow(),
        )
        logger.info("Run %s failed: %s", run.id, result.error or "unknown error")

    best_effort(update_job, db, job.id, last_run_at=_utcnow())
    notify_run(config.slack_bot_token, project.slack_channel, job, finished)
    return finished


def notify_run(token: str | None, channel: str | None, job: Job, run: JobRun) -> bool:
    """Post a finished run to Slack. Best effort: failures are logged, not raised."""
    if not token or not channel:
        return False
    try:
        send_message(
            token,
            channel,
            f"Job {job.name} {run.status}",
            blocks=format_job_run_notification(job, run),
        )
    except (SlackError, OSError) as e:
        logger.warning("Slack notification for run %s failed: %s", run.id, e)
        return False
    return True


# ── Polling ─────────────────────────────────────────────────────────────────


def tick(context: SchedulerContext, now: datetime | None = None) -> bool:
    """One scheduler pass. Returns False if another tick was still in flight."""
    if not context.tick_guard.acquire(blocking=False):
        logger.debug("Previous tick still running, skipping")
        return False
    try:
        with get_db(context.db_path) as db:
            check_schedules(db, context, now)
            process_pending_runs(db, context)
    except Exception:
        logger.exception("Scheduler tick failed")
    finally:
        context.tick_guard.release()
    return True


class JobScheduler:
    """Background thread that runs scheduler ticks."""

    def __init__(self, context: SchedulerContext, poll_interval: float = 30.0):
        self.context = context
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Run startup recovery, then start the polling thread."""
        if self._thread and self._thread.is_alive():
            return
        with get_db(self.context.db_path) as db:
            recover_on_startup(db)
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="job-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Job scheduler started, polling every %ss", self.poll_interval)

    def stop(self):
        """Signal the scheduler thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Job scheduler stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop_event.is_set():
            tick(self.context)
            self._stop_event.wait(self.poll_interval)

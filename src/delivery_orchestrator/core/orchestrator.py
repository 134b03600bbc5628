"""Delivery loop: drive one plan through its phases, one gate at a time.

For each phase the workers are dispatched and monitored, their branches are
merged when there are two of them, and a review agent validates the result
before the cursor advances. Any failure halts the plan in ``failed``; a
re-run resumes from the persisted cursor.
"""

import logging
import sqlite3
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import click

from delivery_orchestrator.core.dispatch import TaskHandle, dispatch_agent, get_controller
from delivery_orchestrator.core.heartbeat import (
    MonitorOptions,
    TaskResult,
    format_duration,
    monitor_task,
)
from delivery_orchestrator.core.process import ProcessController
from delivery_orchestrator.core.progress import (
    Phase,
    Progress,
    advance_phase,
    get_current_phase,
    is_all_complete,
    load_progress,
    mark_assignment_status,
    mark_phase_status,
    mark_plan_status,
    mark_review_status,
    save_progress,
)
from delivery_orchestrator.core.prompts import (
    build_review_prompt,
    build_worker_prompt,
    notes_path,
)
from delivery_orchestrator.core.tasks import RegistryError, best_effort, mark_task_killed
from delivery_orchestrator.db.engine import get_db
from delivery_orchestrator.db.models import AgentBackend
from delivery_orchestrator.integrations.git import (
    GitError,
    MergeResult,
    cleanup_phase_worktrees,
    commit_all,
    merge_phase_branches,
    setup_phase_branches,
)

logger = logging.getLogger(__name__)

MAX_ASSIGNMENTS = 2
DIVIDER = "─" * 41


@dataclass
class LoopOptions:
    db_path: Path
    progress_path: Path
    plan_dir: Path
    work_dir: Path
    repo_path: Path
    agent: AgentBackend
    slug: str
    project_context: str
    prd_path: Path
    project_id: str | None = None
    logs_dir: Path | None = None
    state_dir: str = ".dorch"
    worker_timeout: float = 300.0
    worker_interval: float = 10.0
    review_timeout: float = 120.0
    review_interval: float = 5.0
    # Wait for an escalated (stuck) agent to exit instead of failing at once.
    block_on_escalation: bool = True


@dataclass
class LoopResult:
    status: str  # completed | failed
    phases_completed: int
    total_phases: int
    total_elapsed: float
    failure_log: str | None = None
    diagnosis: str | None = None
    merge_conflicts: list[str] = field(default_factory=list)


class PhaseFailed(Exception):
    def __init__(self, message: str, log_path: str | None = None):
        super().__init__(message)
        self.log_path = log_path


class DeliveryLoop:
    """Owns the progress file for the duration of one run."""

    def __init__(
        self,
        options: LoopOptions,
        controller: ProcessController | None = None,
        diagnoser: Callable | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        echo: Callable = click.echo,
    ):
        self.options = options
        self.controller = controller
        self.diagnoser = diagnoser
        self.clock = clock
        self.sleep = sleep
        self.echo = echo
        self.logs_dir = options.logs_dir or Path(options.repo_path) / options.state_dir / "logs"

    def run(self) -> LoopResult:
        opts = self.options
        start = self.clock()
        try:
            progress = load_progress(opts.progress_path)
        except (OSError, ValueError) as e:
            logger.error("Could not load progress file %s: %s", opts.progress_path, e)
            return LoopResult("failed", 0, 0, 0.0, str(opts.progress_path), str(e))

        prd_content = Path(opts.prd_path).read_text(encoding="utf-8")
        if is_all_complete(progress):
            advance_phase(progress)  # nothing left: just make the status agree
        else:
            mark_plan_status(progress, "in_progress")
        self._save(progress)

        conflicts: list[str] = []
        with get_db(opts.db_path) as db:
            while not is_all_complete(progress):
                phase = get_current_phase(progress)
                idx = progress.current_phase
                try:
                    merge = self._run_phase(db, progress, idx, phase, prd_content)
                except PhaseFailed as e:
                    mark_phase_status(progress, idx, "failed")
                    mark_plan_status(progress, "failed")
                    self._save(progress)
                    self.echo(f"  ✗ Phase {phase.number} failed: {e}")
                    if e.log_path:
                        self.echo(f"    Log: {e.log_path}")
                    logger.warning("Phase %s of %s failed: %s", phase.number, opts.slug, e)
                    return LoopResult(
                        status="failed",
                        phases_completed=idx,
                        total_phases=len(progress.phases),
                        total_elapsed=self.clock() - start,
                        failure_log=e.log_path,
                        diagnosis=str(e),
                        merge_conflicts=conflicts,
                    )

                mark_phase_status(progress, idx, "completed")
                advance_phase(progress)
                self._save(progress)
                self.echo(f"  ✓ Phase {phase.number} complete")
                if merge is not None:
                    conflicts.extend(merge.conflicts)
                    cleanup_phase_worktrees(
                        opts.repo_path, opts.slug, phase.number,
                        [a.label for a in phase.assignments], opts.state_dir,
                    )

        elapsed = self.clock() - start
        self.echo(DIVIDER)
        self.echo("  All phases complete!")
        self.echo(f"  Total time: {format_duration(elapsed)}")
        self.echo(f"  Phases completed: {len(progress.phases)}")
        return LoopResult(
            status="completed",
            phases_completed=len(progress.phases),
            total_phases=len(progress.phases),
            total_elapsed=elapsed,
            merge_conflicts=conflicts,
        )

    # ── One phase ───────────────────────────────────────────────────────────

    def _run_phase(
        self,
        db: sqlite3.Connection,
        progress: Progress,
        idx: int,
        phase: Phase,
        prd_content: str,
    ) -> MergeResult | None:
        opts = self.options
        count = len(phase.assignments)
        if count > MAX_ASSIGNMENTS:
            raise PhaseFailed(
                f"{count} assignments in one phase is not supported (at most {MAX_ASSIGNMENTS})"
            )

        self.echo(DIVIDER)
        self.echo(f"  Phase {phase.number}: {phase.name}")
        self.echo(DIVIDER)
        mark_phase_status(progress, idx, "in_progress")
        self._save(progress)

        labels = [a.label for a in phase.assignments]
        if count > 1:
            try:
                worker_dirs = setup_phase_branches(
                    opts.repo_path, opts.slug, phase.number, labels, opts.state_dir
                )
            except GitError as e:
                raise PhaseFailed(f"Could not set up worker branches: {e}") from e
        else:
            worker_dirs = {labels[0]: opts.work_dir}

        # Dispatch every worker before monitoring any of them.
        handles: list[TaskHandle] = []
        for a_idx, assignment in enumerate(phase.assignments):
            mark_assignment_status(progress, idx, a_idx, "in_progress")
            self._save(progress)
            notes = notes_path(opts.plan_dir, assignment.label if count > 1 else None)
            prompt = build_worker_prompt(phase, assignment, prd_content, opts.project_context, notes)
            try:
                handle = self._dispatch(
                    db,
                    prompt,
                    worker_dirs[assignment.label],
                    f"engineering-phase-{phase.number}"
                    + (f"-{assignment.label.lower()}" if count > 1 else ""),
                    label=assignment.label if count > 1 else None,
                )
            except PhaseFailed:
                self._terminate(db, handles)
                for started in range(a_idx + 1):
                    mark_assignment_status(progress, idx, started, "failed")
                raise
            mark_assignment_status(progress, idx, a_idx, "in_progress", task_id=handle.task_id)
            self._save(progress)
            self.echo(f"    Worker {assignment.label} PID: {handle.pid}  Log: {handle.log_path}")
            handles.append(handle)

        worker_opts = MonitorOptions(
            output_timeout=opts.worker_timeout, check_interval=opts.worker_interval
        )
        results = self._monitor_all(db, handles, worker_opts)

        failure = None
        for a_idx, result in enumerate(results):
            status = "completed" if result.ok else "failed"
            mark_assignment_status(progress, idx, a_idx, status)
            if not result.ok and failure is None:
                failure = result
        self._save(progress)
        if failure is not None:
            raise PhaseFailed(self._describe(failure), failure.log_path)

        merge = None
        if count > 1:
            merge = self._merge(phase, labels, worker_dirs)

        self._review(db, progress, idx, phase, merge)
        return merge

    def _merge(self, phase: Phase, labels: list[str], worker_dirs: dict) -> MergeResult:
        opts = self.options
        try:
            for label in labels:
                commit_all(worker_dirs[label], f"Phase {phase.number} ({label}): uncommitted work")
            merge = merge_phase_branches(opts.work_dir, opts.slug, phase.number, labels)
        except GitError as e:
            raise PhaseFailed(f"Could not merge worker branches: {e}") from e
        cleanup_phase_worktrees(
            opts.repo_path, opts.slug, phase.number, labels, opts.state_dir, delete_branches=False
        )
        if merge.clean:
            self.echo("    Worker branches merged cleanly")
        else:
            self.echo(f"    ⚠ Merge conflicts for review: {', '.join(merge.conflicts)}")
        return merge

    def _review(
        self,
        db: sqlite3.Connection,
        progress: Progress,
        idx: int,
        phase: Phase,
        merge: MergeResult | None,
    ):
        opts = self.options
        self.echo(DIVIDER)
        self.echo(f"  Review: Phase {phase.number}")
        self.echo(DIVIDER)
        mark_review_status(progress, idx, "in_progress")
        self._save(progress)

        conflicts = merge.conflicts if merge is not None else None
        prompt = build_review_prompt(phase, opts.slug, opts.project_context, conflicts)
        try:
            handle = self._dispatch(db, prompt, opts.work_dir, f"review-phase-{phase.number}")
        except PhaseFailed:
            mark_review_status(progress, idx, "failed")
            raise
        mark_review_status(progress, idx, "in_progress", task_id=handle.task_id)
        self._save(progress)

        review_opts = MonitorOptions(
            output_timeout=opts.review_timeout, check_interval=opts.review_interval
        )
        result = self._monitor(db, handle, review_opts)
        mark_review_status(progress, idx, "completed" if result.ok else "failed")
        self._save(progress)
        if not result.ok:
            raise PhaseFailed(f"Review failed: {self._describe(result)}", result.log_path)

    # ── Dispatch / monitoring ───────────────────────────────────────────────

    def _dispatch(
        self,
        db: sqlite3.Connection,
        prompt: str,
        cwd: Path,
        command_name: str,
        label: str | None = None,
    ) -> TaskHandle:
        try:
            return dispatch_agent(
                db,
                self.options.agent,
                prompt,
                cwd,
                project_id=self.options.project_id,
                command_name=command_name,
                output_mode="stream-json",
                label=label,
                logs_dir=self.logs_dir,
                controller=self.controller,
                clock=self.clock,
                echo=self.echo,
            )
        except (RegistryError, OSError) as e:
            logger.error("Could not dispatch %s: %s", command_name, e)
            raise PhaseFailed(f"Could not dispatch {command_name}: {e}") from e

    def _terminate(self, db: sqlite3.Connection, handles: list[TaskHandle]):
        """Stop agents already started for a phase that cannot go on."""
        controller = self.controller or get_controller()
        for handle in handles:
            if handle.pid:
                logger.warning("Terminating task %s (PID %s)", handle.task_id, handle.pid)
                controller.terminate(handle.pid)
                best_effort(
                    mark_task_killed, db, handle.task_id,
                    "Terminated: another worker in the phase could not be dispatched",
                )

    def _monitor(self, db: sqlite3.Connection, handle: TaskHandle, options: MonitorOptions) -> TaskResult:
        return monitor_task(
            db,
            handle,
            options,
            wait_if_stuck=self.options.block_on_escalation,
            controller=self.controller,
            diagnoser=self.diagnoser,
            clock=self.clock,
            sleep=self.sleep,
            echo=self.echo,
        )

    def _monitor_in_thread(self, handle: TaskHandle, options: MonitorOptions) -> TaskResult:
        # sqlite connections are per thread.
        with get_db(self.options.db_path) as db:
            return self._monitor(db, handle, options)

    def _monitor_all(
        self, db: sqlite3.Connection, handles: list[TaskHandle], options: MonitorOptions
    ) -> list[TaskResult]:
        if len(handles) == 1:
            return [self._monitor(db, handles[0], options)]
        with ThreadPoolExecutor(max_workers=len(handles), thread_name_prefix="worker") as pool:
            futures = [pool.submit(self._monitor_in_thread, h, options) for h in handles]
            return [f.result() for f in futures]

    @staticmethod
    def _describe(result: TaskResult) -> str:
        if result.diagnosis:
            return f"task {result.task_id} {result.status}: {result.diagnosis}"
        return f"task {result.task_id} {result.status} (exit {result.exit_code})"

    def _save(self, progress: Progress):
        save_progress(self.options.progress_path, progress)


def run_delivery_loop(options: LoopOptions, **kwargs) -> LoopResult:
    """Run the delivery loop. kwargs go to DeliveryLoop (controller, diagnoser, clock...)."""
    return DeliveryLoop(options, **kwargs).run()

"""Heartbeat monitor: supervise one dispatched task until it exits or gets stuck.

Liveness and progress are inferred from the process table and the size of the
task's log file. When the log stops growing for ``output_timeout`` seconds the
tail is run through the stuck-pattern matcher, then (once per silence window)
through the AI diagnosis fallback.
"""

import logging
import sqlite3
import time
from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass

import click

from delivery_orchestrator.core.diagnosis import DiagnosisUnavailable
from delivery_orchestrator.core.dispatch import TaskHandle, get_controller
from delivery_orchestrator.core.patterns import match_stuck_pattern
from delivery_orchestrator.core.process import ProcessController
from delivery_orchestrator.core.tasks import (
    best_effort,
    complete_task,
    mark_task_killed,
    mark_task_stuck,
    update_task_output,
)

logger = logging.getLogger(__name__)

SPINNER = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
TAIL_LINES = 50
EXIT_CODE_WAIT = 30.0


@dataclass
class MonitorOptions:
    output_timeout: float = 120.0
    check_interval: float = 5.0
    # Silence after which an unavailable AI diagnosis escalates.
    heuristic_silence: float = 60.0
    kill_grace: float = 5.0
    # Defaults to the output mode the task was dispatched with.
    output_mode: str | None = None


@dataclass
class TaskResult:
    status: str  # completed | failed | killed | stuck
    exit_code: int | None
    diagnosis: str | None
    elapsed: float
    output_bytes: int
    task_id: str = ""
    pid: int = 0
    log_path: str = ""
    retry_suggested: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "completed"


def format_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"


def format_duration(seconds: float) -> str:
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    return f"{secs // 60}m {secs % 60}s"


class HeartbeatMonitor:
    """Polls one task at a time. Safe to reuse across tasks, not across threads."""

    def __init__(
        self,
        db: sqlite3.Connection,
        controller: ProcessController | None = None,
        diagnoser: Callable | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        echo: Callable = click.echo,
    ):
        self.db = db
        self.controller = controller or get_controller()
        self.diagnoser = diagnoser
        self.clock = clock
        self.sleep = sleep
        self.echo = echo

    # ── Main loop ───────────────────────────────────────────────────────────

    def watch(self, handle: TaskHandle, options: MonitorOptions | None = None) -> TaskResult:
        options = options or MonitorOptions()
        mode = options.output_mode or handle.output_mode
        if mode == "inherit":
            return self._watch_liveness(handle, options)
        return self._watch_log(handle, options, show_spinner=mode == "pipe")

    def _watch_liveness(self, handle: TaskHandle, options: MonitorOptions) -> TaskResult:
        # No log to inspect: the agent owns the terminal.
        while True:
            self.sleep(options.check_interval)
            if not self.controller.is_alive(handle.pid):
                return self._finish(handle, output_bytes=0, show_spinner=False)

    def _watch_log(
        self, handle: TaskHandle, options: MonitorOptions, show_spinner: bool
    ) -> TaskResult:
        last_bytes = 0
        last_output = handle.started_at
        window_start = handle.started_at
        ai_consulted = False
        ai_unavailable = False
        frame = 0

        while True:
            self.sleep(options.check_interval)
            now = self.clock()
            elapsed = now - handle.started_at
            current_bytes = self.controller.file_size(handle.log_path)

            if current_bytes > last_bytes:
                last_bytes = current_bytes
                last_output = window_start = now
                ai_consulted = ai_unavailable = False
                best_effort(update_task_output, self.db, handle.task_id, current_bytes)

            if not self.controller.is_alive(handle.pid):
                return self._finish(handle, current_bytes, show_spinner)

            if show_spinner:
                self._spinner(frame, handle, elapsed, current_bytes)
                frame += 1

            silence = now - last_output
            if now - window_start < options.output_timeout:
                continue

            recent = self.controller.read_tail(handle.log_path, TAIL_LINES)

            match = match_stuck_pattern(handle.agent_slug, recent, elapsed)
            if match.matched:
                return self._act(match.action, match.diagnosis, handle, current_bytes, options, show_spinner)

            if not ai_consulted:
                ai_consulted = True
                try:
                    verdict = self._diagnose(handle, recent, elapsed, silence)
                except DiagnosisUnavailable as e:
                    logger.info("AI diagnosis unavailable for task %s: %s", handle.task_id, e)
                    ai_unavailable = True
                else:
                    if verdict.verdict != "continue":
                        return self._act(
                            verdict.verdict, verdict.diagnosis, handle, current_bytes, options, show_spinner
                        )
                    # Extend the window; the 2x ceiling below still bounds it.
                    window_start = now

            if ai_unavailable and silence > options.heuristic_silence:
                return self._act(
                    "escalate",
                    f"No output for {format_duration(silence)} and AI diagnosis unavailable. "
                    "The agent may be stuck.",
                    handle, current_bytes, options, show_spinner,
                )

            if silence > options.output_timeout * 2:
                return self._act(
                    "escalate",
                    f"No output for {format_duration(silence)}. The agent may be stuck.",
                    handle, current_bytes, options, show_spinner,
                )

    def _diagnose(self, handle: TaskHandle, recent: str, elapsed: float, silence: float):
        if self.diagnoser is None:
            raise DiagnosisUnavailable("No diagnosis model configured")
        return self.diagnoser(handle.agent_name, recent, elapsed, silence)

    # ── Outcomes ────────────────────────────────────────────────────────────

    def _finish(self, handle: TaskHandle, output_bytes: int, show_spinner: bool) -> TaskResult:
        try:
            exit_code = handle.done.result(timeout=EXIT_CODE_WAIT)
        except FutureTimeoutError:
            logger.warning("Exit code for PID %s never arrived", handle.pid)
            exit_code = 1
        elapsed = self.clock() - handle.started_at
        status = "completed" if exit_code == 0 else "failed"

        if show_spinner:
            self._clear_line()
        if status == "completed":
            self.echo(f"  ✓ {handle.agent_name} finished ({format_duration(elapsed)})")
        else:
            self.echo(
                f"  ✗ {handle.agent_name} exited with code {exit_code} ({format_duration(elapsed)})"
            )

        best_effort(complete_task, self.db, handle.task_id, exit_code, status)
        return self._result(handle, status, exit_code, None, elapsed, output_bytes)

    def _act(
        self,
        action: str,
        diagnosis: str,
        handle: TaskHandle,
        output_bytes: int,
        options: MonitorOptions,
        show_spinner: bool,
    ) -> TaskResult:
        elapsed = self.clock() - handle.started_at
        if show_spinner:
            self._clear_line()

        if action == "kill":
            self.echo(f"  ✗ {handle.agent_name}: {diagnosis}")
            self.controller.terminate(handle.pid, options.kill_grace)
            best_effort(mark_task_killed, self.db, handle.task_id, diagnosis)
            logger.warning("Killed task %s (PID %s): %s", handle.task_id, handle.pid, diagnosis)
            return self._result(handle, "killed", None, diagnosis, elapsed, output_bytes)

        if action == "retry":
            diagnosis = f"{diagnosis} (retry suggested)"
            self.echo(f"  ⚠ {handle.agent_name}: {diagnosis}")
            self.controller.terminate(handle.pid, options.kill_grace)
            best_effort(mark_task_killed, self.db, handle.task_id, diagnosis)
            logger.warning("Killed task %s (PID %s): %s", handle.task_id, handle.pid, diagnosis)
            result = self._result(handle, "killed", None, diagnosis, elapsed, output_bytes)
            result.retry_suggested = True
            return result

        # escalate: leave the process running for a human.
        self.echo(f"  ⚠ {handle.agent_name} may be stuck")
        self.echo(f"    Diagnosis: {diagnosis}")
        self.echo(f"    Log: {handle.log_path}")
        self.echo(f"    The agent is still running. Kill with: kill {handle.pid}")
        best_effort(mark_task_stuck, self.db, handle.task_id, diagnosis)
        logger.warning("Task %s (PID %s) escalated: %s", handle.task_id, handle.pid, diagnosis)
        return self._result(handle, "stuck", None, diagnosis, elapsed, output_bytes)

    def wait_for_exit(self, handle: TaskHandle, stuck: TaskResult) -> TaskResult:
        """Block on an escalated task until it exits or someone kills it."""
        self.echo(f"    Waiting for PID {handle.pid} to exit or be killed...")
        exit_code = handle.done.result()
        status = "completed" if exit_code == 0 else "failed"
        best_effort(complete_task, self.db, handle.task_id, exit_code, status)
        logger.info("Escalated task %s exited with code %s", handle.task_id, exit_code)
        return self._result(
            handle, status, exit_code, stuck.diagnosis,
            self.clock() - handle.started_at, stuck.output_bytes,
        )

    def _result(self, handle, status, exit_code, diagnosis, elapsed, output_bytes) -> TaskResult:
        return TaskResult(
            status=status,
            exit_code=exit_code,
            diagnosis=diagnosis,
            elapsed=elapsed,
            output_bytes=output_bytes,
            task_id=handle.task_id,
            pid=handle.pid,
            log_path=handle.log_path,
        )

    # ── Terminal output ─────────────────────────────────────────────────────

    def _spinner(self, frame: int, handle: TaskHandle, elapsed: float, output_bytes: int):
        icon = SPINNER[frame % len(SPINNER)]
        self.echo(
            f"\r  {icon} {handle.agent_name} is working... "
            f"({format_duration(elapsed)}, {format_bytes(output_bytes)} output)  ",
            nl=False,
        )

    def _clear_line(self):
        self.echo("\r\x1b[2K", nl=False)


def monitor_task(
    db: sqlite3.Connection,
    handle: TaskHandle,
    options: MonitorOptions | None = None,
    wait_if_stuck: bool = False,
    **kwargs,
) -> TaskResult:
    """Watch a task with a one-off monitor. kwargs go to HeartbeatMonitor.

    With wait_if_stuck, an escalated task is waited on until it exits, and the
    result reflects its exit code.
    """
    monitor = HeartbeatMonitor(db, **kwargs)
    result = monitor.watch(handle, options)
    if result.status == "stuck" and wait_if_stuck:
        result = monitor.wait_for_exit(handle, result)
    return result

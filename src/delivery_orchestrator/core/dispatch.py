"""Agent dispatch: spawn one agent process per task and register it."""

import logging
import shlex
import sqlite3
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path

import click

from delivery_orchestrator.core.events import format_stream_event, parse_stream_event
from delivery_orchestrator.core.process import OSProcessController, ProcessController
from delivery_orchestrator.core.tasks import insert_task
from delivery_orchestrator.db.models import AgentBackend

logger = logging.getLogger(__name__)

# "inherit":     full terminal pass-through, liveness polled only
# "pipe":        raw capture to the log file
# "stream-json": NDJSON events rendered as progress lines and logged verbatim
OUTPUT_MODES = ("inherit", "pipe", "stream-json")

SPAWN_FAILURE_EXIT_CODE = 1
DEFAULT_STATE_DIR = ".dorch"

_default_controller: ProcessController | None = None


def get_controller() -> ProcessController:
    """Process-wide controller that owns every Popen we start."""
    global _default_controller
    if _default_controller is None:
        _default_controller = OSProcessController()
    return _default_controller


@dataclass
class TaskHandle:
    task_id: str
    pid: int
    log_path: str
    agent_slug: str
    agent_name: str
    started_at: float
    done: Future
    output_mode: str = "pipe"


def write_prompt_file(logs_dir: Path, task_id: str, prompt: str) -> Path:
    """Write the prompt to disk so long prompts don't hit argument limits."""
    path = logs_dir / f"{task_id}.prompt"
    path.write_text(prompt, encoding="utf-8")
    return path


def build_command(agent: AgentBackend, prompt_path: Path, output_mode: str) -> list[str]:
    """Shell command for the agent CLI, reading its prompt from prompt_path."""
    parts = [agent.command]
    if agent.preferred_model and agent.preferred_model != "auto":
        parts += ["--model", shlex.quote(agent.preferred_model)]
    parts += ["-p", "--force"]
    if output_mode == "stream-json":
        parts += ["--output-format", "stream-json"]
    parts.append(f'"$(cat {shlex.quote(str(prompt_path))})"')
    return ["/bin/sh", "-c", " ".join(parts)]


def _event_printer(cwd: str, label: str | None, echo: Callable[[str], None]):
    def on_line(line: str):
        event = parse_stream_event(line)
        if event is None:
            return
        rendered = format_stream_event(event, cwd, label)
        if rendered:
            echo(rendered)

    return on_line


def dispatch_agent(
    db: sqlite3.Connection,
    agent: AgentBackend,
    prompt: str,
    cwd: str | Path,
    project_id: str | None = None,
    command_name: str = "task",
    output_mode: str = "pipe",
    label: str | None = None,
    logs_dir: str | Path | None = None,
    controller: ProcessController | None = None,
    clock: Callable[[], float] = time.monotonic,
    echo: Callable[[str], None] = click.echo,
) -> TaskHandle:
    """Spawn an agent for a prompt and register the task as running.

    A spawn failure does not raise: the handle's ``done`` future resolves to a
    non-zero exit code and the error is written to the log. Failing to register
    the task does raise ``RegistryError``, after the process is terminated.
    """
    if output_mode not in OUTPUT_MODES:
        raise ValueError(f"Unknown output mode: {output_mode}")

    controller = controller or get_controller()
    cwd = str(cwd)
    task_id = str(uuid.uuid4())

    logs_path = Path(logs_dir) if logs_dir else Path(cwd) / DEFAULT_STATE_DIR / "logs"
    logs_path.mkdir(parents=True, exist_ok=True)
    log_path = logs_path / f"{task_id}.log"

    prompt_path = write_prompt_file(logs_path, task_id, prompt)
    command = build_command(agent, prompt_path, output_mode)

    on_line = _event_printer(cwd, label, echo) if output_mode == "stream-json" else None

    if output_mode == "inherit":
        log_path.write_text("[dorch] Output streamed to terminal.\n")

    started_at = clock()
    try:
        spawned = controller.spawn(
            command,
            cwd=cwd,
            log_path=log_path,
            capture=output_mode != "inherit",
            on_line=on_line,
        )
        pid, done = spawned.pid, spawned.done
    except OSError as e:
        logger.error("Failed to spawn %s for %s: %s", agent.name, command_name, e)
        with open(log_path, "a") as f:
            f.write(f"\n[dorch] Process error: {e}\n")
        pid, done = 0, Future()
        done.set_result(SPAWN_FAILURE_EXIT_CODE)

    try:
        insert_task(
            db, task_id, project_id, agent.slug, command_name, prompt, pid, str(log_path)
        )
    except Exception:
        if pid:
            controller.terminate(pid)
        raise

    logger.info(
        "Dispatched %s as %s (task %s, PID %s, log %s)",
        agent.name, command_name, task_id, pid, log_path,
    )

    return TaskHandle(
        task_id=task_id,
        pid=pid,
        log_path=str(log_path),
        agent_slug=agent.slug,
        agent_name=agent.name,
        started_at=started_at,
        done=done,
        output_mode=output_mode,
    )

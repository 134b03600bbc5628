"""Process control: the only place that touches OS processes and log files.

The dispatcher and heartbeat monitor talk to a :class:`ProcessController`, so
tests can drive them with a fake instead of real subprocesses.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TAIL_BYTES = 64 * 1024


@dataclass
class SpawnedProcess:
    pid: int
    done: Future  # resolves to the exit code


class ProcessController(ABC):
    @abstractmethod
    def spawn(
        self,
        command: list[str],
        cwd: str | Path,
        log_path: Path,
        capture: bool = True,
        on_line: Callable[[str], None] | None = None,
    ) -> SpawnedProcess:
        """Start a process. With capture, stdout/stderr are appended to log_path."""

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        """Whether the process is still running."""

    @abstractmethod
    def terminate(self, pid: int, grace: float = 5.0) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""

    def file_size(self, path: str | Path) -> int:
        try:
            return os.stat(path).st_size
        except OSError:
            return 0

    def read_tail(self, path: str | Path, max_lines: int = 50) -> str:
        """Return the last lines of a log file, or '' if it can't be read."""
        try:
            with open(path, "rb") as f:
                f.seek(0, os.SEEK_END)
                size = f.tell()
                f.seek(max(0, size - TAIL_BYTES))
                data = f.read()
        except OSError:
            return ""
        lines = data.decode("utf-8", errors="replace").split("\n")
        return "\n".join(lines[-max_lines:])


class OSProcessController(ProcessController):
    """Real subprocess implementation."""

    def __init__(self):
        self._procs: dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def spawn(
        self,
        command: list[str],
        cwd: str | Path,
        log_path: Path,
        capture: bool = True,
        on_line: Callable[[str], None] | None = None,
    ) -> SpawnedProcess:
        done: Future = Future()

        if not capture:
            # Full terminal pass-through: the agent keeps our TTY and session.
            proc = subprocess.Popen(command, cwd=cwd)
            self._track(proc)
            threading.Thread(
                target=self._wait, args=(proc, done), name=f"proc-{proc.pid}", daemon=True
            ).start()
            return SpawnedProcess(pid=proc.pid, done=done)

        log_file = open(log_path, "ab")
        try:
            proc = subprocess.Popen(
                command,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError:
            log_file.close()
            raise
        self._track(proc)
        threading.Thread(
            target=self._pump,
            args=(proc, log_file, on_line, done),
            name=f"proc-{proc.pid}",
            daemon=True,
        ).start()
        return SpawnedProcess(pid=proc.pid, done=done)

    def _track(self, proc: subprocess.Popen):
        with self._lock:
            self._procs[proc.pid] = proc

    def _wait(self, proc: subprocess.Popen, done: Future):
        done.set_result(proc.wait())

    def _pump(self, proc, log_file, on_line, done: Future):
        try:
            for raw in iter(proc.stdout.readline, b""):
                log_file.write(raw)
                log_file.flush()
                if on_line is not None:
                    line = raw.decode("utf-8", errors="replace").strip()
                    if line:
                        try:
                            on_line(line)
                        except Exception:
                            logger.exception("Output callback failed for PID %s", proc.pid)
        finally:
            proc.stdout.close()
            exit_code = proc.wait()
            log_file.close()
            done.set_result(exit_code)

    def is_alive(self, pid: int) -> bool:
        with self._lock:
            proc = self._procs.get(pid)
        if proc is not None:
            if proc.poll() is None:
                return True
            # Reaped; drop the handle.
            with self._lock:
                self._procs.pop(pid, None)
            return False
        if not pid:
            return False
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # Process exists but we can't signal it

    def terminate(self, pid: int, grace: float = 5.0) -> None:
        if not pid:
            return
        self._signal(pid, signal.SIGTERM)
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not self.is_alive(pid):
                return
            time.sleep(0.1)
        logger.warning("PID %s ignored SIGTERM, sending SIGKILL", pid)
        self._signal(pid, signal.SIGKILL)

    def _signal(self, pid: int, sig: int):
        try:
            if os.getpgid(pid) == pid:
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            pass  # Already exited

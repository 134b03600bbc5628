"""Shared fixtures: temp databases, git repos and a scripted process controller."""

import os
import subprocess
import tempfile
from concurrent.futures import Future
from pathlib import Path

import pytest

from delivery_orchestrator.core.process import ProcessController, SpawnedProcess
from delivery_orchestrator.db.engine import init_db
from delivery_orchestrator.db.models import AgentBackend

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


class FakeController(ProcessController):
    """Processes that run ``script(prompt, cwd)`` synchronously and exit at once.

    ``script`` returns ``(exit_code, output_lines)`` or just an exit code.
    """

    def __init__(self, script=None, spawn_error: Exception | None = None):
        self.script = script or (lambda prompt, cwd: 0)
        self.spawn_error = spawn_error
        self.spawned: list[dict] = []
        self.terminated: list[int] = []
        self._next_pid = 1000

    def spawn(self, command, cwd, log_path, capture=True, on_line=None):
        if self.spawn_error is not None:
            raise self.spawn_error
        prompt = Path(log_path).with_suffix(".prompt").read_text(encoding="utf-8")
        outcome = self.script(prompt, Path(cwd))
        exit_code, lines = outcome if isinstance(outcome, tuple) else (outcome, [])
        with open(log_path, "a") as f:
            for line in lines:
                f.write(line + "\n")
                if on_line is not None:
                    on_line(line)

        self._next_pid += 1
        self.spawned.append({"pid": self._next_pid, "cwd": str(cwd), "prompt": prompt, "command": command})
        done = Future()
        done.set_result(exit_code)
        return SpawnedProcess(pid=self._next_pid, done=done)

    def is_alive(self, pid):
        return False

    def terminate(self, pid, grace=5.0):
        self.terminated.append(pid)


def quiet(*args, **kwargs):
    pass


def no_sleep(seconds):
    pass


def git(*args, cwd):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database for testing."""
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def agent():
    return AgentBackend(
        slug="claude-code",
        name="Claude Code",
        command="claude",
        command_path="/usr/local/bin/claude",
        version="1.0.0",
        is_default=True,
    )


@pytest.fixture
def git_identity(monkeypatch):
    for key, value in GIT_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def git_repo(git_identity):
    """Create a temporary git repo with an initial commit on main."""
    with tempfile.TemporaryDirectory() as tmp:
        subprocess.run(["git", "init"], cwd=tmp, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=tmp, capture_output=True, check=True)
        readme = Path(tmp) / "README.md"
        readme.write_text("# Test\n")
        subprocess.run(["git", "add", "."], cwd=tmp, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=tmp,
            capture_output=True,
            check=True,
            env={**os.environ, **GIT_ENV},
        )
        yield Path(tmp)

"""Tests for the heartbeat monitor, driven by a fake clock and process table."""

from concurrent.futures import Future

import pytest

from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core.diagnosis import DiagnosisResult, DiagnosisUnavailable
from delivery_orchestrator.core.dispatch import TaskHandle
from delivery_orchestrator.core.heartbeat import (
    HeartbeatMonitor,
    MonitorOptions,
    format_bytes,
    format_duration,
    monitor_task,
)
from delivery_orchestrator.core.process import ProcessController


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class ScriptedProcess(ProcessController):
    """A process that lives until ``alive_until`` and whose log grows per ``size_at``."""

    def __init__(self, clock, alive_until=float("inf"), size_at=None, tail=""):
        self.clock = clock
        self.alive_until = alive_until
        self.size_at = size_at or (lambda t: 0)
        self.tail = tail
        self.terminated = []

    def spawn(self, command, cwd, log_path, capture=True, on_line=None):
        raise NotImplementedError

    def is_alive(self, pid):
        return self.clock() < self.alive_until and pid not in self.terminated

    def terminate(self, pid, grace=5.0):
        self.terminated.append(pid)

    def file_size(self, path):
        return self.size_at(self.clock())

    def read_tail(self, path, max_lines=50):
        return self.tail


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def handle(db, tmp_path):
    tasks_mod.insert_task(db, "t1", None, "claude-code", "planning", "x", 4242, str(tmp_path / "t1.log"))
    done = Future()
    done.set_result(0)
    return TaskHandle(
        task_id="t1",
        pid=4242,
        log_path=str(tmp_path / "t1.log"),
        agent_slug="claude-code",
        agent_name="Claude Code",
        started_at=0.0,
        done=done,
        output_mode="stream-json",
    )


def _monitor(db, clock, controller, diagnoser=None, echo=None):
    return HeartbeatMonitor(
        db,
        controller=controller,
        diagnoser=diagnoser,
        clock=clock,
        sleep=clock.sleep,
        echo=echo or (lambda *a, **k: None),
    )


FAST = MonitorOptions(output_timeout=30, check_interval=1)


class TestNaturalExit:
    def test_completed(self, db, clock, handle):
        result = _monitor(db, clock, ScriptedProcess(clock, alive_until=5)).watch(handle, FAST)
        assert result.status == "completed"
        assert result.exit_code == 0
        assert tasks_mod.get_task(db, "t1").status == "completed"

    def test_failed(self, db, clock, handle):
        handle.done = Future()
        handle.done.set_result(2)
        result = _monitor(db, clock, ScriptedProcess(clock, alive_until=5)).watch(handle, FAST)
        assert result.status == "failed"
        assert not result.ok
        task = tasks_mod.get_task(db, "t1")
        assert task.status == "failed"
        assert task.exit_code == 2

    def test_output_recorded(self, db, clock, handle):
        controller = ScriptedProcess(clock, alive_until=10, size_at=lambda t: int(t) * 100)
        result = _monitor(db, clock, controller).watch(handle, FAST)
        assert result.output_bytes == 1000
        assert tasks_mod.get_task(db, "t1").output_bytes == 1000

    def test_inherit_mode_polls_liveness(self, db, clock, handle):
        result = _monitor(db, clock, ScriptedProcess(clock, alive_until=3)).watch(
            handle, MonitorOptions(output_timeout=30, check_interval=1, output_mode="inherit")
        )
        assert result.status == "completed"
        assert result.output_bytes == 0


class TestSilenceWithoutDiagnosis:
    def test_no_escalation_before_sixty_seconds(self, db, clock, handle):
        # Silent past the output timeout, then exits at 59.5s: never escalated.
        controller = ScriptedProcess(clock, alive_until=59.5)
        result = _monitor(db, clock, controller).watch(handle, FAST)
        assert result.status == "completed"
        assert tasks_mod.get_task(db, "t1").diagnosis is None

    def test_escalates_after_sixty_seconds(self, db, clock, handle):
        controller = ScriptedProcess(clock)
        result = _monitor(db, clock, controller).watch(handle, FAST)

        assert result.status == "stuck"
        assert 60 < result.elapsed <= 61
        assert "AI diagnosis unavailable" in result.diagnosis
        assert controller.terminated == []
        task = tasks_mod.get_task(db, "t1")
        assert task.status == "stuck"
        assert task.completed_at is None

    def test_unavailable_diagnoser_same_as_none(self, db, clock, handle):
        def unavailable(*args):
            raise DiagnosisUnavailable("no key")

        result = _monitor(db, clock, ScriptedProcess(clock), diagnoser=unavailable).watch(handle, FAST)
        assert result.status == "stuck"
        assert 60 < result.elapsed <= 61

    def test_output_resets_the_window(self, db, clock, handle):
        # Output keeps arriving until t=40, so silence only starts counting there.
        controller = ScriptedProcess(clock, size_at=lambda t: min(int(t), 40) * 10)
        result = _monitor(db, clock, controller).watch(handle, FAST)
        assert result.status == "stuck"
        assert result.elapsed == pytest.approx(101)


class TestPatternActions:
    def test_kill(self, db, clock, handle):
        controller = ScriptedProcess(clock, tail="Error: invalid api key")
        result = _monitor(db, clock, controller).watch(handle, FAST)

        assert result.status == "killed"
        assert result.elapsed == pytest.approx(30)
        assert controller.terminated == [4242]
        assert tasks_mod.get_task(db, "t1").status == "killed"

    def test_retry_suggested(self, db, clock, handle):
        controller = ScriptedProcess(clock, tail="429 Too Many Requests")
        result = _monitor(db, clock, controller).watch(handle, FAST)

        assert result.status == "killed"
        assert result.retry_suggested
        assert "retry suggested" in result.diagnosis

    def test_escalate_leaves_process_running(self, db, clock, handle):
        controller = ScriptedProcess(clock, tail="getaddrinfo ENOTFOUND")
        printed = []
        result = _monitor(db, clock, controller, echo=lambda msg, **k: printed.append(msg)).watch(
            handle, FAST
        )

        assert result.status == "stuck"
        assert controller.terminated == []
        assert any("kill 4242" in line for line in printed)


class TestAIDiagnosis:
    def test_continue_extends_until_ceiling(self, db, clock, handle):
        calls = []

        def diagnoser(agent_name, recent, elapsed, silence):
            calls.append(elapsed)
            return DiagnosisResult("continue", "thinking", 0.9)

        result = _monitor(db, clock, ScriptedProcess(clock), diagnoser=diagnoser).watch(handle, FAST)

        assert calls == [30]
        assert result.status == "stuck"
        assert 60 < result.elapsed <= 61

    def test_kill_verdict(self, db, clock, handle):
        controller = ScriptedProcess(clock)
        diagnoser = lambda *a: DiagnosisResult("kill", "infinite loop", 0.95)  # noqa: E731
        result = _monitor(db, clock, controller, diagnoser=diagnoser).watch(handle, FAST)

        assert result.status == "killed"
        assert result.diagnosis == "infinite loop"
        assert controller.terminated == [4242]

    def test_consulted_once_per_window(self, db, clock, handle):
        calls = []

        def diagnoser(*args):
            calls.append(args)
            return DiagnosisResult("continue", "ok", 0.9)

        # Output resumes once at t=45, opening a new silence window.
        controller = ScriptedProcess(clock, size_at=lambda t: 10 if t >= 45 else 0)
        _monitor(db, clock, controller, diagnoser=diagnoser).watch(handle, FAST)
        assert len(calls) == 2


class TestMonitorTask:
    def test_wait_if_stuck_returns_exit_status(self, db, clock, handle):
        result = monitor_task(
            db, handle, FAST, wait_if_stuck=True,
            controller=ScriptedProcess(clock), clock=clock, sleep=clock.sleep,
            echo=lambda *a, **k: None,
        )
        assert result.status == "completed"
        assert "may be stuck" in result.diagnosis
        assert tasks_mod.get_task(db, "t1").status == "completed"

    def test_without_wait_stays_stuck(self, db, clock, handle):
        result = monitor_task(
            db, handle, FAST,
            controller=ScriptedProcess(clock), clock=clock, sleep=clock.sleep,
            echo=lambda *a, **k: None,
        )
        assert result.status == "stuck"


class TestFormatting:
    def test_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(2048) == "2.0 KB"
        assert format_bytes(3 * 1024 * 1024) == "3.0 MB"

    def test_duration(self):
        assert format_duration(42) == "42s"
        assert format_duration(125) == "2m 5s"

"""Tests for the job scheduler: schedule ticks, run execution and startup recovery."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from delivery_orchestrator.config import Config
from delivery_orchestrator.core import jobs as jobs_mod
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import scheduler as scheduler_mod
from delivery_orchestrator.core.pipeline import PipelineResult
from delivery_orchestrator.core.scheduler import SchedulerContext
from delivery_orchestrator.integrations.slack import SlackError


class StubPipeline:
    def __init__(self, result=None, error=None):
        self.result = result or PipelineResult("completed", "dorch/x", pr_url="https://example.com/pr/1")
        self.error = error
        self.calls = []

    def __call__(self, options):
        self.calls.append(options)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def project(db, tmp_path):
    return projects_mod.create_project(db, "demo", "Demo", str(tmp_path), slack_channel="#builds")


@pytest.fixture
def job(db, project):
    return jobs_mod.create_job(db, "nightly", project.id, "Nightly cleanup", "Remove dead code", "0 2 * * *")


@pytest.fixture
def context(db_path):
    def make(pipeline=None, **config):
        return SchedulerContext(
            db_path=db_path,
            config=Config(db_path=db_path, **config),
            pipeline_fn=pipeline or StubPipeline(),
        )

    return make


TWO_AM = datetime(2026, 1, 5, 2, 0, 30)


class TestCheckSchedules:
    def test_one_run_per_matching_minute(self, db, job, context):
        ctx = context()

        created = scheduler_mod.check_schedules(db, ctx, TWO_AM)
        again = scheduler_mod.check_schedules(db, ctx, TWO_AM + timedelta(seconds=20))

        assert len(created) == 1
        assert again == []
        assert len(jobs_mod.list_job_runs(db, job.id)) == 1

    def test_next_day_runs_again(self, db, job, context):
        ctx = context()
        scheduler_mod.check_schedules(db, ctx, TWO_AM)
        scheduler_mod.check_schedules(db, ctx, TWO_AM + timedelta(days=1))
        assert len(jobs_mod.list_job_runs(db, job.id)) == 2

    def test_no_match(self, db, job, context):
        assert scheduler_mod.check_schedules(db, context(), TWO_AM + timedelta(hours=1)) == []

    def test_disabled_job_ignored(self, db, job, context):
        jobs_mod.update_job(db, job.id, is_enabled=False)
        assert scheduler_mod.check_schedules(db, context(), TWO_AM) == []

    def test_contexts_are_independent(self, db, job, context):
        scheduler_mod.check_schedules(db, context(), TWO_AM)
        scheduler_mod.check_schedules(db, context(), TWO_AM)
        assert len(jobs_mod.list_job_runs(db, job.id)) == 2


class TestProcessPendingRuns:
    def test_executes_run(self, db, job, project, context):
        pipeline = StubPipeline()
        run = jobs_mod.create_job_run(db, job.id)

        finished = scheduler_mod.process_pending_runs(db, context(pipeline))

        assert finished.status == "completed"
        assert finished.branch_name == "dorch/x"
        assert finished.pr_url == "https://example.com/pr/1"
        assert finished.slug_used.startswith("nightly-")
        assert finished.started_at is not None and finished.completed_at is not None
        options = pipeline.calls[0]
        assert options.prompt == "Remove dead code"
        assert str(options.root_path) == project.root_path
        assert options.slug == finished.slug_used
        assert options.project_id == "demo"
        assert jobs_mod.get_job(db, job.id).last_run_at is not None
        assert jobs_mod.get_job_run(db, run.id).status == "completed"

    def test_one_run_per_call(self, db, job, context):
        jobs_mod.create_job_run(db, job.id)
        jobs_mod.create_job_run(db, job.id)
        pipeline = StubPipeline()

        scheduler_mod.process_pending_runs(db, context(pipeline))

        assert len(pipeline.calls) == 1
        assert len(jobs_mod.get_pending_runs(db)) == 1

    def test_failed_pipeline(self, db, job, context):
        run = jobs_mod.create_job_run(db, job.id)
        pipeline = StubPipeline(PipelineResult("failed", "dorch/x", error="Planning agent did not create the PRD."))

        scheduler_mod.process_pending_runs(db, context(pipeline))

        run = jobs_mod.get_job_run(db, run.id)
        assert run.status == "failed"
        assert run.error_message == "Planning agent did not create the PRD."

    def test_pipeline_exception(self, db, job, context):
        run = jobs_mod.create_job_run(db, job.id)
        scheduler_mod.process_pending_runs(db, context(StubPipeline(error=RuntimeError("boom"))))

        run = jobs_mod.get_job_run(db, run.id)
        assert run.status == "failed"
        assert "Unexpected error: boom" in run.error_message

    def test_skips_when_job_already_running(self, db, job, context):
        active = jobs_mod.create_job_run(db, job.id)
        jobs_mod.update_job_run(db, active.id, status="running")
        pending = jobs_mod.create_job_run(db, job.id)
        pipeline = StubPipeline()

        scheduler_mod.process_pending_runs(db, context(pipeline))

        run = jobs_mod.get_job_run(db, pending.id)
        assert run.status == "skipped"
        assert "already has an active run" in run.error_message
        assert pipeline.calls == []

    def test_missing_root_path(self, db, job, context):
        projects_mod.update_project(db, "demo", root_path="/nonexistent/path")
        run = jobs_mod.create_job_run(db, job.id)
        pipeline = StubPipeline()

        scheduler_mod.process_pending_runs(db, context(pipeline))

        run = jobs_mod.get_job_run(db, run.id)
        assert run.status == "failed"
        assert "does not exist" in run.error_message
        assert pipeline.calls == []

    def test_pipeline_lock_held(self, db, job, context):
        jobs_mod.create_job_run(db, job.id)
        ctx = context()
        ctx.pipeline_lock.acquire()
        try:
            assert scheduler_mod.process_pending_runs(db, ctx) is None
        finally:
            ctx.pipeline_lock.release()
        assert len(jobs_mod.get_pending_runs(db)) == 1


class TestNotifications:
    def test_sent_when_configured(self, db, job, context):
        jobs_mod.create_job_run(db, job.id)
        with patch.object(scheduler_mod, "send_message") as send:
            scheduler_mod.process_pending_runs(db, context(slack_bot_token="xoxb-test"))
        channel = send.call_args.args[1]
        assert channel == "#builds"
        assert "Nightly cleanup" in send.call_args.args[2]

    def test_skipped_without_token(self, db, job, context):
        jobs_mod.create_job_run(db, job.id)
        with patch.object(scheduler_mod, "send_message") as send:
            scheduler_mod.process_pending_runs(db, context())
        send.assert_not_called()

    def test_slack_failure_does_not_fail_run(self, db, job, context):
        run = jobs_mod.create_job_run(db, job.id)
        with patch.object(scheduler_mod, "send_message", side_effect=SlackError("channel_not_found")):
            scheduler_mod.process_pending_runs(db, context(slack_bot_token="xoxb-test"))
        assert jobs_mod.get_job_run(db, run.id).status == "completed"


class TestStartupRecovery:
    def test_recovers_stale_and_interrupted_runs(self, db, job):
        now = datetime.now(timezone.utc)
        stale = jobs_mod.create_job_run(db, job.id, created_at=now - timedelta(minutes=90))
        fresh = jobs_mod.create_job_run(db, job.id, created_at=now - timedelta(minutes=5))
        interrupted = jobs_mod.create_job_run(db, job.id, created_at=now - timedelta(minutes=30))
        jobs_mod.update_job_run(db, interrupted.id, status="running")
        done = jobs_mod.create_job_run(db, job.id, created_at=now - timedelta(hours=5))
        jobs_mod.update_job_run(db, done.id, status="completed")

        skipped, failed = scheduler_mod.recover_on_startup(db, now=now)

        assert (skipped, failed) == (1, 1)
        assert jobs_mod.get_job_run(db, stale.id).status == "skipped"
        assert jobs_mod.get_job_run(db, interrupted.id).status == "failed"
        assert jobs_mod.get_job_run(db, fresh.id).status == "pending"
        untouched = jobs_mod.get_job_run(db, done.id)
        assert untouched.status == "completed"
        assert untouched.error_message is None


class TestTick:
    def test_tick_creates_and_executes(self, db, job, context):
        pipeline = StubPipeline()
        assert scheduler_mod.tick(context(pipeline), TWO_AM)
        assert len(pipeline.calls) == 1
        assert jobs_mod.list_job_runs(db, job.id)[0].status == "completed"

    def test_overlapping_tick_skipped(self, db, job, context):
        ctx = context()
        ctx.tick_guard.acquire()
        try:
            assert scheduler_mod.tick(ctx, TWO_AM) is False
        finally:
            ctx.tick_guard.release()
        assert jobs_mod.list_job_runs(db, job.id) == []


class TestJobScheduler:
    def test_start_and_stop(self, db, job, context):
        stuck = jobs_mod.create_job_run(db, job.id)
        jobs_mod.update_job_run(db, stuck.id, status="running")
        ticked = threading.Event()

        with patch.object(scheduler_mod, "tick", side_effect=lambda ctx: ticked.set()):
            scheduler = scheduler_mod.JobScheduler(context(), poll_interval=0.01)
            scheduler.start()
            assert ticked.wait(5)
            assert scheduler.is_running()
            scheduler.stop()

        assert not scheduler.is_running()
        assert jobs_mod.get_job_run(db, stuck.id).status == "failed"

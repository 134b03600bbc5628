"""Pipeline entry point: request in, reviewed feature branch (and PR) out.

Planning agent writes a PRD, a decomposition agent turns it into a plan and a
progress file, the delivery loop executes the plan, and a post-mortem agent
writes up the run. Used by ``dorch run`` and by the job scheduler.
"""

import logging
import secrets
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import click

from delivery_orchestrator.core.agents import get_agent, get_default_agent, list_agents
from delivery_orchestrator.core.diagnosis import Diagnoser
from delivery_orchestrator.core.dispatch import dispatch_agent
from delivery_orchestrator.core.heartbeat import MonitorOptions, TaskResult, monitor_task
from delivery_orchestrator.core.orchestrator import LoopOptions, run_delivery_loop
from delivery_orchestrator.core.process import ProcessController
from delivery_orchestrator.core.prompts import (
    assemble_project_context,
    build_decomposition_prompt,
    build_planning_prompt,
    build_post_mortem_prompt,
)
from delivery_orchestrator.db.engine import get_db
from delivery_orchestrator.db.models import AgentBackend
from delivery_orchestrator.integrations.git import (
    GitError,
    cleanup_worktree,
    commit_all,
    create_feature_branch,
    create_pull_request,
    ensure_clean,
    ensure_repo,
    feature_branch_name,
    setup_worktree,
)

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when a pipeline can't start: missing state dir, agent or repository."""


@dataclass
class PipelineOptions:
    db_path: Path
    prompt: str
    root_path: Path
    slug: str
    project_id: str | None = None
    agent: AgentBackend | None = None
    agent_slug: str | None = None
    pr_title_prefix: str = "dorch job"
    state_dir: str = ".dorch"
    planning_timeout: float = 120.0
    worker_timeout: float = 300.0
    review_timeout: float = 120.0
    check_interval: float = 5.0
    diagnosis_model: str = "claude-haiku-4-5"
    anthropic_api_key: str | None = None
    create_pr: bool = True
    base_branch: str = "main"


@dataclass
class PipelineResult:
    status: str  # completed | failed
    branch_name: str | None
    pr_url: str | None = None
    error: str | None = None


def slug_for_run(job_slug: str, now: datetime | None = None) -> str:
    """Unique branch slug for one scheduled run: ``<slug>-YYYY-MM-DD-<4 hex>``."""
    now = now or datetime.now()
    return f"{job_slug}-{now:%Y-%m-%d}-{secrets.token_hex(2)}"


def resolve_agent(db, agent_slug: str | None = None) -> AgentBackend:
    if agent_slug:
        agent = get_agent(db, agent_slug)
        if agent is None or not agent.is_available:
            raise PipelineError(f'Agent "{agent_slug}" not found or not available.')
        return agent
    agent = get_default_agent(db)
    if agent is not None:
        return agent
    available = list_agents(db, available_only=True)
    if not available:
        raise PipelineError("No coding agents available. Run 'dorch agent detect' first.")
    return available[0]


def _missing(what: str, result: TaskResult) -> str:
    message = f"{what} Log: {result.log_path}"
    if result.diagnosis:
        message += f" Diagnosis: {result.diagnosis}"
    return message


class Pipeline:
    def __init__(
        self,
        options: PipelineOptions,
        controller: ProcessController | None = None,
        diagnoser: Callable | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        echo: Callable = click.echo,
    ):
        self.options = options
        self.controller = controller
        self.diagnoser = diagnoser or Diagnoser(
            model_name=options.diagnosis_model, api_key=options.anthropic_api_key
        )
        self.clock = clock
        self.sleep = sleep
        self.echo = echo
        self.root = Path(options.root_path)
        self.logs_dir = self.root / options.state_dir / "logs"

    def _runtime(self) -> dict:
        return {
            "controller": self.controller,
            "diagnoser": self.diagnoser,
            "clock": self.clock,
            "sleep": self.sleep,
            "echo": self.echo,
        }

    def _run_agent(self, db, agent: AgentBackend, prompt: str, cwd: Path, command_name: str) -> TaskResult:
        opts = self.options
        self.echo(f"  ● {command_name}: dispatching {agent.name}")
        handle = dispatch_agent(
            db,
            agent,
            prompt,
            cwd,
            project_id=opts.project_id,
            command_name=command_name,
            output_mode="stream-json",
            logs_dir=self.logs_dir,
            controller=self.controller,
            clock=self.clock,
            echo=self.echo,
        )
        monitor_opts = MonitorOptions(
            output_timeout=opts.planning_timeout, check_interval=opts.check_interval
        )
        return monitor_task(db, handle, monitor_opts, wait_if_stuck=True, **self._runtime())

    def run(self) -> PipelineResult:
        opts = self.options
        started_at = datetime.now(timezone.utc)

        if not (self.root / opts.state_dir).is_dir():
            raise PipelineError(
                f'Project at {self.root} has not been initialized. Run "dorch init" first.'
            )

        with get_db(opts.db_path) as db:
            agent = opts.agent or resolve_agent(db, opts.agent_slug)
            context = assemble_project_context(self.root, opts.state_dir).format()

            try:
                ensure_repo(self.root)
            except GitError as e:
                raise PipelineError(str(e)) from e
            ensure_clean(self.root)

            branch = feature_branch_name(opts.slug)
            try:
                create_feature_branch(self.root, opts.slug)
                # One work directory per project: clear out whatever a previous run left.
                cleanup_worktree(self.root, opts.state_dir)
                work_dir = setup_worktree(self.root, opts.slug, opts.state_dir)
            except GitError as e:
                return PipelineResult("failed", branch, error=f"Git setup failed: {e}")

            plan_dir = work_dir / opts.state_dir / "exec-plans" / "active" / opts.slug
            plan_dir.mkdir(parents=True, exist_ok=True)
            prd_path = plan_dir / "prd.md"
            plan_path = plan_dir / "plan.md"
            progress_path = plan_dir / "progress.json"

            # Planning: request -> PRD
            result = self._run_agent(
                db, agent, build_planning_prompt(opts.prompt, context, prd_path), work_dir, "planning"
            )
            if not prd_path.exists():
                return PipelineResult(
                    "failed", branch, error=_missing("Planning agent did not create the PRD.", result)
                )

            # Decomposition: PRD -> plan + progress file
            result = self._run_agent(
                db,
                agent,
                build_decomposition_prompt(prd_path, context, plan_path, progress_path, opts.slug),
                work_dir,
                "decomposition",
            )
            if not plan_path.exists():
                return PipelineResult(
                    "failed", branch,
                    error=_missing("Decomposition agent did not create the execution plan.", result),
                )
            if not progress_path.exists():
                return PipelineResult(
                    "failed", branch,
                    error=_missing("Decomposition agent did not create progress.json.", result),
                )

            loop = run_delivery_loop(
                LoopOptions(
                    db_path=opts.db_path,
                    progress_path=progress_path,
                    plan_dir=plan_dir,
                    work_dir=work_dir,
                    repo_path=self.root,
                    agent=agent,
                    slug=opts.slug,
                    project_context=context,
                    prd_path=prd_path,
                    project_id=opts.project_id,
                    logs_dir=self.logs_dir,
                    state_dir=opts.state_dir,
                    worker_timeout=opts.worker_timeout,
                    review_timeout=opts.review_timeout,
                ),
                **self._runtime(),
            )
            if loop.status != "completed":
                error = (
                    f"Delivery loop failed: {loop.phases_completed}/{loop.total_phases} phases completed."
                )
                if loop.diagnosis:
                    error += f" {loop.diagnosis}"
                if loop.failure_log:
                    error += f" Log: {loop.failure_log}"
                logger.warning("Leaving worktree %s in place for inspection", work_dir)
                return PipelineResult("failed", branch, error=error)

            self._post_mortem(db, agent, context, work_dir, plan_dir, {
                "slug": opts.slug,
                "branch": branch,
                "agent": agent.name,
                "started_at": started_at.isoformat(),
                "completed_at": datetime.now(timezone.utc).isoformat(),
                "elapsed_seconds": round(loop.total_elapsed),
                "phases_completed": f"{loop.phases_completed}/{loop.total_phases}",
                "merge_conflicts": ", ".join(loop.merge_conflicts) or "none",
            })

        self._finish_branch(work_dir, plan_dir)
        pr_url = self._open_pull_request() if opts.create_pr else None
        return PipelineResult("completed", branch, pr_url=pr_url)

    def _post_mortem(
        self, db, agent: AgentBackend, context: str, work_dir: Path, plan_dir: Path, summary: dict
    ):
        try:
            prompt = build_post_mortem_prompt(
                (plan_dir / "progress.json").read_text(encoding="utf-8"),
                (plan_dir / "plan.md").read_text(encoding="utf-8"),
                (plan_dir / "prd.md").read_text(encoding="utf-8"),
                context,
                summary,
                plan_dir,
            )
            self._run_agent(db, agent, prompt, work_dir, "post-mortem")
        except Exception:
            logger.exception("Post-mortem failed for %s", self.options.slug)

    def _finish_branch(self, work_dir: Path, plan_dir: Path):
        """Drop intermediate plan files, commit the run record, release the worktree."""
        shutil.rmtree(plan_dir / "notes", ignore_errors=True)
        for name in ("plan.md", "progress.json"):
            (plan_dir / name).unlink(missing_ok=True)
        try:
            commit_all(work_dir, f"Add delivery record for {self.options.slug}")
        except GitError as e:
            logger.warning("Could not commit delivery record: %s", e)
        cleanup_worktree(self.root, self.options.state_dir)

    def _open_pull_request(self) -> str | None:
        opts = self.options
        try:
            pr = create_pull_request(
                self.root, opts.slug, f"{opts.pr_title_prefix}: {opts.slug}", base=opts.base_branch
            )
        except GitError as e:
            logger.warning("Could not create PR for %s: %s", opts.slug, e)
            self.echo(f"  Could not push. Create a PR manually from {feature_branch_name(opts.slug)}")
            return None
        return pr.url


def run_pipeline(options: PipelineOptions, **kwargs) -> PipelineResult:
    """Run one full pipeline. kwargs go to Pipeline (controller, diagnoser, clock...)."""
    return Pipeline(options, **kwargs).run()

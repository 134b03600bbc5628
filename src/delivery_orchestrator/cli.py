"""CLI entry point for the delivery orchestrator."""

import json
import logging
import signal
import sys
import threading
from pathlib import Path

import click

from delivery_orchestrator.config import get_config
from delivery_orchestrator.core import agents as agents_mod
from delivery_orchestrator.core import jobs as jobs_mod
from delivery_orchestrator.core import progress as progress_mod
from delivery_orchestrator.core import projects as projects_mod
from delivery_orchestrator.core import tasks as tasks_mod
from delivery_orchestrator.core.pipeline import PipelineError, PipelineOptions, run_pipeline, slug_for_run
from delivery_orchestrator.core.scheduler import JobScheduler, SchedulerContext
from delivery_orchestrator.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
def main(verbose):
    """dorch - Delivery Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.option("--name", default=None, help="Project name (defaults to the directory name)")
@click.option("--repo-path", default=None, help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for job notifications")
def init_project(name, repo_path, branch, slack_channel):
    """Register a project and create its state directory."""
    config = get_config()
    root = Path(repo_path).resolve() if repo_path else Path(config.repo_path).resolve()
    name = name or root.name
    project_id = projects_mod.slugify(name)

    with _get_db() as db:
        try:
            project = projects_mod.create_project(
                db, project_id, name, str(root), branch, slack_channel
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        state_path = projects_mod.ensure_state_dir(root, config.state_dir)
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Root: {project.root_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  State: {state_path}")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage coding agent backends."""
    pass


@agent_group.command("detect")
@click.option("--default", "default_slug", default=None, help="Slug of the agent to use by default")
def agent_detect(default_slug):
    """Detect installed coding agents and register them."""
    found, missing = agents_mod.detect_agents()
    if default_slug and default_slug not in {a.slug for a in found}:
        click.echo(f"Agent not detected: {default_slug}", err=True)
        sys.exit(1)

    with _get_db() as db:
        agents_mod.register_agents(db, found, default_slug)

    for agent in found:
        click.echo(f"  ✓ {agent.name} ({agent.slug}) {agent.version} at {agent.command_path}")
    for definition in missing:
        click.echo(f"  ✗ {definition.name} not found. Install: {definition.install_hint}")
    if not found:
        click.echo("No coding agents detected.", err=True)
        sys.exit(1)


@agent_group.command("list")
def agent_list():
    """List registered agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db)
    if not agents:
        click.echo("No agents registered. Run 'dorch agent detect'.")
        return
    for agent in agents:
        marker = "*" if agent.is_default else " "
        state = "available" if agent.is_available else "unavailable"
        model = agent.preferred_model or "auto"
        click.echo(f"  {marker} {agent.slug}: {agent.name} [{state}] model={model}")


@agent_group.command("model")
@click.argument("slug")
@click.argument("model")
def agent_model(slug, model):
    """Set an agent's preferred model ('auto' clears it)."""
    with _get_db() as db:
        try:
            agent = agents_mod.set_agent_model(db, slug, model)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"{agent.slug}: model={agent.preferred_model or 'auto'}")


# ── Job Commands ─────────────────────────────────────────────────────────────


@main.group("job")
def job_group():
    """Manage scheduled jobs."""
    pass


@job_group.command("add")
@click.argument("job_id")
@click.option("--project", required=True, help="Project ID")
@click.option("--schedule", required=True, help="Five-field cron expression (local time)")
@click.option("--prompt", required=True, help="Feature request handed to the pipeline")
@click.option("--name", default=None, help="Display name (defaults to the job id)")
@click.option("--disabled", is_flag=True, help="Create the job disabled")
def job_add(job_id, project, schedule, prompt, name, disabled):
    """Create a scheduled job."""
    with _get_db() as db:
        try:
            job = jobs_mod.create_job(
                db, job_id, project, name or job_id, prompt, schedule, is_enabled=not disabled
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Created job: {job.id}")
    click.echo(f"  Schedule: {job.schedule}")
    click.echo(f"  Enabled: {'yes' if job.is_enabled else 'no'}")


@job_group.command("list")
@click.option("--project", default=None, help="Filter by project ID")
def job_list(project):
    """List jobs."""
    with _get_db() as db:
        jobs = jobs_mod.list_jobs(db, project)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        icon = "●" if job.is_enabled else "○"
        last = job.last_run_at or "never"
        click.echo(f"  {icon} {job.id}: {job.name} [{job.schedule}] project={job.project_id} last run: {last}")


def _set_enabled(job_id: str, enabled: bool):
    with _get_db() as db:
        try:
            jobs_mod.update_job(db, job_id, is_enabled=enabled)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    click.echo(f"Job {job_id} {'enabled' if enabled else 'disabled'}")


@job_group.command("enable")
@click.argument("job_id")
def job_enable(job_id):
    """Enable a job."""
    _set_enabled(job_id, True)


@job_group.command("disable")
@click.argument("job_id")
def job_disable(job_id):
    """Disable a job."""
    _set_enabled(job_id, False)


@job_group.command("delete")
@click.argument("job_id")
def job_delete(job_id):
    """Delete a job and its run history."""
    with _get_db() as db:
        deleted = jobs_mod.delete_job(db, job_id)
    if not deleted:
        click.echo(f"Job not found: {job_id}", err=True)
        sys.exit(1)
    click.echo(f"Deleted job: {job_id}")


@job_group.command("runs")
@click.argument("job_id", required=False)
@click.option("--limit", default=20, type=int, help="Number of runs to show")
def job_runs(job_id, limit):
    """Show recent job runs."""
    with _get_db() as db:
        runs = jobs_mod.list_job_runs(db, job_id, limit=limit)
    if not runs:
        click.echo("No runs found.")
        return

    status_icons = {
        "pending": "○",
        "running": "●",
        "completed": "✓",
        "failed": "✗",
        "skipped": "-",
    }
    for run in runs:
        icon = status_icons.get(run.status, "?")
        click.echo(f"  {icon} #{run.id} {run.job_id} ({run.status}) created {run.created_at}")
        if run.branch_name:
            click.echo(f"      Branch: {run.branch_name}")
        if run.pr_url:
            click.echo(f"      PR: {run.pr_url}")
        if run.error_message:
            click.echo(f"      Error: {run.error_message}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect dispatched agent tasks."""
    pass


@task_group.command("list")
@click.option("--project", default=None, help="Filter by project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", default=50, type=int, help="Number of tasks to show")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, limit, json_output):
    """List tasks, newest first."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status, limit=limit)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "running": "●",
        "completed": "✓",
        "failed": "✗",
        "stuck": "!",
        "killed": "✗",
    }
    for task in tasks:
        icon = status_icons.get(task.status, "?")
        click.echo(f"  {icon} {task.id}: {task.command_name} [{task.agent_slug}] ({task.status})")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)

    click.echo(f"Task: {task.id}")
    click.echo(f"  Command: {task.command_name}")
    click.echo(f"  Agent: {task.agent_slug}")
    click.echo(f"  Status: {task.status}")
    if task.project_id:
        click.echo(f"  Project: {task.project_id}")
    if task.pid:
        click.echo(f"  PID: {task.pid}")
    if task.exit_code is not None:
        click.echo(f"  Exit code: {task.exit_code}")
    click.echo(f"  Output: {task.output_bytes} bytes")
    if task.log_path:
        click.echo(f"  Log: {task.log_path}")
    if task.diagnosis:
        click.echo(f"  Diagnosis: {task.diagnosis}")
    if task.started_at:
        click.echo(f"  Started: {task.started_at}")
    if task.completed_at:
        click.echo(f"  Completed: {task.completed_at}")


# ── Progress ─────────────────────────────────────────────────────────────────


@main.command("progress")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def show_progress(path):
    """Show the state of a plan's progress file."""
    try:
        progress = progress_mod.load_progress(path)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    icons = {"pending": "○", "in_progress": "●", "completed": "✓", "failed": "✗"}
    click.echo(f"Plan: {progress.slug} ({progress.status})")
    click.echo(f"  Phase {min(progress.current_phase + 1, len(progress.phases))} of {len(progress.phases)}")
    for phase in progress.phases:
        click.echo(f"  {icons.get(phase.status, '?')} Phase {phase.number}: {phase.name}")
        for assignment in phase.assignments:
            done = sum(t.completed for s in assignment.sections for t in s.todos)
            total = sum(len(s.todos) for s in assignment.sections)
            click.echo(
                f"      {icons.get(assignment.status, '?')} Worker {assignment.label}: "
                f"{done}/{total} todos"
            )
        click.echo(f"      {icons.get(phase.review.status, '?')} Review")


# ── Pipeline ─────────────────────────────────────────────────────────────────


@main.command("run")
@click.argument("project")
@click.argument("prompt")
@click.option("--slug", default=None, help="Branch slug (derived from the prompt if omitted)")
@click.option("--agent", "agent_slug", default=None, help="Agent slug (defaults to the default agent)")
@click.option("--no-pr", is_flag=True, help="Push nothing and skip the pull request")
def run_command(project, prompt, slug, agent_slug, no_pr):
    """Run one pipeline in the foreground: plan, build, review, PR."""
    config = get_config()
    with _get_db() as db:
        proj = projects_mod.get_project(db, project)
    if not proj:
        click.echo(f"Project not found: {project}", err=True)
        sys.exit(1)

    slug = slug or slug_for_run(projects_mod.slugify(prompt)[:30] or "run")
    options = PipelineOptions(
        db_path=config.db_path,
        prompt=prompt,
        root_path=Path(proj.root_path),
        slug=slug,
        project_id=proj.id,
        agent_slug=agent_slug,
        pr_title_prefix="dorch",
        state_dir=config.state_dir,
        planning_timeout=config.output_timeout,
        check_interval=config.check_interval,
        diagnosis_model=config.diagnosis_model,
        anthropic_api_key=config.anthropic_api_key,
        create_pr=not no_pr,
        base_branch=proj.default_branch,
    )
    try:
        result = run_pipeline(options)
    except PipelineError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if result.status != "completed":
        click.echo(f"Pipeline failed: {result.error}", err=True)
        if result.branch_name:
            click.echo(f"  Branch: {result.branch_name}", err=True)
        sys.exit(1)
    click.echo(f"Pipeline completed. Branch: {result.branch_name}")
    if result.pr_url:
        click.echo(f"  PR: {result.pr_url}")


# ── Scheduler ────────────────────────────────────────────────────────────────


@main.command("scheduler")
@click.option("--poll-interval", default=None, type=float, help="Seconds between ticks")
def scheduler_command(poll_interval):
    """Run the job scheduler in the foreground until interrupted."""
    config = get_config()
    interval = poll_interval or config.poll_interval
    scheduler = JobScheduler(SchedulerContext(db_path=config.db_path, config=config), interval)
    stopped = threading.Event()

    def _handle_signal(signum, frame):
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    click.echo(f"Scheduler running (every {interval:g}s). Press Ctrl+C to stop.")
    while not stopped.wait(1.0):
        pass
    click.echo("Stopping scheduler...")
    scheduler.stop()


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "command": task.command_name,
        "agent": task.agent_slug,
        "project": task.project_id,
        "status": task.status,
        "pid": task.pid,
        "exit_code": task.exit_code,
        "output_bytes": task.output_bytes,
        "log_path": task.log_path,
        "diagnosis": task.diagnosis,
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


if __name__ == "__main__":
    main()

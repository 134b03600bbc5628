"""Git subprocess wrappers for the feature branch, worktrees and pull requests."""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import click

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "dorch"
DEFAULT_STATE_DIR = ".dorch"
WORK_DIR_NAME = "work"


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class PrResult:
    url: str | None
    method: str  # gh | manual


@dataclass
class MergeResult:
    clean: bool
    conflicts: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


# ── Validation ──────────────────────────────────────────────────────────────


def ensure_repo(path: str | Path):
    """Raise GitError unless path is inside a git repository."""
    try:
        run_git(["rev-parse", "--git-dir"], cwd=path)
    except (GitError, OSError) as e:
        raise GitError(
            f"Not a git repository: {path}. A repository is required for branches and worktrees."
        ) from e


def ensure_clean(path: str | Path) -> int:
    """Warn about uncommitted changes. Returns the number of changed paths."""
    status = get_status(path)
    if not status:
        return 0
    count = len(status.splitlines())
    click.echo(f"  ⚠ Working tree has {count} uncommitted change(s).")
    click.echo("    Consider committing or stashing before proceeding.")
    logger.warning("Working tree %s has %d uncommitted change(s)", path, count)
    return count


# ── Feature branch and worktree ─────────────────────────────────────────────


def feature_branch_name(slug: str) -> str:
    return f"{BRANCH_PREFIX}/{slug}"


def create_feature_branch(path: str | Path, slug: str) -> str:
    """Create the feature branch from HEAD, reusing it if it already exists."""
    branch = feature_branch_name(slug)
    if branch_exists(path, branch):
        logger.info("Branch %s already exists, reusing", branch)
        return branch
    run_git(["branch", branch], cwd=path)
    return branch


def worktree_dir(path: str | Path, state_dir: str = DEFAULT_STATE_DIR) -> Path:
    return Path(path) / state_dir / "worktrees"


def setup_worktree(path: str | Path, slug: str, state_dir: str = DEFAULT_STATE_DIR) -> Path:
    """Check the feature branch out into the single work directory."""
    wt_path = worktree_dir(path, state_dir) / WORK_DIR_NAME
    if not wt_path.exists():
        run_git(["worktree", "add", str(wt_path), feature_branch_name(slug)], cwd=path)
    return wt_path


def _remove_worktree(path: str | Path, wt_path: Path):
    if not wt_path.exists():
        return
    try:
        run_git(["worktree", "remove", str(wt_path), "--force"], cwd=path)
    except GitError as e:
        logger.warning("Could not remove worktree %s: %s", wt_path, e)


def cleanup_worktree(path: str | Path, state_dir: str = DEFAULT_STATE_DIR):
    """Remove the work directory and prune stale worktree references."""
    _remove_worktree(path, worktree_dir(path, state_dir) / WORK_DIR_NAME)
    try:
        run_git(["worktree", "prune"], cwd=path)
    except GitError as e:
        logger.warning("git worktree prune failed: %s", e)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage and commit everything in cwd. Returns False if there was nothing to commit."""
    if not get_status(cwd):
        return False
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "-m", message], cwd=cwd)
    return True


# ── Dual-worker phases ──────────────────────────────────────────────────────


def phase_branch_name(slug: str, phase_number: int, label: str) -> str:
    return f"{BRANCH_PREFIX}/{slug}-phase-{phase_number}-{label.lower()}"


def setup_phase_branches(
    path: str | Path,
    slug: str,
    phase_number: int,
    labels: list[str],
    state_dir: str = DEFAULT_STATE_DIR,
) -> dict[str, Path]:
    """Give each worker its own branch and worktree, forked from the feature branch.

    Returns a mapping of assignment label to worktree path.
    """
    base = feature_branch_name(slug)
    worktrees = {}
    for label in labels:
        branch = phase_branch_name(slug, phase_number, label)
        wt_path = worktree_dir(path, state_dir) / f"phase-{phase_number}-{label.lower()}"
        if not wt_path.exists():
            if branch_exists(path, branch):
                run_git(["worktree", "add", str(wt_path), branch], cwd=path)
            else:
                run_git(["worktree", "add", "-b", branch, str(wt_path), base], cwd=path)
        worktrees[label] = wt_path
    return worktrees


def conflicted_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.splitlines() if line]


def merge_phase_branches(
    work_dir: str | Path,
    slug: str,
    phase_number: int,
    labels: list[str],
) -> MergeResult:
    """Merge each worker branch into the feature branch checked out in work_dir.

    Stops at the first conflicting merge and leaves it in progress for the
    reviewer to resolve.
    """
    result = MergeResult(clean=True)
    for label in labels:
        branch = phase_branch_name(slug, phase_number, label)
        try:
            run_git(
                ["merge", "--no-ff", "-m", f"Merge {branch} (phase {phase_number})", branch],
                cwd=work_dir,
            )
        except GitError:
            conflicts = conflicted_files(work_dir)
            if not conflicts:
                raise
            logger.warning("Merging %s conflicted in: %s", branch, ", ".join(conflicts))
            result.clean = False
            result.conflicts = conflicts
            return result
        result.merged.append(branch)
    return result


def cleanup_phase_worktrees(
    path: str | Path,
    slug: str,
    phase_number: int,
    labels: list[str],
    state_dir: str = DEFAULT_STATE_DIR,
    delete_branches: bool = True,
):
    for label in labels:
        _remove_worktree(path, worktree_dir(path, state_dir) / f"phase-{phase_number}-{label.lower()}")
    try:
        run_git(["worktree", "prune"], cwd=path)
    except GitError as e:
        logger.warning("git worktree prune failed: %s", e)
    if not delete_branches:
        return
    for label in labels:
        branch = phase_branch_name(slug, phase_number, label)
        if branch_exists(path, branch):
            try:
                run_git(["branch", "-D", branch], cwd=path)
            except GitError:
                pass  # Branch deletion is best-effort


# ── Pull requests ───────────────────────────────────────────────────────────


def create_pull_request(
    path: str | Path,
    slug: str,
    title: str,
    base: str = "main",
) -> PrResult:
    """Push the feature branch and open a PR with gh, or print how to."""
    branch = feature_branch_name(slug)
    run_git(["push", "-u", "origin", branch], cwd=path)

    manual = f'gh pr create --base {base} --head {branch} --title "{title}"'
    if shutil.which("gh") is None:
        click.echo("  To create a PR, run:")
        click.echo(f"    {manual}")
        return PrResult(url=None, method="manual")

    try:
        result = subprocess.run(
            [
                "gh", "pr", "create",
                "--base", base,
                "--head", branch,
                "--title", title,
                "--body", "Automated PR from dorch",
            ],
            cwd=path,
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        logger.warning("gh pr create failed: %s", e.stderr.strip())
        click.echo(f"  Push succeeded. Create the PR manually for branch: {branch}")
        return PrResult(url=None, method="manual")
    return PrResult(url=result.stdout.strip() or None, method="gh")

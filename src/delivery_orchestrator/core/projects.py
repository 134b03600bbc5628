"""Projects: a registered repository root plus its per-project state directory."""

import re
import sqlite3
from pathlib import Path

from delivery_orchestrator.db.engine import parse_dt
from delivery_orchestrator.db.models import Project

# Written into the state dir so per-run artefacts never show up as untracked files.
STATE_GITIGNORE = "logs/\nworktrees/\n"


def slugify(title: str) -> str:
    """Convert a name to a branch- and id-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def ensure_state_dir(root_path: str | Path, state_dir: str = ".dorch") -> Path:
    """Create the project's state directory (logs, worktrees, plans) if missing."""
    path = Path(root_path) / state_dir
    (path / "logs").mkdir(parents=True, exist_ok=True)
    gitignore = path / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(STATE_GITIGNORE)
    return path


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    root_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
) -> Project:
    """Register a project. Raises ValueError if the id is taken."""
    if get_project(db, project_id):
        raise ValueError(f"Project already exists: {project_id}")
    db.execute(
        """INSERT INTO projects (id, name, root_path, default_branch, slack_channel)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, name, str(root_path), default_branch, slack_channel),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return _row_to_project(row) if row else None


def list_projects(db: sqlite3.Connection) -> list[Project]:
    rows = db.execute("SELECT * FROM projects ORDER BY name").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(db: sqlite3.Connection, project_id: str, **kwargs) -> Project:
    """Update name, root path, default branch or Slack channel. None values are ignored."""
    if not get_project(db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    allowed = ("name", "root_path", "default_branch", "slack_channel")
    updates = {k: str(v) for k, v in kwargs.items() if k in allowed and v is not None}
    if updates:
        assignments = ", ".join(f"{k} = ?" for k in updates)
        db.execute(
            f"UPDATE projects SET {assignments}, updated_at = datetime('now') WHERE id = ?",
            [*updates.values(), project_id],
        )
        db.commit()
    return get_project(db, project_id)


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        root_path=row["root_path"],
        default_branch=row["default_branch"],
        slack_channel=row["slack_channel"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )

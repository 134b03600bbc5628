"""Agent backend detection and registry."""

import logging
import shutil
import sqlite3
import subprocess
from dataclasses import dataclass

from delivery_orchestrator.db.models import AgentBackend

logger = logging.getLogger(__name__)


@dataclass
class AgentDefinition:
    slug: str
    name: str
    command: str
    version_flag: str = "--version"
    install_hint: str = ""


KNOWN_AGENTS: list[AgentDefinition] = [
    AgentDefinition(
        slug="cursor-cli",
        name="Cursor CLI",
        command="agent",
        install_hint="curl https://cursor.com/install -fsS | bash",
    ),
    AgentDefinition(
        slug="claude-code",
        name="Claude Code",
        command="claude",
        install_hint="npm install -g @anthropic-ai/claude-code",
    ),
]


# ── Detection ────────────────────────────────────────────────────────────────


def _get_version(command: str, flag: str) -> str | None:
    try:
        result = subprocess.run(
            [command, flag],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    return result.stdout.strip() or None


def detect_agent(definition: AgentDefinition) -> AgentBackend | None:
    """Resolve an agent's command on PATH. Returns None if not installed."""
    path = shutil.which(definition.command)
    if not path:
        return None
    return AgentBackend(
        slug=definition.slug,
        name=definition.name,
        command=definition.command,
        command_path=path,
        version=_get_version(definition.command, definition.version_flag) or "unknown",
    )


def detect_agents() -> tuple[list[AgentBackend], list[AgentDefinition]]:
    """Detect all known agents. Returns (found, missing)."""
    found, missing = [], []
    for definition in KNOWN_AGENTS:
        agent = detect_agent(definition)
        if agent:
            found.append(agent)
        else:
            missing.append(definition)
    return found, missing


# ── Registry ─────────────────────────────────────────────────────────────────


def register_agents(
    db: sqlite3.Connection,
    found: list[AgentBackend],
    default_slug: str | None = None,
) -> list[AgentBackend]:
    """Upsert detected agents and mark every other agent unavailable."""
    if default_slug is None and found:
        default_slug = found[0].slug

    for agent in found:
        db.execute(
            """INSERT INTO agents
               (slug, name, command, command_path, version, is_available, is_default, detected_at)
               VALUES (?, ?, ?, ?, ?, 1, ?, datetime('now'))
               ON CONFLICT(slug) DO UPDATE SET
                   command = excluded.command,
                   command_path = excluded.command_path,
                   version = excluded.version,
                   is_available = 1,
                   is_default = excluded.is_default,
                   detected_at = excluded.detected_at""",
            (
                agent.slug,
                agent.name,
                agent.command,
                agent.command_path,
                agent.version,
                int(agent.slug == default_slug),
            ),
        )

    slugs = [a.slug for a in found]
    placeholders = ", ".join("?" for _ in slugs)
    if slugs:
        db.execute(
            f"UPDATE agents SET is_available = 0, is_default = 0 WHERE slug NOT IN ({placeholders})",
            slugs,
        )
    else:
        db.execute("UPDATE agents SET is_available = 0, is_default = 0")
    db.commit()
    return list_agents(db)


def get_agent(db: sqlite3.Connection, slug: str) -> AgentBackend | None:
    row = db.execute("SELECT * FROM agents WHERE slug = ?", (slug,)).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def get_default_agent(db: sqlite3.Connection) -> AgentBackend | None:
    """The default available agent, falling back to any available agent."""
    row = db.execute(
        """SELECT * FROM agents WHERE is_available = 1
           ORDER BY is_default DESC, name ASC LIMIT 1"""
    ).fetchone()
    if not row:
        return None
    return _row_to_agent(row)


def list_agents(db: sqlite3.Connection, available_only: bool = False) -> list[AgentBackend]:
    query = "SELECT * FROM agents"
    if available_only:
        query += " WHERE is_available = 1"
    query += " ORDER BY is_default DESC, name ASC"
    return [_row_to_agent(r) for r in db.execute(query).fetchall()]


def set_agent_model(
    db: sqlite3.Connection, slug: str, model: str | None
) -> AgentBackend:
    """Set the preferred model for an agent. None or 'auto' clears it."""
    if model == "auto":
        model = None
    if not get_agent(db, slug):
        raise ValueError(f"Agent not found: {slug}")
    db.execute("UPDATE agents SET preferred_model = ? WHERE slug = ?", (model, slug))
    db.commit()
    return get_agent(db, slug)


def _row_to_agent(row: sqlite3.Row) -> AgentBackend:
    return AgentBackend(
        slug=row["slug"],
        name=row["name"],
        command=row["command"],
        command_path=row["command_path"],
        version=row["version"],
        preferred_model=row["preferred_model"],
        is_default=bool(row["is_default"]),
        is_available=bool(row["is_available"]),
    )

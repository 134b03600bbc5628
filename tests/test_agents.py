"""Tests for agent detection and the agent registry."""

from unittest.mock import MagicMock, patch

import pytest

from delivery_orchestrator.core import agents as agents_mod
from delivery_orchestrator.db.models import AgentBackend


def _which(available):
    return lambda command: f"/usr/local/bin/{command}" if command in available else None


class TestDetection:
    @patch("delivery_orchestrator.core.agents.subprocess.run")
    @patch("delivery_orchestrator.core.agents.shutil.which")
    def test_detect_found_and_missing(self, mock_which, mock_run):
        mock_which.side_effect = _which({"claude"})
        mock_run.return_value = MagicMock(stdout="1.2.3 (Claude Code)\n")

        found, missing = agents_mod.detect_agents()

        assert [a.slug for a in found] == ["claude-code"]
        assert found[0].command_path == "/usr/local/bin/claude"
        assert found[0].version == "1.2.3 (Claude Code)"
        assert [d.slug for d in missing] == ["cursor-cli"]

    @patch("delivery_orchestrator.core.agents.subprocess.run", side_effect=OSError("boom"))
    @patch("delivery_orchestrator.core.agents.shutil.which", return_value="/usr/bin/agent")
    def test_version_unknown_when_version_check_fails(self, mock_which, mock_run):
        agent = agents_mod.detect_agent(agents_mod.KNOWN_AGENTS[0])
        assert agent.version == "unknown"

    @patch("delivery_orchestrator.core.agents.shutil.which", return_value=None)
    def test_not_installed(self, mock_which):
        assert agents_mod.detect_agent(agents_mod.KNOWN_AGENTS[0]) is None


def _backend(slug, name):
    return AgentBackend(slug=slug, name=name, command=slug, command_path=f"/bin/{slug}", version="1")


class TestRegistry:
    def test_first_found_is_default(self, db):
        agents_mod.register_agents(db, [_backend("cursor-cli", "Cursor CLI"), _backend("claude-code", "Claude Code")])
        assert agents_mod.get_default_agent(db).slug == "cursor-cli"

    def test_explicit_default(self, db):
        agents_mod.register_agents(
            db, [_backend("cursor-cli", "Cursor CLI"), _backend("claude-code", "Claude Code")], "claude-code"
        )
        assert agents_mod.get_default_agent(db).slug == "claude-code"

    def test_missing_agents_marked_unavailable(self, db):
        agents_mod.register_agents(db, [_backend("cursor-cli", "Cursor CLI"), _backend("claude-code", "Claude Code")])
        agents_mod.register_agents(db, [_backend("claude-code", "Claude Code")])

        assert not agents_mod.get_agent(db, "cursor-cli").is_available
        assert [a.slug for a in agents_mod.list_agents(db, available_only=True)] == ["claude-code"]
        assert agents_mod.get_default_agent(db).slug == "claude-code"

    def test_nothing_found(self, db):
        agents_mod.register_agents(db, [_backend("claude-code", "Claude Code")])
        agents_mod.register_agents(db, [])
        assert agents_mod.get_default_agent(db) is None

    def test_set_model(self, db):
        agents_mod.register_agents(db, [_backend("claude-code", "Claude Code")])
        assert agents_mod.set_agent_model(db, "claude-code", "opus").preferred_model == "opus"
        assert agents_mod.set_agent_model(db, "claude-code", "auto").preferred_model is None

    def test_set_model_unknown_agent(self, db):
        with pytest.raises(ValueError):
            agents_mod.set_agent_model(db, "nope", "opus")

"""Tests for project context assembly and prompt builders."""

from delivery_orchestrator.core.progress import Assignment, Phase, Section, TodoItem
from delivery_orchestrator.core.prompts import (
    NO_CONTEXT,
    assemble_project_context,
    build_decomposition_prompt,
    build_planning_prompt,
    build_review_prompt,
    build_worker_prompt,
    notes_path,
)


def _phase(assignments=1):
    return Phase(
        number=2,
        name="API layer",
        assignments=[
            Assignment(
                label=chr(ord("A") + i),
                sections=[Section(f"Part {i}", [TodoItem("Add /login route"), TodoItem("Done already", True)])],
            )
            for i in range(assignments)
        ],
    )


class TestProjectContext:
    def test_missing_files_are_skipped(self, tmp_path):
        assert assemble_project_context(tmp_path).format() == NO_CONTEXT

    def test_reads_agents_md_and_state_dir(self, tmp_path):
        (tmp_path / "AGENTS.md").write_text("Use pytest.\n")
        (tmp_path / ".dorch").mkdir()
        (tmp_path / ".dorch" / "ARCHITECTURE.md").write_text("Three layers.")
        context = assemble_project_context(tmp_path).format()
        assert "## AGENTS.md\n\nUse pytest." in context
        assert "## Architecture\n\nThree layers." in context
        assert "Core Beliefs" not in context

    def test_blank_file_skipped(self, tmp_path):
        (tmp_path / "AGENTS.md").write_text("   \n")
        assert assemble_project_context(tmp_path).agents_md is None


class TestNotesPath:
    def test_single_worker(self, tmp_path):
        assert notes_path(tmp_path) == tmp_path / "notes" / "engineer.md"
        assert (tmp_path / "notes").is_dir()

    def test_labelled_worker(self, tmp_path):
        assert notes_path(tmp_path, "B").name == "engineer-b.md"


class TestPlanningPrompts:
    def test_planning_names_output(self, tmp_path):
        prompt = build_planning_prompt("Add login", "ctx", tmp_path / "prd.md")
        assert "Add login" in prompt
        assert str(tmp_path / "prd.md") in prompt

    def test_decomposition_includes_schema(self):
        prompt = build_decomposition_prompt("prd.md", "ctx", "plan.md", "progress.json", "add-login")
        assert '"slug": "add-login"' in prompt
        assert '"assignments"' in prompt
        assert "`progress.json`" in prompt


class TestWorkerPrompt:
    def test_todos_and_notes(self):
        phase = _phase()
        prompt = build_worker_prompt(phase, phase.assignments[0], "PRD body", "ctx", "notes/engineer.md")
        assert "Phase 2" in prompt
        assert "- [ ] Add /login route" in prompt
        assert "- [x] Done already" in prompt
        assert "notes/engineer.md" in prompt
        assert "assignment" not in prompt.splitlines()[0]

    def test_dual_worker_scope(self):
        phase = _phase(assignments=2)
        prompt = build_worker_prompt(phase, phase.assignments[1], "PRD", "ctx", "n.md")
        assert prompt.startswith("# Engineering Agent: Phase 2 (assignment B)")


class TestReviewPrompt:
    def test_without_conflicts(self):
        prompt = build_review_prompt(_phase(), "add-login", "ctx")
        assert "dorch/add-login" in prompt
        assert "Merge Conflicts" not in prompt

    def test_lists_conflicting_files(self):
        prompt = build_review_prompt(_phase(2), "add-login", "ctx", ["src/app.py", "README.md"])
        assert "## Merge Conflicts" in prompt
        assert "- `src/app.py`" in prompt
        assert "- `README.md`" in prompt

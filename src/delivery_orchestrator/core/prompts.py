"""Prompt builders for the delivery pipeline agents."""

from dataclasses import dataclass
from pathlib import Path

from delivery_orchestrator.core.progress import Assignment, Phase
from delivery_orchestrator.integrations.git import feature_branch_name

NO_CONTEXT = "(No project context available. Run `dorch init` first.)"


# ── Project context ─────────────────────────────────────────────────────────


@dataclass
class ProjectContext:
    agents_md: str | None = None
    architecture: str | None = None
    core_beliefs: str | None = None

    def format(self) -> str:
        sections = []
        if self.agents_md:
            sections.append(f"## AGENTS.md\n\n{self.agents_md}")
        if self.architecture:
            sections.append(f"## Architecture\n\n{self.architecture}")
        if self.core_beliefs:
            sections.append(f"## Core Beliefs & Conventions\n\n{self.core_beliefs}")
        if not sections:
            return NO_CONTEXT
        return "\n\n---\n\n".join(sections)


def _read_if_exists(path: Path) -> str | None:
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return content or None


def assemble_project_context(root: str | Path, state_dir: str = ".dorch") -> ProjectContext:
    """Read AGENTS.md and the state dir's knowledge files, skipping missing ones."""
    root = Path(root)
    return ProjectContext(
        agents_md=_read_if_exists(root / "AGENTS.md"),
        architecture=_read_if_exists(root / state_dir / "ARCHITECTURE.md"),
        core_beliefs=_read_if_exists(root / state_dir / "core-beliefs.md"),
    )


def notes_path(plan_dir: str | Path, label: str | None = None) -> Path:
    """Running notes file a worker reads at the start of a phase and updates at the end."""
    notes_dir = Path(plan_dir) / "notes"
    notes_dir.mkdir(parents=True, exist_ok=True)
    name = f"engineer-{label.lower()}.md" if label else "engineer.md"
    return notes_dir / name


# ── Planning ────────────────────────────────────────────────────────────────


def build_planning_prompt(request: str, project_context: str, output_path: str | Path) -> str:
    """Prompt for the agent that turns a request into a PRD."""
    return (
        f"# Planning Agent: Write a PRD\n\n"
        f"You are acting as a senior product manager. Analyze the request below against "
        f"the project's architecture and conventions and write a PRD.\n\n"
        f"## The Request\n\n{request}\n\n"
        f"## Project Context\n\n{project_context}\n\n"
        f"## Your Task\n\n"
        f"Write the PRD as markdown to this exact path:\n\n`{output_path}`\n\n"
        f"Include these sections: Overview, Goals, Non-Goals, User Stories, "
        f"Technical Considerations, Acceptance Criteria, Edge Cases & Risks.\n\n"
        f"## Rules\n\n"
        f"- Ground everything in the actual codebase. Reference real files and modules.\n"
        f"- Do not include implementation code.\n"
        f"- Create exactly one file at the path above and nothing else.\n"
    )


def build_decomposition_prompt(
    prd_path: str | Path,
    project_context: str,
    plan_path: str | Path,
    progress_path: str | Path,
    slug: str,
) -> str:
    """Prompt for the agent that splits a PRD into phases and writes the progress file."""
    return (
        f"# Planning Agent: Write an Execution Plan\n\n"
        f"Read the PRD at `{prd_path}` and the source code it touches, then break the work "
        f"into sequential phases. Every phase is reviewed before the next one starts.\n\n"
        f"## Project Context\n\n{project_context}\n\n"
        f"## Your Task: create exactly two files\n\n"
        f"### 1. Execution plan: `{plan_path}`\n\n"
        f"Markdown with an overview, then `## Phase N: <name>` headings, each with "
        f"`### <Section>` headings holding `- [ ] <todo>` items.\n\n"
        f"### 2. Progress tracker: `{progress_path}`\n\n"
        f"JSON mirroring the plan one to one:\n\n"
        f"```json\n"
        f"{{\n"
        f'  "slug": "{slug}",\n'
        f'  "status": "pending",\n'
        f'  "currentPhase": 0,\n'
        f'  "startedAt": null,\n'
        f'  "completedAt": null,\n'
        f'  "phases": [\n'
        f"    {{\n"
        f'      "number": 1,\n'
        f'      "name": "<phase name>",\n'
        f'      "status": "pending",\n'
        f'      "assignments": [\n'
        f"        {{\n"
        f'          "label": "A",\n'
        f'          "status": "pending",\n'
        f'          "taskId": null,\n'
        f'          "sections": [\n'
        f'            {{"name": "<section>", "todos": [{{"description": "<todo>", "completed": false}}]}}\n'
        f"          ]\n"
        f"        }}\n"
        f"      ],\n"
        f'      "review": {{"status": "pending", "taskId": null}}\n'
        f"    }}\n"
        f"  ]\n"
        f"}}\n"
        f"```\n\n"
        f"## Planning Rules\n\n"
        f"1. Foundations (schema, shared types, config) go first; integration and polish last.\n"
        f"2. Most features need 2-4 phases.\n"
        f"3. Use one assignment per phase. Use two (labels A and B) only when the work "
        f"splits into parts that touch different files.\n"
        f"4. Todos must be specific: file paths, function names, concrete behaviour.\n\n"
        f"Do not modify any existing files.\n"
    )


# ── Execution ───────────────────────────────────────────────────────────────


def format_assignment_todos(assignment: Assignment) -> str:
    lines = []
    for section in assignment.sections:
        lines.append(f"### {section.name}")
        for todo in section.todos:
            mark = "x" if todo.completed else " "
            lines.append(f"- [{mark}] {todo.description}")
        lines.append("")
    return "\n".join(lines)


def build_worker_prompt(
    phase: Phase,
    assignment: Assignment,
    prd_content: str,
    project_context: str,
    notes_file: str | Path,
) -> str:
    """Phase-scoped instructions for one worker."""
    scope = f" (assignment {assignment.label})" if len(phase.assignments) > 1 else ""
    return (
        f"# Engineering Agent: Phase {phase.number}{scope}\n\n"
        f'You are implementing Phase {phase.number}: "{phase.name}" in a git worktree. '
        f"Complete every todo below, then commit your work.\n\n"
        f"## Your Todos\n\n{format_assignment_todos(assignment)}\n"
        f"## Running Notes\n\n"
        f"Your notes file is `{notes_file}`. Read it first if it exists: it holds decisions "
        f"and gotchas from earlier phases. Update it before you finish.\n\n"
        f"## PRD\n\n{prd_content}\n\n"
        f"## Project Context\n\n{project_context}\n\n"
        f"## Rules\n\n"
        f"1. Work through the todos in order and follow existing patterns.\n"
        f"2. Run the project's typecheck, lint and tests if it has them; fix what you break.\n"
        f"3. Commit with a message describing what you built.\n"
        f"4. Do not edit the progress file or git configuration.\n"
    )


def build_review_prompt(
    phase: Phase,
    slug: str,
    project_context: str,
    conflicts: list[str] | None = None,
) -> str:
    """Prompt for the agent that validates a finished phase."""
    summary = "\n\n".join(
        f"### {section.name}\n" + "\n".join(f"- {todo.description}" for todo in section.todos)
        for assignment in phase.assignments
        for section in assignment.sections
    )
    conflict_block = ""
    if conflicts:
        files = "\n".join(f"- `{path}`" for path in conflicts)
        conflict_block = (
            f"## Merge Conflicts\n\n"
            f"Merging the workers' branches stopped on conflicts. The merge is still in "
            f"progress in your working directory. Resolve these files, then commit the merge:\n\n"
            f"{files}\n\n"
        )
    return (
        f"# Review Agent: Phase {phase.number} Review\n\n"
        f'Review the work for Phase {phase.number}: "{phase.name}" on the feature branch '
        f"`{feature_branch_name(slug)}`.\n\n"
        f"## What Was Built\n\n{summary}\n\n"
        f"{conflict_block}"
        f"## Project Context\n\n{project_context}\n\n"
        f"## Your Tasks\n\n"
        f"1. Run the project's validation commands (typecheck, lint, test, build).\n"
        f"2. Fix anything this phase broke.\n"
        f'3. Commit fixes as "Phase {phase.number} review: <description>".\n\n'
        f"Keep changes minimal. Do not start the next phase.\n"
    )


def build_post_mortem_prompt(
    progress_content: str,
    plan_content: str,
    prd_content: str,
    project_context: str,
    summary: dict,
    output_dir: str | Path,
) -> str:
    """Prompt for the agent that writes the record of a finished pipeline."""
    facts = "\n".join(f"- {key}: {value}" for key, value in summary.items())
    return (
        f"# Post-Mortem Agent\n\n"
        f"A delivery pipeline just finished. Write a short record of it for future work.\n\n"
        f"## Run\n\n{facts}\n\n"
        f"## PRD\n\n{prd_content}\n\n"
        f"## Plan\n\n{plan_content}\n\n"
        f"## Final Progress\n\n```json\n{progress_content}\n```\n\n"
        f"## Project Context\n\n{project_context}\n\n"
        f"## Your Task\n\n"
        f"Write two files in `{output_dir}`:\n"
        f"- `files.md`: every file that was added or changed, one line each on why.\n"
        f"- `notes.md`: decisions, surprises and follow-ups worth remembering.\n"
    )

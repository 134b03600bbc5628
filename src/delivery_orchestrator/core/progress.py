"""Progress store: the durable phased-execution state of one delivery pipeline.

The plan is authored once by the decomposition agent as ``progress.json`` and
afterwards only its status fields and cursor change. Mutation helpers work on
the in-memory structure; callers persist with :func:`save_progress` after each
meaningful change. Saves are atomic (write temp file, then rename).
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

STATUSES = ("pending", "in_progress", "completed", "failed")


@dataclass
class TodoItem:
    description: str
    completed: bool = False

    def to_dict(self) -> dict:
        return {"description": self.description, "completed": self.completed}

    @classmethod
    def from_dict(cls, data: dict) -> "TodoItem":
        return cls(description=data["description"], completed=bool(data.get("completed", False)))


@dataclass
class Section:
    name: str
    todos: list[TodoItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"name": self.name, "todos": [t.to_dict() for t in self.todos]}

    @classmethod
    def from_dict(cls, data: dict) -> "Section":
        items = data.get("todos", data.get("tasks", []))
        return cls(name=data["name"], todos=[TodoItem.from_dict(t) for t in items])


@dataclass
class Assignment:
    label: str = "A"
    status: str = "pending"
    task_id: str | None = None
    sections: list[Section] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "status": self.status,
            "taskId": self.task_id,
            "sections": [s.to_dict() for s in self.sections],
        }

    @classmethod
    def from_dict(cls, data: dict, default_label: str = "A") -> "Assignment":
        return cls(
            label=data.get("label", default_label),
            status=_status(data.get("status", "pending")),
            task_id=data.get("taskId"),
            sections=[Section.from_dict(s) for s in data.get("sections", [])],
        )


@dataclass
class Review:
    status: str = "pending"
    task_id: str | None = None

    def to_dict(self) -> dict:
        return {"status": self.status, "taskId": self.task_id}

    @classmethod
    def from_dict(cls, data: dict) -> "Review":
        return cls(status=_status(data.get("status", "pending")), task_id=data.get("taskId"))


@dataclass
class Phase:
    number: int
    name: str
    status: str = "pending"
    assignments: list[Assignment] = field(default_factory=list)
    review: Review = field(default_factory=Review)

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "name": self.name,
            "status": self.status,
            "assignments": [a.to_dict() for a in self.assignments],
            "review": self.review.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Phase":
        if "assignments" in data:
            assignments = [
                Assignment.from_dict(a, default_label=chr(ord("A") + i))
                for i, a in enumerate(data["assignments"])
            ]
        elif "engineer" in data:
            # Single-worker shape written by older planning prompts.
            assignments = [Assignment.from_dict(data["engineer"])]
        else:
            assignments = []
        if not assignments:
            raise ValueError(f"Phase {data.get('number')} has no assignments")
        return cls(
            number=int(data["number"]),
            name=data["name"],
            status=_status(data.get("status", "pending")),
            assignments=assignments,
            review=Review.from_dict(data.get("review", {})),
        )


@dataclass
class Progress:
    slug: str
    status: str = "pending"
    current_phase: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    phases: list[Phase] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "slug": self.slug,
            "status": self.status,
            "currentPhase": self.current_phase,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "phases": [p.to_dict() for p in self.phases],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Progress":
        progress = cls(
            slug=data["slug"],
            status=_status(data.get("status", "pending")),
            current_phase=int(data.get("currentPhase", 0)),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            phases=[Phase.from_dict(p) for p in data.get("phases", [])],
        )
        if not 0 <= progress.current_phase <= len(progress.phases):
            raise ValueError(
                f"currentPhase {progress.current_phase} out of range for "
                f"{len(progress.phases)} phases"
            )
        return progress


def _status(value: str) -> str:
    if value not in STATUSES:
        raise ValueError(f"Invalid status: {value!r}")
    return value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Load / save ──────────────────────────────────────────────────────────────


def load_progress(path: str | Path) -> Progress:
    """Parse a persisted progress file. Raises ValueError on malformed content."""
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed progress file {path}: {e}") from e
    try:
        return Progress.from_dict(data)
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed progress file {path}: {e}") from e


def save_progress(path: str | Path, progress: Progress):
    """Atomically replace the progress file."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(progress.to_dict(), f, indent=2)
        f.write("\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


# ── Queries ──────────────────────────────────────────────────────────────────


def get_current_phase(progress: Progress) -> Phase | None:
    if progress.current_phase >= len(progress.phases):
        return None
    return progress.phases[progress.current_phase]


def is_all_complete(progress: Progress) -> bool:
    return progress.current_phase >= len(progress.phases)


# ── Mutations (return the progress for chaining) ─────────────────────────────


def mark_plan_status(progress: Progress, status: str) -> Progress:
    progress.status = _status(status)
    if status == "in_progress" and progress.started_at is None:
        progress.started_at = _now_iso()
    return progress


def mark_assignment_status(
    progress: Progress,
    phase_idx: int,
    assignment_idx: int,
    status: str,
    task_id: str | None = None,
) -> Progress:
    assignment = progress.phases[phase_idx].assignments[assignment_idx]
    assignment.status = _status(status)
    if task_id is not None:
        assignment.task_id = task_id
    return progress


def mark_phase_status(progress: Progress, phase_idx: int, status: str) -> Progress:
    progress.phases[phase_idx].status = _status(status)
    return progress


def mark_review_status(
    progress: Progress,
    phase_idx: int,
    status: str,
    task_id: str | None = None,
) -> Progress:
    review = progress.phases[phase_idx].review
    review.status = _status(status)
    if task_id is not None:
        review.task_id = task_id
    return progress


def advance_phase(progress: Progress) -> Progress:
    """Move the cursor forward; reaching the end completes the plan."""
    if progress.current_phase < len(progress.phases):
        progress.current_phase += 1
    if progress.current_phase >= len(progress.phases):
        progress.status = "completed"
        progress.completed_at = _now_iso()
    return progress

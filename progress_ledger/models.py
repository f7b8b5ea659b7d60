"""Data models for the progress ledger.

This module contains the core data structures: task statuses, tasks,
decision records and the ledger aggregate that is persisted as
``progress.yaml``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Any) -> Optional[str]:
    """Normalize a timestamp to ISO text. YAML loads unquoted timestamps as datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    return str(value)


class TaskStatus(str, Enum):
    """Task lifecycle states as written in the ledger file."""

    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Accept enum members, canonical strings and underscore spellings."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace("_", "-").replace(" ", "-")
        try:
            return cls(text)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Invalid status '{value}'. Expected one of: {valid}") from None

    @property
    def is_done(self) -> bool:
        """Complete or skipped: satisfies dependencies and counts as finished work."""
        return self in (TaskStatus.COMPLETE, TaskStatus.SKIPPED)


# Reachable statuses for set_status. COMPLETE and SKIPPED only leave via reset.
ALLOWED_TRANSITIONS: Dict[TaskStatus, frozenset] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.BLOCKED}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.NOT_STARTED, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    """Check whether ``requested`` is reachable from ``current`` via set_status."""
    return requested in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class Decision:
    """A decision made while working on a task. Immutable once written."""

    decision_id: str
    description: str
    rationale: str = ""
    recorded_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.decision_id,
            "description": self.description,
            "rationale": self.rationale,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        """Create from dictionary representation."""
        return cls(
            decision_id=str(data.get("id", data.get("decision_id", ""))),
            description=str(data.get("description", "")),
            rationale=str(data.get("rationale") or ""),
            recorded_at=format_timestamp(data.get("recorded_at")),
        )

    def validate(self) -> List[str]:
        """Validate the decision and return any issues."""
        issues = []
        if not self.decision_id:
            issues.append("Decision ID is required")
        if not self.description:
            issues.append("Decision description is required")
        return issues


@dataclass(slots=True)
class Task:
    """Authoritative per-task progress record."""

    task_id: str
    status: TaskStatus = TaskStatus.NOT_STARTED
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    decisions: List[Decision] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (task id is the mapping key)."""
        data: Dict[str, Any] = {
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if self.decisions:
            data["decisions"] = [decision.to_dict() for decision in self.decisions]
        if self.artifacts:
            data["artifacts"] = list(self.artifacts)
        if self.notes:
            data["notes"] = list(self.notes)
        return data

    @classmethod
    def from_dict(cls, task_id: str, data: Optional[Dict[str, Any]]) -> "Task":
        """Create from dictionary representation."""
        data = data or {}
        return cls(
            task_id=str(task_id),
            status=TaskStatus.parse(data.get("status", TaskStatus.NOT_STARTED.value)),
            started_at=format_timestamp(data.get("started_at")),
            completed_at=format_timestamp(data.get("completed_at")),
            decisions=[Decision.from_dict(item) for item in data.get("decisions") or []],
            artifacts=[str(item) for item in data.get("artifacts") or []],
            notes=[str(item) for item in data.get("notes") or []],
        )

    def add_note(self, note: str) -> None:
        """Add a note with timestamp."""
        self.notes.append(f"{utc_now()}: {note}")

    def has_decision(self, decision_id: str) -> bool:
        return any(d.decision_id == decision_id for d in self.decisions)


@dataclass(slots=True)
class Ledger:
    """The progress file aggregate.

    ``tasks`` holds the authoritative per-task state. ``materialized`` keeps the
    derived fields exactly as they were read from disk so hand-edited files can
    be audited; the store overwrites them with freshly derived values on save.
    """

    project: str = ""
    version: int = 0
    updated_at: Optional[str] = None
    tasks: Dict[str, Task] = field(default_factory=dict)
    next_action_note: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    materialized: Dict[str, Any] = field(default_factory=dict)

    DERIVED_KEYS = (
        "current_task",
        "current_phase",
        "overall_status",
        "next_action",
        "work_completed",
        "work_in_progress",
        "work_remaining",
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk mapping, derived fields first for readability."""
        data: Dict[str, Any] = {
            "project": self.project,
            "version": self.version,
            "updated_at": self.updated_at,
        }
        for key in self.DERIVED_KEYS:
            if key in self.materialized:
                value = self.materialized[key]
                data[key] = list(value) if isinstance(value, (list, tuple)) else value
        data["next_action_note"] = self.next_action_note
        data["tasks"] = {task_id: task.to_dict() for task_id, task in self.tasks.items()}
        if self.history:
            data["history"] = [dict(entry) for entry in self.history]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ledger":
        """Create from the on-disk mapping."""
        raw_tasks = data.get("tasks") or {}
        if isinstance(raw_tasks, list):
            # tolerate list form: [{id: T1, status: ...}, ...]
            raw_tasks = {str(item.get("id", item.get("task_id"))): item for item in raw_tasks}
        if not isinstance(raw_tasks, dict):
            raise ValueError("'tasks' must be a mapping of task id to task record")

        tasks = {str(task_id): Task.from_dict(str(task_id), record) for task_id, record in raw_tasks.items()}
        materialized = {key: data[key] for key in cls.DERIVED_KEYS if key in data}
        return cls(
            project=str(data.get("project") or ""),
            version=int(data.get("version") or 0),
            updated_at=format_timestamp(data.get("updated_at")),
            tasks=tasks,
            next_action_note=data.get("next_action_note"),
            history=[dict(entry) for entry in data.get("history") or []],
            materialized=materialized,
        )

    def copy(self) -> "Ledger":
        """Independent copy used as the working state of a transaction."""
        return Ledger.from_dict(self.to_dict())

    def tasks_with_status(self, *statuses: TaskStatus) -> List[Task]:
        return [task for task in self.tasks.values() if task.status in statuses]

    def status_of(self, task_id: str) -> TaskStatus:
        """Status of a task, treating tasks absent from the ledger as not started."""
        task = self.tasks.get(task_id)
        return task.status if task else TaskStatus.NOT_STARTED

    def record_transition(self, task_id: str, old: TaskStatus, new: TaskStatus, at: str) -> None:
        self.history.append({"task": task_id, "from": old.value, "to": new.value, "at": at})

"""Consistency checking for progress ledgers.

Run by the store before every write, and as an audit tool over
hand-edited progress files that may have drifted out of sync.

Invariants:

1. At most one task is in-progress.
2. ``current_task`` names the in-progress task.
3. ``next_action`` references the current task.
4. Completed tasks carry a completion timestamp.
5. In-progress tasks have all dependencies complete or skipped.
6. Work views partition the tasks by status.
7. ``overall_status`` is complete iff every task is complete or skipped.
8. ``current_phase`` names the group that declares the current task.
9. Timestamps parse and ``completed_at`` is not before ``started_at``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .derive import OVERALL_COMPLETE, ordered_task_ids
from .manifest import Manifest, load_manifest, unmet_dependencies
from .models import Ledger, TaskStatus, parse_timestamp

INVARIANTS: Dict[int, str] = {
    1: "at most one task in progress",
    2: "current task pointer names the in-progress task",
    3: "next action references the current task",
    4: "completed tasks carry a completion timestamp",
    5: "in-progress tasks have their dependencies satisfied",
    6: "work views partition tasks by status",
    7: "overall status is complete iff all tasks are done",
    8: "current phase names the group of the current task",
    9: "timestamps are valid and ordered",
}

_VIEW_STATUSES = {
    "work_completed": (TaskStatus.COMPLETE, TaskStatus.SKIPPED),
    "work_in_progress": (TaskStatus.IN_PROGRESS,),
    "work_remaining": (TaskStatus.NOT_STARTED, TaskStatus.BLOCKED, TaskStatus.FAILED),
}


@dataclass(frozen=True, slots=True)
class Violation:
    """A single broken invariant."""

    invariant: int
    message: str
    task_ids: List[str] = field(default_factory=list)

    def describe(self) -> str:
        return f"invariant {self.invariant} ({INVARIANTS.get(self.invariant, 'unknown')}): {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "invariant": self.invariant,
            "rule": INVARIANTS.get(self.invariant),
            "task_ids": list(self.task_ids),
            "message": self.message,
        }


def _mentions(text: str, task_id: str) -> bool:
    pattern = r"(?<![\w.-])" + re.escape(task_id) + r"(?![\w-])"
    return re.search(pattern, text) is not None


def _current_in_progress(ledger: Ledger, manifest: Optional[Manifest]) -> List[str]:
    return [
        task_id for task_id in ordered_task_ids(ledger, manifest)
        if ledger.status_of(task_id) is TaskStatus.IN_PROGRESS
    ]


def check_single_in_progress(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    in_progress = _current_in_progress(ledger, manifest)
    if len(in_progress) > 1:
        return [Violation(1, f"{len(in_progress)} tasks are in progress: {', '.join(in_progress)}", in_progress)]
    return []


def check_current_pointer(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    if "current_task" not in ledger.materialized:
        return []
    pointer = ledger.materialized.get("current_task")
    in_progress = _current_in_progress(ledger, manifest)
    if pointer:
        pointer = str(pointer)
        if pointer not in ledger.tasks:
            return [Violation(2, f"current_task '{pointer}' is not a task in the ledger", [pointer])]
        status = ledger.status_of(pointer)
        if status is not TaskStatus.IN_PROGRESS:
            return [Violation(2, f"current_task '{pointer}' has status {status.value}, not in-progress", [pointer])]
    elif in_progress:
        return [Violation(2, f"current_task is empty but {', '.join(in_progress)} is in progress", in_progress)]
    return []


def check_next_action(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    if "next_action" not in ledger.materialized:
        return []
    in_progress = _current_in_progress(ledger, manifest)
    pointer = ledger.materialized.get("current_task") or (in_progress[0] if in_progress else None)
    if not pointer:
        return []
    pointer = str(pointer)
    text = str(ledger.materialized.get("next_action") or "")
    if not _mentions(text, pointer):
        return [Violation(3, f"next_action does not mention current task '{pointer}': {text!r}", [pointer])]
    return []


def check_completion_timestamps(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    missing = [
        task.task_id for task in ledger.tasks.values()
        if task.status is TaskStatus.COMPLETE and not task.completed_at
    ]
    return [Violation(4, f"task '{task_id}' is complete without completed_at", [task_id]) for task_id in missing]


def check_dependencies(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    if manifest is None:
        return []
    violations = []
    for task in ledger.tasks_with_status(TaskStatus.IN_PROGRESS):
        unmet = unmet_dependencies(manifest, ledger, task.task_id)
        if unmet:
            violations.append(Violation(
                5,
                f"task '{task.task_id}' is in progress but depends on unfinished {', '.join(unmet)}",
                [task.task_id, *unmet],
            ))
    return violations


def check_work_views(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    present = [key for key in _VIEW_STATUSES if key in ledger.materialized]
    if not present:
        return []

    violations: List[Violation] = []
    seen: Dict[str, str] = {}
    for key in present:
        value = ledger.materialized.get(key) or []
        if not isinstance(value, list):
            violations.append(Violation(6, f"{key} must be a list, got {type(value).__name__}"))
            continue
        for raw_id in value:
            task_id = str(raw_id)
            if task_id in seen:
                violations.append(Violation(6, f"task '{task_id}' appears in both {seen[task_id]} and {key}", [task_id]))
                continue
            seen[task_id] = key
            if task_id not in ledger.tasks:
                violations.append(Violation(6, f"{key} lists unknown task '{task_id}'", [task_id]))
                continue
            status = ledger.tasks[task_id].status
            if status not in _VIEW_STATUSES[key]:
                violations.append(Violation(6, f"task '{task_id}' is {status.value} but listed in {key}", [task_id]))

    if len(present) == len(_VIEW_STATUSES):
        omitted = [task_id for task_id in ledger.tasks if task_id not in seen]
        for task_id in omitted:
            violations.append(Violation(6, f"task '{task_id}' is missing from every work view", [task_id]))
    else:
        # a partial set of views must still list every task of their statuses
        for key in present:
            for task in ledger.tasks_with_status(*_VIEW_STATUSES[key]):
                if task.task_id not in seen:
                    violations.append(Violation(6, f"task '{task.task_id}' is {task.status.value} but missing from {key}", [task.task_id]))
    return violations


def check_overall_status(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    if "overall_status" not in ledger.materialized:
        return []
    claimed = str(ledger.materialized.get("overall_status") or "")
    all_done = bool(ledger.tasks) and all(task.status.is_done for task in ledger.tasks.values())
    if claimed == OVERALL_COMPLETE and not all_done:
        pending = [t.task_id for t in ledger.tasks.values() if not t.status.is_done]
        return [Violation(7, "overall_status is complete but tasks remain: " + ", ".join(pending), pending)]
    if claimed != OVERALL_COMPLETE and all_done:
        return [Violation(7, f"every task is done but overall_status is {claimed!r}")]
    return []


def check_current_phase(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    if manifest is None or "current_phase" not in ledger.materialized:
        return []
    in_progress = _current_in_progress(ledger, manifest)
    if not in_progress:
        return []
    current = in_progress[0]
    expected = manifest.group_of(current)
    claimed = ledger.materialized.get("current_phase")
    if expected is not None and claimed != expected:
        return [Violation(8, f"current_phase is {claimed!r} but task '{current}' belongs to '{expected}'", [current])]
    return []


def check_timestamps(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    violations = []
    for task in ledger.tasks.values():
        parsed = {}
        for name in ("started_at", "completed_at"):
            value = getattr(task, name)
            if not value:
                continue
            try:
                parsed[name] = parse_timestamp(value)
            except ValueError:
                violations.append(Violation(9, f"task '{task.task_id}' has unparseable {name}: {value!r}", [task.task_id]))
        if len(parsed) == 2 and parsed["completed_at"] < parsed["started_at"]:
            violations.append(Violation(9, f"task '{task.task_id}' completed before it started", [task.task_id]))
    return violations


CHECKS = (
    check_single_in_progress,
    check_current_pointer,
    check_next_action,
    check_completion_timestamps,
    check_dependencies,
    check_work_views,
    check_overall_status,
    check_current_phase,
    check_timestamps,
)


def validate(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[Violation]:
    """Validate every invariant and return the violations, ordered by invariant."""
    violations: List[Violation] = []
    for check in CHECKS:
        violations.extend(check(ledger, manifest))
    return violations


def audit_file(ledger_path: Path | str, manifest_path: Optional[Path | str] = None) -> List[Violation]:
    """Load a progress file as written on disk and validate it."""
    from .store import read_ledger_file

    manifest = load_manifest(manifest_path) if manifest_path else None
    ledger = read_ledger_file(Path(ledger_path))
    return validate(ledger, manifest)

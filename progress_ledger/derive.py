"""Pointer derivation.

Computes the "where are we" fields of the progress file from the
authoritative per-task statuses. Nothing here is stored as independent
truth: the store calls :func:`derive` on every save and the results are only
written to disk as a convenience for human readers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .ledger_logging import log_consistency_warning
from .manifest import Manifest, order_task_ids, startable_tasks
from .models import Ledger, TaskStatus

OVERALL_COMPLETE = "complete"
OVERALL_IN_PROGRESS = "in-progress"
OVERALL_NOT_STARTED = "not-started"
OVERALL_FAILED = "failed"
OVERALL_BLOCKED = "blocked"

REMAINING_STATUSES = (TaskStatus.NOT_STARTED, TaskStatus.BLOCKED, TaskStatus.FAILED)


@dataclass(frozen=True, slots=True)
class DerivedState:
    """Read-only view over a ledger."""

    current_task: Optional[str]
    current_phase: Optional[str]
    work_completed: List[str]
    work_in_progress: List[str]
    work_remaining: List[str]
    overall_status: str
    next_action: str
    phases: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "current_task": self.current_task,
            "current_phase": self.current_phase,
            "work_completed": list(self.work_completed),
            "work_in_progress": list(self.work_in_progress),
            "work_remaining": list(self.work_remaining),
            "overall_status": self.overall_status,
            "next_action": self.next_action,
            "phases": dict(self.phases),
        }

    def materialized_fields(self) -> Dict[str, Any]:
        """The subset written into the progress file."""
        data = self.to_dict()
        data.pop("phases")
        return data


def status_summary(statuses: Iterable[TaskStatus]) -> str:
    """Roll a set of task statuses up into one overall status."""
    statuses = list(statuses)
    if not statuses:
        return OVERALL_NOT_STARTED
    if all(status.is_done for status in statuses):
        return OVERALL_COMPLETE
    if any(status is TaskStatus.IN_PROGRESS for status in statuses):
        return OVERALL_IN_PROGRESS
    if any(status is TaskStatus.FAILED for status in statuses):
        return OVERALL_FAILED
    remaining = [status for status in statuses if not status.is_done]
    if all(status is TaskStatus.BLOCKED for status in remaining):
        return OVERALL_BLOCKED
    if all(status is TaskStatus.NOT_STARTED for status in statuses):
        return OVERALL_NOT_STARTED
    return OVERALL_IN_PROGRESS


def ordered_task_ids(ledger: Ledger, manifest: Optional[Manifest] = None) -> List[str]:
    """Ledger task ids in manifest declaration order, undeclared tasks last."""
    return order_task_ids(ledger.tasks, manifest, ledger.tasks)


def render_next_action(current_task: Optional[str], note: Optional[str], overall_status: str,
                       startable: List[str]) -> str:
    """Render the human-readable next action from structural state."""
    if current_task:
        if note:
            return f"Continue {current_task}: {note}"
        return f"Continue {current_task}"
    if overall_status == OVERALL_COMPLETE:
        return "All tasks complete"
    if startable:
        if note:
            return f"Start {startable[0]}: {note}"
        return f"Start {startable[0]}"
    return "Resolve blocked or failed tasks"


def derive(ledger: Ledger, manifest: Optional[Manifest] = None) -> DerivedState:
    """Compute pointers and work views from the ledger's task statuses."""
    order = ordered_task_ids(ledger, manifest)

    completed: List[str] = []
    in_progress: List[str] = []
    remaining: List[str] = []
    for task_id in order:
        status = ledger.status_of(task_id)
        if status.is_done:
            completed.append(task_id)
        elif status is TaskStatus.IN_PROGRESS:
            in_progress.append(task_id)
        else:
            remaining.append(task_id)

    current_task = in_progress[0] if in_progress else None
    if len(in_progress) > 1:
        log_consistency_warning(
            f"Multiple tasks in progress ({', '.join(in_progress)}); using {current_task} as current",
            in_progress,
        )

    overall = status_summary(ledger.status_of(task_id) for task_id in order)

    phases: Dict[str, str] = {}
    current_phase: Optional[str] = None
    startable: List[str] = []
    if manifest:
        for group in manifest.groups:
            phases[group.group_id] = status_summary(ledger.status_of(t) for t in group.task_ids)
        startable = startable_tasks(manifest, ledger)
        if current_task:
            current_phase = manifest.group_of(current_task)
        elif overall != OVERALL_COMPLETE:
            current_phase = next(
                (group_id for group_id, status in phases.items() if status != OVERALL_COMPLETE),
                None,
            )
    else:
        startable = [task_id for task_id in remaining if ledger.status_of(task_id) is TaskStatus.NOT_STARTED][:1]

    return DerivedState(
        current_task=current_task,
        current_phase=current_phase,
        work_completed=completed,
        work_in_progress=in_progress,
        work_remaining=remaining,
        overall_status=overall,
        next_action=render_next_action(current_task, ledger.next_action_note, overall, startable),
        phases=phases,
    )


def refresh_materialized(ledger: Ledger, manifest: Optional[Manifest] = None) -> DerivedState:
    """Overwrite the ledger's materialized fields with freshly derived ones."""
    derived = derive(ledger, manifest)
    ledger.materialized = derived.materialized_fields()
    return derived

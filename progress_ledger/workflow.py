"""Ledger workflow management.

This module wraps the store, the manifest and the checker behind one
manager whose methods return plain dictionaries with guidance for the next
step. It is what the MCP tools call, and it is equally usable from scripts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .checker import validate
from .config import LedgerConfig
from .derive import derive
from .errors import (
    ConsistencyViolation,
    InvalidTransition,
    LedgerError,
    LedgerLocked,
    LedgerNotFound,
    ManifestError,
    TaskNotFound,
    VersionConflict,
)
from .ledger_logging import log_error_with_context
from .manifest import Manifest, eligible_tasks, load_manifest, startable_tasks
from .models import Decision, TaskStatus
from .store import LedgerStore

logger = logging.getLogger("ledger.workflow")


def _error_response(operation: str, error: Exception, **context) -> Dict[str, Any]:
    """Turn a ledger error into a response the agent can act on."""
    log_error_with_context(error, {"operation": operation, **context})
    response: Dict[str, Any] = {"error": f"Failed to {operation.replace('_', ' ')}: {error}"}

    if isinstance(error, ConsistencyViolation):
        response["violations"] = [v.to_dict() for v in error.violations]
        response["invariants"] = error.invariants
        response["suggestion"] = "The write was rejected and the ledger is unchanged. Fix the listed tasks first."
        response["next_suggested_step"] = "audit"
    elif isinstance(error, InvalidTransition):
        response["suggestion"] = (
            f"Task '{error.task_id}' is {error.current}. Use reset_task to move a finished task back to not-started."
        )
        response["next_suggested_step"] = "status"
    elif isinstance(error, TaskNotFound):
        response["suggestion"] = f"Check the task id, or run reconcile if '{error.task_id}' was added to the manifest"
        response["next_suggested_step"] = "status"
    elif isinstance(error, VersionConflict):
        response["suggestion"] = "Another session changed the ledger. Reload status and retry."
        response["next_suggested_step"] = "status"
    elif isinstance(error, LedgerLocked):
        response["suggestion"] = "Another session is writing the ledger. Wait for it to finish and retry."
        response["next_suggested_step"] = "status"
    elif isinstance(error, LedgerNotFound):
        response["suggestion"] = "Create the ledger with init_ledger first"
        response["next_suggested_step"] = "init_ledger"
    elif isinstance(error, ManifestError):
        response["suggestion"] = "Fix the manifest (duplicate ids, undeclared dependencies or cycles)"
        response["next_suggested_step"] = "audit"
    else:
        response["suggestion"] = "Check the ledger file and arguments"
        response["next_suggested_step"] = "status"
    return response


class LedgerManager:
    """Manages one project's progress ledger against its manifest."""

    def __init__(self, config: LedgerConfig, manifest: Optional[Manifest] = None):
        """Initialize with resolved paths; the manifest is loaded if present on disk."""
        self.config = config
        if manifest is None and config.manifest_path.exists():
            manifest = load_manifest(config.manifest_path)
        self.manifest = manifest
        self.store = LedgerStore(config.ledger_path, manifest=manifest)

    @classmethod
    def from_root(cls, root: Path | str, **kwargs) -> "LedgerManager":
        return cls(LedgerConfig.resolve(str(root), **kwargs))

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def init_ledger(self, project: Optional[str] = None) -> Dict[str, Any]:
        """Create the progress file from the manifest."""
        try:
            ledger = self.store.initialize(project=project)
            return {
                "ledger_path": str(self.store.path),
                "project": ledger.project,
                "task_count": len(ledger.tasks),
                "next_suggested_step": "eligible",
                "workflow_tip": "Next: use eligible to see which tasks can start",
                "message": f"Ledger created with {len(ledger.tasks)} tasks",
            }
        except Exception as e:
            return _error_response("init_ledger", e, path=str(self.store.path))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Derived pointers, work views and per-task records."""
        try:
            ledger = self.store.load()
            derived = derive(ledger, self.manifest)
            return {
                "project": ledger.project,
                "version": ledger.version,
                "updated_at": ledger.updated_at,
                **derived.to_dict(),
                "tasks": {task_id: task.to_dict() for task_id, task in ledger.tasks.items()},
                "next_suggested_step": "complete_task" if derived.current_task else "eligible",
            }
        except Exception as e:
            return _error_response("status", e)

    def eligible(self) -> Dict[str, Any]:
        """Tasks whose dependencies are satisfied and that may start."""
        try:
            if self.manifest is None:
                raise ManifestError(f"No manifest found at {self.config.manifest_path}")
            ledger = self.store.load()
            eligible = sorted(eligible_tasks(self.manifest, ledger), key=self.manifest.task_ids().index)
            startable = startable_tasks(self.manifest, ledger)
            parallel_groups = [
                group.group_id for group in self.manifest.groups
                if group.parallel and any(task_id in eligible for task_id in group.task_ids)
            ]
            return {
                "eligible": eligible,
                "startable": startable,
                "parallel_groups": parallel_groups,
                "count": len(eligible),
                "next_suggested_step": "start_task" if startable else "status",
                "workflow_tip": f"Next: start_task {startable[0]}" if startable else "No task can start; check blocked or failed tasks",
            }
        except Exception as e:
            return _error_response("eligible", e)

    def audit(self) -> Dict[str, Any]:
        """Validate the file on disk, including hand-edited derived fields."""
        try:
            ledger = self.store.load()
            violations = validate(ledger, self.manifest)
            return {
                "ledger_path": str(self.store.path),
                "consistent": not violations,
                "violations": [v.to_dict() for v in violations],
                "count": len(violations),
                "next_suggested_step": "status" if not violations else "reset_task",
                "message": "Ledger is consistent" if not violations else f"Found {len(violations)} violations",
            }
        except Exception as e:
            return _error_response("audit", e)

    def resume_brief(self, recent_decisions: int = 5) -> Dict[str, Any]:
        """Context a new session needs to pick up where the last one stopped."""
        try:
            ledger = self.store.load()
            derived = derive(ledger, self.manifest)
            decisions: List[Dict[str, Any]] = []
            for task in ledger.tasks.values():
                for decision in task.decisions:
                    decisions.append({"task_id": task.task_id, **decision.to_dict()})
            decisions.sort(key=lambda d: d.get("recorded_at") or "")
            startable = startable_tasks(self.manifest, ledger) if self.manifest else []

            current = ledger.tasks.get(derived.current_task) if derived.current_task else None
            files: List[str] = []
            if current and self.manifest and self.manifest.has_task(current.task_id):
                files = list(self.manifest.task(current.task_id).files)

            return {
                "project": ledger.project,
                "current_task": derived.current_task,
                "current_phase": derived.current_phase,
                "next_action": derived.next_action,
                "overall_status": derived.overall_status,
                "current_task_files": files,
                "current_task_artifacts": list(current.artifacts) if current else [],
                "recent_decisions": decisions[-recent_decisions:] if recent_decisions > 0 else [],
                "startable": startable,
                "work_completed": derived.work_completed,
                "work_remaining": derived.work_remaining,
                "consistent": not validate(ledger, self.manifest),
            }
        except Exception as e:
            return _error_response("resume_brief", e)

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def set_status(self, task_id: str, status: str, note: Optional[str] = None,
                   expected_version: Optional[int] = None) -> Dict[str, Any]:
        """Move a task to ``status`` and report the new derived state."""
        try:
            requested = TaskStatus.parse(status)
            task = self.store.set_status(task_id, requested, note=note, expected_version=expected_version)
            logger.info(f"Task {task_id} is now {requested.value}")
            derived = self.store.derive()
            response: Dict[str, Any] = {
                "task_id": task_id,
                "task": task.to_dict(),
                "current_task": derived.current_task,
                "next_action": derived.next_action,
                "overall_status": derived.overall_status,
                "work_remaining": derived.work_remaining,
            }
            if requested is TaskStatus.IN_PROGRESS:
                response["next_suggested_step"] = "complete_task"
                response["workflow_tip"] = "Record decisions as you go; complete the task when done"
            elif derived.overall_status == "complete":
                response["next_suggested_step"] = "status"
                response["workflow_tip"] = "All tasks are complete"
            else:
                response["next_suggested_step"] = "eligible"
                response["workflow_tip"] = "Check for newly eligible tasks"
            return response
        except Exception as e:
            return _error_response("set_status", e, task_id=task_id, status=status)

    def start_task(self, task_id: Optional[str] = None, note: Optional[str] = None) -> Dict[str, Any]:
        """Start a task; defaults to the first startable task."""
        if task_id is None:
            choice = self._first_startable()
            if isinstance(choice, dict):
                return choice
            task_id = choice
        return self.set_status(task_id, TaskStatus.IN_PROGRESS.value, note=note)

    def complete_task(self, task_id: Optional[str] = None, note: Optional[str] = None) -> Dict[str, Any]:
        """Complete a task; defaults to the current task."""
        if task_id is None:
            current = self._current_task()
            if isinstance(current, dict):
                return current
            task_id = current
        return self.set_status(task_id, TaskStatus.COMPLETE.value, note=note)

    def fail_task(self, task_id: Optional[str] = None, note: Optional[str] = None) -> Dict[str, Any]:
        if task_id is None:
            current = self._current_task()
            if isinstance(current, dict):
                return current
            task_id = current
        return self.set_status(task_id, TaskStatus.FAILED.value, note=note)

    def block_task(self, task_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        return self.set_status(task_id, TaskStatus.BLOCKED.value, note=note)

    def skip_task(self, task_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        return self.set_status(task_id, TaskStatus.SKIPPED.value, note=note)

    def reset_task(self, task_id: str) -> Dict[str, Any]:
        """Explicitly return a task to not-started."""
        try:
            task = self.store.reset(task_id)
            return {
                "task_id": task_id,
                "task": task.to_dict(),
                "next_suggested_step": "eligible",
                "message": f"Task {task_id} reset to not-started",
            }
        except Exception as e:
            return _error_response("reset_task", e, task_id=task_id)

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------

    def record_decision(self, decision_id: str, description: str, rationale: str = "",
                        task_id: Optional[str] = None) -> Dict[str, Any]:
        """Record a decision on ``task_id`` or, by default, on the current task."""
        if task_id is None:
            current = self._current_task()
            if isinstance(current, dict):
                return current
            task_id = current
        try:
            decision = self.store.record_decision(
                task_id,
                Decision(decision_id=decision_id, description=description, rationale=rationale),
            )
            return {
                "task_id": task_id,
                "decision": decision.to_dict(),
                "message": f"Decision {decision_id} recorded on {task_id}",
            }
        except Exception as e:
            return _error_response("record_decision", e, task_id=task_id, decision_id=decision_id)

    def add_artifact(self, task_id: str, reference: str) -> Dict[str, Any]:
        try:
            task = self.store.add_artifact(task_id, reference)
            return {"task_id": task_id, "artifacts": list(task.artifacts)}
        except Exception as e:
            return _error_response("add_artifact", e, task_id=task_id)

    def set_next_action(self, note: Optional[str]) -> Dict[str, Any]:
        """Set the free-text part of the next action; the task id is filled in automatically."""
        try:
            derived = self.store.set_next_action(note)
            return {
                "current_task": derived.current_task,
                "next_action": derived.next_action,
            }
        except Exception as e:
            return _error_response("set_next_action", e)

    def reconcile(self) -> Dict[str, Any]:
        """Bring the ledger in line with an edited manifest and report what changed."""
        try:
            report = self.store.reconcile()
            response = report.to_dict()
            response["message"] = (
                f"Added {len(report.added)} tasks; {len(report.orphaned)} ledger tasks are not in the manifest"
            )
            if report.orphaned_in_progress:
                response["workflow_tip"] = (
                    "In-progress tasks were removed from the manifest: "
                    + ", ".join(report.orphaned_in_progress)
                    + ". Complete, fail or reset them."
                )
            if report.newly_blocked:
                response["workflow_tip"] = (
                    "Blocked because the manifest added unfinished dependencies: "
                    + ", ".join(report.newly_blocked)
                    + ". Finish the dependencies, then restart them."
                )
            response["next_suggested_step"] = "eligible"
            return response
        except Exception as e:
            return _error_response("reconcile", e)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _current_task(self) -> str | Dict[str, Any]:
        try:
            derived = self.store.derive()
        except LedgerError as e:
            return _error_response("find_current_task", e)
        if not derived.current_task:
            return {
                "error": "No task is in progress",
                "suggestion": "Pass a task_id, or start a task first",
                "next_suggested_step": "start_task",
            }
        return derived.current_task

    def _first_startable(self) -> str | Dict[str, Any]:
        if self.manifest is None:
            return _error_response(
                "find_startable_task",
                ManifestError(f"No manifest found at {self.config.manifest_path}"),
            )
        try:
            startable = startable_tasks(self.manifest, self.store.load())
        except LedgerError as e:
            return _error_response("find_startable_task", e)
        if not startable:
            return {
                "error": "No task is eligible to start",
                "suggestion": "Complete or skip the dependencies of the remaining tasks",
                "next_suggested_step": "status",
            }
        return startable[0]

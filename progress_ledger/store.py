"""Ledger persistence.

The store is the only component that writes the progress file. Every
mutation runs as a transaction over a working copy of the ledger: apply the
change, recompute derived fields, run the consistency checker, and only then
replace the file on disk. A rejected write leaves the file untouched.

Each transaction holds a lock file next to the ledger from the read until
the replace, so sessions in other processes serialize their writes. On top
of that, writes are a compare-and-swap on the ``version`` field: a caller
that passes the version it last saw gets :class:`VersionConflict` instead of
overwriting a change it never read.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import yaml
from filelock import FileLock, Timeout

from .checker import Violation, validate
from .derive import DerivedState, derive, refresh_materialized
from .errors import (
    ConsistencyViolation,
    InvalidTransition,
    LedgerError,
    LedgerFormatError,
    LedgerLocked,
    LedgerNotFound,
    TaskNotFound,
    VersionConflict,
)
from .ledger_logging import (
    log_decision_recorded,
    log_error_with_context,
    log_operation,
    log_performance,
    log_status_change,
    log_write_rejected,
    observability_hooks,
)
from .manifest import Manifest, unmet_dependencies
from .models import Decision, Ledger, Task, TaskStatus, can_transition, format_timestamp, utc_now

logger = logging.getLogger("ledger.store")

FILE_HEADER = "# Progress ledger. Derived fields are rewritten on every save; edit task records instead.\n"

DEFAULT_LOCK_TIMEOUT = 10.0

Timestamp = Union[str, datetime, None]


def read_ledger_file(path: Path) -> Ledger:
    """Parse a progress file from disk."""
    if not path.exists():
        raise LedgerNotFound(f"No ledger found at {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise LedgerFormatError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise LedgerFormatError(f"Ledger {path} must be a mapping at the top level")
    try:
        return Ledger.from_dict(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise LedgerFormatError(f"Malformed ledger {path}: {e}") from e


def write_ledger_file(path: Path, ledger: Ledger) -> None:
    """Atomically replace the progress file with ``ledger``."""
    text = FILE_HEADER + yaml.safe_dump(
        ledger.to_dict(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        newline="\n",
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    temp_name = handle.name
    try:
        with handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    finally:
        if os.path.exists(temp_name):
            os.remove(temp_name)


@dataclass(slots=True)
class ReconcileReport:
    """Outcome of aligning a ledger with an edited manifest."""

    added: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    orphaned_in_progress: List[str] = field(default_factory=list)
    newly_blocked: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.newly_blocked)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "added": list(self.added),
            "orphaned": list(self.orphaned),
            "orphaned_in_progress": list(self.orphaned_in_progress),
            "newly_blocked": list(self.newly_blocked),
        }


class LedgerStore:
    """Explicit handle on one progress file."""

    def __init__(self, path: Path | str, manifest: Optional[Manifest] = None,
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.path = Path(path).expanduser().resolve()
        self.manifest = manifest
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self.lock_timeout = lock_timeout
        self._lock = FileLock(str(self.lock_path), timeout=lock_timeout)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Ledger:
        """Load the ledger as it is on disk, materialized fields included."""
        return read_ledger_file(self.path)

    def get(self, task_id: str) -> Task:
        """Return a task record or raise :class:`TaskNotFound`."""
        ledger = self.load()
        task = ledger.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def derive(self) -> DerivedState:
        return derive(self.load(), self.manifest)

    def validate(self) -> List[Violation]:
        """Audit the file on disk without modifying it."""
        return validate(self.load(), self.manifest)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @log_performance("initialize_ledger")
    def initialize(self, project: Optional[str] = None) -> Ledger:
        """Create a new ledger with one not-started task per manifest task."""
        ledger = Ledger(project=project or (self.manifest.name if self.manifest else "") or self.path.parent.name)
        if self.manifest:
            for task_id in self.manifest.task_ids():
                ledger.tasks[task_id] = Task(task_id=task_id)

        with self._locked():
            if self.exists():
                raise LedgerError(f"Ledger already exists at {self.path}")
            with log_operation("initialize_ledger", path=str(self.path), task_count=len(ledger.tasks)):
                self._commit(ledger, base_version=None)
        logger.info(f"Initialized ledger at {self.path} with {len(ledger.tasks)} tasks")
        return ledger

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @log_performance("set_status")
    def set_status(
        self,
        task_id: str,
        new_status: TaskStatus | str,
        timestamp: Timestamp = None,
        *,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Task:
        """Transition a task, stamping start or completion time as needed.

        ``note`` is appended to the task's notes in the same write.
        """
        requested = TaskStatus.parse(new_status)
        at = format_timestamp(timestamp) or utc_now()

        with self._transaction("set_status", expected_version, task_id=task_id, status=requested.value) as ledger:
            task = self._task_for_update(ledger, task_id)
            current = task.status
            if not can_transition(current, requested):
                raise InvalidTransition(task_id, current.value, requested.value)

            task.status = requested
            if requested is TaskStatus.IN_PROGRESS:
                task.started_at = at
                task.completed_at = None
            elif requested is TaskStatus.COMPLETE:
                task.completed_at = at
            elif requested is TaskStatus.NOT_STARTED:
                task.started_at = None
                task.completed_at = None

            if TaskStatus.IN_PROGRESS in (current, requested):
                # the note describes the focus of the current task
                ledger.next_action_note = None
            ledger.record_transition(task_id, current, requested, at)
            if note and note.strip():
                task.add_note(note.strip())

        log_status_change(task_id, current.value, requested.value, version=ledger.version)
        return task

    @log_performance("reset_task")
    def reset(self, task_id: str, *, expected_version: Optional[int] = None) -> Task:
        """Return a task to not-started from any status. Decisions and artifacts are kept."""
        at = utc_now()
        with self._transaction("reset_task", expected_version, task_id=task_id) as ledger:
            task = self._task_for_update(ledger, task_id)
            current = task.status
            task.status = TaskStatus.NOT_STARTED
            task.started_at = None
            task.completed_at = None
            task.add_note(f"Reset from {current.value}")
            if current is TaskStatus.IN_PROGRESS:
                ledger.next_action_note = None
            ledger.record_transition(task_id, current, TaskStatus.NOT_STARTED, at)

        log_status_change(task_id, current.value, TaskStatus.NOT_STARTED.value, reset=True, version=ledger.version)
        return task

    @log_performance("record_decision")
    def record_decision(
        self,
        task_id: str,
        decision: Decision,
        *,
        expected_version: Optional[int] = None,
    ) -> Decision:
        """Append an immutable decision record to a task."""
        issues = decision.validate()
        if issues:
            raise LedgerError("Invalid decision: " + "; ".join(issues))
        if decision.recorded_at is None:
            decision = Decision(
                decision_id=decision.decision_id,
                description=decision.description,
                rationale=decision.rationale,
                recorded_at=utc_now(),
            )

        with self._transaction("record_decision", expected_version, task_id=task_id) as ledger:
            task = self._task_for_update(ledger, task_id)
            if task.has_decision(decision.decision_id):
                raise LedgerError(
                    f"Decision '{decision.decision_id}' already recorded on task '{task_id}'; decisions are immutable"
                )
            task.decisions.append(decision)

        log_decision_recorded(task_id, decision.decision_id, version=ledger.version)
        return decision

    def add_artifact(self, task_id: str, reference: str, *, expected_version: Optional[int] = None) -> Task:
        """Attach a produced-artifact reference (usually a file path) to a task."""
        if not reference or not reference.strip():
            raise LedgerError("Artifact reference cannot be empty")
        with self._transaction("add_artifact", expected_version, task_id=task_id) as ledger:
            task = self._task_for_update(ledger, task_id)
            if reference not in task.artifacts:
                task.artifacts.append(reference)
        return task

    def add_note(self, task_id: str, note: str, *, expected_version: Optional[int] = None) -> Task:
        if not note or not note.strip():
            raise LedgerError("Note cannot be empty")
        with self._transaction("add_note", expected_version, task_id=task_id) as ledger:
            task = self._task_for_update(ledger, task_id)
            task.add_note(note.strip())
        return task

    def set_next_action(self, note: Optional[str], *, expected_version: Optional[int] = None) -> DerivedState:
        """Store the free-text part of the next action; the task reference is derived."""
        with self._transaction("set_next_action", expected_version) as ledger:
            ledger.next_action_note = note.strip() if note and note.strip() else None
        return derive(ledger, self.manifest)

    @log_performance("reconcile")
    def reconcile(self, *, expected_version: Optional[int] = None) -> ReconcileReport:
        """Align the ledger with the current manifest.

        Tasks new to the manifest are added as not-started. Tasks the manifest
        no longer declares are kept as they are and reported, since ledger
        records are never deleted. An in-progress task that the new manifest
        makes depend on unfinished work is moved to blocked in the same write.
        """
        if self.manifest is None:
            raise LedgerError("Reconciling requires a manifest")

        report = ReconcileReport()
        at = utc_now()
        with self._transaction("reconcile", expected_version) as ledger:
            for task_id in self.manifest.task_ids():
                if task_id not in ledger.tasks:
                    ledger.tasks[task_id] = Task(task_id=task_id)
                    report.added.append(task_id)
            for task in ledger.tasks.values():
                if not self.manifest.has_task(task.task_id):
                    report.orphaned.append(task.task_id)
                    if task.status is TaskStatus.IN_PROGRESS:
                        report.orphaned_in_progress.append(task.task_id)
                    continue
                if task.status is not TaskStatus.IN_PROGRESS:
                    continue
                unmet = unmet_dependencies(self.manifest, ledger, task.task_id)
                if unmet:
                    task.status = TaskStatus.BLOCKED
                    task.add_note(f"Blocked by reconcile: depends on unfinished {', '.join(unmet)}")
                    ledger.next_action_note = None
                    ledger.record_transition(task.task_id, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, at)
                    report.newly_blocked.append(task.task_id)

        for task_id in report.newly_blocked:
            log_status_change(task_id, TaskStatus.IN_PROGRESS.value, TaskStatus.BLOCKED.value, reconcile=True, version=ledger.version)
        if report.orphaned:
            logger.warning(f"Ledger tasks not declared in manifest: {', '.join(report.orphaned)}")
        observability_hooks.log_ledger_event("ledger_reconciled", **report.to_dict())
        return report

    # ------------------------------------------------------------------
    # Transaction machinery
    # ------------------------------------------------------------------

    def _task_for_update(self, ledger: Ledger, task_id: str) -> Task:
        task = ledger.tasks.get(task_id)
        if task is None:
            if self.manifest and self.manifest.has_task(task_id):
                # first reference to a manifest task creates it
                task = Task(task_id=task_id)
                ledger.tasks[task_id] = task
            else:
                raise TaskNotFound(task_id)
        return task

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the ledger's lock file for the duration of the block."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout as e:
            logger.warning(f"Timed out after {self.lock_timeout}s waiting for {self.lock_path}")
            raise LedgerLocked(str(self.lock_path), self.lock_timeout) from e
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def _transaction(self, operation: str, expected_version: Optional[int], **context) -> Iterator[Ledger]:
        with self._locked():
            current = self.load()
            if expected_version is not None and current.version != expected_version:
                raise VersionConflict(expected_version, current.version)

            working = current.copy()
            with log_operation(operation, path=str(self.path), **context):
                yield working
                self._commit(working, base_version=current.version)

    def _commit(self, ledger: Ledger, base_version: Optional[int]) -> None:
        refresh_materialized(ledger, self.manifest)

        violations = validate(ledger, self.manifest)
        if violations:
            error = ConsistencyViolation(violations)
            task_ids = sorted({task_id for v in violations for task_id in v.task_ids})
            log_write_rejected(error.invariants, task_ids, path=str(self.path))
            raise error

        on_disk = self._disk_version()
        if on_disk != base_version:
            raise VersionConflict(base_version if base_version is not None else 0, on_disk)

        ledger.version = (base_version or 0) + 1
        ledger.updated_at = utc_now()
        try:
            write_ledger_file(self.path, ledger)
        except OSError as e:
            log_error_with_context(e, {"operation": "write_ledger", "path": str(self.path)})
            raise

    def _disk_version(self) -> Optional[int]:
        if not self.exists():
            return None
        try:
            return self.load().version
        except LedgerFormatError:
            return None

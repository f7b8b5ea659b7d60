"""Progress Ledger - keeps an agent's progress file consistent with its manifest."""

from .checker import Violation, audit_file, validate
from .derive import DerivedState, derive
from .errors import (
    ConsistencyViolation,
    CyclicDependency,
    InvalidTransition,
    LedgerError,
    LedgerFormatError,
    LedgerLocked,
    LedgerNotFound,
    ManifestError,
    MissingDependency,
    TaskNotFound,
    VersionConflict,
)
from .manifest import Manifest, eligible_tasks, load_manifest, startable_tasks
from .models import Decision, Ledger, Task, TaskStatus
from .store import LedgerStore, ReconcileReport

__all__ = [
    "ConsistencyViolation",
    "CyclicDependency",
    "Decision",
    "DerivedState",
    "InvalidTransition",
    "Ledger",
    "LedgerError",
    "LedgerFormatError",
    "LedgerLocked",
    "LedgerNotFound",
    "LedgerStore",
    "Manifest",
    "ManifestError",
    "MissingDependency",
    "ReconcileReport",
    "Task",
    "TaskNotFound",
    "TaskStatus",
    "VersionConflict",
    "Violation",
    "audit_file",
    "derive",
    "eligible_tasks",
    "load_manifest",
    "startable_tasks",
    "validate",
]

"""Error taxonomy for the progress ledger.

Every error here is local and recoverable: it is reported to the caller (the
agent or a human operator) with enough detail to fix the ledger by hand.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from .checker import Violation


class LedgerError(Exception):
    """Base class for all ledger errors."""


class LedgerNotFound(LedgerError, FileNotFoundError):
    """The ledger file does not exist yet."""


class LedgerFormatError(LedgerError, ValueError):
    """The ledger or manifest file could not be parsed into the expected shape."""


class TaskNotFound(LedgerError, KeyError):
    """The requested task id is not present in the ledger."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found in ledger")

    def __str__(self) -> str:
        return self.args[0]


class InvalidTransition(LedgerError, ValueError):
    """A status change that is not reachable from the task's current status."""

    def __init__(self, task_id: str, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Task '{task_id}' cannot move from {current} to {requested}"
        )


class ConsistencyViolation(LedgerError):
    """A write was rejected because the resulting ledger broke an invariant."""

    def __init__(self, violations: Sequence["Violation"]):
        self.violations: List["Violation"] = list(violations)
        summary = "; ".join(v.describe() for v in self.violations)
        super().__init__(f"Ledger write rejected: {summary}")

    @property
    def invariants(self) -> List[int]:
        """Invariant numbers that failed, in ascending order."""
        return sorted({v.invariant for v in self.violations})


class ManifestError(LedgerError, ValueError):
    """The manifest is malformed."""


class MissingDependency(ManifestError):
    """A manifest task depends on a task that is not declared."""

    def __init__(self, task_id: str, missing: str):
        self.task_id = task_id
        self.missing = missing
        super().__init__(
            f"Task '{task_id}' depends on undeclared task '{missing}'"
        )


class CyclicDependency(ManifestError):
    """The manifest's depends_on graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(self.cycle))


class LedgerLocked(LedgerError, TimeoutError):
    """Another process held the ledger lock for longer than the timeout."""

    def __init__(self, lock_path: str, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(f"Ledger is locked by another session ({lock_path}); gave up after {timeout}s")


class VersionConflict(LedgerError):
    """The ledger on disk changed since it was read."""

    def __init__(self, expected: int, actual: Optional[int]):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Ledger version conflict: expected {expected}, found {actual}. Reload and retry."
        )

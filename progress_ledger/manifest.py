"""Manifest loading and dependency resolution.

The manifest is the declarative execution graph: ordered groups (phases) of
task descriptors with ``depends_on`` edges and an optional ``parallel`` flag.
It is read-only from the ledger's point of view. Loading rejects duplicate ids,
references to undeclared tasks and dependency cycles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set

import yaml

from .errors import CyclicDependency, ManifestError, MissingDependency
from .models import TaskStatus

if TYPE_CHECKING:
    from .models import Ledger

logger = logging.getLogger("ledger.manifest")


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [str(value)]
    return [str(item) for item in value]


@dataclass(slots=True)
class ManifestTask:
    """A single task descriptor in the manifest."""

    task_id: str
    description: str = ""
    files: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.task_id,
            "description": self.description,
            "files": list(self.files),
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ManifestTask":
        """Create from dictionary representation; a bare string is just an id."""
        if isinstance(data, (str, int, float)):
            return cls(task_id=str(data))
        if not isinstance(data, dict):
            raise ManifestError(f"Task entry must be a mapping or an id, got: {data!r}")
        task_id = data.get("id", data.get("task_id"))
        if task_id is None or str(task_id).strip() == "":
            raise ManifestError(f"Task entry is missing an id: {data!r}")
        return cls(
            task_id=str(task_id),
            description=str(data.get("description") or ""),
            files=_as_list(data.get("files")),
            depends_on=_as_list(data.get("depends_on")),
        )


@dataclass(slots=True)
class ManifestGroup:
    """An ordered or parallel collection of tasks (a phase)."""

    group_id: str
    name: str = ""
    parallel: bool = False
    tasks: List[ManifestTask] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.group_id,
            "name": self.name,
            "parallel": self.parallel,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int) -> "ManifestGroup":
        """Create from dictionary representation."""
        if not isinstance(data, dict):
            raise ManifestError(f"Group entry must be a mapping, got: {data!r}")
        group_id = str(data.get("id") or data.get("name") or f"group-{position + 1}")
        parallel = data.get("parallel", False)
        if not isinstance(parallel, bool):
            raise ManifestError(f"Group '{group_id}' has non-boolean parallel value: {parallel!r}")
        return cls(
            group_id=group_id,
            name=str(data.get("name") or group_id),
            parallel=parallel,
            tasks=[ManifestTask.from_dict(item) for item in data.get("tasks") or []],
        )

    @property
    def task_ids(self) -> List[str]:
        return [task.task_id for task in self.tasks]


@dataclass(slots=True)
class Manifest:
    """Declarative execution graph."""

    name: str = ""
    groups: List[ManifestGroup] = field(default_factory=list)
    _tasks: Dict[str, ManifestTask] = field(default_factory=dict, init=False, repr=False)
    _groups_by_task: Dict[str, str] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._index()
        self._check_references()
        self._check_cycles()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"name": self.name, "groups": [group.to_dict() for group in self.groups]}

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        """Build and validate a manifest.

        Accepts ``groups`` (or ``phases``) as a list of groups. A manifest with
        only a top-level ``tasks`` list is treated as a single sequential group.
        """
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a mapping at the top level")
        raw_groups = data.get("groups", data.get("phases"))
        if raw_groups is None and "tasks" in data:
            raw_groups = [{"id": "main", "tasks": data["tasks"]}]
        if raw_groups is None:
            raw_groups = []
        if not isinstance(raw_groups, list):
            raise ManifestError("'groups' must be a list")
        groups = [ManifestGroup.from_dict(item, index) for index, item in enumerate(raw_groups)]
        return cls(name=str(data.get("name") or ""), groups=groups)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _index(self) -> None:
        self._tasks = {}
        self._groups_by_task = {}
        seen_groups: Set[str] = set()
        for group in self.groups:
            if group.group_id in seen_groups:
                raise ManifestError(f"Duplicate group id '{group.group_id}'")
            seen_groups.add(group.group_id)
            for task in group.tasks:
                if task.task_id in self._tasks:
                    raise ManifestError(f"Duplicate task id '{task.task_id}'")
                self._tasks[task.task_id] = task
                self._groups_by_task[task.task_id] = group.group_id

    def _check_references(self) -> None:
        for task in self._tasks.values():
            for dep in task.depends_on:
                if dep not in self._tasks:
                    raise MissingDependency(task.task_id, dep)

    def _check_cycles(self) -> None:
        # explicit stack; chains may run deeper than the recursion limit
        visited: Set[str] = set()
        for root in self._tasks:
            if root in visited:
                continue
            path: List[str] = [root]
            on_path: Set[str] = {root}
            pending = [iter(self._tasks[root].depends_on)]
            visited.add(root)
            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    on_path.discard(path.pop())
                    continue
                if dep in on_path:
                    raise CyclicDependency(path[path.index(dep):] + [dep])
                if dep in visited:
                    continue
                visited.add(dep)
                path.append(dep)
                on_path.add(dep)
                pending.append(iter(self._tasks[dep].depends_on))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def task_ids(self) -> List[str]:
        """All task ids in declaration order."""
        return list(self._tasks)

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def task(self, task_id: str) -> ManifestTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise ManifestError(f"Task '{task_id}' is not declared in the manifest") from None

    def group(self, group_id: str) -> Optional[ManifestGroup]:
        for group in self.groups:
            if group.group_id == group_id:
                return group
        return None

    def group_of(self, task_id: str) -> Optional[str]:
        """Id of the group that declares ``task_id``."""
        return self._groups_by_task.get(task_id)

    def dependencies_of(self, task_id: str) -> List[str]:
        task = self._tasks.get(task_id)
        return list(task.depends_on) if task else []

    def dependents_of(self, task_id: str) -> List[str]:
        """Tasks that list ``task_id`` in their depends_on, in declaration order."""
        return [t.task_id for t in self._tasks.values() if task_id in t.depends_on]


def load_manifest(path: Path | str) -> Manifest:
    """Load and validate a manifest YAML file."""
    manifest_path = Path(path)
    if not manifest_path.exists():
        raise ManifestError(f"Manifest file not found: {manifest_path}")
    try:
        data = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid manifest YAML in {manifest_path}: {e}") from e
    manifest = Manifest.from_dict(data or {})
    logger.info(f"Loaded manifest '{manifest.name}' with {len(manifest.task_ids())} tasks from {manifest_path}")
    return manifest


def dependencies_satisfied(manifest: Manifest, ledger: "Ledger", task_id: str) -> bool:
    """True when every dependency of ``task_id`` is complete or skipped."""
    return all(ledger.status_of(dep).is_done for dep in manifest.dependencies_of(task_id))


def unmet_dependencies(manifest: Manifest, ledger: "Ledger", task_id: str) -> List[str]:
    return [dep for dep in manifest.dependencies_of(task_id) if not ledger.status_of(dep).is_done]


def eligible_tasks(manifest: Manifest, ledger: "Ledger") -> Set[str]:
    """Tasks whose dependencies are satisfied and that are not-started or blocked.

    Pure query; it never starts anything. Tasks absent from the ledger count as
    not started.
    """
    eligible: Set[str] = set()
    for task_id in manifest.task_ids():
        if ledger.status_of(task_id) not in (TaskStatus.NOT_STARTED, TaskStatus.BLOCKED):
            continue
        if dependencies_satisfied(manifest, ledger, task_id):
            eligible.add(task_id)
    return eligible


def startable_tasks(manifest: Manifest, ledger: "Ledger") -> List[str]:
    """Eligible tasks in declaration order, honoring group semantics.

    A parallel group offers all of its eligible tasks; a sequential group offers
    only the first one.
    """
    eligible = eligible_tasks(manifest, ledger)
    result: List[str] = []
    for group in manifest.groups:
        candidates = [task_id for task_id in group.task_ids if task_id in eligible]
        if not candidates:
            continue
        result.extend(candidates if group.parallel else candidates[:1])
    return result


def order_task_ids(task_ids: Iterable[str], manifest: Optional[Manifest], fallback: Iterable[str]) -> List[str]:
    """Sort ids by manifest declaration order, then by position in ``fallback``."""
    fallback_order = {task_id: index for index, task_id in enumerate(fallback)}
    declared = manifest.task_ids() if manifest else []
    declared_order = {task_id: index for index, task_id in enumerate(declared)}

    def key(task_id: str):
        if task_id in declared_order:
            return (0, declared_order[task_id])
        return (1, fallback_order.get(task_id, len(fallback_order)))

    return sorted(task_ids, key=key)

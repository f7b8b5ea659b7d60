"""Unit tests for manifest loading and dependency resolution."""

import pytest

from progress_ledger.errors import CyclicDependency, ManifestError, MissingDependency
from progress_ledger.manifest import (
    Manifest,
    ManifestTask,
    dependencies_satisfied,
    eligible_tasks,
    load_manifest,
    order_task_ids,
    startable_tasks,
    unmet_dependencies,
)
from progress_ledger.models import Ledger, Task, TaskStatus


def _ledger(**statuses):
    return Ledger(tasks={task_id: Task(task_id, TaskStatus.parse(status)) for task_id, status in statuses.items()})


class TestManifestParsing:
    """Test cases for building manifests from mappings."""

    def test_groups_and_tasks(self, manifest):
        assert manifest.name == "demo"
        assert [g.group_id for g in manifest.groups] == ["setup", "features"]
        assert manifest.task_ids() == ["T1", "T2", "T3", "T4"]
        assert manifest.groups[1].parallel is True

    def test_task_lookup(self, manifest):
        task = manifest.task("T2")
        assert task.description == "Add config loader"
        assert task.files == ["pkg/config.py"]
        assert manifest.dependencies_of("T2") == ["T1"]
        assert manifest.group_of("T3") == "features"

    def test_unknown_task_lookup(self, manifest):
        with pytest.raises(ManifestError, match="not declared"):
            manifest.task("T99")
        assert manifest.dependencies_of("T99") == []
        assert manifest.group_of("T99") is None

    def test_dependents_of(self, manifest):
        assert manifest.dependents_of("T2") == ["T3", "T4"]

    def test_flat_task_list(self):
        """Test that a manifest with only a tasks list becomes one sequential group."""
        manifest = Manifest.from_dict({"tasks": ["A", {"id": "B", "depends_on": "A"}]})
        assert [g.group_id for g in manifest.groups] == ["main"]
        assert manifest.dependencies_of("B") == ["A"]

    def test_phases_alias(self):
        manifest = Manifest.from_dict({"phases": [{"name": "one", "tasks": ["A"]}]})
        assert manifest.group_of("A") == "one"

    def test_bare_string_task(self):
        assert ManifestTask.from_dict("T7") == ManifestTask("T7")

    def test_task_without_id(self):
        with pytest.raises(ManifestError, match="missing an id"):
            Manifest.from_dict({"tasks": [{"description": "orphan"}]})

    def test_duplicate_task_id(self):
        with pytest.raises(ManifestError, match="Duplicate task id"):
            Manifest.from_dict({"groups": [{"id": "a", "tasks": ["T1"]}, {"id": "b", "tasks": ["T1"]}]})

    def test_duplicate_group_id(self):
        with pytest.raises(ManifestError, match="Duplicate group id"):
            Manifest.from_dict({"groups": [{"id": "a", "tasks": ["T1"]}, {"id": "a", "tasks": ["T2"]}]})

    def test_parallel_must_be_boolean(self):
        """Test that a quoted "false" is not read as a true flag."""
        with pytest.raises(ManifestError, match="non-boolean parallel"):
            Manifest.from_dict({"groups": [{"id": "features", "parallel": "false", "tasks": ["T1"]}]})

    def test_parallel_defaults_to_sequential(self):
        manifest = Manifest.from_dict({"groups": [{"id": "setup", "tasks": ["T1"]}]})
        assert manifest.groups[0].parallel is False

    def test_non_mapping_manifest(self):
        with pytest.raises(ManifestError):
            Manifest.from_dict(["T1"])


class TestManifestValidation:
    """Test cases for dependency graph validation."""

    def test_missing_dependency(self):
        with pytest.raises(MissingDependency) as exc_info:
            Manifest.from_dict({"tasks": [{"id": "A", "depends_on": ["Z"]}]})
        assert exc_info.value.task_id == "A"
        assert exc_info.value.missing == "Z"

    def test_two_task_cycle(self):
        """Test that T1 -> T2 -> T1 is rejected."""
        with pytest.raises(CyclicDependency) as exc_info:
            Manifest.from_dict({"tasks": [
                {"id": "T1", "depends_on": ["T2"]},
                {"id": "T2", "depends_on": ["T1"]},
            ]})
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"T1", "T2"}

    def test_self_dependency(self):
        with pytest.raises(CyclicDependency):
            Manifest.from_dict({"tasks": [{"id": "A", "depends_on": ["A"]}]})

    def test_cycle_is_a_manifest_error(self):
        with pytest.raises(ManifestError, match="Dependency cycle detected"):
            Manifest.from_dict({"tasks": [
                {"id": "A", "depends_on": ["C"]},
                {"id": "B", "depends_on": ["A"]},
                {"id": "C", "depends_on": ["B"]},
            ]})

    def test_diamond_is_not_a_cycle(self):
        manifest = Manifest.from_dict({"tasks": [
            "A",
            {"id": "B", "depends_on": ["A"]},
            {"id": "C", "depends_on": ["A"]},
            {"id": "D", "depends_on": ["B", "C"]},
        ]})
        assert manifest.task_ids() == ["A", "B", "C", "D"]

    def test_long_chain_is_accepted(self):
        """Test that a deep dependency chain does not exhaust the call stack."""
        tasks = ["T0"] + [{"id": f"T{i}", "depends_on": [f"T{i - 1}"]} for i in range(1, 3000)]
        manifest = Manifest.from_dict({"tasks": list(reversed(tasks))})
        assert len(manifest.task_ids()) == 3000
        assert manifest.dependencies_of("T2999") == ["T2998"]

    def test_long_cycle_is_reported(self):
        tasks = [{"id": f"T{i}", "depends_on": [f"T{(i + 1) % 3000}"]} for i in range(3000)]
        with pytest.raises(CyclicDependency) as exc_info:
            Manifest.from_dict({"tasks": tasks})
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert len(cycle) == 3001


class TestLoadManifest:
    """Test cases for reading manifest files."""

    def test_load_from_file(self, project_dir):
        manifest = load_manifest(project_dir / "manifest.yaml")
        assert manifest.task_ids() == ["T1", "T2", "T3", "T4"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError, match="not found"):
            load_manifest(tmp_path / "manifest.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "manifest.yaml"
        path.write_text("groups: [unclosed", encoding="utf-8")
        with pytest.raises(ManifestError, match="Invalid manifest YAML"):
            load_manifest(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "manifest.yaml"
        path.write_text("", encoding="utf-8")
        assert load_manifest(path).task_ids() == []


class TestEligibility:
    """Test cases for eligible and startable task queries."""

    def test_linear_chain(self):
        """Test that only T1 is eligible until it completes, then T2."""
        manifest = Manifest.from_dict({"tasks": ["T1", {"id": "T2", "depends_on": ["T1"]}]})
        ledger = _ledger(T1="not-started", T2="not-started")
        assert eligible_tasks(manifest, ledger) == {"T1"}

        ledger.tasks["T1"].status = TaskStatus.COMPLETE
        assert eligible_tasks(manifest, ledger) == {"T2"}

    def test_skipped_dependency_is_satisfied(self, manifest):
        ledger = _ledger(T1="skipped", T2="not-started", T3="not-started", T4="not-started")
        assert dependencies_satisfied(manifest, ledger, "T2")
        assert eligible_tasks(manifest, ledger) == {"T2"}

    def test_failed_dependency_is_not_satisfied(self, manifest):
        ledger = _ledger(T1="failed", T2="not-started")
        assert unmet_dependencies(manifest, ledger, "T2") == ["T1"]
        assert "T2" not in eligible_tasks(manifest, ledger)

    def test_blocked_task_can_be_eligible(self, manifest):
        ledger = _ledger(T1="blocked")
        assert "T1" in eligible_tasks(manifest, ledger)

    def test_running_and_done_tasks_are_not_eligible(self, manifest):
        ledger = _ledger(T1="complete", T2="in-progress")
        assert eligible_tasks(manifest, ledger) == set()

    def test_tasks_missing_from_ledger_count_as_not_started(self, manifest):
        assert eligible_tasks(manifest, Ledger()) == {"T1"}

    def test_eligible_does_not_mutate(self, manifest):
        ledger = _ledger(T1="not-started")
        eligible_tasks(manifest, ledger)
        assert ledger.tasks["T1"].status is TaskStatus.NOT_STARTED
        assert list(ledger.tasks) == ["T1"]

    def test_parallel_group_offers_all(self, manifest):
        ledger = _ledger(T1="complete", T2="complete")
        assert startable_tasks(manifest, ledger) == ["T3", "T4"]

    def test_sequential_group_offers_first(self):
        manifest = Manifest.from_dict({"tasks": ["A", "B"]})
        assert eligible_tasks(manifest, Ledger()) == {"A", "B"}
        assert startable_tasks(manifest, Ledger()) == ["A"]


class TestOrdering:
    """Test cases for ordering task ids."""

    def test_manifest_order_then_fallback(self, manifest):
        ids = ["X", "T3", "T1", "Y"]
        assert order_task_ids(ids, manifest, ["Y", "X"]) == ["T1", "T3", "Y", "X"]

    def test_without_manifest(self):
        assert order_task_ids(["b", "a"], None, ["a", "b"]) == ["a", "b"]

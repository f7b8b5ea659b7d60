"""Unit tests for progress ledger models.

This module tests statuses, transitions, and the serialization of
tasks, decisions and the ledger aggregate.
"""

import pytest
from datetime import datetime, timezone

from progress_ledger.models import (
    ALLOWED_TRANSITIONS,
    Decision,
    Ledger,
    Task,
    TaskStatus,
    can_transition,
    format_timestamp,
    parse_timestamp,
    utc_now,
)


class TestTaskStatus:
    """Test cases for TaskStatus parsing and helpers."""

    def test_parse_canonical_values(self):
        """Test parsing the strings written in progress files."""
        assert TaskStatus.parse("not-started") is TaskStatus.NOT_STARTED
        assert TaskStatus.parse("in-progress") is TaskStatus.IN_PROGRESS
        assert TaskStatus.parse("complete") is TaskStatus.COMPLETE

    def test_parse_underscore_and_case_variants(self):
        """Test that hand-written variants are accepted."""
        assert TaskStatus.parse("IN_PROGRESS") is TaskStatus.IN_PROGRESS
        assert TaskStatus.parse("Not Started") is TaskStatus.NOT_STARTED

    def test_parse_member_passthrough(self):
        assert TaskStatus.parse(TaskStatus.BLOCKED) is TaskStatus.BLOCKED

    def test_parse_invalid(self):
        """Test that unknown statuses are rejected."""
        with pytest.raises(ValueError, match="Invalid status"):
            TaskStatus.parse("done-ish")

    def test_is_done(self):
        assert TaskStatus.COMPLETE.is_done
        assert TaskStatus.SKIPPED.is_done
        assert not TaskStatus.FAILED.is_done
        assert not TaskStatus.IN_PROGRESS.is_done


class TestTransitions:
    """Test cases for the transition table."""

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(TaskStatus)

    def test_complete_is_terminal(self):
        """Test that complete only leaves through reset."""
        for status in TaskStatus:
            assert not can_transition(TaskStatus.COMPLETE, status)

    def test_skipped_is_terminal(self):
        for status in TaskStatus:
            assert not can_transition(TaskStatus.SKIPPED, status)

    def test_common_paths(self):
        assert can_transition(TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS)
        assert can_transition(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETE)
        assert can_transition(TaskStatus.FAILED, TaskStatus.IN_PROGRESS)
        assert can_transition(TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS)

    def test_cannot_complete_without_starting(self):
        assert not can_transition(TaskStatus.NOT_STARTED, TaskStatus.COMPLETE)


class TestTimestamps:
    """Test cases for timestamp helpers."""

    def test_utc_now_format(self):
        value = utc_now()
        assert value.endswith("Z")
        assert parse_timestamp(value).tzinfo is not None

    def test_parse_timestamp_with_z(self):
        parsed = parse_timestamp("2026-01-02T03:04:05Z")
        assert parsed == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_parse_naive_timestamp_assumes_utc(self):
        parsed = parse_timestamp("2026-01-02T03:04:05")
        assert parsed.tzinfo == timezone.utc

    def test_format_timestamp_from_datetime(self):
        """Test normalizing datetimes produced by YAML loading."""
        value = datetime(2026, 1, 2, 3, 4, 5)
        assert format_timestamp(value) == "2026-01-02T03:04:05Z"

    def test_format_timestamp_none(self):
        assert format_timestamp(None) is None


class TestDecision:
    """Test cases for Decision records."""

    def test_decision_is_immutable(self):
        """Test that decision records cannot be modified."""
        decision = Decision("D1", "Use YAML", "Readable by humans")
        with pytest.raises(AttributeError):
            decision.description = "Use JSON"

    def test_decision_round_trip(self):
        decision = Decision("D1", "Use YAML", "Readable by humans", "2026-01-01T00:00:00Z")
        assert Decision.from_dict(decision.to_dict()) == decision

    def test_decision_validate(self):
        assert Decision("", "").validate() == [
            "Decision ID is required",
            "Decision description is required",
        ]
        assert Decision("D1", "Use YAML").validate() == []


class TestTask:
    """Test cases for Task records."""

    def test_task_defaults(self):
        task = Task("T1")
        assert task.status is TaskStatus.NOT_STARTED
        assert task.started_at is None
        assert task.decisions == []

    def test_task_to_dict_omits_empty_lists(self):
        data = Task("T1").to_dict()
        assert data == {"status": "not-started", "started_at": None, "completed_at": None}

    def test_task_from_dict(self):
        task = Task.from_dict("T1", {
            "status": "complete",
            "started_at": "2026-01-01T10:00:00Z",
            "completed_at": datetime(2026, 1, 1, 11, 0, 0, tzinfo=timezone.utc),
            "decisions": [{"id": "D1", "description": "Split module", "rationale": "Size"}],
            "artifacts": ["src/a.py"],
        })
        assert task.status is TaskStatus.COMPLETE
        assert task.completed_at == "2026-01-01T11:00:00Z"
        assert task.decisions[0].decision_id == "D1"
        assert task.artifacts == ["src/a.py"]

    def test_task_from_empty_record(self):
        """Test that a bare key in the tasks mapping is a not-started task."""
        task = Task.from_dict("T9", None)
        assert task.task_id == "T9"
        assert task.status is TaskStatus.NOT_STARTED

    def test_add_note(self):
        task = Task("T1")
        task.add_note("Investigated parser")
        assert len(task.notes) == 1
        assert task.notes[0].endswith(": Investigated parser")

    def test_has_decision(self):
        task = Task("T1", decisions=[Decision("D1", "x")])
        assert task.has_decision("D1")
        assert not task.has_decision("D2")


class TestLedger:
    """Test cases for the Ledger aggregate."""

    def test_ledger_from_dict_keeps_materialized_fields(self):
        """Test that derived fields read from disk are kept for auditing."""
        ledger = Ledger.from_dict({
            "project": "demo",
            "version": 3,
            "current_task": "T2",
            "next_action": "Continue T2",
            "work_completed": ["T1"],
            "tasks": {"T1": {"status": "complete", "completed_at": "2026-01-01T00:00:00Z"},
                      "T2": {"status": "in-progress"}},
        })
        assert ledger.version == 3
        assert ledger.materialized["current_task"] == "T2"
        assert ledger.materialized["work_completed"] == ["T1"]
        assert "overall_status" not in ledger.materialized

    def test_ledger_accepts_list_of_tasks(self):
        ledger = Ledger.from_dict({"tasks": [{"id": "T1", "status": "blocked"}]})
        assert ledger.tasks["T1"].status is TaskStatus.BLOCKED

    def test_ledger_rejects_scalar_tasks(self):
        with pytest.raises(ValueError):
            Ledger.from_dict({"tasks": "T1"})

    def test_numeric_task_ids_become_strings(self):
        ledger = Ledger.from_dict({"tasks": {1: {"status": "not-started"}}})
        assert list(ledger.tasks) == ["1"]

    def test_copy_is_independent(self):
        ledger = Ledger(project="demo", tasks={"T1": Task("T1")})
        clone = ledger.copy()
        clone.tasks["T1"].status = TaskStatus.IN_PROGRESS
        assert ledger.tasks["T1"].status is TaskStatus.NOT_STARTED

    def test_status_of_missing_task(self):
        assert Ledger().status_of("nope") is TaskStatus.NOT_STARTED

    def test_record_transition(self):
        ledger = Ledger(tasks={"T1": Task("T1")})
        ledger.record_transition("T1", TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, "2026-01-01T00:00:00Z")
        assert ledger.history == [
            {"task": "T1", "from": "not-started", "to": "in-progress", "at": "2026-01-01T00:00:00Z"}
        ]

    def test_to_dict_orders_derived_fields_before_tasks(self):
        ledger = Ledger(project="demo", tasks={"T1": Task("T1")}, materialized={"current_task": None})
        keys = list(ledger.to_dict())
        assert keys.index("current_task") < keys.index("tasks")

"""MCP server exposing progress ledger tools."""

from __future__ import annotations

from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.resources import TextResource

from progress_ledger.config import LedgerConfig
from progress_ledger.ledger_logging import setup_logging
from progress_ledger.workflow import LedgerManager

mcp = FastMCP("progress-ledger")

STATUS_URI = "ledger://status"


def _text_resource(text: str) -> TextResource:
    return TextResource(uri=STATUS_URI, name="ledger-status", text=text)


def _manager(root: Optional[str]) -> LedgerManager:
    return LedgerManager(LedgerConfig.resolve(root))


def _call(root: Optional[str], method: str, *args, **kwargs) -> Dict[str, Any]:
    try:
        manager = _manager(root)
    except ValueError as e:
        # also covers ManifestError raised while loading the manifest
        return {
            "error": str(e),
            "suggestion": "Provide the 'root' argument or set LEDGER_PROJECT_ROOT; check the manifest for cycles or undeclared dependencies.",
            "next_suggested_step": "init_ledger",
        }
    return getattr(manager, method)(*args, **kwargs)


@mcp.tool()
def init_ledger(project: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 1: Create progress.yaml with one not-started task per manifest task.
    Prerequisites: manifest.yaml exists at the project root."""

    return _call(root, "init_ledger", project=project)


@mcp.tool()
def ledger_status(root: Optional[str] = None) -> Dict[str, Any]:
    """Show the current task, current phase, completed / in-progress / remaining work and overall status.
    These fields are derived from the task records on every call."""

    return _call(root, "status")


@mcp.tool()
def eligible_tasks(root: Optional[str] = None) -> Dict[str, Any]:
    """List tasks whose dependencies are complete or skipped and that may be started.
    'startable' honors group semantics: parallel groups offer every eligible task, sequential groups only the first."""

    return _call(root, "eligible")


@mcp.tool()
def start_task(task_id: Optional[str] = None, note: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 2: Mark a task in-progress; defaults to the first startable task.
    Only one task may be in progress at a time, and its dependencies must be done."""

    return _call(root, "start_task", task_id=task_id, note=note)


@mcp.tool()
def complete_task(task_id: Optional[str] = None, note: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 3: Mark a task complete (stamping completed_at); defaults to the current task."""

    return _call(root, "complete_task", task_id=task_id, note=note)


@mcp.tool()
def update_task_status(task_id: str, status: str, note: Optional[str] = None,
                       expected_version: Optional[int] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a task to any reachable status: not-started, in-progress, complete, failed, skipped or blocked.
    Pass expected_version to fail instead of overwriting a ledger another session changed."""

    return _call(root, "set_status", task_id, status, note=note, expected_version=expected_version)


@mcp.tool()
def reset_task(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Explicitly move a task back to not-started, clearing its timestamps. Decisions are kept."""

    return _call(root, "reset_task", task_id)


@mcp.tool()
def record_decision(decision_id: str, description: str, rationale: str = "",
                    task_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Append an immutable decision record; defaults to the task currently in progress."""

    return _call(root, "record_decision", decision_id, description, rationale=rationale, task_id=task_id)


@mcp.tool()
def add_artifact(task_id: str, reference: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Attach a produced artifact (file path or URL) to a task."""

    return _call(root, "add_artifact", task_id, reference)


@mcp.tool()
def set_next_action(note: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Describe what to do next. The current task id is prefixed automatically, so it cannot drift."""

    return _call(root, "set_next_action", note)


@mcp.tool()
def audit_ledger(root: Optional[str] = None) -> Dict[str, Any]:
    """Check progress.yaml against every consistency invariant and list violations.
    Use this after the file was edited by hand."""

    return _call(root, "audit")


@mcp.tool()
def reconcile_ledger(root: Optional[str] = None) -> Dict[str, Any]:
    """Align the ledger after manifest edits. Running tasks that gained unfinished dependencies become blocked."""

    return _call(root, "reconcile")


@mcp.tool()
def resume_session(root: Optional[str] = None) -> Dict[str, Any]:
    """START HERE in a new session: current task, next action, recent decisions and startable tasks."""

    return _call(root, "resume_brief")


@mcp.resource(STATUS_URI)
def resource_status():
    """Resource view of the ledger's derived state."""

    try:
        manager = _manager(None)
    except ValueError:
        return _text_resource(
            "No project root detected. Launch tools with a 'root' argument or set LEDGER_PROJECT_ROOT."
        )

    status = manager.status()
    if "error" in status:
        return _text_resource(status["error"])

    lines = [f"Progress Ledger: {status['project']} (v{status['version']})"]
    lines.append(f"Overall: {status['overall_status']}")
    lines.append(f"Current task: {status['current_task'] or '-'}")
    lines.append(f"Current phase: {status['current_phase'] or '-'}")
    lines.append(f"Next action: {status['next_action']}")
    lines.append("")
    lines.append("Completed: " + (", ".join(status["work_completed"]) or "-"))
    lines.append("In progress: " + (", ".join(status["work_in_progress"]) or "-"))
    lines.append("Remaining: " + (", ".join(status["work_remaining"]) or "-"))
    return _text_resource("\n".join(lines))


if __name__ == "__main__":
    try:
        config = LedgerConfig.resolve()
        setup_logging(config.log_level_value, config.log_file)
    except ValueError:
        setup_logging()
    mcp.run(transport="stdio")

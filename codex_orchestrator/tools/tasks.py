"""Task status tool — where a queued window run is, and its result once done."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from claude_agent_sdk import tool

from ..config import data_dir
from ..paths import requests_file
from ..requests import read_queue
from ..types import TASK_TERMINAL_STATUSES, normalize_str
from .results import _error, _json
from .windows import load_snapshot


def lookup_task(root: Path, task_id: str) -> dict[str, Any] | None:
    """Task record from the snapshot, or a pending stub if its request is still queued."""
    tasks = load_snapshot(root).get("mcpTasks")
    for entry in tasks if isinstance(tasks, list) else []:
        if isinstance(entry, dict) and entry.get("id") == task_id:
            return entry
    for entry in read_queue(requests_file(root))["startRuns"]:
        if entry.get("id") == task_id:
            return {
                "id": task_id,
                "status": "pending",
                "windowId": entry.get("windowId", ""),
                "createdAt": entry.get("createdAt", ""),
            }
    return None


@tool(
    "task_status",
    """Status of a task queued with window_run.

`pending` means the orchestrator has not picked the request up yet.
Once the task is completed/failed/aborted the result text is included.""",
    {
        "type": "object",
        "properties": {"task_id": {"type": "string"}},
        "required": ["task_id"],
    },
)
async def task_status(args: dict[str, Any]) -> dict[str, Any]:
    """Look up a task."""
    task_id = normalize_str(args.get("task_id"))
    if not task_id:
        return _error("task_id is required")
    task = lookup_task(data_dir(), task_id)
    if task is None:
        return _error(f"task not found: {task_id}")
    status = task.get("status", "")
    result: dict[str, Any] = {
        "id": task_id,
        "status": status,
        "windowId": task.get("windowId", ""),
        "runId": task.get("runId", ""),
        "createdAt": task.get("createdAt", ""),
        "startedAt": task.get("startedAt", ""),
        "finishedAt": task.get("finishedAt", ""),
        "error": task.get("error"),
    }
    if status in TASK_TERMINAL_STATUSES:
        result["resultStatus"] = task.get("resultStatus", "")
        result["resultText"] = task.get("resultText", "")
    return _json(result)

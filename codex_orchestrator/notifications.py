"""Task result prompts — file-based, for the host UI to pick up.

Each finished automation task produces one `ui_prompt` line in
ui-prompts.jsonl in the state directory. Delivery is once per task: a task
with promptSentAt set is skipped.
"""

from pathlib import Path
from typing import Any

from .files import append_jsonl
from .logging_config import get_logger
from .types import McpTask, now_iso

logger = get_logger(__name__)


def build_result_markdown(task: McpTask, status: str, output: str, error: str | None) -> str:
    parts: list[str] = []
    if task.input:
        parts.append(f"**Task**: {task.input}")
    if task.working_directory:
        parts.append(f"**Directory**: `{task.working_directory}`")
    if task.window_id:
        parts.append(f"**Window**: `{task.window_id}`")
    if status:
        parts.append(f"**Status**: {status}")
    if output:
        parts.append(f"**Output**:\n\n{output}")
    if error:
        parts.append(f"**Error**: {error}")
    return "\n\n".join(parts) if parts else "(no output)"


def send_result_prompt(
    prompt_file: Path,
    task: McpTask,
    status: str,
    output: str = "",
    error: str | None = None,
    run_id: str = "",
) -> dict[str, Any] | None:
    """Append a result prompt for task. Returns the entry, or None if it
    was already delivered or could not be written."""
    if task.prompt_sent_at:
        logger.debug("Result prompt for task %s already sent", task.id)
        return None

    entry: dict[str, Any] = {
        "ts": now_iso(),
        "type": "ui_prompt",
        "action": "request",
        "requestId": task.prompt_request_id or task.id,
        "prompt": {
            "kind": "result",
            "title": "Task result",
            "message": "Task completed" if status == "completed" else f"Task {status}",
            "allowCancel": True,
            "markdown": build_result_markdown(task, status, output, error),
        },
    }
    if run_id or task.run_id:
        entry["runId"] = run_id or task.run_id

    if not append_jsonl(prompt_file, entry):
        return None
    logger.info("Result prompt written for task %s (%s)", task.id, status)
    return entry

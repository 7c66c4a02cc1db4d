"""Window tools — queue runs for the orchestrator and inspect its windows.

These run in the automation process, not the orchestrator: they read the
state snapshot and append to the request queue. The orchestrator picks the
request up (file watcher or next reconciliation), creates the window if
needed and starts the run once the window is idle.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from claude_agent_sdk import tool

from ..config import data_dir
from ..errors import InvalidArgument, OrchestratorError
from ..files import read_json
from ..logging_config import get_logger
from ..paths import find_git_root, state_file
from ..requests import append_start_run
from ..types import RunOptions, make_id, normalize_str, parse_iso
from ..windows import find_window_by_working_directory, normalize_path
from .results import _error, _failure, _json

logger = get_logger(__name__)

DEFAULT_MODEL = "gpt-5.2-codex"
DEFAULT_SANDBOX = "danger-full-access"
DEFAULT_APPROVAL = "never"
DEFAULT_REASONING = "xhigh"

PLAN_INSTRUCTION = (
    "Before starting, analyse the task and write the analysis and the task list to "
    "codex_plan.md in the root of the working directory, then work through the tasks in "
    "that file one by one. Leave the file in place when you are done; it will be read "
    "and removed afterwards."
)


def load_snapshot(root: Path) -> dict[str, Any]:
    data = read_json(state_file(root))
    return data if isinstance(data, dict) else {}


def build_default_options(working_directory: str) -> RunOptions:
    """Options for windows created on behalf of automation callers."""
    return RunOptions(
        model=DEFAULT_MODEL,
        model_reasoning_effort=DEFAULT_REASONING,
        working_directory=working_directory,
        sandbox_mode=DEFAULT_SANDBOX,
        approval_policy=DEFAULT_APPROVAL,
        experimental_windows_sandbox_enabled=False,
    )


def queue_window_run(root: Path, prompt: str, working_directory: str = "", task_id: str = "") -> dict[str, Any]:
    """Append a start-run request for the window working in working_directory.

    Reuses the most recently updated window for that directory (even a busy
    one: the request then waits for it), otherwise asks for a new window.
    Defaults are always sent so the request can still create the window if
    the matched one is closed before the orchestrator gets to it.
    Returns the queued entry; its id is the task id.
    """
    text = normalize_str(prompt)
    if not text:
        raise InvalidArgument("prompt is required")
    workdir = normalize_path(working_directory) or str(Path.cwd())
    defaults = build_default_options(workdir)

    windows = load_snapshot(root).get("windows")
    match = find_window_by_working_directory(windows if isinstance(windows, list) else [], workdir, include_running=True)
    base = RunOptions()
    if match is not None:
        base = RunOptions.from_dict(match.get("defaultRunOptions") or match.get("lastRunOptions"))
    options = defaults.merged(base)
    options.working_directory = workdir
    if options.skip_git_repo_check is None and find_git_root(workdir) is None:
        options.skip_git_repo_check = True
        defaults.skip_git_repo_check = True

    window_id = match["id"] if match is not None else make_id()
    logger.info("Queueing run for %s in %s window %s", workdir, "existing" if match else "new", window_id)
    return append_start_run(
        root,
        f"{text}\n\n{PLAN_INSTRUCTION}",
        window_id=window_id,
        ensure_window=True,
        options=options,
        defaults=defaults,
        request_id=normalize_str(task_id) or make_id(),
        source="mcp",
    )


@tool(
    "window_run",
    """Queue a prompt to run in the window working in `working_directory`.

Returns immediately with a task id. The run starts as soon as the window
is idle; poll task_status(task_id) for progress and the final result.
If no window works in that directory yet, one is created.""",
    {
        "type": "object",
        "properties": {
            "prompt": {"type": "string"},
            "working_directory": {"type": "string"},
            "task_id": {"type": "string"},
        },
        "required": ["prompt"],
    },
)
async def window_run(args: dict[str, Any]) -> dict[str, Any]:
    """Queue a window run."""
    prompt = normalize_str(args.get("prompt"))
    if not prompt:
        return _error("prompt is required")
    try:
        entry = await asyncio.to_thread(
            queue_window_run, data_dir(), prompt, args.get("working_directory", ""), args.get("task_id", "")
        )
    except OrchestratorError as e:
        return _failure(e)
    except (OSError, TimeoutError) as e:
        return _error(f"Could not queue the run: {e}")
    return _json({"taskId": entry["id"], "windowId": entry["windowId"], "status": "queued"})


@tool(
    "window_list",
    "List the orchestrator's windows, most recently updated first.",
    {"type": "object", "properties": {}},
)
async def window_list(args: dict[str, Any]) -> dict[str, Any]:
    """List windows from the state snapshot."""
    windows = load_snapshot(data_dir()).get("windows")
    if not isinstance(windows, list):
        windows = []
    rows = sorted(
        (w for w in windows if isinstance(w, dict)),
        key=lambda w: parse_iso(w.get("updatedAt")),
        reverse=True,
    )
    return _json(
        [
            {
                "id": w.get("id"),
                "name": w.get("name"),
                "status": w.get("status"),
                "threadId": w.get("threadId"),
                "workingDirectory": (w.get("defaultRunOptions") or {}).get("workingDirectory"),
                "updatedAt": w.get("updatedAt"),
            }
            for w in rows
        ]
    )

"""Automation MCP tools package.

The automation surface is file-based: window tools append to the request
queue and read the state snapshot, so they work from any process that shares
the data directory with the orchestrator. Job tools run processes in the
serving process itself.

Window tools: window_run, window_list, task_status
Job tools: job_start, job_status, job_result, job_cancel
"""

from claude_agent_sdk import create_sdk_mcp_server

# === Window / task tools ===
from .tasks import task_status
from .windows import window_list, window_run

# === Async job tools ===
from .jobs import get_job_store, job_cancel, job_result, job_start, job_status, release_tool_job_store

# ============================================================================
# ORCHESTRATOR_TOOLS: The MCP tools exposed to automation callers.
# ============================================================================

ORCHESTRATOR_TOOLS = [
    # Window runs (queued for the orchestrator)
    window_run,
    window_list,
    task_status,
    # Async jobs (run in this process)
    job_start,
    job_status,
    job_result,
    job_cancel,
]

orchestrator_server = create_sdk_mcp_server(
    name="codex_orchestrator",
    version="0.1.0",
    tools=ORCHESTRATOR_TOOLS,
)

__all__ = [
    "orchestrator_server",
    "ORCHESTRATOR_TOOLS",
    "window_run",
    "window_list",
    "task_status",
    "job_start",
    "job_status",
    "job_result",
    "job_cancel",
    "get_job_store",
    "release_tool_job_store",
]

"""Async job tools — start a process, check on it, collect its output, cancel it.

Jobs belong to the process that serves these tools. The store comes from the
per-directory job registry, so an orchestrator serving the same directory in
this process sees the same jobs. It is restored from codex_app_jobs.v1.json
on first use: jobs left running by a previous server show up as orphaned.
"""

from __future__ import annotations

from typing import Any

from claude_agent_sdk import tool

from ..config import data_dir
from ..errors import OrchestratorError
from ..jobs import JobStore, open_job_store, release_job_store
from ..types import normalize_str
from .results import _error, _failure, _json

_store: JobStore | None = None


def get_job_store() -> JobStore:
    """Job store for the configured data directory, acquired on first use."""
    global _store
    if _store is None:
        _store = open_job_store(data_dir())
    return _store


async def release_tool_job_store() -> None:
    """Give back the tools' reference; the last holder cancels active jobs."""
    global _store
    store, _store = _store, None
    if store is not None:
        await release_job_store(store)


@tool(
    "job_start",
    """Start a command in the background and return its job id at once.

`args` is the argument list (no shell). `input` is written to stdin.
Use job_status to check on it and job_result to collect its output.""",
    {
        "type": "object",
        "properties": {
            "command": {"type": "string"},
            "args": {"type": "array", "items": {"type": "string"}},
            "input": {"type": "string"},
            "window_id": {"type": "string"},
            "thread_id": {"type": "string"},
        },
        "required": ["command"],
    },
)
async def job_start(args: dict[str, Any]) -> dict[str, Any]:
    """Start an async job."""
    command = normalize_str(args.get("command"))
    if not command:
        return _error("command is required")
    argv = args.get("args") or []
    if not isinstance(argv, list):
        return _error("args must be a list of strings")
    try:
        job = await get_job_store().start_job(
            command,
            [str(a) for a in argv],
            input=str(args.get("input") or ""),
            window_id=normalize_str(args.get("window_id")),
            thread_id=normalize_str(args.get("thread_id")),
        )
    except OrchestratorError as e:
        return _failure(e)
    return _json(job.to_dict(include_output=False))


@tool(
    "job_status",
    "Status of a job (without its output). Omit job_id to list all jobs.",
    {"type": "object", "properties": {"job_id": {"type": "string"}}},
)
async def job_status(args: dict[str, Any]) -> dict[str, Any]:
    """Job status, or every job."""
    store = get_job_store()
    job_id = normalize_str(args.get("job_id"))
    if not job_id:
        return _json([job.to_dict(include_output=False) for job in store.list_jobs()])
    try:
        return _json(store.get_job(job_id).to_dict(include_output=False))
    except OrchestratorError as e:
        return _failure(e)


@tool(
    "job_result",
    """Final output of a job: exit code, signal, stdout and stderr tails.

Fails with still_running while the job is active; try again later.""",
    {
        "type": "object",
        "properties": {"job_id": {"type": "string"}},
        "required": ["job_id"],
    },
)
async def job_result(args: dict[str, Any]) -> dict[str, Any]:
    """Collect a finished job's output."""
    try:
        return _json(get_job_store().get_job_result(normalize_str(args.get("job_id"))))
    except OrchestratorError as e:
        return _failure(e)


@tool(
    "job_cancel",
    "Cancel a running job. Cancelling a finished job is a no-op.",
    {
        "type": "object",
        "properties": {"job_id": {"type": "string"}},
        "required": ["job_id"],
    },
)
async def job_cancel(args: dict[str, Any]) -> dict[str, Any]:
    """Cancel a job."""
    try:
        return _json(get_job_store().cancel_job(normalize_str(args.get("job_id"))))
    except OrchestratorError as e:
        return _failure(e)

"""Tests for the automation MCP tools (codex_orchestrator/tools/)."""

import json
import sys

import pytest

from codex_orchestrator.orchestrator import Orchestrator
from codex_orchestrator.paths import requests_file, state_file
from codex_orchestrator.requests import append_start_run, read_queue
from codex_orchestrator.store import StoreRegistry
from codex_orchestrator.tools import (
    get_job_store,
    job_cancel,
    job_result,
    job_start,
    job_status,
    release_tool_job_store,
    task_status,
    window_list,
    window_run,
)
from codex_orchestrator.tools.windows import DEFAULT_MODEL, DEFAULT_SANDBOX, PLAN_INSTRUCTION

from conftest import wait_for


def _payload(result):
    assert result.get("is_error") is not True, result
    return json.loads(result["content"][0]["text"])


def _write_snapshot(data_dir, windows=(), tasks=()):
    state_file(data_dir).write_text(
        json.dumps({"version": 1, "windows": list(windows), "mcpTasks": list(tasks)})
    )


def _window(window_id, workdir, status="idle", updated="2026-01-01T00:00:00.000Z", **defaults):
    return {
        "id": window_id,
        "name": window_id,
        "status": status,
        "updatedAt": updated,
        "defaultRunOptions": {"workingDirectory": str(workdir), **defaults},
    }


class TestWindowRun:
    async def test_queues_new_window(self, data_dir, workdir):
        result = _payload(await window_run.handler({"prompt": "fix the bug", "working_directory": str(workdir)}))
        assert result["status"] == "queued"

        entry = read_queue(requests_file(data_dir))["startRuns"][0]
        assert entry["id"] == result["taskId"]
        assert entry["windowId"] == result["windowId"]
        assert entry["ensureWindow"] is True
        assert entry["source"] == "mcp"
        assert entry["input"] == f"fix the bug\n\n{PLAN_INSTRUCTION}"
        assert entry["defaults"]["workingDirectory"] == str(workdir)
        assert entry["defaults"]["sandboxMode"] == DEFAULT_SANDBOX
        assert entry["options"]["model"] == DEFAULT_MODEL
        assert entry["options"]["approvalPolicy"] == "never"
        assert entry["options"]["modelReasoningEffort"] == "xhigh"
        assert entry["options"]["experimentalWindowsSandboxEnabled"] is False
        assert entry["options"]["skipGitRepoCheck"] is True

    async def test_git_repo_keeps_check(self, data_dir, workdir):
        (workdir / ".git").mkdir()
        await window_run.handler({"prompt": "hi", "working_directory": str(workdir)})
        entry = read_queue(requests_file(data_dir))["startRuns"][0]
        assert entry["options"]["skipGitRepoCheck"] is None

    async def test_reuses_window_for_directory(self, data_dir, workdir):
        _write_snapshot(
            data_dir,
            windows=[
                _window("old", workdir, updated="2026-01-01T00:00:00.000Z"),
                _window("busy", workdir, status="running", updated="2026-02-01T00:00:00.000Z", model="custom"),
            ],
        )
        result = _payload(await window_run.handler({"prompt": "hi", "working_directory": str(workdir) + "/"}))
        assert result["windowId"] == "busy"

        entry = read_queue(requests_file(data_dir))["startRuns"][0]
        assert entry["options"]["model"] == "custom"
        assert entry["defaults"]["workingDirectory"] == str(workdir)
        assert entry["defaults"]["sandboxMode"] == DEFAULT_SANDBOX

    async def test_matched_window_closed_before_reconcile(self, orchestrator, data_dir, workdir):
        _write_snapshot(data_dir, windows=[_window("gone", workdir)])
        result = _payload(await window_run.handler({"prompt": "hi", "working_directory": str(workdir)}))
        assert result["windowId"] == "gone"

        counts = await orchestrator.reconcile()
        assert counts["startedRuns"] == 1
        window = orchestrator.get_window("gone")
        assert window.default_run_options.working_directory == str(workdir)
        task = orchestrator.get_task(result["taskId"])
        await wait_for(lambda: task.is_terminal)
        assert task.status == "completed"

    async def test_caller_task_id(self, data_dir, workdir):
        result = _payload(await window_run.handler({"prompt": "hi", "working_directory": str(workdir), "task_id": "t-7"}))
        assert result["taskId"] == "t-7"

    async def test_empty_prompt(self, data_dir):
        result = await window_run.handler({"prompt": "   "})
        assert result["is_error"] is True
        assert "prompt is required" in result["content"][0]["text"]
        assert not requests_file(data_dir).exists()


class TestWindowList:
    async def test_sorted_newest_first(self, data_dir, workdir):
        _write_snapshot(
            data_dir,
            windows=[
                _window("a", workdir, updated="2026-01-01T00:00:00.000Z"),
                _window("b", workdir, updated="2026-03-01T00:00:00.000Z"),
                "junk",
            ],
        )
        rows = _payload(await window_list.handler({}))
        assert [r["id"] for r in rows] == ["b", "a"]
        assert rows[0]["workingDirectory"] == str(workdir)

    async def test_no_snapshot(self, data_dir):
        assert _payload(await window_list.handler({})) == []


class TestTaskStatus:
    async def test_pending(self, data_dir):
        entry = append_start_run(data_dir, "hi", window_id="w1", request_id="t1")
        result = _payload(await task_status.handler({"task_id": "t1"}))
        assert result["status"] == "pending"
        assert result["windowId"] == "w1"
        assert result["createdAt"] == entry["createdAt"]
        assert "resultText" not in result

    async def test_terminal_includes_result(self, data_dir):
        _write_snapshot(
            data_dir,
            tasks=[
                {
                    "id": "t1",
                    "status": "completed",
                    "windowId": "w1",
                    "runId": "r1",
                    "resultStatus": "completed",
                    "resultText": "all done",
                }
            ],
        )
        result = _payload(await task_status.handler({"task_id": "t1"}))
        assert result["status"] == "completed"
        assert result["runId"] == "r1"
        assert result["resultText"] == "all done"

    async def test_running_has_no_result(self, data_dir):
        _write_snapshot(data_dir, tasks=[{"id": "t1", "status": "running", "runId": "r1"}])
        result = _payload(await task_status.handler({"task_id": "t1"}))
        assert result["status"] == "running"
        assert "resultText" not in result

    async def test_not_found(self, data_dir):
        result = await task_status.handler({"task_id": "nope"})
        assert result["is_error"] is True
        assert "task not found: nope" in result["content"][0]["text"]


class TestJobTools:
    @pytest.fixture(autouse=True)
    async def _release_store(self, data_dir):
        yield
        await release_tool_job_store()

    async def test_start_status_result(self, data_dir):
        started = _payload(await job_start.handler({"command": sys.executable, "args": ["-c", "print('hi')"]}))
        assert started["status"] == "running"
        assert "stdout" not in started
        job_id = started["id"]

        job = get_job_store().get_job(job_id)
        await wait_for(lambda: not job.is_active)

        status = _payload(await job_status.handler({"job_id": job_id}))
        assert status["status"] == "finished"
        listing = _payload(await job_status.handler({}))
        assert [j["id"] for j in listing] == [job_id]

        result = _payload(await job_result.handler({"job_id": job_id}))
        assert result["stdout"] == "hi\n"
        assert result["exitCode"] == 0

    async def test_result_while_running(self, data_dir):
        started = _payload(
            await job_start.handler({"command": sys.executable, "args": ["-c", "import time; time.sleep(30)"]})
        )
        result = await job_result.handler({"job_id": started["id"]})
        assert result["is_error"] is True
        assert "still_running" in result["content"][0]["text"]

        cancelled = _payload(await job_cancel.handler({"job_id": started["id"]}))
        assert cancelled["status"] == "aborting"
        job = get_job_store().get_job(started["id"])
        await wait_for(lambda: not job.is_active)
        assert job.status == "aborted"

    async def test_bad_arguments(self, data_dir):
        assert (await job_start.handler({"command": ""}))["is_error"] is True
        assert (await job_start.handler({"command": "ls", "args": "-la"}))["is_error"] is True
        missing = await job_status.handler({"job_id": "nope"})
        assert missing["is_error"] is True
        assert "not_found" in missing["content"][0]["text"]

    async def test_store_shared_with_orchestrator(self, orchestrator):
        assert get_job_store() is orchestrator.jobs
        started = _payload(await job_start.handler({"command": sys.executable, "args": ["-c", "pass"]}))
        job = orchestrator.get_job(started["id"])
        await wait_for(lambda: not job.is_active)
        assert _payload(await job_status.handler({"job_id": job.id}))["status"] == "finished"

    async def test_orchestrator_opened_later_keeps_live_jobs(self, data_dir):
        started = _payload(
            await job_start.handler({"command": sys.executable, "args": ["-c", "import time; time.sleep(30)"]})
        )
        get_job_store().flush()

        orch = Orchestrator.open(data_dir, registry=StoreRegistry())
        try:
            assert orch.jobs is get_job_store()
            assert orch.get_job(started["id"]).status == "running"
        finally:
            await orch.release()
        # the tools still hold the store, so the job keeps running
        assert get_job_store().get_job(started["id"]).status == "running"

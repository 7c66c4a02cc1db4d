"""Tests for the cross-process request queue (codex_orchestrator/requests.py)."""

import asyncio
import json

import pytest

from codex_orchestrator.errors import InvalidArgument
from codex_orchestrator.paths import UI_PROMPTS_FILE_NAME, requests_file
from codex_orchestrator.requests import (
    REQUESTS_VERSION,
    append_create_window,
    append_start_run,
    read_queue,
)

from conftest import wait_for

DEFAULTS = {"workingDirectory": "/tmp", "sandboxMode": "x"}


def _queue(data_dir):
    return read_queue(requests_file(data_dir))


class TestProducer:
    def test_append_create_window(self, data_dir):
        entry = append_create_window(data_dir, name="auto", defaults=DEFAULTS, request_id="w9")
        assert entry["id"] == "w9"
        assert entry["defaults"]["workingDirectory"] == "/tmp"
        assert entry["createdAt"]

        raw = json.loads(requests_file(data_dir).read_text())
        assert raw["version"] == REQUESTS_VERSION
        assert raw["createWindows"] == [entry]
        assert raw["startRuns"] == []

    def test_append_start_run(self, data_dir):
        first = append_start_run(data_dir, "hello", window_id="w1")
        second = append_start_run(data_dir, "again", window_id="w1", ensure_window=False, source="ui")
        queue = _queue(data_dir)
        assert [e["id"] for e in queue["startRuns"]] == [first["id"], second["id"]]
        assert queue["startRuns"][1]["ensureWindow"] is False
        assert queue["startRuns"][1]["source"] == "ui"

    def test_empty_input_rejected(self, data_dir):
        with pytest.raises(InvalidArgument):
            append_start_run(data_dir, "  ")
        assert not requests_file(data_dir).exists()

    def test_read_queue_tolerates_garbage(self, data_dir):
        requests_file(data_dir).write_text(json.dumps({"createWindows": "nope", "startRuns": [1, {"id": "a"}]}))
        queue = _queue(data_dir)
        assert queue["createWindows"] == []
        assert queue["startRuns"] == [{"id": "a"}]


class TestCreateWindowRequests:
    async def test_creates_window_and_removes_entry(self, orchestrator, data_dir):
        append_create_window(data_dir, name="auto", defaults=DEFAULTS, request_id="w9")
        counts = await orchestrator.reconcile()
        assert counts["createdWindows"] == 1

        window = orchestrator.get_window("w9")
        assert window.name == "auto"
        assert window.source == "mcp"
        assert window.default_run_options.working_directory == "/tmp"
        assert window.default_run_options.sandbox_mode == "x"
        assert _queue(data_dir)["createWindows"] == []

    async def test_incomplete_defaults_stay_pending(self, orchestrator, data_dir):
        append_create_window(data_dir, defaults={"workingDirectory": "/tmp"}, request_id="w9")
        counts = await orchestrator.reconcile()
        assert counts["pending"] == 1
        assert "w9" not in orchestrator.store.windows
        assert [e["id"] for e in _queue(data_dir)["createWindows"]] == ["w9"]

    async def test_existing_window_updated(self, orchestrator, data_dir):
        orchestrator.windows.create(window_id="w9", defaults={"model": "m", "sandboxMode": "read-only"})
        defaults = {"workingDirectory": "/srv", "sandboxMode": "workspace-write"}
        append_create_window(data_dir, defaults=defaults, thread_id="t-1", request_id="w9")
        counts = await orchestrator.reconcile()
        assert counts["updatedWindows"] == 1
        window = orchestrator.get_window("w9")
        assert window.default_run_options.model == "m"
        assert window.default_run_options.working_directory == "/srv"
        assert window.default_run_options.sandbox_mode == "workspace-write"
        assert window.thread_id == "t-1"
        assert _queue(data_dir)["createWindows"] == []

    async def test_incomplete_defaults_for_existing_window_stay_pending(self, orchestrator, data_dir):
        orchestrator.windows.create(window_id="w9", defaults={"model": "m", **DEFAULTS})
        append_create_window(data_dir, defaults={"model": "other"}, thread_id="t-1", request_id="w9")
        counts = await orchestrator.reconcile()
        assert counts["pending"] == 1
        assert counts["updatedWindows"] == 0
        window = orchestrator.get_window("w9")
        assert window.default_run_options.model == "m"
        assert window.thread_id == ""
        assert [e["id"] for e in _queue(data_dir)["createWindows"]] == ["w9"]

    async def test_replay_is_idempotent(self, orchestrator, data_dir):
        entry = append_create_window(data_dir, name="auto", defaults=DEFAULTS, request_id="w9")
        await orchestrator.reconcile()
        # a consumer that crashed before removing the entry sees it again
        requests_file(data_dir).write_text(json.dumps({"createWindows": [entry], "startRuns": []}))
        await orchestrator.reconcile()
        assert list(orchestrator.store.windows) == ["w9"]
        assert orchestrator.get_window("w9").name == "auto"

    async def test_entries_appended_during_reconcile_survive(self, orchestrator, data_dir):
        append_create_window(data_dir, defaults=DEFAULTS, request_id="w1")
        original = orchestrator.requests._apply_create_window

        def apply_and_append(entry):
            if entry["id"] == "w1":
                append_create_window(data_dir, defaults=DEFAULTS, request_id="w2")
            return original(entry)

        orchestrator.requests._apply_create_window = apply_and_append
        await orchestrator.reconcile()
        assert [e["id"] for e in _queue(data_dir)["createWindows"]] == ["w2"]


class TestStartRunRequests:
    async def test_creates_window_and_runs(self, orchestrator, data_dir, workdir):
        defaults = {"workingDirectory": str(workdir), "sandboxMode": "read-only"}
        entry = append_start_run(data_dir, "hello", window_id="w1", window_name="auto", defaults=defaults)
        counts = await orchestrator.reconcile()
        assert counts["startedRuns"] == 1
        assert _queue(data_dir)["startRuns"] == []

        window = orchestrator.get_window("w1")
        assert window.name == "auto"
        task = orchestrator.get_task(entry["id"])
        assert task.run_id
        assert orchestrator.engine.get(task.run_id).window_id == "w1"
        assert orchestrator.get_window_inputs("w1")["items"][0]["text"] == "hello"

        await wait_for(lambda: task.is_terminal)
        assert task.status == "completed"
        assert task.result_status == "completed"
        assert task.result_text == "echo: hello"
        assert task.prompt_sent_at

        prompts = (data_dir / UI_PROMPTS_FILE_NAME).read_text().splitlines()
        assert len(prompts) == 1
        prompt = json.loads(prompts[0])
        assert prompt["type"] == "ui_prompt"
        assert prompt["requestId"] == entry["id"]
        assert "echo: hello" in prompt["prompt"]["markdown"]

    async def test_replayed_entry_dropped(self, orchestrator, data_dir, workdir):
        defaults = {"workingDirectory": str(workdir), "sandboxMode": "read-only"}
        entry = append_start_run(data_dir, "hello", window_id="w1", defaults=defaults)
        await orchestrator.reconcile()
        task = orchestrator.get_task(entry["id"])
        await wait_for(lambda: task.is_terminal)
        # let the pass scheduled by the finished run drain first
        await wait_for(lambda: not orchestrator._background)

        requests_file(data_dir).write_text(json.dumps({"createWindows": [], "startRuns": [entry]}))
        counts = await orchestrator.reconcile()
        assert counts["dropped"] == 1
        assert counts["startedRuns"] == 0
        assert len(orchestrator.store.runs) == 1
        assert _queue(data_dir)["startRuns"] == []

    async def test_waits_for_busy_window(self, orchestrator, data_dir, slow_codex):
        window = orchestrator.windows.create(window_id="w1")
        busy = await orchestrator.start_run(window.id, "first", command=str(slow_codex))

        entry = append_start_run(data_dir, "second", window_id="w1", ensure_window=False, source="ui")
        counts = await orchestrator.reconcile()
        assert counts["pending"] == 1
        task = orchestrator.get_task(entry["id"])
        assert task.status == "queued"
        assert task.window_id == "w1"

        # finishing the busy run schedules a reconciliation that starts the queued one
        orchestrator.abort_run(busy.id)
        await wait_for(lambda: task.is_terminal)
        assert task.status == "completed"
        assert task.result_text == "echo: second"
        assert _queue(data_dir)["startRuns"] == []

    async def test_missing_window_without_ensure_stays_pending(self, orchestrator, data_dir):
        append_start_run(data_dir, "hello", window_id="ghost", ensure_window=False)
        counts = await orchestrator.reconcile()
        assert counts["pending"] == 1
        assert "ghost" not in orchestrator.store.windows

    async def test_unresolvable_defaults_stay_pending(self, orchestrator, data_dir):
        append_start_run(data_dir, "hello", window_id="w1", defaults={"workingDirectory": "/tmp"})
        counts = await orchestrator.reconcile()
        assert counts["pending"] == 1
        assert "w1" not in orchestrator.store.windows

    async def test_malformed_entries_dropped(self, orchestrator, data_dir):
        requests_file(data_dir).write_text(
            json.dumps({"startRuns": [{"id": "t1", "input": ""}, {"input": "no id", "windowId": "w1"}]})
        )
        counts = await orchestrator.reconcile()
        assert counts["dropped"] == 2
        assert _queue(data_dir)["startRuns"] == []
        assert orchestrator.store.tasks == {}

    async def test_spawn_failure_fails_task(self, orchestrator, data_dir, tmp_path):
        defaults = {"workingDirectory": str(tmp_path), "sandboxMode": "read-only"}
        entry = append_start_run(
            data_dir, "hello", window_id="w1", defaults=defaults, command=str(tmp_path / "missing-codex")
        )
        counts = await orchestrator.reconcile()
        assert counts["startedRuns"] == 1
        task = orchestrator.get_task(entry["id"])
        assert task.status == "failed"
        assert task.error.startswith("failed to start")
        assert task.run_id
        assert orchestrator.get_window("w1").status == "idle"


class TestLockWaiting:
    async def test_held_lock_does_not_block_event_loop(self, orchestrator, data_dir):
        append_create_window(data_dir, defaults=DEFAULTS, request_id="w9")
        path = requests_file(data_dir)
        lock = path.with_name(path.name + ".lock")
        lock.write_text("another process")

        pass_task = asyncio.create_task(orchestrator.reconcile())
        # a blocking wait would hold the loop until the lock timeout and fail the pass
        await asyncio.sleep(0.2)
        assert not pass_task.done()
        assert "w9" not in orchestrator.store.windows

        lock.unlink()
        counts = await asyncio.wait_for(pass_task, timeout=5)
        assert counts["createdWindows"] == 1
        assert _queue(data_dir)["createWindows"] == []

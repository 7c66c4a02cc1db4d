"""Tests for the run engine (codex_orchestrator/runs.py).

Runs spawn small python scripts that speak the agent's JSONL protocol.
"""

import pytest

from codex_orchestrator.errors import AlreadyRunning, InvalidArgument, NotFound
from codex_orchestrator.orchestrator import Orchestrator

from conftest import make_config, wait_for, write_script

FLOOD_CODEX = """
import json
import sys

sys.stdin.read()
for i in range(10000):
    print(json.dumps({"type": "item.updated", "item": {"id": "i", "type": "reasoning", "text": str(i)}}))
sys.stdout.flush()
"""

TODO_CODEX = """
import json
import sys

sys.stdin.read()
items = [{"text": "read code", "completed": True}, {"text": "write tests", "completed": False}]
print(json.dumps({"type": "item.started", "item": {"id": "todo-1", "type": "todo_list", "items": items}}), flush=True)
items[1]["completed"] = True
print(json.dumps({"type": "item.updated", "item": {"id": "todo-1", "type": "todo_list", "items": items}}), flush=True)
"""

NOISY_CODEX = """
import sys

sys.stdin.read()
print("x" * 500, flush=True)
"""


def _statuses(events):
    return [e["status"] for e in events if e.get("source") == "system" and e.get("kind") == "status"]


class TestStartRun:
    async def test_happy_path_captures_thread(self, orchestrator, workdir):
        window = orchestrator.create_window(name="W1", defaults={"workingDirectory": str(workdir)})
        run = await orchestrator.start_run(window.id, "hello")
        assert run.status == "running"
        assert window.active_run_id == run.id

        await wait_for(lambda: run.is_terminal)
        assert run.status == "completed"
        assert run.error is None
        assert window.thread_id == "thread-123"
        assert window.status == "idle"
        assert window.active_run_id == ""
        assert window.last_run_options.working_directory == str(workdir)

        result = orchestrator.poll(run.id, 0)
        assert result["done"] is True
        assert result["nextCursor"] == run.log.next_seq
        assert result["run"]["status"] == "completed"
        events = result["events"]
        assert [e["seq"] for e in events] == list(range(len(events)))
        assert _statuses(events) == ["running", "completed"]
        spawn = next(e for e in events if e.get("kind") == "spawn")
        assert spawn["args"][:2] == ["exec", "--json"]
        assert ["--cd", str(workdir)] == spawn["args"][2:4]
        codex_types = [e["event"]["type"] for e in events if e["source"] == "codex"]
        assert codex_types == ["thread.started", "turn.started", "item.completed", "turn.completed"]

        again = orchestrator.poll(run.id, result["nextCursor"])
        assert again["events"] == []
        assert again["done"] is True

    async def test_second_run_resumes_thread(self, orchestrator):
        window = orchestrator.create_window()
        first = await orchestrator.start_run(window.id, "one")
        await wait_for(lambda: first.is_terminal)

        second = await orchestrator.start_run(window.id, "two")
        assert second.thread_id == "thread-123"
        await wait_for(lambda: second.is_terminal)
        spawn = next(e for e in second.log.events if e.get("kind") == "spawn")
        assert spawn["args"][-2:] == ["resume", "thread-123"]

    async def test_events_mirrored_to_window_log(self, orchestrator):
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "hello")
        await wait_for(lambda: run.is_terminal)
        logs = orchestrator.get_window_logs(window.id)
        assert logs["total"] == len(run.log.events)
        assert any("assistant" in line and "echo: hello" in line for line in logs["lines"])

    async def test_options_override_defaults(self, orchestrator):
        window = orchestrator.create_window(defaults={"model": "base", "sandboxMode": "read-only"})
        run = await orchestrator.start_run(window.id, "hi", options={"model": "override"})
        assert run.options.model == "override"
        assert run.options.sandbox_mode == "read-only"
        await wait_for(lambda: run.is_terminal)

    async def test_already_running(self, orchestrator, slow_codex):
        window = orchestrator.create_window(name="W1")
        run = await orchestrator.start_run(window.id, "first", command=str(slow_codex))

        with pytest.raises(AlreadyRunning) as exc:
            await orchestrator.start_run(window.id, "second")
        assert exc.value.window_id == window.id
        assert exc.value.status == "running"
        assert list(orchestrator.store.runs) == [run.id]

        orchestrator.abort_run(run.id)
        await wait_for(lambda: run.is_terminal)

    async def test_preconditions(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.start_run("nope", "hello")
        window = orchestrator.create_window()
        with pytest.raises(InvalidArgument):
            await orchestrator.start_run(window.id, "   ")
        with pytest.raises(InvalidArgument):
            await orchestrator.start_run(window.id, "hi", options=["not", "a", "dict"])
        assert orchestrator.store.runs == {}
        assert window.status == "idle"

    async def test_spawn_failure(self, orchestrator, tmp_path):
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "hello", command=str(tmp_path / "no-such-codex"))
        assert run.status == "failed"
        assert run.error.startswith("failed to start")
        assert window.status == "idle"
        assert window.active_run_id == ""
        kinds = [e.get("kind") for e in run.log.events]
        assert "error" in kinds
        assert orchestrator.poll(run.id, 0)["done"] is True


class TestRunFailure:
    async def test_nonzero_exit_with_raw_and_stderr(self, orchestrator, failing_codex):
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "hello", command=str(failing_codex))
        await wait_for(lambda: run.is_terminal)
        assert run.status == "failed"
        assert run.error.endswith("exited with code 3")

        raw = [e for e in run.log.events if e["source"] == "raw"]
        assert raw[0]["text"] == "not json at all"
        assert raw[0]["error"]["message"]
        assert [e["text"] for e in run.log.events if e["source"] == "stderr"] == ["boom"]
        final = run.log.events[-1]
        assert final["status"] == "failed"
        assert final["error"] == {"message": run.error}

    async def test_long_raw_line_truncated(self, data_dir, bin_dir):
        noisy = write_script(bin_dir, "codex-noisy", NOISY_CODEX)
        orch = Orchestrator(data_dir, make_config(command=str(noisy), max_event_text_chars=100))
        try:
            window = orch.create_window()
            run = await orch.start_run(window.id, "hello")
            await wait_for(lambda: run.is_terminal)
            raw = next(e for e in run.log.events if e["source"] == "raw")
            assert len(raw["text"]) == 100
            assert raw["truncated"] is True
            assert raw["originalLength"] == 500
        finally:
            await orch.close()


class TestEventCap:
    async def test_flood_produces_gap(self, data_dir, bin_dir):
        flood = write_script(bin_dir, "codex-flood", FLOOD_CODEX)
        config = make_config(
            command=str(flood), max_run_events=2500, max_window_log_events=2500, debounce_seconds=0.5
        )
        orch = Orchestrator(data_dir, config)
        try:
            window = orch.create_window()
            run = await orch.start_run(window.id, "go")
            await wait_for(lambda: run.is_terminal, timeout=30)
            assert run.status == "completed"

            result = orch.poll(run.id, 0)
            assert result["events"] == []
            assert result["gap"]["from"] == 0
            assert result["gap"]["to"] == run.log.earliest_seq > 0
            assert result["droppedEvents"] > 0
            assert len(run.log) <= 2500

            rest = orch.poll(run.id, result["nextCursor"])
            assert rest["done"] is True
            assert rest["events"][-1]["status"] == "completed"
        finally:
            await orch.close()


class TestTodoCapture:
    async def test_last_snapshot_wins(self, orchestrator, bin_dir):
        todo = write_script(bin_dir, "codex-todo", TODO_CODEX)
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "plan", command=str(todo))
        await wait_for(lambda: run.is_terminal)
        assert [(i.text, i.completed) for i in window.todo_list] == [("read code", True), ("write tests", True)]
        assert window.todo_list_id == "todo-1"
        assert orchestrator.get_window_tasks(window.id)["todoList"][1] == {"text": "write tests", "completed": True}


class TestAbort:
    async def test_abort_by_window_id(self, orchestrator, slow_codex):
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "hello", command=str(slow_codex))
        await wait_for(lambda: window.thread_id == "thread-slow")

        result = orchestrator.abort_run(window.id)
        assert result == {"ok": True, "runId": run.id, "status": "aborting"}
        assert run.status == "aborting"
        assert window.status == "aborting"

        await wait_for(lambda: run.is_terminal)
        assert run.status == "aborted"
        assert run.error is None
        assert window.status == "idle"
        assert _statuses(run.log.events) == ["running", "aborting", "aborted"]

    async def test_escalates_to_kill(self, orchestrator, stubborn_codex):
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "hello", command=str(stubborn_codex))
        await wait_for(lambda: window.thread_id == "thread-stubborn")

        orchestrator.abort_run(run.id)
        assert run.status == "aborting"
        # SIGTERM is ignored; the forced kill after the grace period ends it
        await wait_for(lambda: run.is_terminal)
        assert run.status == "aborted"
        assert window.status == "idle"

    async def test_idempotent(self, orchestrator, slow_codex):
        window = orchestrator.create_window()
        run = await orchestrator.start_run(window.id, "hello", command=str(slow_codex))
        orchestrator.abort_run(run.id)
        assert orchestrator.abort_run(run.id)["status"] == "aborting"
        await wait_for(lambda: run.is_terminal)
        assert orchestrator.abort_run(run.id) == {"ok": True, "runId": run.id, "status": "aborted"}
        assert _statuses(run.log.events).count("aborting") == 1

    async def test_idle_window(self, orchestrator):
        window = orchestrator.create_window()
        assert orchestrator.abort_run(window.id) == {"ok": True, "runId": "", "status": "idle"}

    async def test_unknown(self, orchestrator):
        with pytest.raises(NotFound):
            orchestrator.abort_run("missing")

    async def test_close_aborts_everything(self, data_dir, slow_codex):
        orch = Orchestrator(data_dir, make_config(command=str(slow_codex)))
        window = orch.create_window()
        run = await orch.start_run(window.id, "hello")
        await orch.close()
        assert run.status == "aborted"
        assert window.status == "idle"


class TestPruneRuns:
    async def test_keeps_newest_finished(self, data_dir, fake_codex):
        orch = Orchestrator(data_dir, make_config(command=str(fake_codex), max_runs=2))
        try:
            window = orch.create_window()
            ids = []
            for i in range(3):
                run = await orch.start_run(window.id, f"run {i}")
                await wait_for(lambda: run.is_terminal)
                ids.append(run.id)
            assert set(orch.store.runs) == set(ids[1:])
        finally:
            await orch.close()

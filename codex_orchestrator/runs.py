"""Run engine — one agent process per run, at most one active run per window.

A run goes running -> (aborting ->) completed | failed | aborted. The engine
spawns the executable, writes the prompt to stdin and closes it, then turns
every stdout line into a `codex` event (or a `raw` event if it is not JSON)
and every stderr line into a `stderr` event. Thread announcements and todo
snapshots are copied onto the window as they stream by.

Abort is acknowledged immediately (an `aborting` status event goes out
before the process dies); termination escalates on its own timer.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .codex import (
    ItemEvent,
    ThreadStarted,
    TodoList,
    build_exec_args,
    parse_event,
    spawn_command,
    windows_sandbox_warning,
)
from .config import EngineConfig
from .errors import AlreadyRunning, ExitInfo, InvalidArgument, NotFound, classify_exit
from .events import EventLog
from .logging_config import get_logger
from .plan import extract_from_event
from .process import iter_lines, kill_tree, spawn, terminate, write_input
from .todo import normalize_todo_items
from .types import (
    ACTIVE_STATUSES,
    RUN_TERMINAL_STATUSES,
    RunOptions,
    TodoItem,
    error_dict,
    error_message,
    make_id,
    normalize_str,
    now_iso,
    parse_iso,
)

if TYPE_CHECKING:
    from .store import StateStore

logger = get_logger(__name__)

RESTART_ERROR = "orchestrator restarted while run was active"


@dataclass
class Run:
    """One execution of the agent against a window."""

    id: str
    window_id: str
    log: EventLog
    command: str = "codex"
    options: RunOptions = field(default_factory=RunOptions)
    thread_id: str = ""
    status: str = "running"
    started_at: str = ""
    finished_at: str = ""
    error: str | None = None
    task_id: str = ""
    todo_list: list[TodoItem] = field(default_factory=list)
    todo_list_id: str = ""
    todo_list_updated_at: str = ""
    plan_markdown: str = ""
    plan_markdown_path: str = ""
    pid: int = 0
    restored_from_active: bool = False
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    abort_requested: bool = field(default=False, repr=False)
    reader: asyncio.Task | None = field(default=None, repr=False)
    kill_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "windowId": self.window_id,
            "status": self.status,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": error_dict(self.error),
        }

    def summary(self) -> dict[str, Any]:
        """Snapshot entry (events live in the window logs)."""
        return {
            **self.describe(),
            "threadId": self.thread_id,
            "options": self.options.to_dict(),
            "taskId": self.task_id,
            "nextSeq": self.log.next_seq,
            "droppedEvents": self.log.dropped,
        }

    def poll(self, cursor: int) -> dict[str, Any]:
        """Cursor read: {run, events, nextCursor, done, gap?, droppedEvents}."""
        return {"run": self.describe(), **self.log.poll(cursor, terminal=self.is_terminal)}

    @classmethod
    def from_summary(cls, data: Any, config: EngineConfig) -> Run | None:
        """Restore a run summary. Active runs cannot survive a restart."""
        if not isinstance(data, dict):
            return None
        run_id = normalize_str(data.get("id"))
        window_id = normalize_str(data.get("windowId"))
        if not run_id or not window_id:
            return None
        next_seq = data.get("nextSeq")
        dropped = data.get("droppedEvents")
        run = cls(
            id=run_id,
            window_id=window_id,
            log=EventLog(
                config.max_run_events,
                config.max_event_text_chars,
                next_seq=next_seq if isinstance(next_seq, int) and next_seq >= 0 else 0,
                dropped=dropped if isinstance(dropped, int) and dropped >= 0 else 0,
            ),
            options=RunOptions.from_dict(data.get("options")),
            thread_id=normalize_str(data.get("threadId")),
            status=normalize_str(data.get("status")) or "failed",
            started_at=normalize_str(data.get("startedAt")),
            finished_at=normalize_str(data.get("finishedAt")),
            error=error_message(data.get("error")),
            task_id=normalize_str(data.get("taskId")),
        )
        if not run.is_terminal:
            run.restored_from_active = run.status in ACTIVE_STATUSES
            run.status = "failed"
            run.error = run.error or RESTART_ERROR
            run.finished_at = run.finished_at or now_iso()
        return run


class RunEngine:
    """Starts, streams, aborts and polls runs held in a StateStore."""

    def __init__(self, store: StateStore):
        self.store = store
        self.config = store.config
        self._finish_hooks: list[Callable[[Run], None]] = []

    @property
    def runs(self) -> dict[str, Run]:
        return self.store.runs

    def add_finish_hook(self, hook: Callable[[Run], None]) -> None:
        """hook(run) is called once after a run reaches a terminal state."""
        self._finish_hooks.append(hook)

    def get(self, run_id: str) -> Run:
        run = self.runs.get(normalize_str(run_id))
        if run is None:
            raise NotFound("run", run_id)
        return run

    def active_runs(self) -> list[Run]:
        return [r for r in self.runs.values() if r.is_active]

    def push_event(self, run: Run, payload: dict[str, Any]) -> dict[str, Any]:
        evt = run.log.append(payload)
        if run.window_id in self.store.windows:
            self.store.window_log(run.window_id).append(evt)
        self.store.schedule_write()
        return evt

    def poll(self, run_id: str, cursor: int = 0) -> dict[str, Any]:
        return self.get(run_id).poll(cursor)

    # --- start ---

    async def start_run(
        self,
        window_id: str,
        input_text: str,
        command: str | None = None,
        options: RunOptions | dict | None = None,
        thread_id: str = "",
        task_id: str = "",
    ) -> Run:
        """Accept a run for an idle window and start streaming it.

        Returns once the process is spawned (or the spawn failed, in which
        case the run is already `failed`). Raises NotFound, InvalidArgument
        or AlreadyRunning without touching any state.
        """
        window = self.store.windows.get(normalize_str(window_id))
        if window is None:
            raise NotFound("window", window_id)
        text = normalize_str(input_text)
        if not text:
            raise InvalidArgument("input is required")
        if window.is_active:
            raise AlreadyRunning(window.id, window.status)
        merged = window.default_run_options.merged(RunOptions.parse(options))
        command = normalize_str(command) or self.config.command

        started_at = now_iso()
        run = Run(
            id=make_id(),
            window_id=window.id,
            log=EventLog(self.config.max_run_events, self.config.max_event_text_chars),
            command=command,
            options=merged,
            thread_id=normalize_str(thread_id) or window.thread_id,
            started_at=started_at,
            task_id=normalize_str(task_id),
        )
        self.runs[run.id] = run
        window.status = "running"
        window.active_run_id = run.id
        window.last_run_options = merged
        window.last_run_at = started_at
        window.touch(started_at)
        self.push_event(run, {"source": "system", "kind": "status", "status": "running"})
        logger.info("Run %s started on window %s", run.id, window.id)

        warning = windows_sandbox_warning(merged)
        if warning:
            self.push_event(run, {"source": "system", "kind": "warning", "message": warning})

        args = build_exec_args(merged, run.thread_id)
        argv = spawn_command(command, args)
        try:
            proc = await spawn(argv)
        except OSError as e:
            message = f"failed to start {command}: {e.strerror or e}"
            self.push_event(run, {"source": "system", "kind": "error", "error": {"message": message}})
            self._finish(run, ExitInfo(status="failed", message=message))
            return run

        run.process = proc
        run.pid = proc.pid or 0
        spawn_evt: dict[str, Any] = {"source": "system", "kind": "spawn", "command": command, "args": args}
        if argv[0] != command:
            spawn_evt["wrapper"] = {"command": argv[0], "args": argv[1:]}
        self.push_event(run, spawn_evt)

        if run.abort_requested:
            # aborted while we were spawning
            run.kill_handle = terminate(proc, self.config.abort_grace_seconds)
        run.reader = asyncio.create_task(self._drive(run, proc, text))
        return run

    async def _drive(self, run: Run, proc: asyncio.subprocess.Process, text: str) -> None:
        stderr_task = asyncio.create_task(self._read_stderr(run, proc))
        error: BaseException | None = None
        try:
            problem = await write_input(proc, text)
            if problem:
                self.push_event(run, {"source": "system", "kind": "warning", "message": problem})
            if proc.stdout is None:
                raise RuntimeError(f"{run.command} child process has no stdout")
            async for line in iter_lines(proc.stdout):
                if line.strip():
                    self._handle_line(run, line)
            await stderr_task
            await proc.wait()
        except asyncio.CancelledError:
            stderr_task.cancel()
            if proc.returncode is None:
                run.abort_requested = True
                kill_tree(proc)
            self._finish(run, classify_exit(proc.returncode, aborted=True))
            raise
        except Exception as e:
            logger.exception("Run %s stream failed", run.id)
            error = e
            stderr_task.cancel()
            # escalation stays armed past _finish
            terminate(proc, self.config.abort_grace_seconds)
        self._finish(run, classify_exit(proc.returncode, aborted=run.abort_requested, error=error, label=run.command))

    async def _read_stderr(self, run: Run, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        async for line in iter_lines(proc.stderr):
            self.push_event(run, {"source": "stderr", "text": line})

    def _handle_line(self, run: Run, line: str) -> None:
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            self.push_event(run, {"source": "raw", "text": line, "error": {"message": str(e)}})
            return

        event = parse_event(obj)
        window = self.store.windows.get(run.window_id)
        if isinstance(event, ThreadStarted) and event.thread_id:
            run.thread_id = event.thread_id
            if window is not None:
                window.thread_id = event.thread_id
                window.touch()
        elif isinstance(event, ItemEvent) and isinstance(event.item, TodoList):
            self._publish_todo(run, event.item)
        if isinstance(event, ItemEvent) and event.phase in ("updated", "completed"):
            content, path = extract_from_event(obj, run.options.working_directory)
            if content and (not run.plan_markdown_path or not path or path == run.plan_markdown_path):
                run.plan_markdown = content
                run.plan_markdown_path = path or run.plan_markdown_path

        self.push_event(run, {"source": "codex", "event": obj})

    def _publish_todo(self, run: Run, item: TodoList) -> None:
        """Last write wins: each todo_list item replaces the window's snapshot."""
        items = normalize_todo_items(item.raw.get("items") if item.has_items else item.raw)
        if not items and not item.has_items:
            return
        updated_at = now_iso()
        run.todo_list = items
        run.todo_list_id = item.id
        run.todo_list_updated_at = updated_at
        window = self.store.windows.get(run.window_id)
        if window is not None:
            window.todo_list = list(items)
            window.todo_list_id = item.id
            window.todo_list_updated_at = updated_at
            window.touch(updated_at)

    # --- finish ---

    def _finish(self, run: Run, info: ExitInfo) -> None:
        if run.finished_at:
            return
        run.status = info.status
        run.finished_at = now_iso()
        run.error = info.message
        run.process = None
        if run.kill_handle is not None:
            run.kill_handle.cancel()
            run.kill_handle = None

        self.push_event(
            run,
            {
                "source": "system",
                "kind": "status",
                "status": run.status,
                "finishedAt": run.finished_at,
                "error": error_dict(run.error),
            },
        )
        window = self.store.windows.get(run.window_id)
        if window is not None and window.active_run_id == run.id:
            window.status = "idle"
            window.active_run_id = ""
            window.touch(run.finished_at)
        self.store.schedule_write()
        logger.info("Run %s %s%s", run.id, run.status, f": {run.error}" if run.error else "")

        self._prune_runs()
        for hook in self._finish_hooks:
            try:
                hook(run)
            except Exception:
                logger.exception("Run finish hook failed for %s", run.id)

    def _prune_runs(self) -> None:
        finished = [r for r in self.runs.values() if r.is_terminal]
        excess = len(finished) - self.config.max_runs
        if excess <= 0:
            return
        finished.sort(key=lambda r: parse_iso(r.finished_at))
        for run in finished[:excess]:
            del self.runs[run.id]

    # --- abort ---

    def resolve(self, ident: str) -> Run | None:
        """Run by run id, or the active run of a window id (None if idle)."""
        ident = normalize_str(ident)
        run = self.runs.get(ident)
        if run is not None:
            return run
        window = self.store.windows.get(ident)
        if window is None:
            raise NotFound("run or window", ident)
        return self.runs.get(window.active_run_id) if window.active_run_id else None

    def abort(self, ident: str) -> dict[str, Any]:
        """Abort by run id or window id. Idempotent; does not wait for exit."""
        run = self.resolve(ident)
        if run is None:
            return {"ok": True, "runId": "", "status": "idle"}
        if run.status != "running":
            return {"ok": True, "runId": run.id, "status": run.status}

        run.status = "aborting"
        run.abort_requested = True
        window = self.store.windows.get(run.window_id)
        if window is not None and window.active_run_id == run.id:
            window.status = "aborting"
            window.touch()
        self.push_event(run, {"source": "system", "kind": "status", "status": "aborting"})
        if run.process is not None:
            run.kill_handle = terminate(run.process, self.config.abort_grace_seconds)
        logger.info("Run %s aborting", run.id)
        return {"ok": True, "runId": run.id, "status": "aborting"}

    async def shutdown(self) -> None:
        """Abort everything still active and wait (bounded) for the readers."""
        readers = []
        for run in self.active_runs():
            self.abort(run.id)
            if run.reader is not None:
                readers.append(run.reader)
        if not readers:
            return
        _, pending = await asyncio.wait(readers, timeout=self.config.abort_grace_seconds + 1.0)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass

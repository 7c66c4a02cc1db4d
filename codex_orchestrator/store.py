"""State snapshot store and the per-directory store registry.

StateStore owns the in-memory world of one data directory (windows, runs,
window logs, window input histories, automation tasks) and mirrors it to
codex_app_state.v1.json:

  {version, updatedAt, windows[], runs[], windowLogs{}, windowTasks{},
   windowInputs{}, mcpTasks[]}

Writes are debounced: the first mutation schedules a write a short delay
out, later mutations inside that window ride along. flush() writes now.

On restore nothing may claim a live process: windows recorded as
running/aborting come back idle, runs recorded as active come back failed.

StoreRegistry hands out one backend object per resolved data directory and
reference-counts its owners, so repeated opens (e.g. a host reloading the
integration) share the same in-memory registries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

from .config import EngineConfig
from .events import WindowLog
from .files import read_json, write_json_atomic
from .logging_config import get_logger
from .paths import state_file
from .runs import Run
from .tasks import prune_tasks
from .todo import normalize_todo_items
from .types import McpTask, Window, normalize_str, now_iso

logger = get_logger(__name__)

STATE_VERSION = 1


class DebouncedWriter:
    """Coalesces write requests into one atomic write per delay window."""

    def __init__(self, path: Path, build: Callable[[], dict[str, Any]], delay: float):
        self.path = path
        self._build = build
        self.delay = delay
        self._handle: asyncio.TimerHandle | None = None
        self.writes = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        if self._handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller, CLI): nothing to coalesce with
            self.write_now()
            return
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.write_now()

    def flush(self) -> bool:
        """Cancel any pending timer and write synchronously."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        return self.write_now()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def write_now(self) -> bool:
        try:
            data = self._build()
        except Exception:
            logger.exception("Failed to build snapshot for %s", self.path)
            return False
        ok = write_json_atomic(self.path, data)
        if ok:
            self.writes += 1
        return ok


class StateStore:
    """In-memory registries for one data directory plus their snapshot."""

    def __init__(self, data_dir: Path, config: EngineConfig):
        self.data_dir = data_dir
        self.config = config
        self.path = state_file(data_dir)
        self.windows: dict[str, Window] = {}
        self.runs: dict[str, Run] = {}
        self.window_logs: dict[str, WindowLog] = {}
        self.window_inputs: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, McpTask] = {}
        self.writer = DebouncedWriter(self.path, self.build_snapshot, config.debounce_seconds)

    def schedule_write(self) -> None:
        self.writer.schedule()

    def flush(self) -> bool:
        return self.writer.flush()

    # --- window logs ---

    def window_log(self, window_id: str) -> WindowLog:
        log = self.window_logs.get(window_id)
        if log is None:
            log = WindowLog(self.config.max_window_log_events)
            self.window_logs[window_id] = log
        return log

    # --- snapshot ---

    def build_snapshot(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "updatedAt": now_iso(),
            "windows": [w.to_dict() for w in self.windows.values()],
            "runs": [r.summary() for r in self.runs.values()],
            "windowLogs": {wid: log.to_dict() for wid, log in self.window_logs.items()},
            "windowTasks": {
                w.id: {
                    "todoList": [item.to_dict() for item in w.todo_list],
                    "todoListId": w.todo_list_id,
                    "updatedAt": w.todo_list_updated_at,
                }
                for w in self.windows.values()
            },
            "windowInputs": {
                wid: {"items": list(info["items"]), "updatedAt": info["updatedAt"]}
                for wid, info in self.window_inputs.items()
            },
            "mcpTasks": [t.to_dict() for t in self.tasks.values()],
        }

    def restore(self) -> None:
        """Load the snapshot, demoting anything that claimed a live process."""
        snapshot = read_json(self.path)
        if not isinstance(snapshot, dict):
            return

        reset = self._restore_windows(snapshot)
        failed_runs = self._restore_runs(snapshot)
        self._restore_logs(snapshot)
        self._restore_inputs(snapshot)
        for raw in snapshot.get("mcpTasks") or []:
            task = McpTask.from_dict(raw)
            if task is not None:
                self.tasks[task.id] = task
        prune_tasks(self.tasks, self.config.max_tasks)

        logger.info(
            "Restored %d windows (%d were active), %d runs (%d were active), %d tasks",
            len(self.windows),
            reset,
            len(self.runs),
            failed_runs,
            len(self.tasks),
        )
        if reset or failed_runs:
            self.schedule_write()

    def _restore_windows(self, snapshot: dict) -> int:
        todo_entries = snapshot.get("windowTasks") if isinstance(snapshot.get("windowTasks"), dict) else {}
        reset = 0
        for entry in snapshot.get("windows") or []:
            if not isinstance(entry, dict) or not normalize_str(entry.get("id")):
                continue
            window = Window.from_dict(entry)
            if window.is_active:
                window.status = "idle"
                reset += 1
            window.active_run_id = ""
            todo = todo_entries.get(window.id)
            if isinstance(todo, dict):
                window.todo_list = normalize_todo_items(todo.get("todoList"))
                window.todo_list_id = normalize_str(todo.get("todoListId"))
                window.todo_list_updated_at = normalize_str(todo.get("updatedAt"))
            self.windows[window.id] = window
        return reset

    def _restore_runs(self, snapshot: dict) -> int:
        failed = 0
        for entry in snapshot.get("runs") or []:
            run = Run.from_summary(entry, self.config)
            if run is None:
                continue
            if run.restored_from_active:
                failed += 1
            self.runs[run.id] = run
        return failed

    def _restore_logs(self, snapshot: dict) -> None:
        logs = snapshot.get("windowLogs")
        if not isinstance(logs, dict):
            return
        for window_id, info in logs.items():
            if not normalize_str(window_id) or not isinstance(info, dict):
                continue
            log = WindowLog.from_dict(info, self.config.max_window_log_events)
            if log.events or log.updated_at:
                self.window_logs[window_id] = log

    def _restore_inputs(self, snapshot: dict) -> None:
        inputs = snapshot.get("windowInputs")
        if not isinstance(inputs, dict):
            return
        for window_id, info in inputs.items():
            if not normalize_str(window_id) or not isinstance(info, dict):
                continue
            items = [
                {"ts": normalize_str(e.get("ts")) or now_iso(), "text": normalize_str(e.get("text"))}
                for e in info.get("items") or []
                if isinstance(e, dict) and normalize_str(e.get("text"))
            ]
            updated_at = normalize_str(info.get("updatedAt"))
            if items or updated_at:
                self.window_inputs[window_id] = {
                    "items": items[-self.config.max_window_inputs :],
                    "updatedAt": updated_at,
                }


T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    store: T
    refs: int = 0


class StoreRegistry(Generic[T]):
    """Resolved data directory -> shared store, with reference counts."""

    def __init__(self) -> None:
        self._entries: dict[Path, _Entry[T]] = {}

    @staticmethod
    def key(data_dir: Path) -> Path:
        return Path(data_dir).expanduser().resolve()

    def acquire(self, data_dir: Path, factory: Callable[[Path], T]) -> T:
        """Return the store for data_dir, creating it on first acquire."""
        key = self.key(data_dir)
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(store=factory(key))
            self._entries[key] = entry
        entry.refs += 1
        return entry.store

    def release(self, data_dir: Path) -> bool:
        """Drop one reference. True when it was the last (the store is forgotten)."""
        key = self.key(data_dir)
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.refs -= 1
        if entry.refs > 0:
            return False
        del self._entries[key]
        return True

    def refcount(self, data_dir: Path) -> int:
        entry = self._entries.get(self.key(data_dir))
        return entry.refs if entry else 0


DEFAULT_REGISTRY: StoreRegistry = StoreRegistry()

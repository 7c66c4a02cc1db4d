"""Cross-process request queue (codex_app_requests.v1.json).

Processes that do not own the runs (an automation server, the CLI) ask the
orchestrator for work by appending entries to one shared JSON file:

  {"version": 1, "createWindows": [...], "startRuns": [...]}

Producers append under a lock file; the orchestrator drains the file in
reconcile(). Entries that cannot be applied yet (defaults incomplete, window
busy) stay in the file for the next pass. Delivery is at-least-once: an
entry is removed only after it has been applied, and applying an entry a
second time leaves the same state behind.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from .errors import InvalidArgument, OrchestratorError
from .files import file_lock, read_json, write_json_atomic
from .logging_config import get_logger
from .paths import requests_file
from .runs import RunEngine
from .store import StateStore
from .tasks import TaskQueue
from .types import RunOptions, make_id, normalize_bool, normalize_str, now_iso
from .windows import WindowRegistry

logger = get_logger(__name__)

REQUESTS_VERSION = 1
QUEUE_KEYS = ("createWindows", "startRuns")


def empty_queue() -> dict[str, Any]:
    return {"version": REQUESTS_VERSION, "createWindows": [], "startRuns": []}


def read_queue(path: Path) -> dict[str, Any]:
    """Current queue document; malformed parts read as empty."""
    data = read_json(path)
    queue = empty_queue()
    if isinstance(data, dict):
        for key in QUEUE_KEYS:
            entries = data.get(key)
            if isinstance(entries, list):
                queue[key] = [e for e in entries if isinstance(e, dict)]
    return queue


def _append(path: Path, key: str, entry: dict[str, Any]) -> dict[str, Any]:
    with file_lock(path):
        queue = read_queue(path)
        queue[key].append(entry)
        if not write_json_atomic(path, queue):
            raise OSError(f"could not write request queue {path}")
    logger.info("Queued %s request %s", key, entry.get("id"))
    return entry


def append_create_window(
    data_dir: Path,
    name: str = "",
    defaults: RunOptions | dict | None = None,
    thread_id: str = "",
    request_id: str = "",
) -> dict[str, Any]:
    """Ask the orchestrator to create (or update) a window. Returns the entry."""
    entry: dict[str, Any] = {
        "id": normalize_str(request_id) or make_id(),
        "name": normalize_str(name),
        "defaults": RunOptions.parse(defaults).to_dict(),
        "createdAt": now_iso(),
    }
    if normalize_str(thread_id):
        entry["threadId"] = normalize_str(thread_id)
    return _append(requests_file(data_dir), "createWindows", entry)


def append_start_run(
    data_dir: Path,
    input: str,
    window_id: str = "",
    window_name: str = "",
    ensure_window: bool = True,
    thread_id: str = "",
    command: str = "",
    options: RunOptions | dict | None = None,
    defaults: RunOptions | dict | None = None,
    request_id: str = "",
    source: str = "mcp",
) -> dict[str, Any]:
    """Ask the orchestrator to run input in a window. The entry id doubles as the task id."""
    text = normalize_str(input)
    if not text:
        raise InvalidArgument("input is required")
    entry: dict[str, Any] = {
        "id": normalize_str(request_id) or make_id(),
        "source": source,
        "windowId": normalize_str(window_id),
        "windowName": normalize_str(window_name),
        "ensureWindow": ensure_window,
        "input": text,
        "threadId": normalize_str(thread_id),
        "command": normalize_str(command),
        "options": RunOptions.parse(options).to_dict(),
        "defaults": RunOptions.parse(defaults).to_dict(),
        "createdAt": now_iso(),
    }
    return _append(requests_file(data_dir), "startRuns", entry)


def _entry_key(entry: dict[str, Any]) -> str:
    return json.dumps(entry, sort_keys=True, ensure_ascii=False)


class RequestQueue:
    """Consumer side: applies queued requests to the live registries."""

    def __init__(self, store: StateStore, windows: WindowRegistry, engine: RunEngine, tasks: TaskQueue):
        self.store = store
        self.windows = windows
        self.engine = engine
        self.tasks = tasks
        self.path = requests_file(store.data_dir)
        self._lock = asyncio.Lock()

    async def reconcile(self) -> dict[str, int]:
        """Drain the request file once. Concurrent calls are serialized."""
        async with self._lock:
            return await self._reconcile()

    def _read_locked(self) -> dict[str, Any]:
        with file_lock(self.path):
            return read_queue(self.path)

    async def _reconcile(self) -> dict[str, int]:
        # Waiting on the lock file happens off the event loop
        queue = await asyncio.to_thread(self._read_locked)
        counts = {"createdWindows": 0, "updatedWindows": 0, "startedRuns": 0, "dropped": 0, "pending": 0}
        if not queue["createWindows"] and not queue["startRuns"]:
            return counts

        consumed: set[str] = set()
        for entry in queue["createWindows"]:
            key = _entry_key(entry)
            outcome = self._apply_create_window(entry)
            if outcome == "pending":
                counts["pending"] += 1
                continue
            counts["createdWindows" if outcome == "created" else "updatedWindows"] += 1
            consumed.add(key)

        for entry in queue["startRuns"]:
            key = _entry_key(entry)
            outcome = await self._apply_start_run(entry)
            if outcome == "pending":
                counts["pending"] += 1
                continue
            counts["startedRuns" if outcome == "started" else "dropped"] += 1
            consumed.add(key)

        if consumed:
            await asyncio.to_thread(self._remove, consumed)
        if any(counts[k] for k in ("createdWindows", "updatedWindows", "startedRuns", "dropped")):
            logger.info(
                "Reconciled requests: %d windows created, %d updated, %d runs started, %d dropped, %d pending",
                counts["createdWindows"],
                counts["updatedWindows"],
                counts["startedRuns"],
                counts["dropped"],
                counts["pending"],
            )
        return counts

    def _remove(self, consumed: set[str]) -> None:
        """Rewrite the file without the applied entries, keeping anything appended meanwhile."""
        with file_lock(self.path):
            queue = read_queue(self.path)
            for key in QUEUE_KEYS:
                queue[key] = [e for e in queue[key] if _entry_key(e) not in consumed]
            write_json_atomic(self.path, queue)

    def _apply_create_window(self, entry: dict[str, Any]) -> str:
        defaults = RunOptions.from_dict(entry.get("defaults"))
        window_id = normalize_str(entry.get("id"))
        thread_id = normalize_str(entry.get("threadId"))
        if not defaults.resolvable:
            return "pending"
        if window_id and window_id in self.store.windows:
            self.windows.update_defaults(window_id, defaults, thread_id)
            return "updated"
        self.windows.create(
            name=normalize_str(entry.get("name")),
            thread_id=thread_id,
            defaults=defaults,
            source="mcp",
            window_id=window_id,
        )
        return "created"

    async def _apply_start_run(self, entry: dict[str, Any]) -> str:
        text = normalize_str(entry.get("input"))
        if not text:
            logger.warning("Dropping start-run request %s without input", entry.get("id"))
            return "dropped"
        task_id = normalize_str(entry.get("id"))
        if not task_id:
            logger.warning("Dropping start-run request without an id")
            return "dropped"
        existing = self.tasks.tasks.get(task_id)
        if existing is not None and (existing.run_id or existing.is_terminal):
            # Replayed entry: its run already happened
            return "dropped"

        defaults = RunOptions.from_dict(entry.get("defaults"))
        options = RunOptions.from_dict(entry.get("options"))
        window_id = normalize_str(entry.get("windowId"))
        task = self.tasks.register(
            task_id,
            input=text,
            working_directory=options.working_directory or defaults.working_directory,
            window_id=window_id,
            created_at=normalize_str(entry.get("createdAt")),
        )

        window = self.store.windows.get(window_id) if window_id else None
        if window is None:
            ensure = normalize_bool(entry.get("ensureWindow"))
            if ensure is False or not defaults.resolvable:
                return "pending"
            window = self.windows.create(
                name=normalize_str(entry.get("windowName")),
                thread_id=normalize_str(entry.get("threadId")),
                defaults=defaults,
                source="mcp",
                window_id=window_id,
            )
        if window.is_active:
            self.tasks.mark_queued(task.id, window.id)
            return "pending"

        self.windows.append_input(window.id, text)
        try:
            run = await self.engine.start_run(
                window.id,
                text,
                command=normalize_str(entry.get("command")) or None,
                options=options,
                thread_id=normalize_str(entry.get("threadId")),
                task_id=task.id,
            )
        except OrchestratorError as e:
            logger.warning("Start-run request %s rejected: %s", task.id, e)
            self.tasks.mark_finished(task.id, "failed", str(e))
            return "dropped"
        if not run.is_terminal:
            self.tasks.mark_running(task.id, run.id, window.id)
        return "started"

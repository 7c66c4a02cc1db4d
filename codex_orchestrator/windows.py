"""Window registry — creation, naming, closing, resuming, and per-window side data.

A window is a resumable conversation: it remembers the agent's thread id,
its default run options, the last todo snapshot, the prompts typed into it
and a bounded history of run events. Runs themselves belong to RunEngine;
closing a window aborts its active run first.
"""

from __future__ import annotations

import os
from typing import Any

from .codex import format_run_event
from .errors import InvalidArgument, NotFound
from .logging_config import get_logger
from .runs import RunEngine
from .store import StateStore
from .types import RunOptions, Window, make_id, normalize_str, now_iso, parse_iso

logger = get_logger(__name__)


def normalize_path(value: Any) -> str:
    """Comparable form of a directory path ("" for non-strings)."""
    text = normalize_str(value)
    if not text:
        return ""
    path = os.path.normcase(os.path.abspath(os.path.expanduser(text)))
    return path.rstrip(os.sep) or path


def find_window_by_working_directory(
    windows: list[dict[str, Any]], path: str, include_running: bool = False
) -> dict[str, Any] | None:
    """Most recently updated snapshot window whose default workingDirectory is path.

    Works on raw snapshot entries so producer processes can use it without
    loading a StateStore.
    """
    target = normalize_path(path)
    if not target:
        return None
    matches = []
    for entry in windows:
        if not isinstance(entry, dict):
            continue
        defaults = entry.get("defaultRunOptions")
        if not isinstance(defaults, dict) or normalize_path(defaults.get("workingDirectory")) != target:
            continue
        if not include_running and entry.get("status") in ("running", "aborting"):
            continue
        matches.append(entry)
    if not matches:
        return None
    matches.sort(key=lambda e: parse_iso(e.get("updatedAt")), reverse=True)
    return matches[0]


class WindowRegistry:
    def __init__(self, store: StateStore, engine: RunEngine):
        self.store = store
        self.engine = engine
        self.config = store.config

    @property
    def windows(self) -> dict[str, Window]:
        return self.store.windows

    def get(self, window_id: str) -> Window:
        window = self.windows.get(normalize_str(window_id))
        if window is None:
            raise NotFound("window", window_id)
        return window

    def list(self) -> list[Window]:
        """Most recently updated first."""
        return sorted(self.windows.values(), key=lambda w: parse_iso(w.updated_at), reverse=True)

    def create(
        self,
        name: str = "",
        thread_id: str = "",
        defaults: RunOptions | dict | None = None,
        source: str = "ui",
        window_id: str = "",
    ) -> Window:
        options = RunOptions.parse(defaults)
        window_id = normalize_str(window_id) or make_id()
        if window_id in self.windows:
            raise InvalidArgument(f"window {window_id} already exists")
        now = now_iso()
        window = Window(
            id=window_id,
            name=normalize_str(name) or Window.default_name(window_id),
            thread_id=normalize_str(thread_id),
            created_at=now,
            updated_at=now,
            default_run_options=options,
            source=source if source in ("ui", "mcp") else "ui",
        )
        self.windows[window_id] = window
        self.store.schedule_write()
        logger.info("Created window %s (%s)", window_id, window.source)
        return window

    def rename(self, window_id: str, name: str) -> Window:
        window = self.get(window_id)
        name = normalize_str(name)
        if not name:
            raise InvalidArgument("window name is required")
        window.name = name
        window.touch()
        self.store.schedule_write()
        return window

    def resume(self, thread_id: str, name: str = "") -> Window:
        """New idle window that continues an existing agent thread."""
        thread_id = normalize_str(thread_id)
        if not thread_id:
            raise InvalidArgument("thread id is required")
        return self.create(name=name, thread_id=thread_id)

    def close(self, window_id: str) -> dict[str, Any]:
        """Abort the active run (if any), then drop the window with its logs and inputs."""
        window = self.get(window_id)
        aborted = ""
        if window.is_active and window.active_run_id:
            aborted = self.engine.abort(window.active_run_id).get("runId", "")
        del self.windows[window.id]
        self.store.window_logs.pop(window.id, None)
        self.store.window_inputs.pop(window.id, None)
        self.store.schedule_write()
        logger.info("Closed window %s", window.id)
        return {"ok": True, "windowId": window.id, "abortedRunId": aborted}

    def update_defaults(self, window_id: str, defaults: RunOptions | dict | None, thread_id: str = "") -> Window:
        """Merge new defaults into an existing window (merge law applies)."""
        window = self.get(window_id)
        window.default_run_options = window.default_run_options.merged(RunOptions.parse(defaults))
        if normalize_str(thread_id):
            window.thread_id = normalize_str(thread_id)
        window.touch()
        self.store.schedule_write()
        return window

    def tasks(self, window_id: str) -> dict[str, Any]:
        window = self.get(window_id)
        return {
            "todoList": [item.to_dict() for item in window.todo_list],
            "todoListId": window.todo_list_id,
            "updatedAt": window.todo_list_updated_at,
        }

    # --- input history ---

    def append_input(self, window_id: str, text: str) -> dict[str, Any]:
        window = self.get(window_id)
        text = normalize_str(text)
        if not text:
            raise InvalidArgument("input text is required")
        now = now_iso()
        info = self.store.window_inputs.setdefault(window.id, {"items": [], "updatedAt": ""})
        info["items"].append({"ts": now, "text": text})
        excess = len(info["items"]) - self.config.max_window_inputs
        if excess > 0:
            del info["items"][:excess]
        info["updatedAt"] = now
        self.store.schedule_write()
        return {"items": list(info["items"]), "updatedAt": now}

    def inputs(self, window_id: str) -> dict[str, Any]:
        window = self.get(window_id)
        info = self.store.window_inputs.get(window.id) or {"items": [], "updatedAt": ""}
        return {"items": list(info["items"]), "updatedAt": info["updatedAt"]}

    def clear_inputs(self, window_id: str) -> dict[str, Any]:
        window = self.get(window_id)
        now = now_iso()
        self.store.window_inputs[window.id] = {"items": [], "updatedAt": now}
        self.store.schedule_write()
        return {"items": [], "updatedAt": now}

    # --- logs ---

    def logs(self, window_id: str, limit: int | None = None, offset: int = 0) -> dict[str, Any]:
        """Page of the window's event history, counted from the newest end."""
        window = self.get(window_id)
        log = self.store.window_logs.get(window.id)
        if log is None:
            return {"events": [], "lines": [], "total": 0, "updatedAt": ""}
        events = [dict(e) for e in log.page(limit, offset)]
        return {
            "events": events,
            "lines": [format_run_event(e) for e in events],
            "total": len(log.events),
            "updatedAt": log.updated_at,
        }

    def clear_logs(self, window_id: str) -> dict[str, Any]:
        window = self.get(window_id)
        log = self.store.window_log(window.id)
        log.clear()
        self.store.schedule_write()
        return {"ok": True, "updatedAt": log.updated_at}

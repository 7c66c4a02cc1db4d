"""The agent executable's command line and its JSONL event protocol.

Outbound: build_exec_args() maps RunOptions to `codex exec --json ...`.

Inbound: each stdout line is one JSON object with a `type` discriminator.
parse_event() turns it into one of the event classes below; anything
unrecognised becomes UnknownEvent / UnknownItem with the raw payload kept,
so nothing the agent says is ever dropped.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Union

from .types import RunOptions, normalize_str


def build_exec_args(options: RunOptions, thread_id: str = "") -> list[str]:
    """Deterministic argv (after the executable) for one run. Unset options are omitted."""
    args = ["exec", "--json"]

    if options.model:
        args += ["--model", options.model]
    if options.sandbox_mode:
        args += ["--sandbox", options.sandbox_mode]
    if options.working_directory:
        args += ["--cd", options.working_directory]
    for directory in options.additional_directories:
        args += ["--add-dir", directory]
    if options.skip_git_repo_check:
        args.append("--skip-git-repo-check")

    if options.model_reasoning_effort:
        args += ["--config", f'model_reasoning_effort="{options.model_reasoning_effort}"']
    if options.experimental_windows_sandbox_enabled is not None:
        args += ["--config", f"features.experimental_windows_sandbox={_flag(options.experimental_windows_sandbox_enabled)}"]
    if options.network_access_enabled is not None:
        args += ["--config", f"sandbox_workspace_write.network_access={_flag(options.network_access_enabled)}"]
    if options.web_search_enabled is not None:
        args += ["--config", f"features.web_search_request={_flag(options.web_search_enabled)}"]
    if options.approval_policy:
        args += ["--config", f'approval_policy="{options.approval_policy}"']

    if thread_id:
        args += ["resume", thread_id]
    return args


def _flag(value: bool) -> str:
    return "true" if value else "false"


def spawn_command(command: str, args: list[str]) -> list[str]:
    """Full argv to spawn. On Windows, go through the command interpreter
    so .cmd/.bat shims on PATH resolve."""
    if sys.platform == "win32":
        comspec = os.environ.get("ComSpec") or os.environ.get("COMSPEC") or "cmd.exe"
        return [comspec, "/d", "/s", "/c", command, *args]
    return [command, *args]


def windows_sandbox_warning(options: RunOptions) -> str | None:
    """workspace-write silently degrades to read-only on Windows without the experimental sandbox."""
    if sys.platform != "win32":
        return None
    if options.sandbox_mode == "workspace-write" and not options.experimental_windows_sandbox_enabled:
        return (
            "workspace-write is downgraded to read-only on Windows unless "
            "features.experimental_windows_sandbox is enabled; enable it or use danger-full-access."
        )
    return None


# === Items ===


@dataclass(frozen=True)
class CommandExecution:
    raw: dict
    command: str = ""
    status: str = ""
    exit_code: int | None = None


@dataclass(frozen=True)
class FileChange:
    raw: dict
    status: str = ""
    changes: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class McpToolCall:
    raw: dict
    server: str = ""
    tool: str = ""
    status: str = ""


@dataclass(frozen=True)
class WebSearch:
    raw: dict
    query: str = ""


@dataclass(frozen=True)
class TodoList:
    raw: dict
    id: str = ""
    has_items: bool = False


@dataclass(frozen=True)
class Reasoning:
    raw: dict
    text: str = ""


@dataclass(frozen=True)
class AgentMessage:
    raw: dict
    text: str = ""


@dataclass(frozen=True)
class ErrorItem:
    raw: dict
    message: str = ""


@dataclass(frozen=True)
class UnknownItem:
    raw: dict
    type: str = ""


Item = Union[CommandExecution, FileChange, McpToolCall, WebSearch, TodoList, Reasoning, AgentMessage, ErrorItem, UnknownItem]

_MESSAGE_ITEM_TYPES = ("agent_message", "assistant_message", "message")


def _text_of(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [p if isinstance(p, str) else p.get("text") for p in value if isinstance(p, (str, dict))]
        return "".join(p for p in parts if isinstance(p, str))
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return ""


def parse_item(raw: Any) -> Item:
    if not isinstance(raw, dict):
        return UnknownItem(raw={"value": raw})
    item_type = normalize_str(raw.get("type")).lower()
    if item_type == "command_execution":
        exit_code = raw.get("exit_code")
        return CommandExecution(
            raw=raw,
            command=str(raw.get("command") or ""),
            status=normalize_str(raw.get("status")),
            exit_code=exit_code if isinstance(exit_code, int) else None,
        )
    if item_type == "file_change":
        changes = raw.get("changes")
        return FileChange(
            raw=raw,
            status=normalize_str(raw.get("status")),
            changes=[c for c in changes if isinstance(c, dict)] if isinstance(changes, list) else [],
        )
    if item_type == "mcp_tool_call":
        return McpToolCall(
            raw=raw,
            server=str(raw.get("server") or ""),
            tool=str(raw.get("tool") or ""),
            status=str(raw.get("status") or ""),
        )
    if item_type == "web_search":
        return WebSearch(raw=raw, query=str(raw.get("query") or ""))
    if item_type == "todo_list":
        return TodoList(raw=raw, id=normalize_str(raw.get("id")), has_items=isinstance(raw.get("items"), list))
    if item_type == "reasoning":
        return Reasoning(raw=raw, text=str(raw.get("text") or ""))
    if item_type in _MESSAGE_ITEM_TYPES:
        text = ""
        for key in ("text", "content", "message", "output_text", "outputText"):
            text = _text_of(raw.get(key))
            if text:
                break
        return AgentMessage(raw=raw, text=text.replace("\r\n", "\n"))
    if item_type == "error":
        return ErrorItem(raw=raw, message=str(raw.get("message") or ""))
    return UnknownItem(raw=raw, type=item_type)


# === Events ===


@dataclass(frozen=True)
class ThreadStarted:
    raw: dict
    thread_id: str = ""


@dataclass(frozen=True)
class TurnStarted:
    raw: dict


@dataclass(frozen=True)
class TurnCompleted:
    raw: dict
    usage: dict | None = None


@dataclass(frozen=True)
class TurnFailed:
    raw: dict
    message: str = ""


@dataclass(frozen=True)
class StreamError:
    raw: dict
    message: str = ""


@dataclass(frozen=True)
class ItemEvent:
    raw: dict
    phase: str = ""  # started / updated / completed
    item: Item = field(default_factory=lambda: UnknownItem(raw={}))


@dataclass(frozen=True)
class UnknownEvent:
    raw: dict
    type: str = ""


AgentEvent = Union[ThreadStarted, TurnStarted, TurnCompleted, TurnFailed, StreamError, ItemEvent, UnknownEvent]

_ITEM_PHASES = {"item.started": "started", "item.updated": "updated", "item.completed": "completed"}


def parse_event(raw: Any) -> AgentEvent:
    """Classify one decoded stdout object."""
    if not isinstance(raw, dict):
        return UnknownEvent(raw={"value": raw})
    event_type = raw.get("type")
    if event_type == "thread.started":
        thread_id = raw.get("thread_id")
        return ThreadStarted(raw=raw, thread_id=thread_id if isinstance(thread_id, str) else "")
    if event_type == "turn.started":
        return TurnStarted(raw=raw)
    if event_type == "turn.completed":
        usage = raw.get("usage")
        return TurnCompleted(raw=raw, usage=usage if isinstance(usage, dict) else None)
    if event_type == "turn.failed":
        error = raw.get("error")
        return TurnFailed(raw=raw, message=str(error.get("message") or "") if isinstance(error, dict) else "")
    if event_type == "error":
        return StreamError(raw=raw, message=str(raw.get("message") or ""))
    if event_type in _ITEM_PHASES:
        return ItemEvent(raw=raw, phase=_ITEM_PHASES[event_type], item=parse_item(raw.get("item")))
    return UnknownEvent(raw=raw, type=str(event_type or ""))


# === One-line renderings for window logs ===


def _dumps(value: Any, limit: int | None = None) -> str:
    text = json.dumps(value, ensure_ascii=False)
    return text[:limit] if limit else text


def format_item(item: Item) -> str:
    if isinstance(item, CommandExecution):
        status = f" status={item.status}" if item.status else ""
        code = f" exit={item.exit_code}" if "exit_code" in item.raw else ""
        return f"command {_dumps(item.command)}{status}{code}"
    if isinstance(item, FileChange):
        changes = ", ".join(f"{c.get('kind')}:{c.get('path')}" for c in item.changes)
        return f"patch status={item.status}" + (f" changes=[{changes}]" if changes else "")
    if isinstance(item, McpToolCall):
        return f"mcp {item.server}.{item.tool} status={item.status}"
    if isinstance(item, WebSearch):
        return f"web_search {_dumps(item.query)}"
    if isinstance(item, TodoList):
        items = item.raw.get("items")
        return f"todo_list ({len(items) if isinstance(items, list) else 0} items)"
    if isinstance(item, ErrorItem):
        return f"error {_dumps(item.message)}"
    if isinstance(item, Reasoning):
        return f"reasoning {_dumps(item.text[:120])}"
    if isinstance(item, AgentMessage):
        return f"assistant {_dumps(item.text[:160])}"
    return f"{item.raw.get('type') or 'item'} {_dumps(item.raw, 200)}"


def format_agent_event(event: AgentEvent) -> str:
    if isinstance(event, ThreadStarted):
        return f"thread.started threadId={event.thread_id}"
    if isinstance(event, TurnStarted):
        return "turn.started"
    if isinstance(event, TurnCompleted):
        return f"turn.completed usage={_dumps(event.usage)}"
    if isinstance(event, TurnFailed):
        return f"turn.failed {event.message}"
    if isinstance(event, StreamError):
        return f"error {event.message}"
    if isinstance(event, ItemEvent):
        return f"item.{event.phase} {format_item(event.item)}"
    return f"{event.type or 'event'} {_dumps(event.raw, 320)}"


def format_run_event(evt: dict[str, Any]) -> str:
    """Render a stored run event as one log line."""
    ts = evt.get("ts", "")
    source = evt.get("source")
    trunc = f" …(truncated, originalLength={evt.get('originalLength', 0)})" if evt.get("truncated") else ""

    if source in ("stderr", "raw"):
        return f"[{ts}] {source} {str(evt.get('text', '')).rstrip()}{trunc}"
    if "line" in evt:
        line = str(evt["line"]).rstrip()
        return f"[{ts}] {line}" if ts else line
    if source == "system":
        kind = evt.get("kind")
        if kind == "spawn":
            return f"[{ts}] spawn {evt.get('command', '')} {' '.join(evt.get('args') or [])}"
        if kind == "status":
            return f"[{ts}] status {evt.get('status', '')}"
        if kind == "warning":
            return f"[{ts}] warning {evt.get('message', '')}"
        if kind == "error":
            return f"[{ts}] error {(evt.get('error') or {}).get('message', '')}"
        if kind == "gap":
            gap = evt.get("gap") or {}
            return f"[{ts}] gap dropped_events seq=[{gap.get('from')}, {gap.get('to')})"
        return f"[{ts}] system {_dumps(evt, 320)}"
    if source == "codex":
        return f"[{ts}] {format_agent_event(parse_event(evt.get('event')))}"
    return f"[{ts}] {_dumps(evt, 320)}"


# === Results ===


def pick_assistant_message(events: list[dict[str, Any]]) -> str:
    """Text of the last completed assistant message in a run's events."""
    for evt in reversed(events):
        if evt.get("source") != "codex":
            continue
        event = parse_event(evt.get("event"))
        if not isinstance(event, ItemEvent) or event.phase != "completed":
            continue
        if isinstance(event.item, AgentMessage) and event.item.text.strip():
            return event.item.text.strip()
    return ""


def truncate_result_text(text: str, limit: int) -> str:
    value = text.strip()
    if len(value) <= limit:
        return value
    return f"{value[:limit]}\n\n…(truncated)"

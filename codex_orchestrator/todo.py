"""Todo-list normalisation for `todo_list` items in the agent's event stream.

The agent is loose about the shape: a list of strings, a list of objects
with varying key names, an object wrapping `items`, or a markdown checklist.
Everything is reduced to an ordered list of TodoItem.
"""

import re
from typing import Any

from .types import TodoItem, normalize_str

_TEXT_KEYS = ("text", "content", "title", "name", "task", "label", "value")
_DONE_KEYS = ("completed", "done", "checked", "finished", "isDone", "is_done")
_BODY_KEYS = ("text", "content", "output_text", "outputText", "message")

_CHECKBOX_RE = re.compile(r"^[-*]\s+\[(x|X| )\]\s+(.*)$")
_BULLET_RE = re.compile(r"^[-*]\s+(.*)$")
_NUMBERED_RE = re.compile(r"^\d+\.\s+(.*)$")


def normalize_todo_item(item: Any) -> TodoItem | None:
    if isinstance(item, str):
        text = item.strip()
        return TodoItem(text=text) if text else None
    if not isinstance(item, dict):
        return None
    text = ""
    for key in _TEXT_KEYS:
        text = normalize_str(item.get(key))
        if text:
            break
    if not text:
        return None
    completed = False
    for key in _DONE_KEYS:
        if item.get(key) is not None:
            completed = bool(item.get(key))
            break
    return TodoItem(text=text, completed=completed)


def parse_todo_markdown(value: Any) -> list[TodoItem]:
    """Parse "- [x] done", "- item" and "1. item" lines."""
    if not isinstance(value, str):
        return []
    items: list[TodoItem] = []
    for raw_line in value.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        match = _CHECKBOX_RE.match(line)
        if match:
            text = match.group(2).strip()
            if text:
                items.append(TodoItem(text=text, completed=match.group(1).lower() == "x"))
            continue
        match = _BULLET_RE.match(line) or _NUMBERED_RE.match(line)
        if match:
            text = match.group(1).strip()
            if text:
                items.append(TodoItem(text=text))
    return items


def normalize_todo_items(value: Any) -> list[TodoItem]:
    if isinstance(value, list):
        mapped = [t for t in (normalize_todo_item(v) for v in value) if t is not None]
        if mapped:
            return mapped
    if isinstance(value, str):
        return parse_todo_markdown(value)
    if isinstance(value, dict):
        if isinstance(value.get("items"), list):
            return [t for t in (normalize_todo_item(v) for v in value["items"]) if t is not None]
        for key in _BODY_KEYS:
            parsed = parse_todo_markdown(value.get(key))
            if parsed:
                return parsed
    return []

"""Plan markdown capture for automation task results.

Automation prompts ask the agent to keep its plan in codex_plan.md at the
working directory root. The plan is picked up either from file_change items
in the event stream (full content or a unified diff) or from disk once the
run finishes, and is prepended to the task's result text.
"""

from pathlib import Path
from typing import Any

from .codex import FileChange, ItemEvent, UnknownItem, parse_event, pick_assistant_message
from .logging_config import get_logger

logger = get_logger(__name__)

PLAN_FILENAME = "codex_plan.md"

_CONTENT_KEYS = ("content", "after", "text", "output_text", "outputText")
_PATH_KEYS = ("path", "file", "file_path", "filepath")
_PATCH_KEYS = ("patch", "diff")


def _normalize_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.replace("\r\n", "\n").replace("\r", "\n")


def _first(data: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _match_path(value: str) -> str:
    path = value.strip().replace("\\", "/")
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def is_plan_path(value: str, working_directory: str = "") -> bool:
    path = _match_path(value)
    lower = path.lower()
    if lower != PLAN_FILENAME and not lower.endswith("/" + PLAN_FILENAME):
        return False
    if not working_directory:
        return True
    expected = (Path(working_directory) / PLAN_FILENAME).resolve()
    candidate = Path(path)
    resolved = candidate.resolve() if candidate.is_absolute() else (Path(working_directory) / candidate).resolve()
    return str(resolved).lower() == str(expected).lower()


def extract_from_patch(patch: str, working_directory: str = "") -> str:
    """Rebuild the new side of the plan file from a unified diff."""
    collecting = False
    matched = False
    collected: list[str] = []
    for line in _normalize_text(patch).split("\n"):
        if line.startswith("+++ "):
            target = _match_path(line[4:])
            collecting = bool(target) and is_plan_path(target, working_directory)
            if collecting:
                matched = True
                collected = []
            continue
        if not collecting or line.startswith(("@@", "\\")):
            continue
        if line.startswith("+"):
            collected.append(line[1:])
        elif line.startswith(" "):
            collected.append(line[1:])
        elif line == "":
            collected.append(line)
    result = "\n".join(collected).rstrip()
    return result if matched else ""


def _from_entry(entry: dict, working_directory: str) -> tuple[str, str]:
    path = _first(entry, _PATH_KEYS)
    if path and is_plan_path(path, working_directory):
        content = _normalize_text(_first(entry, _CONTENT_KEYS))
        if content:
            return content, path
        extracted = extract_from_patch(_first(entry, _PATCH_KEYS), working_directory)
        if extracted:
            return extracted, path
    return "", ""


def extract_from_event(raw_event: Any, working_directory: str = "") -> tuple[str, str]:
    """(content, path) of a plan written by an item.updated/completed event."""
    event = parse_event(raw_event)
    if not isinstance(event, ItemEvent) or event.phase not in ("updated", "completed"):
        return "", ""
    if not isinstance(event.item, (FileChange, UnknownItem)):
        return "", ""
    raw = event.item.raw
    content, path = _from_entry(raw, working_directory)
    if content:
        return content, path
    for change in raw.get("changes") or []:
        if isinstance(change, dict):
            content, path = _from_entry(change, working_directory)
            if content:
                return content, path
    extracted = extract_from_patch(_first(raw, _PATCH_KEYS), working_directory)
    return extracted, ""


def read_plan_from_disk(working_directory: str, delete_after_read: bool = False) -> str:
    """Read (and optionally consume) codex_plan.md in the working directory."""
    if not working_directory:
        return ""
    plan_path = Path(working_directory) / PLAN_FILENAME
    if not plan_path.is_file():
        return ""
    try:
        content = _normalize_text(plan_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read plan %s: %s", plan_path, e)
        content = ""
    if delete_after_read:
        try:
            plan_path.unlink()
        except OSError as e:
            logger.warning("Could not remove plan %s: %s", plan_path, e)
    return content


def build_result_text(plan_markdown: str, events: list[dict[str, Any]]) -> str:
    """Plan (if any) followed by the last assistant message."""
    plan = plan_markdown.strip()
    output = pick_assistant_message(events)
    if not plan:
        return output
    return "\n\n".join(part for part in (plan, output) if part)

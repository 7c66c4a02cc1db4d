"""Type definitions shared by the registries and the snapshot files.

Field names on disk are camelCase (the snapshot is read by processes that
never import this package); attributes are snake_case.
"""

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from typing_extensions import Self

from .errors import InvalidArgument

ACTIVE_STATUSES = frozenset({"running", "aborting"})
RUN_TERMINAL_STATUSES = frozenset({"completed", "failed", "aborted"})
WINDOW_STATUSES = frozenset({"idle", "running", "aborting", "completed", "failed", "aborted"})
TASK_STATUSES = frozenset({"queued", "running", "completed", "failed", "aborted"})
TASK_TERMINAL_STATUSES = frozenset({"completed", "failed", "aborted"})
JOB_STATUSES = frozenset({"running", "aborting", "finished", "failed", "aborted", "orphaned"})


def now_iso() -> str:
    """Current UTC time, ISO 8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> float:
    """ISO timestamp to epoch seconds; 0.0 when missing or malformed."""
    if not isinstance(value, str) or not value.strip():
        return 0.0
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def make_id() -> str:
    return str(uuid.uuid4())


def normalize_str(value: Any) -> str:
    """Trimmed string, or "" for anything that is not a string."""
    return value.strip() if isinstance(value, str) else ""


def normalize_bool(value: Any) -> bool | None:
    """Tri-state boolean: True, False, or None when unset/unrecognised."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off"):
            return False
    return None


def error_dict(message: str | None) -> dict[str, str] | None:
    return {"message": message} if message else None


def error_message(value: Any) -> str | None:
    """Read an {"message": ...} error object (or a bare string) back."""
    if isinstance(value, dict):
        return normalize_str(value.get("message")) or None
    return normalize_str(value) or None


@dataclass
class RunOptions:
    """Options for one invocation of the agent executable.

    Unset means "not chosen at this layer": strings are "", booleans None,
    lists empty. merged() is the only way options are combined.
    """

    model: str = ""
    model_reasoning_effort: str = ""
    working_directory: str = ""
    sandbox_mode: str = ""
    approval_policy: str = ""
    additional_directories: list[str] = field(default_factory=list)
    experimental_windows_sandbox_enabled: bool | None = None
    network_access_enabled: bool | None = None
    web_search_enabled: bool | None = None
    skip_git_repo_check: bool | None = None

    _KEYS = {
        "model": "model",
        "model_reasoning_effort": "modelReasoningEffort",
        "working_directory": "workingDirectory",
        "sandbox_mode": "sandboxMode",
        "approval_policy": "approvalPolicy",
        "additional_directories": "additionalDirectories",
        "experimental_windows_sandbox_enabled": "experimentalWindowsSandboxEnabled",
        "network_access_enabled": "networkAccessEnabled",
        "web_search_enabled": "webSearchEnabled",
        "skip_git_repo_check": "skipGitRepoCheck",
    }

    @classmethod
    def from_dict(cls, data: Any) -> Self:
        """Lenient parse: anything that is not a dict yields empty options."""
        if not isinstance(data, dict):
            return cls()
        dirs = data.get("additionalDirectories")
        if isinstance(dirs, str):
            dirs = [dirs]
        return cls(
            model=normalize_str(data.get("model")),
            model_reasoning_effort=normalize_str(data.get("modelReasoningEffort")),
            working_directory=normalize_str(data.get("workingDirectory")),
            sandbox_mode=normalize_str(data.get("sandboxMode")),
            approval_policy=normalize_str(data.get("approvalPolicy")),
            additional_directories=[d for d in (normalize_str(x) for x in dirs or []) if d]
            if isinstance(dirs, list)
            else [],
            experimental_windows_sandbox_enabled=normalize_bool(data.get("experimentalWindowsSandboxEnabled")),
            network_access_enabled=normalize_bool(data.get("networkAccessEnabled")),
            web_search_enabled=normalize_bool(data.get("webSearchEnabled")),
            skip_git_repo_check=normalize_bool(data.get("skipGitRepoCheck")),
        )

    @classmethod
    def parse(cls, data: Any) -> Self:
        """Strict parse for caller-supplied options."""
        if data is None:
            return cls()
        if isinstance(data, RunOptions):
            return data
        if not isinstance(data, dict):
            raise InvalidArgument(f"run options must be an object, got {type(data).__name__}")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with unset fields as null."""
        out: dict[str, Any] = {}
        for attr, key in self._KEYS.items():
            value = getattr(self, attr)
            if value == "" or value == []:
                value = None
            out[key] = list(value) if isinstance(value, list) else value
        return out

    def merged(self, override: "RunOptions | None") -> "RunOptions":
        """Override field wins only if present and non-empty; else keep ours."""
        result = RunOptions(**{f.name: getattr(self, f.name) for f in fields(self)})
        result.additional_directories = list(self.additional_directories)
        if override is None:
            return result
        for f in fields(override):
            value = getattr(override, f.name)
            if value is None or value == "" or value == []:
                continue
            setattr(result, f.name, list(value) if isinstance(value, list) else value)
        return result

    @property
    def resolvable(self) -> bool:
        """Enough defaults to create a window from a queued request."""
        return bool(self.working_directory and self.sandbox_mode)


@dataclass
class TodoItem:
    text: str
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "completed": self.completed}


@dataclass
class Window:
    """A resumable session; owns at most one active run."""

    id: str
    name: str = ""
    thread_id: str = ""
    status: str = "idle"
    created_at: str = ""
    updated_at: str = ""
    active_run_id: str = ""
    default_run_options: RunOptions = field(default_factory=RunOptions)
    last_run_options: RunOptions | None = None
    last_run_at: str = ""
    todo_list: list[TodoItem] = field(default_factory=list)
    todo_list_id: str = ""
    todo_list_updated_at: str = ""
    source: str = "ui"

    @staticmethod
    def default_name(window_id: str) -> str:
        return f"Codex {window_id[:8]}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def touch(self, ts: str | None = None) -> None:
        self.updated_at = ts or now_iso()

    def to_dict(self, include_todo: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "threadId": self.thread_id,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "activeRunId": self.active_run_id,
            "defaultRunOptions": self.default_run_options.to_dict(),
            "lastRunOptions": self.last_run_options.to_dict() if self.last_run_options else None,
            "lastRunAt": self.last_run_at,
            "source": self.source,
        }
        if include_todo:
            data.update(self.todo_dict())
        return data

    def todo_dict(self) -> dict[str, Any]:
        return {
            "todoList": [item.to_dict() for item in self.todo_list],
            "todoListId": self.todo_list_id,
            "todoListUpdatedAt": self.todo_list_updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create from a snapshot entry, handling missing fields gracefully."""
        window_id = normalize_str(data.get("id"))
        now = now_iso()
        status = normalize_str(data.get("status")) or "idle"
        last = data.get("lastRunOptions")
        return cls(
            id=window_id,
            name=normalize_str(data.get("name")) or cls.default_name(window_id),
            thread_id=normalize_str(data.get("threadId")),
            status=status if status in WINDOW_STATUSES else "idle",
            created_at=normalize_str(data.get("createdAt")) or now,
            updated_at=normalize_str(data.get("updatedAt")) or now,
            active_run_id=normalize_str(data.get("activeRunId")),
            default_run_options=RunOptions.from_dict(data.get("defaultRunOptions")),
            last_run_options=RunOptions.from_dict(last) if isinstance(last, dict) else None,
            last_run_at=normalize_str(data.get("lastRunAt")),
            source=normalize_str(data.get("source")) or "ui",
        )


@dataclass
class McpTask:
    """An automation request tracked from queueing to result delivery."""

    id: str
    source: str = "mcp"
    status: str = "queued"
    input: str = ""
    working_directory: str = ""
    window_id: str = ""
    run_id: str = ""
    created_at: str = ""
    started_at: str = ""
    finished_at: str = ""
    error: str | None = None
    prompt_request_id: str = ""
    prompt_sent_at: str = ""
    result_text: str = ""
    result_status: str = ""
    result_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TASK_TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "status": self.status,
            "input": self.input,
            "workingDirectory": self.working_directory,
            "windowId": self.window_id,
            "runId": self.run_id,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": error_dict(self.error),
            "promptRequestId": self.prompt_request_id,
            "promptSentAt": self.prompt_sent_at,
            "resultText": self.result_text,
            "resultStatus": self.result_status,
            "resultAt": self.result_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Self | None:
        task_id = normalize_str(data.get("id")) if isinstance(data, dict) else ""
        if not task_id:
            return None
        status = normalize_str(data.get("status")).lower()
        result_status = normalize_str(data.get("resultStatus")).lower()
        return cls(
            id=task_id,
            source=normalize_str(data.get("source")) or "mcp",
            status=status if status in TASK_STATUSES else "queued",
            input=normalize_str(data.get("input")),
            working_directory=normalize_str(data.get("workingDirectory")),
            window_id=normalize_str(data.get("windowId")),
            run_id=normalize_str(data.get("runId")),
            created_at=normalize_str(data.get("createdAt")),
            started_at=normalize_str(data.get("startedAt")),
            finished_at=normalize_str(data.get("finishedAt")),
            error=error_message(data.get("error")),
            prompt_request_id=normalize_str(data.get("promptRequestId")),
            prompt_sent_at=normalize_str(data.get("promptSentAt")),
            result_text=normalize_str(data.get("resultText")),
            result_status=result_status if result_status in TASK_STATUSES else "",
            result_at=normalize_str(data.get("resultAt")),
        )


@dataclass
class AsyncJob:
    """Fire-and-forget process execution tracked for automation callers."""

    id: str
    status: str = "running"
    command: str = ""
    args: list[str] = field(default_factory=list)
    window_id: str = ""
    thread_id: str = ""
    started_at: str = ""
    updated_at: str = ""
    finished_at: str = ""
    exit_code: int | None = None
    signal: str | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    last_output_at: str = ""
    last_heartbeat_at: str = ""
    error: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self, include_output: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "command": self.command,
            "args": list(self.args),
            "windowId": self.window_id,
            "threadId": self.thread_id,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "finishedAt": self.finished_at,
            "exitCode": self.exit_code,
            "signal": self.signal,
            "stdoutTruncated": self.stdout_truncated,
            "stderrTruncated": self.stderr_truncated,
            "lastOutputAt": self.last_output_at,
            "lastHeartbeatAt": self.last_heartbeat_at,
            "error": error_dict(self.error),
        }
        if include_output:
            data["stdout"] = self.stdout
            data["stderr"] = self.stderr
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Self | None:
        job_id = normalize_str(data.get("id")) if isinstance(data, dict) else ""
        if not job_id:
            return None
        status = normalize_str(data.get("status"))
        exit_code = data.get("exitCode")
        args = data.get("args")
        return cls(
            id=job_id,
            status=status if status in JOB_STATUSES else "failed",
            command=normalize_str(data.get("command")),
            args=[str(a) for a in args] if isinstance(args, list) else [],
            window_id=normalize_str(data.get("windowId")),
            thread_id=normalize_str(data.get("threadId")),
            started_at=normalize_str(data.get("startedAt")),
            updated_at=normalize_str(data.get("updatedAt")),
            finished_at=normalize_str(data.get("finishedAt")),
            exit_code=exit_code if isinstance(exit_code, int) and not isinstance(exit_code, bool) else None,
            signal=normalize_str(data.get("signal")) or None,
            stdout=data.get("stdout") if isinstance(data.get("stdout"), str) else "",
            stderr=data.get("stderr") if isinstance(data.get("stderr"), str) else "",
            stdout_truncated=bool(data.get("stdoutTruncated")),
            stderr_truncated=bool(data.get("stderrTruncated")),
            last_output_at=normalize_str(data.get("lastOutputAt")),
            last_heartbeat_at=normalize_str(data.get("lastHeartbeatAt")),
            error=error_message(data.get("error")),
        )

"""Automation task queue and timeout monitor.

A task is registered when an automation request arrives (possibly before
its window or run exists), moves to running once bound to a run, and ends
when the run does. check_timeouts() force-fails anything stuck in queued or
running past its deadline, so an automation caller never waits forever even
if the underlying run record is lost.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from .codex import truncate_result_text
from .errors import InvalidArgument, NotFound
from .logging_config import get_logger
from .notifications import send_result_prompt
from .paths import UI_PROMPTS_FILE_NAME, resolve_state_dir
from .plan import build_result_text, read_plan_from_disk
from .types import McpTask, normalize_str, now_iso, parse_iso

if TYPE_CHECKING:
    from .runs import Run
    from .store import StateStore

logger = get_logger(__name__)


def prune_tasks(tasks: dict[str, McpTask], limit: int) -> list[str]:
    """Evict oldest terminal tasks until within limit. Active tasks stay."""
    if len(tasks) <= limit:
        return []
    removable = sorted((t for t in tasks.values() if t.is_terminal), key=lambda t: parse_iso(t.created_at))
    dropped: list[str] = []
    for task in removable:
        if len(tasks) <= limit:
            break
        del tasks[task.id]
        dropped.append(task.id)
    return dropped


class TaskQueue:
    def __init__(self, store: StateStore):
        self.store = store
        self.config = store.config
        self.prompt_file = resolve_state_dir(store.data_dir) / UI_PROMPTS_FILE_NAME

    @property
    def tasks(self) -> dict[str, McpTask]:
        return self.store.tasks

    def get(self, task_id: str) -> McpTask:
        task = self.tasks.get(normalize_str(task_id))
        if task is None:
            raise NotFound("task", task_id)
        return task

    def list(self) -> list[McpTask]:
        """Newest first."""
        return sorted(self.tasks.values(), key=lambda t: parse_iso(t.created_at), reverse=True)

    def register(
        self,
        request_id: str,
        input: str = "",
        working_directory: str = "",
        window_id: str = "",
        created_at: str = "",
    ) -> McpTask:
        """Create a queued task, or fill empty fields of an existing one."""
        task_id = normalize_str(request_id)
        if not task_id:
            raise InvalidArgument("task id is required")

        existing = self.tasks.get(task_id)
        if existing is not None:
            existing.input = existing.input or normalize_str(input)
            existing.working_directory = existing.working_directory or normalize_str(working_directory)
            existing.window_id = existing.window_id or normalize_str(window_id)
            existing.created_at = existing.created_at or normalize_str(created_at) or now_iso()
            existing.prompt_request_id = existing.prompt_request_id or task_id
            self.store.schedule_write()
            return existing

        task = McpTask(
            id=task_id,
            input=normalize_str(input),
            working_directory=normalize_str(working_directory),
            window_id=normalize_str(window_id),
            created_at=normalize_str(created_at) or now_iso(),
            prompt_request_id=task_id,
        )
        self.tasks[task_id] = task
        dropped = prune_tasks(self.tasks, self.config.max_tasks)
        if dropped:
            logger.info("Evicted %d finished tasks", len(dropped))
        self.store.schedule_write()
        logger.info("Registered task %s", task_id)
        return task

    def mark_queued(self, task_id: str, window_id: str) -> McpTask:
        """Task is waiting for a busy window."""
        task = self.get(task_id)
        if task.status != "queued" or task.window_id != window_id:
            task.status = "queued"
            task.window_id = normalize_str(window_id) or task.window_id
            self.store.schedule_write()
        return task

    def mark_running(self, task_id: str, run_id: str, window_id: str = "") -> McpTask:
        run_id = normalize_str(run_id)
        if not run_id:
            raise InvalidArgument("a running task must be bound to a run id")
        task = self.get(task_id)
        task.status = "running"
        task.run_id = run_id
        task.window_id = normalize_str(window_id) or task.window_id
        task.started_at = task.started_at or now_iso()
        task.error = None
        self.store.schedule_write()
        return task

    def mark_finished(self, task_id: str, status: str, error: str | None = None) -> McpTask:
        task = self.get(task_id)
        task.status = status if status in ("completed", "failed", "aborted") else "failed"
        task.finished_at = now_iso()
        if error:
            task.error = error
        self.store.schedule_write()
        logger.info("Task %s %s", task.id, task.status)
        return task

    def apply_result(self, task: McpTask, run: Run) -> None:
        """Record the run's outcome text (plan + last assistant message)."""
        plan = read_plan_from_disk(run.options.working_directory, delete_after_read=True)
        if plan.strip():
            run.plan_markdown = plan
        task.result_status = run.status if run.status in ("completed", "failed", "aborted") else task.status
        task.result_text = truncate_result_text(
            build_result_text(run.plan_markdown, run.log.events), self.config.max_result_chars
        )
        task.result_at = now_iso()
        self.store.schedule_write()

    def deliver_result(self, task: McpTask, run: Run | None = None) -> bool:
        """Write the task's result prompt once."""
        status = run.status if run is not None else task.status
        output = task.result_text
        if not output and run is not None:
            output = truncate_result_text(
                build_result_text(run.plan_markdown, run.log.events), self.config.max_result_chars
            )
        error = task.error or (run.error if run is not None else None)
        entry = send_result_prompt(
            self.prompt_file, task, status, output, error, run_id=run.id if run is not None else ""
        )
        if entry is None:
            return False
        task.prompt_sent_at = now_iso()
        task.prompt_request_id = entry["requestId"]
        self.store.schedule_write()
        return True

    def mark_prompt(self, task_id: str, request_id: str = "") -> McpTask:
        """Record that the host delivered the task's prompt itself."""
        task = self.get(task_id)
        task.prompt_request_id = normalize_str(request_id) or task.prompt_request_id or task.id
        task.prompt_sent_at = now_iso()
        self.store.schedule_write()
        return task

    def check_timeouts(self, now: float | None = None) -> list[dict[str, Any]]:
        """Force-fail queued/running tasks past their deadline.

        `now` is epoch seconds (defaults to the current time).
        """
        now = time.time() if now is None else now
        timed_out: list[dict[str, Any]] = []
        for task in self.tasks.values():
            if task.status not in ("queued", "running"):
                continue
            running = task.status == "running"
            created = parse_iso(task.created_at)
            base = (parse_iso(task.started_at) or created) if running else created
            limit = self.config.task_running_timeout_seconds if running else self.config.task_queued_timeout_seconds
            if not base or not limit or now - base <= limit:
                continue

            minutes = max(1, round((now - base) / 60))
            message = (
                f"task timed out after {minutes}m" if running else f"task timed out while queued after {minutes}m"
            )
            finished = now_iso()
            task.status = "failed"
            task.finished_at = finished
            task.error = message
            task.result_status = "failed"
            task.result_text = task.result_text or message
            task.result_at = task.result_at or finished
            timed_out.append(
                {
                    "id": task.id,
                    "runId": task.run_id,
                    "status": "running" if running else "queued",
                    "reason": "running_timeout" if running else "queued_timeout",
                }
            )
            logger.warning("Task %s %s", task.id, message)

        if timed_out:
            self.store.schedule_write()
        return timed_out

"""Orchestrator — the backend for one data directory.

Wires the registries together and is what entry points hold on to:

    orch = Orchestrator.open(data_dir)     # shared per resolved directory
    window = orch.create_window(defaults={...})
    run = await orch.start_run(window.id, "hello")
    orch.poll(run.id, cursor)
    await orch.release()                   # last owner shuts it down

Run completion feeds back into the task queue (result + prompt) and
triggers a request reconciliation so queued work for the now idle window
can start. The task monitor loop force-fails overdue tasks.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from .config import EngineConfig, load_config
from .jobs import JobStore, open_job_store, release_job_store
from .logging_config import get_logger
from .requests import RequestQueue
from .runs import Run, RunEngine
from .store import DEFAULT_REGISTRY, StateStore, StoreRegistry
from .tasks import TaskQueue
from .types import AsyncJob, McpTask, RunOptions, Window
from .windows import WindowRegistry

logger = get_logger(__name__)


class Orchestrator:
    def __init__(
        self,
        data_dir: Path,
        config: EngineConfig | None = None,
        job_registry: StoreRegistry[JobStore] | None = None,
    ):
        self.data_dir = Path(data_dir)
        self.config = config or load_config(self.data_dir)
        self.store = StateStore(self.data_dir, self.config)
        self.engine = RunEngine(self.store)
        self.windows = WindowRegistry(self.store, self.engine)
        self.tasks = TaskQueue(self.store)
        self.requests = RequestQueue(self.store, self.windows, self.engine, self.tasks)
        self._job_registry = job_registry
        self.jobs = open_job_store(self.data_dir, self.config, job_registry)
        self.engine.add_finish_hook(self._on_run_finished)
        self._registry: StoreRegistry | None = None
        self._monitor: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self.closed = False

    @classmethod
    def open(
        cls,
        data_dir: Path,
        registry: StoreRegistry | None = None,
        config: EngineConfig | None = None,
    ) -> Orchestrator:
        """Acquire the shared orchestrator for data_dir, restoring it on first use."""
        registry = DEFAULT_REGISTRY if registry is None else registry

        def factory(key: Path) -> Orchestrator:
            orch = cls(key, config)
            orch.restore()
            return orch

        orch = registry.acquire(data_dir, factory)
        orch._registry = registry
        return orch

    async def release(self) -> bool:
        """Drop one reference; the last one closes the orchestrator."""
        if self._registry is not None and not self._registry.release(self.data_dir):
            return False
        await self.close()
        return True

    def restore(self) -> None:
        self.store.restore()

    async def close(self) -> None:
        """Abort active runs, release the job store, then flush the snapshot."""
        if self.closed:
            return
        self.closed = True
        await self.stop_monitor()
        await self.engine.shutdown()
        await release_job_store(self.jobs, self._job_registry)
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.store.flush()
        logger.info("Orchestrator for %s closed", self.data_dir)

    # --- run completion ---

    def _on_run_finished(self, run: Run) -> None:
        task = self.tasks.tasks.get(run.task_id) if run.task_id else None
        if task is not None:
            task.run_id = task.run_id or run.id
            if not task.is_terminal:
                self.tasks.mark_finished(task.id, run.status, run.error)
                self.tasks.apply_result(task, run)
            self.tasks.deliver_result(task, run)
        self.schedule_reconcile()

    def schedule_reconcile(self) -> None:
        """Run a reconciliation pass soon (no-op without a running loop)."""
        if self.closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._reconcile_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reconcile_quietly(self) -> None:
        try:
            await self.requests.reconcile()
        except Exception:
            logger.exception("Request reconciliation failed")

    async def reconcile(self) -> dict[str, int]:
        return await self.requests.reconcile()

    # --- windows ---

    def create_window(
        self,
        name: str = "",
        thread_id: str = "",
        defaults: RunOptions | dict | None = None,
        source: str = "ui",
    ) -> Window:
        return self.windows.create(name=name, thread_id=thread_id, defaults=defaults, source=source)

    def rename_window(self, window_id: str, name: str) -> Window:
        return self.windows.rename(window_id, name)

    def close_window(self, window_id: str) -> dict[str, Any]:
        return self.windows.close(window_id)

    def resume_window(self, thread_id: str, name: str = "") -> Window:
        return self.windows.resume(thread_id, name)

    async def list_windows(self) -> list[Window]:
        """Windows, most recently updated first, after draining pending requests."""
        try:
            await self.requests.reconcile()
        except TimeoutError as e:
            logger.warning("Skipping reconciliation: %s", e)
        return self.windows.list()

    def get_window(self, window_id: str) -> Window:
        return self.windows.get(window_id)

    def get_window_tasks(self, window_id: str) -> dict[str, Any]:
        return self.windows.tasks(window_id)

    def append_window_input(self, window_id: str, text: str) -> dict[str, Any]:
        return self.windows.append_input(window_id, text)

    def get_window_inputs(self, window_id: str) -> dict[str, Any]:
        return self.windows.inputs(window_id)

    def clear_window_inputs(self, window_id: str) -> dict[str, Any]:
        return self.windows.clear_inputs(window_id)

    def get_window_logs(self, window_id: str, limit: int | None = None, offset: int = 0) -> dict[str, Any]:
        return self.windows.logs(window_id, limit, offset)

    def clear_window_logs(self, window_id: str) -> dict[str, Any]:
        return self.windows.clear_logs(window_id)

    # --- runs ---

    async def start_run(
        self,
        window_id: str,
        input_text: str,
        command: str | None = None,
        options: RunOptions | dict | None = None,
        thread_id: str = "",
    ) -> Run:
        return await self.engine.start_run(window_id, input_text, command, options, thread_id)

    def abort_run(self, ident: str) -> dict[str, Any]:
        return self.engine.abort(ident)

    def poll(self, run_id: str, cursor: int = 0) -> dict[str, Any]:
        return self.engine.poll(run_id, cursor)

    # --- tasks ---

    def list_tasks(self) -> list[McpTask]:
        return self.tasks.list()

    def get_task(self, task_id: str) -> McpTask:
        return self.tasks.get(task_id)

    def register_task(self, request_id: str, input: str = "", working_directory: str = "", window_id: str = "") -> McpTask:
        return self.tasks.register(request_id, input, working_directory, window_id)

    def mark_task_prompt(self, task_id: str, request_id: str = "") -> McpTask:
        return self.tasks.mark_prompt(task_id, request_id)

    def check_task_timeouts(self, now: float | None = None) -> list[dict[str, Any]]:
        """Fail overdue tasks, abort their runs and write their result prompts."""
        timed_out = self.tasks.check_timeouts(now)
        for info in timed_out:
            task = self.tasks.tasks.get(info["id"])
            run = self.store.runs.get(info["runId"]) if info["runId"] else None
            if run is not None and run.is_active:
                self.engine.abort(run.id)
            if task is not None:
                self.tasks.deliver_result(task)
        return timed_out

    async def start_monitor(self) -> None:
        if self._monitor is None:
            self._monitor = asyncio.create_task(self._monitor_loop())

    async def stop_monitor(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.task_check_interval_seconds)
            try:
                self.check_task_timeouts()
            except Exception:
                logger.exception("Task timeout check failed")

    # --- jobs ---

    async def start_job(
        self,
        command: str,
        args: list[str] | None = None,
        input: str = "",
        window_id: str = "",
        thread_id: str = "",
    ) -> AsyncJob:
        return await self.jobs.start_job(command, args, input, window_id, thread_id)

    def get_job(self, job_id: str) -> AsyncJob:
        return self.jobs.get_job(job_id)

    def list_jobs(self) -> list[AsyncJob]:
        return self.jobs.list_jobs()

    def get_job_result(self, job_id: str) -> dict[str, Any]:
        return self.jobs.get_job_result(job_id)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.jobs.cancel_job(job_id)

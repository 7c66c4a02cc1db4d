"""Async job store (codex_app_jobs.v1.json).

A job is a fire-and-forget process started on behalf of an automation
caller: start_job() returns immediately, the caller polls get_job() and
collects get_job_result() later. Output is kept as bounded tails, a
heartbeat timestamp shows the job is still being watched, and a job that
was active when its owner died is marked orphaned at the next restore.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import EngineConfig, load_config
from .errors import ExitInfo, InvalidArgument, JobStillRunning, NotFound, classify_exit
from .files import read_json
from .logging_config import get_logger
from .paths import jobs_file
from .process import iter_lines, kill_tree, spawn, terminate, write_input
from .store import DebouncedWriter, StoreRegistry
from .types import AsyncJob, make_id, normalize_str, now_iso, parse_iso

logger = get_logger(__name__)

JOBS_VERSION = 1
ORPHAN_ERROR = "process lost on restart"


def append_tail(current: str, addition: str, limit: int) -> tuple[str, bool]:
    """Append and keep only the last `limit` characters. Returns (text, clipped)."""
    text = current + addition
    if len(text) <= limit:
        return text, False
    return text[len(text) - limit :], True


@dataclass
class _LiveJob:
    process: asyncio.subprocess.Process
    cancel_requested: bool = False
    reader: asyncio.Task | None = None
    heartbeat: asyncio.Task | None = None
    kill_handle: asyncio.TimerHandle | None = None
    streams: list[asyncio.Task] = field(default_factory=list)


class JobStore:
    def __init__(self, data_dir: Path, config: EngineConfig):
        self.data_dir = data_dir
        self.config = config
        self.path = jobs_file(data_dir)
        self.jobs: dict[str, AsyncJob] = {}
        self._live: dict[str, _LiveJob] = {}
        self.writer = DebouncedWriter(self.path, self.build_snapshot, config.debounce_seconds)

    def schedule_write(self) -> None:
        self.writer.schedule()

    def flush(self) -> bool:
        return self.writer.flush()

    def build_snapshot(self) -> dict[str, Any]:
        return {
            "version": JOBS_VERSION,
            "updatedAt": now_iso(),
            "jobs": [job.to_dict() for job in self.jobs.values()],
        }

    def restore(self) -> None:
        """Load jobs; anything that was active has lost its process."""
        data = read_json(self.path)
        if not isinstance(data, dict):
            return
        orphaned = 0
        for raw in data.get("jobs") or []:
            job = AsyncJob.from_dict(raw)
            if job is None:
                continue
            if job.status in ("running", "aborting"):
                now = now_iso()
                job.status = "orphaned"
                job.finished_at = job.finished_at or now
                job.updated_at = now
                job.error = job.error or ORPHAN_ERROR
                orphaned += 1
            self.jobs[job.id] = job
        self._prune()
        if orphaned:
            logger.info("Marked %d jobs orphaned", orphaned)
            self.schedule_write()

    # --- queries ---

    def get_job(self, job_id: str) -> AsyncJob:
        job = self.jobs.get(normalize_str(job_id))
        if job is None:
            raise NotFound("job", job_id)
        return job

    def list_jobs(self) -> list[AsyncJob]:
        """Newest first."""
        return sorted(self.jobs.values(), key=lambda j: parse_iso(j.started_at), reverse=True)

    def get_job_result(self, job_id: str) -> dict[str, Any]:
        """Final output of a finished job. Raises JobStillRunning while it is active."""
        job = self.get_job(job_id)
        if job.is_active:
            raise JobStillRunning(job.id, job.status)
        return job.to_dict()

    # --- lifecycle ---

    async def start_job(
        self,
        command: str,
        args: list[str] | None = None,
        input: str = "",
        window_id: str = "",
        thread_id: str = "",
    ) -> AsyncJob:
        """Spawn command and return its record at once (already failed if it could not start)."""
        command = normalize_str(command)
        if not command:
            raise InvalidArgument("command is required")
        now = now_iso()
        job = AsyncJob(
            id=make_id(),
            command=command,
            args=[str(a) for a in args or []],
            window_id=normalize_str(window_id),
            thread_id=normalize_str(thread_id),
            started_at=now,
            updated_at=now,
            last_heartbeat_at=now,
        )
        self.jobs[job.id] = job
        self._prune()

        try:
            proc = await spawn([command, *job.args])
        except OSError as e:
            self._finish(job, ExitInfo(status="failed", message=f"failed to start {command}: {e.strerror or e}"))
            return job

        live = _LiveJob(process=proc)
        self._live[job.id] = live
        live.reader = asyncio.create_task(self._drive(job, live, input))
        live.heartbeat = asyncio.create_task(self._heartbeat(job))
        self.schedule_write()
        logger.info("Job %s started: %s", job.id, command)
        return job

    async def _drive(self, job: AsyncJob, live: _LiveJob, text: str) -> None:
        proc = live.process
        live.streams = [
            asyncio.create_task(self._read_stream(job, proc.stdout, "stdout")),
            asyncio.create_task(self._read_stream(job, proc.stderr, "stderr")),
        ]
        error: BaseException | None = None
        try:
            await write_input(proc, text)
            await asyncio.gather(*live.streams)
            await proc.wait()
        except asyncio.CancelledError:
            for task in live.streams:
                task.cancel()
            if proc.returncode is None:
                live.cancel_requested = True
                kill_tree(proc)
            self._finish(job, classify_exit(proc.returncode, aborted=True))
            raise
        except Exception as e:
            logger.exception("Job %s stream failed", job.id)
            error = e
            for task in live.streams:
                task.cancel()
            # escalation stays armed past _finish
            terminate(proc, self.config.abort_grace_seconds)
        self._finish(
            job,
            classify_exit(
                proc.returncode,
                aborted=live.cancel_requested,
                error=error,
                label="process",
                success_status="finished",
            ),
        )

    async def _read_stream(self, job: AsyncJob, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        limit = self.config.max_job_output_chars
        async for line in iter_lines(stream):
            if name == "stdout":
                job.stdout, clipped = append_tail(job.stdout, line + "\n", limit)
                job.stdout_truncated = job.stdout_truncated or clipped
                self._capture_thread(job, line)
            else:
                job.stderr, clipped = append_tail(job.stderr, line + "\n", limit)
                job.stderr_truncated = job.stderr_truncated or clipped
            job.last_output_at = job.updated_at = now_iso()
            self.schedule_write()

    @staticmethod
    def _capture_thread(job: AsyncJob, line: str) -> None:
        if "thread.started" not in line:
            return
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return
        if isinstance(obj, dict) and obj.get("type") == "thread.started":
            thread_id = normalize_str(obj.get("thread_id"))
            if thread_id:
                job.thread_id = thread_id

    async def _heartbeat(self, job: AsyncJob) -> None:
        while job.is_active:
            await asyncio.sleep(self.config.heartbeat_seconds)
            if not job.is_active:
                break
            job.last_heartbeat_at = now_iso()
            self.schedule_write()

    def _finish(self, job: AsyncJob, info: ExitInfo) -> None:
        if job.finished_at:
            return
        now = now_iso()
        job.status = info.status
        job.exit_code = info.exit_code
        job.signal = info.signal
        job.error = info.message
        job.finished_at = now
        job.updated_at = now
        live = self._live.pop(job.id, None)
        if live is not None:
            if live.kill_handle is not None:
                live.kill_handle.cancel()
            if live.heartbeat is not None:
                live.heartbeat.cancel()
        self.schedule_write()
        logger.info("Job %s %s%s", job.id, job.status, f": {job.error}" if job.error else "")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Idempotent; escalates to a forced kill after the grace period."""
        job = self.get_job(job_id)
        live = self._live.get(job.id)
        if job.status != "running" or live is None:
            return {"ok": True, "jobId": job.id, "status": job.status}
        live.cancel_requested = True
        job.status = "aborting"
        job.updated_at = now_iso()
        live.kill_handle = terminate(live.process, self.config.abort_grace_seconds)
        self.schedule_write()
        logger.info("Job %s cancelling", job.id)
        return {"ok": True, "jobId": job.id, "status": "aborting"}

    def _prune(self) -> None:
        finished = [j for j in self.jobs.values() if not j.is_active]
        excess = len(self.jobs) - self.config.max_jobs
        if excess <= 0:
            return
        finished.sort(key=lambda j: parse_iso(j.finished_at or j.started_at))
        for job in finished[:excess]:
            del self.jobs[job.id]

    async def shutdown(self) -> None:
        """Cancel active jobs and wait (bounded) for them to be recorded."""
        readers = []
        for job_id, live in list(self._live.items()):
            self.cancel_job(job_id)
            if live.reader is not None:
                readers.append(live.reader)
        if readers:
            _, pending = await asyncio.wait(readers, timeout=self.config.abort_grace_seconds + 1.0)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.flush()


JOB_REGISTRY: StoreRegistry[JobStore] = StoreRegistry()


def open_job_store(
    data_dir: Path,
    config: EngineConfig | None = None,
    registry: StoreRegistry[JobStore] | None = None,
) -> JobStore:
    """Acquire the job store for data_dir, restoring it on first use.

    Everything in one process that runs jobs for a directory (the orchestrator,
    the job tools) shares this store, so codex_app_jobs.v1.json has one writer.
    """
    registry = JOB_REGISTRY if registry is None else registry

    def factory(key: Path) -> JobStore:
        store = JobStore(key, config or load_config(key))
        store.restore()
        return store

    return registry.acquire(data_dir, factory)


async def release_job_store(store: JobStore, registry: StoreRegistry[JobStore] | None = None) -> bool:
    """Drop one reference; the last one cancels active jobs and flushes."""
    registry = JOB_REGISTRY if registry is None else registry
    if not registry.release(store.data_dir):
        return False
    await store.shutdown()
    return True

"""Request watcher — reconciles the request queue when producers write to it.

Watches the data directory for changes to codex_app_requests.v1.json and
drains the queue. Uses inotify (via watchfiles) with a polling fallback that
also catches entries left pending (e.g. waiting on a busy window).
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from watchfiles import Change, awatch

from .logging_config import get_logger
from .orchestrator import Orchestrator
from .paths import REQUESTS_FILE_NAME

logger = get_logger(__name__)


class RequestWatcher:
    """Runs Orchestrator.reconcile() on file changes and on a timer."""

    def __init__(self, orchestrator: Orchestrator, poll_interval: float | None = None) -> None:
        self._orchestrator = orchestrator
        self._dir = orchestrator.data_dir
        self._poll_interval = poll_interval or orchestrator.config.request_poll_seconds
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Launch the watch, poll and reconcile tasks."""
        self._running = True
        self._stop.clear()
        self._dir.mkdir(parents=True, exist_ok=True)
        # Requests written while nobody was watching
        self._wake.set()
        self._tasks = [
            asyncio.create_task(self._reconcile_loop()),
            asyncio.create_task(self._watch_requests()),
            asyncio.create_task(self._poll_requests()),
        ]

    async def stop(self) -> None:
        self._running = False
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def _reconcile_loop(self) -> None:
        """One reconciliation per wake-up; bursts of changes coalesce."""
        while self._running:
            await self._wake.wait()
            self._wake.clear()
            try:
                await self._orchestrator.reconcile()
            except TimeoutError as e:
                logger.warning("Request queue busy: %s", e)
                self._wake.set()
                await asyncio.sleep(self._poll_interval)
            except Exception:
                logger.exception("Request reconciliation failed")
            self.passes += 1

    async def _watch_requests(self) -> None:
        """Watch the data directory via inotify."""
        try:
            async for changes in awatch(self._dir, stop_event=self._stop, recursive=False):
                if not self._running:
                    break
                for change_type, path_str in changes:
                    if change_type == Change.deleted:
                        continue
                    if Path(path_str).name == REQUESTS_FILE_NAME:
                        self._wake.set()
                        break
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("inotify request loop error")

    async def _poll_requests(self) -> None:
        """Poll as fallback (and to retry entries still pending)."""
        while self._running:
            await asyncio.sleep(self._poll_interval)
            if not self._running:
                break
            self._wake.set()


async def serve(data_dir: Path, stop: asyncio.Event) -> None:
    """Own data_dir until stop is set: restore, watch requests, monitor tasks, shut down."""
    orchestrator = Orchestrator.open(data_dir)
    watcher = RequestWatcher(orchestrator)
    await orchestrator.start_monitor()
    await watcher.start()
    logger.info(
        "Serving %s (%d windows, %d runs restored)",
        data_dir,
        len(orchestrator.store.windows),
        len(orchestrator.store.runs),
    )
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down orchestrator...")
        await watcher.stop()
        await orchestrator.release()
    logger.info("Orchestrator stopped.")


def run_orchestrator(data_dir: Path) -> None:
    """Main orchestrator process; returns on SIGINT/SIGTERM."""

    async def _main() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops: fall back to KeyboardInterrupt
                pass
        await serve(data_dir, stop)

    logger.info("=== Codex Orchestrator ===")
    logger.info("Data directory: %s", data_dir)
    logger.info("Press Ctrl+C to stop")
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("Interrupted")

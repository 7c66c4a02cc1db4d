"""Centralized logging configuration.

Each process gets its own log files:
- {data_dir}/logs/{process}.log (+ .YYYY-MM-DD rotations)

Usage in each process entry point:
    from .logging_config import setup_process_logging
    setup_process_logging("orchestrator", log_dir=data_dir / "logs")

Then in any module:
    from .logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Hello")
"""

import logging
import sys
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path

from .config import data_dir

# Track which process we're in (set by setup_process_logging)
_current_process: str | None = None


class FlushingStreamHandler(logging.StreamHandler):
    """StreamHandler that flushes after every emit."""

    def emit(self, record):
        super().emit(record)
        self.flush()


def setup_process_logging(
    process_name: str,
    level: int = logging.INFO,
    console: bool = True,
    file: bool = True,
    log_dir: Path | None = None,
) -> logging.Logger:
    """
    Set up logging for an orchestrator-side process.

    Call this ONCE at the entry point of each process:
    - cli serve -> setup_process_logging("orchestrator")
    - cli request-* -> setup_process_logging("producer", file=False)

    Args:
        process_name: Process identifier (e.g. "orchestrator")
        level: Minimum log level (default INFO)
        console: Whether to log to stderr
        file: Whether to log to rotating files
        log_dir: Where log files go (default: {data_dir}/logs)

    Returns:
        Root logger for this process
    """
    global _current_process
    _current_process = process_name

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    # Format: [HH:MM:SS] [process] [LEVEL] module: message
    console_fmt = logging.Formatter(
        fmt=f"[%(asctime)s] [{process_name}] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    file_fmt = logging.Formatter(
        fmt=f"[%(asctime)s] [{process_name}] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if console:
        console_handler = FlushingStreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(console_fmt)
        root.addHandler(console_handler)

    if file:
        if log_dir is None:
            log_dir = data_dir() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        # orchestrator.log -> orchestrator.log.2026-01-26, keeps 14 days
        daily_handler = TimedRotatingFileHandler(
            log_dir / f"{process_name}.log",
            when="midnight",
            interval=1,
            backupCount=14,
            encoding="utf-8",
        )
        daily_handler.setLevel(level)
        daily_handler.setFormatter(file_fmt)
        daily_handler.suffix = "%Y-%m-%d"
        root.addHandler(daily_handler)

        # Event storms can log a lot in one day: 5MB per file, 5 backups
        size_handler = RotatingFileHandler(
            log_dir / f"{process_name}-current.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        size_handler.setLevel(level)
        size_handler.setFormatter(file_fmt)
        root.addHandler(size_handler)

    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module. Call at module level: logger = get_logger(__name__)"""
    return logging.getLogger(name)

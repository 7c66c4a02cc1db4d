"""Configuration helpers — safe to import from anywhere.

Call init(data_dir) once at process startup (the CLI does this). Library code
that already holds a data directory passes it explicitly to load_config().
"""

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from typing_extensions import Self

from .paths import CONFIG_FILE_NAME


_data_dir: Path | None = None


def init(data_dir: Path) -> None:
    """Set the data directory for this process."""
    global _data_dir
    _data_dir = data_dir


def data_dir() -> Path:
    """Get the data directory. Raises if init() hasn't been called."""
    if _data_dir is None:
        raise RuntimeError("config.init() not called")
    return _data_dir


def ensure_dirs(root: Path) -> None:
    """Ensure the data directory and its log directory exist."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "logs").mkdir(parents=True, exist_ok=True)


# Defaults if config.json is missing or incomplete.
CONFIG_DEFAULTS: dict[str, Any] = {
    # Event log
    "max_run_events": 5000,
    "max_event_text_chars": 50_000,
    "max_window_log_events": 5000,
    "max_runs": 200,
    # Window input history
    "max_window_inputs": 500,
    # Automation tasks
    "max_tasks": 200,
    "max_result_chars": 4000,
    "task_running_timeout_seconds": 30 * 60,
    "task_queued_timeout_seconds": 30 * 60,
    "task_check_interval_seconds": 30.0,
    # Async jobs
    "max_jobs": 200,
    "max_job_output_chars": 200_000,
    "heartbeat_seconds": 5.0,
    # Persistence / process control
    "debounce_seconds": 0.12,
    "abort_grace_seconds": 1.5,
    "request_poll_seconds": 2.0,
    # Executable
    "command": "codex",
}


@dataclass
class EngineConfig:
    """Limits and timings for one data directory."""

    max_run_events: int = CONFIG_DEFAULTS["max_run_events"]
    max_event_text_chars: int = CONFIG_DEFAULTS["max_event_text_chars"]
    max_window_log_events: int = CONFIG_DEFAULTS["max_window_log_events"]
    max_runs: int = CONFIG_DEFAULTS["max_runs"]
    max_window_inputs: int = CONFIG_DEFAULTS["max_window_inputs"]
    max_tasks: int = CONFIG_DEFAULTS["max_tasks"]
    max_result_chars: int = CONFIG_DEFAULTS["max_result_chars"]
    task_running_timeout_seconds: float = CONFIG_DEFAULTS["task_running_timeout_seconds"]
    task_queued_timeout_seconds: float = CONFIG_DEFAULTS["task_queued_timeout_seconds"]
    task_check_interval_seconds: float = CONFIG_DEFAULTS["task_check_interval_seconds"]
    max_jobs: int = CONFIG_DEFAULTS["max_jobs"]
    max_job_output_chars: int = CONFIG_DEFAULTS["max_job_output_chars"]
    heartbeat_seconds: float = CONFIG_DEFAULTS["heartbeat_seconds"]
    debounce_seconds: float = CONFIG_DEFAULTS["debounce_seconds"]
    abort_grace_seconds: float = CONFIG_DEFAULTS["abort_grace_seconds"]
    request_poll_seconds: float = CONFIG_DEFAULTS["request_poll_seconds"]
    command: str = CONFIG_DEFAULTS["command"]

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create from dict, ignoring unknown keys and bad values."""
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known or value is None:
                continue
            default = CONFIG_DEFAULTS[key]
            try:
                kwargs[key] = type(default)(value)
            except (TypeError, ValueError):
                continue
        return cls(**kwargs)


# Cached per config file, invalidated on mtime change
_config_cache: dict[Path, tuple[float, EngineConfig]] = {}


def load_config(root: Path) -> EngineConfig:
    """Load engine config for a data directory, with mtime caching and defaults."""
    config_file = root / CONFIG_FILE_NAME
    try:
        mtime = config_file.stat().st_mtime
    except OSError:
        mtime = 0.0
    cached = _config_cache.get(config_file)
    if cached is not None and cached[0] == mtime:
        return cached[1]

    merged = dict(CONFIG_DEFAULTS)
    if config_file.exists():
        try:
            loaded = json.loads(config_file.read_text())
            if isinstance(loaded, dict):
                merged.update(loaded)
        except (OSError, json.JSONDecodeError):
            pass
    config = EngineConfig.from_dict(merged)
    _config_cache[config_file] = (mtime, config)
    return config

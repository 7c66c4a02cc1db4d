"""Shared directory resolution.

Every process that touches the shared files (orchestrator, automation
server, CLI) resolves the same directory from its environment:

  1. an explicit path (--data, or a value passed by the host)
  2. $CODEX_APP_DATA_DIR
  3. $CODEX_APP_STATE_DIR/data
  4. the nearest .codex_app/data above the working directory
  5. ~/.local/share/codex-orchestrator

File layout inside the data directory:
  codex_app_state.v1.json     — state snapshot (windows, runs, logs, tasks)
  codex_app_requests.v1.json  — cross-process request queue
  codex_app_jobs.v1.json      — async job store
  config.json                 — optional engine config overrides
  logs/                       — process logs
"""

import os
from pathlib import Path

DATA_DIR_ENV = "CODEX_APP_DATA_DIR"
STATE_DIR_ENV = "CODEX_APP_STATE_DIR"
LOCAL_MARKER = Path(".codex_app") / "data"
DATA_BASE_DIR = Path(os.path.expanduser("~/.local/share/codex-orchestrator"))

STATE_FILE_NAME = "codex_app_state.v1.json"
REQUESTS_FILE_NAME = "codex_app_requests.v1.json"
JOBS_FILE_NAME = "codex_app_jobs.v1.json"
UI_PROMPTS_FILE_NAME = "ui-prompts.jsonl"
CONFIG_FILE_NAME = "config.json"

_MAX_UPWARD_STEPS = 50


def find_upwards(start: Path) -> Path | None:
    """Walk up from start looking for a .codex_app/data directory."""
    current = start.expanduser().resolve()
    for _ in range(_MAX_UPWARD_STEPS):
        candidate = current / LOCAL_MARKER
        if candidate.is_dir():
            return candidate
        if current.parent == current:
            break
        current = current.parent
    return None


def resolve_data_dir(explicit: str | Path | None = None) -> Path:
    """Resolve the shared data directory (see module docstring for order)."""
    if explicit:
        return Path(explicit).expanduser().resolve()

    from_env = os.environ.get(DATA_DIR_ENV, "").strip()
    if from_env:
        return Path(from_env).expanduser().resolve()

    state_dir = os.environ.get(STATE_DIR_ENV, "").strip()
    if state_dir:
        return (Path(state_dir).expanduser() / "data").resolve()

    found = find_upwards(Path.cwd())
    if found is not None:
        return found

    return DATA_BASE_DIR


def resolve_state_dir(data_dir: Path) -> Path:
    """Directory for host-facing side files (ui-prompts.jsonl)."""
    state_dir = os.environ.get(STATE_DIR_ENV, "").strip()
    if state_dir:
        return Path(state_dir).expanduser().resolve()
    return data_dir


def state_file(data_dir: Path) -> Path:
    return data_dir / STATE_FILE_NAME


def requests_file(data_dir: Path) -> Path:
    return data_dir / REQUESTS_FILE_NAME


def jobs_file(data_dir: Path) -> Path:
    return data_dir / JOBS_FILE_NAME


def find_git_root(start: str | Path) -> Path | None:
    """Nearest ancestor of start containing .git, or None."""
    if not start:
        return None
    current = Path(start).expanduser().resolve()
    for _ in range(_MAX_UPWARD_STEPS):
        if (current / ".git").exists():
            return current
        if current.parent == current:
            break
        current = current.parent
    return None

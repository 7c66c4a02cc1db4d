"""Shared fixtures for codex orchestrator tests."""

import asyncio
import stat
import sys
from pathlib import Path

import pytest

import codex_orchestrator.config as config
from codex_orchestrator.config import EngineConfig
from codex_orchestrator.orchestrator import Orchestrator
from codex_orchestrator.paths import DATA_DIR_ENV, STATE_DIR_ENV

# --- Agent stand-ins: read the prompt from stdin, answer in the JSONL protocol ---

FAKE_CODEX = """
import json
import sys

prompt = sys.stdin.read().strip()


def emit(obj):
    print(json.dumps(obj), flush=True)


emit({"type": "thread.started", "thread_id": "thread-123"})
emit({"type": "turn.started"})
emit({"type": "item.completed", "item": {"id": "item_0", "type": "agent_message", "text": "echo: " + prompt}})
emit({"type": "turn.completed", "usage": {"input_tokens": 10, "output_tokens": 5}})
"""

SLOW_CODEX = """
import json
import sys
import time

sys.stdin.read()
print(json.dumps({"type": "thread.started", "thread_id": "thread-slow"}), flush=True)
time.sleep(30)
"""

# Ignores SIGTERM, so only the forced kill ends it
STUBBORN_CODEX = """
import json
import signal
import sys
import time

signal.signal(signal.SIGTERM, signal.SIG_IGN)
sys.stdin.read()
print(json.dumps({"type": "thread.started", "thread_id": "thread-stubborn"}), flush=True)
time.sleep(30)
"""

FAILING_CODEX = """
import sys

sys.stdin.read()
print("not json at all", flush=True)
print("boom", file=sys.stderr, flush=True)
sys.exit(3)
"""


def write_script(directory: Path, name: str, body: str) -> Path:
    """Executable python script at directory/name."""
    path = directory / name
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


async def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll predicate until it holds, failing the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(interval)


def make_config(**overrides) -> EngineConfig:
    """Engine config with timings short enough for tests."""
    values = {
        "debounce_seconds": 0.01,
        "abort_grace_seconds": 0.3,
        "heartbeat_seconds": 0.05,
        "request_poll_seconds": 0.1,
        "task_check_interval_seconds": 0.05,
    }
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep tests away from the caller's data directory."""
    monkeypatch.delenv(DATA_DIR_ENV, raising=False)
    monkeypatch.delenv(STATE_DIR_ENV, raising=False)


@pytest.fixture
def data_dir(tmp_path):
    """Create a temporary data directory and init config."""
    d = tmp_path / "data"
    d.mkdir()
    config.init(d)
    return d


@pytest.fixture
def bin_dir(tmp_path):
    d = tmp_path / "bin"
    d.mkdir()
    return d


@pytest.fixture
def fake_codex(bin_dir):
    return write_script(bin_dir, "codex", FAKE_CODEX)


@pytest.fixture
def slow_codex(bin_dir):
    return write_script(bin_dir, "codex-slow", SLOW_CODEX)


@pytest.fixture
def stubborn_codex(bin_dir):
    return write_script(bin_dir, "codex-stubborn", STUBBORN_CODEX)


@pytest.fixture
def failing_codex(bin_dir):
    return write_script(bin_dir, "codex-failing", FAILING_CODEX)


@pytest.fixture
def workdir(tmp_path):
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
async def orchestrator(data_dir, fake_codex):
    """Orchestrator whose default command is the fake agent; closed after the test."""
    orch = Orchestrator(data_dir, make_config(command=str(fake_codex)))
    yield orch
    await orch.close()

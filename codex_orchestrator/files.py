"""Whole-file JSON persistence shared by every process.

Writers go through write_json_atomic(): the document is written to a
sibling temp file and renamed over the target, so a reader in another
process sees either the old or the new document, never a partial one.
Readers tolerate a missing or unreadable file.
"""

import json
import os
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .logging_config import get_logger

logger = get_logger(__name__)

LOCK_STALE_SECONDS = 10.0
LOCK_POLL_SECONDS = 0.02


def read_json(path: Path) -> Any | None:
    """Load a JSON document, or None if missing or unparsable."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning("Unreadable JSON file %s: %s", path, e)
        return None


def write_json_atomic(path: Path, data: Any) -> bool:
    """Write data as JSON via temp file + rename. Returns False on failure.

    Failures are logged, never raised: in-memory state stays authoritative.
    """
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(data, ensure_ascii=False, indent=2)
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to write %s: %s", path, e)
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        return False


def append_jsonl(path: Path, entry: dict[str, Any]) -> bool:
    """Append one JSON line. Returns False on failure."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to append to %s: %s", path, e)
        return False


@contextmanager
def file_lock(path: Path, timeout: float = 5.0):
    """Cross-process mutex on a lock file created with O_EXCL.

    A lock older than LOCK_STALE_SECONDS is treated as abandoned by a
    crashed holder and broken. Raises TimeoutError if not acquired in time.
    """
    lock = path.with_name(path.name + ".lock")
    lock.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    while True:
        try:
            fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            try:
                age = time.time() - lock.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > LOCK_STALE_SECONDS:
                logger.warning("Breaking stale lock %s (%.1fs old)", lock, age)
                lock.unlink(missing_ok=True)
                continue
            if time.monotonic() >= deadline:
                raise TimeoutError(f"could not lock {path}")
            time.sleep(LOCK_POLL_SECONDS)
            continue
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        break
    try:
        yield
    finally:
        lock.unlink(missing_ok=True)

"""Child process plumbing shared by the run engine and the job store.

Children are started in their own session (POSIX) so termination reaches
anything they spawned. Abort is two-step: a graceful signal right away, then
a forced kill after a grace period if the process is still alive. Neither
step waits for the process to die; the reader loops observe EOF and exit.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator

from .logging_config import get_logger

logger = get_logger(__name__)

READ_CHUNK = 64 * 1024


async def spawn(argv: list[str]) -> asyncio.subprocess.Process:
    """Start argv with piped stdio. Raises OSError if it cannot be started."""
    kwargs: dict = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
    else:
        kwargs["start_new_session"] = True
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=os.environ.copy(),
        **kwargs,
    )


async def write_input(proc: asyncio.subprocess.Process, text: str) -> str | None:
    """Write text to stdin and close it. Returns an error message if the
    child went away before taking its input, None otherwise."""
    if proc.stdin is None:
        return "child process has no stdin"
    try:
        if text:
            proc.stdin.write(text.encode("utf-8"))
            await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as e:
        return f"input not delivered: {e}"
    finally:
        try:
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass
    return None


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield decoded lines without a length limit (one huge line is still one event)."""
    buffer = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buffer.extend(chunk)
        while True:
            newline = buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(buffer[:newline])
            del buffer[: newline + 1]
            yield _decode(line)
    if buffer:
        yield _decode(bytes(buffer))


def _decode(line: bytes) -> str:
    return line.decode("utf-8", errors="replace").rstrip("\r")


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


def kill_tree(proc: asyncio.subprocess.Process) -> None:
    """Forcefully kill the process and its session."""
    if proc.returncode is not None:
        return
    logger.info("Killing process %s", proc.pid)
    if sys.platform == "win32":
        try:
            subprocess.Popen(
                ["taskkill", "/pid", str(proc.pid), "/t", "/f"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("taskkill failed for %s: %s", proc.pid, e)
        return
    _signal_group(proc, signal.SIGKILL)


def terminate(proc: asyncio.subprocess.Process, grace: float) -> asyncio.TimerHandle | None:
    """Ask the process to stop now; schedule a forced kill after `grace` seconds.

    Returns the escalation handle (cancel it once the process has exited),
    or None if the process had already exited.
    """
    if proc.returncode is not None:
        return None
    if sys.platform == "win32":
        try:
            proc.terminate()
        except ProcessLookupError:
            return None
    else:
        _signal_group(proc, signal.SIGTERM)
    return asyncio.get_running_loop().call_later(grace, kill_tree, proc)

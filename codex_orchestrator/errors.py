"""Error taxonomy and process-exit classification.

Precondition errors (NotFound, AlreadyRunning, InvalidArgument,
JobStillRunning) are raised synchronously from registry/engine calls and
carry structured fields so callers can decide what to do. Process outcomes
are not exceptions: classify_exit() turns an exit into an ExitInfo that the
run and job engines record as a terminal status plus message.
"""

import signal as _signal
from dataclasses import dataclass


class OrchestratorError(Exception):
    """Base class for precondition failures."""

    code = "error"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class NotFound(OrchestratorError):
    code = "not_found"

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}" if ident else f"{kind} id is required")


class AlreadyRunning(OrchestratorError):
    code = "already_running"

    def __init__(self, window_id: str, status: str):
        self.window_id = window_id
        self.status = status
        super().__init__(f"window {window_id} is already {status}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "windowId": self.window_id, "status": self.status}


class InvalidArgument(OrchestratorError):
    code = "invalid_argument"


class JobStillRunning(OrchestratorError):
    """Retryable: the job has no result yet."""

    code = "still_running"

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"job {job_id} is still {status}")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "jobId": self.job_id, "status": self.status}


@dataclass
class ExitInfo:
    """Structured outcome of a finished child process."""

    status: str  # terminal status for the run/job
    message: str | None  # human-readable error, None on success
    exit_code: int | None = None
    signal: str | None = None


def signal_name(signum: int) -> str:
    try:
        return _signal.Signals(signum).name
    except ValueError:
        return str(signum)


def classify_exit(
    returncode: int | None,
    aborted: bool = False,
    error: BaseException | None = None,
    label: str = "codex",
    success_status: str = "completed",
) -> ExitInfo:
    """Map how a child process ended to a terminal status.

    Precedence: an abort requested by us wins, then plumbing errors raised
    while talking to the process, then the exit status itself. asyncio
    reports death by signal as a negative returncode on POSIX.
    """
    if aborted:
        return ExitInfo(status="aborted", message=None, exit_code=returncode)
    if error is not None:
        return ExitInfo(status="failed", message=str(error) or type(error).__name__, exit_code=returncode)
    if returncode is None:
        return ExitInfo(status="failed", message=f"{label} exited without a status")
    if returncode < 0:
        name = signal_name(-returncode)
        return ExitInfo(
            status="failed", message=f"{label} exited with signal {name}", exit_code=None, signal=name
        )
    if returncode != 0:
        return ExitInfo(status="failed", message=f"{label} exited with code {returncode}", exit_code=returncode)
    return ExitInfo(status=success_status, message=None, exit_code=0)

"""CLI interface for the codex orchestrator.

Entry point: codex-orchestrator <subcommand> [--data PATH] [args...]

`serve` owns the data directory; every other subcommand only reads the
shared files or appends to the request queue, so they are safe to run while
an orchestrator is serving.
"""

import argparse
import json
import sys
from pathlib import Path


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _snapshot() -> dict:
    from .config import data_dir
    from .tools.windows import load_snapshot

    return load_snapshot(data_dir())


# --- Subcommands ---


def cmd_serve(args):
    """Run the orchestrator until interrupted."""
    from .config import data_dir, ensure_dirs
    from .logging_config import setup_process_logging
    from .watcher import run_orchestrator

    ensure_dirs(data_dir())
    setup_process_logging("orchestrator")
    run_orchestrator(data_dir())


def cmd_windows(args):
    """List windows from the state snapshot."""
    from .types import parse_iso

    windows = [w for w in _snapshot().get("windows") or [] if isinstance(w, dict)]
    windows.sort(key=lambda w: parse_iso(w.get("updatedAt")), reverse=True)
    if args.json:
        _print_json(windows)
        return
    if not windows:
        print("No windows.")
        return

    print("=== Windows ===")
    for w in windows:
        defaults = w.get("defaultRunOptions") or {}
        print(f"  {w.get('id')}  [{w.get('status', '?')}]  {w.get('name', '')}")
        if defaults.get("workingDirectory"):
            print(f"    Directory: {defaults['workingDirectory']}")
        if w.get("threadId"):
            print(f"    Thread:    {w['threadId']}")
        if w.get("activeRunId"):
            print(f"    Run:       {w['activeRunId']}")
        print(f"    Updated:   {w.get('updatedAt', '')}")


def cmd_tasks(args):
    """List automation tasks from the state snapshot."""
    from .types import parse_iso

    tasks = [t for t in _snapshot().get("mcpTasks") or [] if isinstance(t, dict)]
    tasks.sort(key=lambda t: parse_iso(t.get("createdAt")), reverse=True)
    if args.json:
        _print_json(tasks)
        return
    if not tasks:
        print("No tasks.")
        return

    print("=== Tasks ===")
    for t in tasks:
        print(f"  {t.get('id')}  [{t.get('status', '?')}]  window={t.get('windowId') or '-'}")
        text = (t.get("input") or "").splitlines()
        if text:
            print(f"    Input:  {text[0][:100]}")
        error = t.get("error") or {}
        if error.get("message"):
            print(f"    Error:  {error['message']}")


def cmd_request_window(args):
    """Queue a create-window request."""
    from .config import data_dir
    from .logging_config import setup_process_logging
    from .requests import append_create_window
    from .types import RunOptions

    setup_process_logging("producer", file=False)
    defaults = RunOptions(
        model=args.model or "",
        working_directory=str(Path(args.cwd).expanduser().resolve()) if args.cwd else "",
        sandbox_mode=args.sandbox or "",
        approval_policy=args.approval or "",
    )
    entry = append_create_window(data_dir(), name=args.name or "", defaults=defaults, thread_id=args.thread or "")
    print(f"Queued window request {entry['id']}")


def cmd_request_run(args):
    """Queue a start-run request."""
    from .config import data_dir
    from .logging_config import setup_process_logging
    from .requests import append_start_run
    from .tools.windows import queue_window_run

    setup_process_logging("producer", file=False)
    if args.window:
        entry = append_start_run(data_dir(), args.prompt, window_id=args.window, ensure_window=False, source="ui")
    else:
        entry = queue_window_run(data_dir(), args.prompt, args.cwd or "")
    print(f"Queued run request {entry['id']} for window {entry['windowId']}")


def cmd_logs(args):
    """Print a window's recent log lines from the state snapshot."""
    from .codex import format_run_event
    from .events import WindowLog

    logs = _snapshot().get("windowLogs") or {}
    info = logs.get(args.window) if isinstance(logs, dict) else None
    if not isinstance(info, dict):
        print(f"No logs for window {args.window}.")
        sys.exit(1)
    log = WindowLog.from_dict(info, cap=max(1, len(info.get("events") or []) + len(info.get("lines") or [])))
    for evt in log.page(args.limit):
        print(format_run_event(evt))


def main():
    from . import config
    from .errors import OrchestratorError
    from .paths import resolve_data_dir

    parser = argparse.ArgumentParser(
        prog="codex-orchestrator",
        description="Run and observe codex sessions through a shared data directory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--data", "-d", help="Data directory (default: $CODEX_APP_DATA_DIR or discovered)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- Orchestrator ---

    serve_parser = subparsers.add_parser("serve", help="Run the orchestrator")
    serve_parser.add_argument("--data", "-d", default=argparse.SUPPRESS, help=argparse.SUPPRESS)
    serve_parser.set_defaults(func=cmd_serve)

    # --- Inspection ---

    windows_parser = subparsers.add_parser("windows", help="List windows")
    windows_parser.add_argument("--json", action="store_true", help="Print raw snapshot entries")
    windows_parser.set_defaults(func=cmd_windows)

    tasks_parser = subparsers.add_parser("tasks", help="List automation tasks")
    tasks_parser.add_argument("--json", action="store_true", help="Print raw snapshot entries")
    tasks_parser.set_defaults(func=cmd_tasks)

    logs_parser = subparsers.add_parser("logs", help="Show a window's log")
    logs_parser.add_argument("window", help="Window id")
    logs_parser.add_argument("--limit", "-n", type=int, default=50, help="Number of lines (0 = all)")
    logs_parser.set_defaults(func=cmd_logs)

    # --- Requests (picked up by a serving orchestrator) ---

    window_parser = subparsers.add_parser("request-window", help="Queue a new window")
    window_parser.add_argument("--name", "-n", help="Window name")
    window_parser.add_argument("--cwd", help="Working directory")
    window_parser.add_argument("--sandbox", "-s", help="Sandbox mode (e.g. workspace-write)")
    window_parser.add_argument("--model", "-m", help="Model")
    window_parser.add_argument("--approval", help="Approval policy")
    window_parser.add_argument("--thread", help="Resume this thread id")
    window_parser.set_defaults(func=cmd_request_window)

    run_parser = subparsers.add_parser("request-run", help="Queue a run")
    run_parser.add_argument("prompt", help="Prompt text")
    run_parser.add_argument("--window", "-w", help="Window id (default: the window for --cwd)")
    run_parser.add_argument("--cwd", help="Working directory (default: current directory)")
    run_parser.set_defaults(func=cmd_request_run)

    args = parser.parse_args()
    config.init(resolve_data_dir(args.data))

    try:
        args.func(args)
    except OrchestratorError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except TimeoutError as e:
        print(f"Error: {e} (is another process holding the request queue?)")
        sys.exit(1)


if __name__ == "__main__":
    main()

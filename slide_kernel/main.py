import sys
import asyncio
from pathlib import Path
from typing import Optional

import structlog

from .config import settings
from .environment import has_required_packages
from .notifications import RecordingNotifier
from .observability import configure_logging
from .session import NotebookSession
from .workspace_state import WorkspaceState

logger = structlog.get_logger(__name__)


async def _open_session(args, notifier: RecordingNotifier) -> NotebookSession:
    state = WorkspaceState(args.state_db or settings.STATE_DB_PATH)
    session = NotebookSession(args.notebook, state, notifier=notifier)
    if args.python:
        # Start straight on the requested interpreter
        await session.open(start_kernel=False)
        await session.select_environment(args.python)
    else:
        await session.open()
    return session


async def run_notebook(args) -> int:
    """Execute every code cell of a notebook headlessly and save the result."""
    notifier = RecordingNotifier()
    session = await _open_session(args, notifier)
    try:
        if not session.is_configured:
            print("No kernel could be started for this notebook.", file=sys.stderr)
            return 1

        # Startup notices from before configuration do not count against the run
        seen = len(notifier.messages)
        halted_at = await session.manager.run_all_cells()
        target = session.document.save(args.output)
        print(f"Saved {target}")
        if halted_at is not None:
            print(f"Execution failed at slide {halted_at + 1}.", file=sys.stderr)
            return 1
        errors = [m for level, m in notifier.messages[seen:] if level == "error"]
        return 1 if errors else 0
    finally:
        await session.close()


async def list_kernels(args) -> int:
    notifier = RecordingNotifier()
    session = await _open_session(args, notifier)
    try:
        if not session.is_configured:
            print("No kernel could be started for this notebook.", file=sys.stderr)
            return 1
        for choice in session.available_kernels():
            marker = "*" if choice.is_active else " "
            print(f"{marker} {choice.kernel_name}\t{choice.display_name}\t{choice.python_path}")
        return 0
    finally:
        await session.close()


async def probe(args) -> int:
    ok = await has_required_packages(args.python_path)
    status = "ready" if ok else "missing " + ", ".join(settings.REQUIRED_PACKAGES)
    print(f"{args.python_path}: {status}")
    return 0 if ok else 1


def main(argv: Optional[list] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Slide deck kernel runner for .ipynb notebooks")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL,
                        choices=["debug", "info", "warning", "error", "critical"],
                        help="Log verbosity (logs go to stderr)")
    parser.add_argument("--state-db", default=None,
                        help=f"Workspace state database (default: {settings.STATE_DB_PATH})")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run all code cells and save the notebook")
    run_p.add_argument("notebook", type=Path)
    run_p.add_argument("--python", default=None, help="Interpreter to configure before running")
    run_p.add_argument("--output", default=None, help="Write the executed notebook here instead of in place")
    run_p.set_defaults(handler=run_notebook)

    kernels_p = sub.add_parser("kernels", help="List the kernels available to a notebook")
    kernels_p.add_argument("notebook", type=Path)
    kernels_p.add_argument("--python", default=None, help="Interpreter to configure first")
    kernels_p.set_defaults(handler=list_kernels)

    probe_p = sub.add_parser("probe", help="Check an interpreter for the kernel packages")
    probe_p.add_argument("python_path")
    probe_p.set_defaults(handler=probe)

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        return asyncio.run(args.handler(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())

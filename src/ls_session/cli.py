"""ls-session - command line entry point.

Starts a language server session from a settings file and keeps it alive
until the server fails for good or the process is interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from ls_session import __version__
from ls_session.commands import resync_inventory
from ls_session.config import SessionSettings, load_settings
from ls_session.exceptions import ConfigurationError
from ls_session.host import SessionHost
from ls_session.logging_utils import configure_logging
from ls_session.session import FATAL

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="ls-session",
        description="Language server protocol session runner",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to settings YAML file (default: built-in settings)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Connect to a server listening on the debug port instead of spawning one",
    )
    parser.add_argument(
        "--resync",
        action="store_true",
        help="Send an inventory resync once the session is running",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override the log level from the settings",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"ls-session {__version__}",
    )
    return parser


async def run(settings: SessionSettings, resync: bool = False) -> int:
    """Run one session until it fails for good.

    Returns:
        Exit code (1 when the session could not start or gave up).
    """
    host = SessionHost(settings)
    fatal = asyncio.Event()
    try:
        session = await host.activate()
        if not session.is_running():
            return 1
        session.on_event(FATAL, lambda _: fatal.set())
        if resync:
            resync_inventory(session)
        await fatal.wait()
        return 1
    finally:
        await host.deactivate()


def main(argv: list[str] | None = None) -> int:
    """Run the ls-session command.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config) if args.config else SessionSettings()
    except ConfigurationError as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    if args.debug:
        settings.debug.enabled = True
    if args.log_level:
        settings.logging.level = args.log_level
    configure_logging(settings.logging.level, settings.logging.json)

    try:
        return asyncio.run(run(settings, resync=args.resync))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 130  # Standard exit code for SIGINT


if __name__ == "__main__":
    sys.exit(main())

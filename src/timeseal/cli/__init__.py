"""
Timeseal Command Line Interface

Modules:
- worklog: Work-log commands (derive, submit, retrieve, verify)
- markers: Reviewer hand-off commands (markers)
- session: Wallet and session commands (wallet, session)
- utils: Shared utilities
"""

import argparse
import sys

from .. import __version__
from .markers import register_marker_commands
from .session import register_session_commands
from .worklog import register_worklog_commands


def create_parser():
    """Create and configure the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="timeseal",
        description="Timeseal: encrypted work logs with threshold key release"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--config", "-c", help="Path to a JSON config file")
    parser.add_argument("--key", "-k", help="Wallet key file (default: <data_dir>/wallet.pem)")
    parser.add_argument("--password", "-p", help="Password for an encrypted wallet key")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Register all command groups
    register_worklog_commands(subparsers)
    register_marker_commands(subparsers)
    register_session_commands(subparsers)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    # Execute the command
    args.func(args)


__all__ = [
    'main',
    'create_parser',
    'register_worklog_commands',
    'register_marker_commands',
    'register_session_commands',
]

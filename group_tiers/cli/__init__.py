#!/usr/bin/env python3
"""
Group Tiers Management CLI

Usage:
    python -m group_tiers.cli <command> [options]

Commands:
    db      Database operations (init)
    phase   Phase operations (list, finalize, evaluate)
    policy  Operational policy (show)

Environment:
    DATABASE_URL    SQLAlchemy async connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from group_tiers import __version__
from group_tiers.cli.commands import DbCommand, PhaseCommand, PolicyCommand


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="group-tiers",
        description="Group Tiers Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s db init
  %(prog)s phase finalize
  %(prog)s phase evaluate --id 3f1c...
  %(prog)s policy show
        """
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_action")
    db_subparsers.add_parser("init", help="Create missing tables")

    # Phase commands
    phase_parser = subparsers.add_parser("phase", help="Phase operations")
    phase_subparsers = phase_parser.add_subparsers(dest="phase_action")
    phase_subparsers.add_parser("list", help="List phases")
    phase_subparsers.add_parser("finalize", help="Finalize every expired active phase")
    evaluate_parser = phase_subparsers.add_parser("evaluate", help="Recompute eligibility for a phase")
    evaluate_parser.add_argument("--id", "-i", required=True, help="Phase ID")

    # Policy commands
    policy_parser = subparsers.add_parser("policy", help="Operational policy")
    policy_subparsers = policy_parser.add_subparsers(dest="policy_action")
    policy_subparsers.add_parser("show", help="Show the effective policy")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    setup_logging(parsed.log_level)

    command_map = {
        "db": DbCommand,
        "phase": PhaseCommand,
        "policy": PolicyCommand,
    }

    if parsed.command in command_map:
        return command_map[parsed.command]().execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Stage Progression Maintenance CLI

Usage:
    python -m school_progression.cli <command> [options]

Commands:
    recalculate   Recompute progression for every school
    audit         Report schools whose progression disagrees with their round
    repair        Recompute every school the audit flags
    redeliver     Publish progression signals still waiting in the outbox

Environment:
    DATABASE_URL    Database connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
    PROGRESSION_SIGNAL_SUBSCRIBERS
                    Comma-separated module:callable signal subscribers
"""
import os
import sys
import argparse
import logging
from typing import Optional

from school_progression.cli.progression_commands import ProgressionCommand


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="progression",
        description="Stage Progression Maintenance CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s recalculate
  %(prog)s audit --format json
  %(prog)s repair --dry-run
  %(prog)s --subscriber certificates.signals:issue_certificate redeliver --limit 500
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 1.0.0"
    )

    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    parser.add_argument(
        "--database-url",
        help="Override DATABASE_URL"
    )

    parser.add_argument(
        "--subscriber",
        action="append",
        dest="subscribers",
        metavar="MODULE:CALLABLE",
        help="Signal subscriber to register (repeatable; adds to PROGRESSION_SIGNAL_SUBSCRIBERS)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("recalculate", help="Recompute progression for every school")

    audit_parser = subparsers.add_parser("audit", help="Audit round state")
    audit_parser.add_argument("--format", choices=["json", "text"], default="text", help="Output format")
    audit_parser.add_argument("--all", action="store_true", help="List logical schools too")

    subparsers.add_parser("repair", help="Recompute schools with illogical round state")

    redeliver_parser = subparsers.add_parser("redeliver", help="Publish pending progression signals")
    redeliver_parser.add_argument("--limit", type=int, default=100, help="Maximum signals to publish")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    # Setup logging
    setup_logging(parsed.log_level)

    subscribers = [path.strip() for path in os.getenv("PROGRESSION_SIGNAL_SUBSCRIBERS", "").split(",") if path.strip()]
    subscribers += parsed.subscribers or []

    handler = ProgressionCommand(
        dry_run=parsed.dry_run,
        database_url=parsed.database_url,
        subscribers=subscribers,
    )
    return handler.execute(parsed)


if __name__ == "__main__":
    sys.exit(main())

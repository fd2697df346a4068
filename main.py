#!/usr/bin/env python3
"""
Host Snapshot - collect a point-in-time inventory of this host through osquery
"""

import argparse
import json
import logging
import os
import sys
from typing import List

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from osquery_runner import LINUX, MACOS, WINDOWS, current_platform
from snapshot_collector import DEFAULT_INTERVAL, SnapshotCollector, collection_interval

console = Console()
err_console = Console(stderr=True)

_LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str) -> None:
    """Route log records through Rich on stderr."""
    logging.basicConfig(
        level=_LOG_LEVELS.get(level.lower(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    if level.lower() not in _LOG_LEVELS:
        logging.getLogger(__name__).warning("Unknown log level %r, using info", level)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number of seconds, got {number}")
    return number


def build_summary_table(fields: List[dict]) -> Table:
    """Build a Rich Table of snapshot summary fields."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Label", style="bold #E95420", no_wrap=True)
    table.add_column("Value", style="#ebdbb2")

    if not fields:
        table.add_row("[dim]No data available[/]", "")
        return table

    for f in fields:
        table.add_row(f["label"], f["value"])
    return table


def main(argv: List[str] = None):
    """Entry point"""
    parser = argparse.ArgumentParser(
        description="Collect a snapshot of this host's processes, sockets, users, "
                    "services, packages and hardware via osquery.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  host-snapshot                     # Summary table (cached for --interval seconds)
  host-snapshot --refresh --json    # Fresh snapshot as a JSON document
  host-snapshot --platform windows  # Use the Windows table set
        """,
    )
    parser.add_argument(
        "--platform",
        choices=(WINDOWS, LINUX, MACOS),
        default=None,
        help="Platform table set to query (default: this host)",
    )
    parser.add_argument(
        "--refresh", action="store_true", help="Ignore the cached snapshot"
    )
    parser.add_argument(
        "--json", action="store_true", help="Write the full snapshot as JSON to stdout"
    )
    parser.add_argument(
        "--interval",
        "-i",
        type=_positive_int,
        default=DEFAULT_INTERVAL,
        help="Seconds a cached snapshot stays fresh (AGENT_INTERVAL overrides)",
    )
    parser.add_argument(
        "--log-level",
        "-l",
        type=str.lower,
        choices=sorted(_LOG_LEVELS),
        default=os.environ.get("AGENT_LOG_LEVEL", "info"),
        help="Log level: trace, debug, info, warn, error (default: $AGENT_LOG_LEVEL or info)",
    )

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        collector = SnapshotCollector(
            platform_tag=args.platform or current_platform(),
            interval=collection_interval(args.interval),
        )
        snapshot = collector.load_or_collect(
            force_refresh=args.refresh,
            show_progress=not args.json,
        )
    except OSError as e:
        err_console.print(f"\n❌ Snapshot collection failed: {e}", style="bold red")
        sys.exit(1)

    if args.json:
        sys.stdout.write(json.dumps(snapshot.to_dict(), indent=2) + "\n")
        return

    if snapshot.is_empty():
        err_console.print(
            "⚠️  No data collected (osquery may not be installed or accessible)",
            style="yellow",
        )
    console.print(build_summary_table(collector.get_summary_fields()))


if __name__ == "__main__":
    main()

"""
spotwatch CLI

    spotwatch run [--date YYYYMMDD] [--area NAME] [--recrawl] [--verbose]
    spotwatch status
    spotwatch watchlist add|remove|list

Exit codes for `run`: 0 completed, 1 failed at a stage, 2 bad arguments,
3 another run holds the lock.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import Settings, get_run_date
from .pipeline.workflow import PipelineOrchestrator
from .store import ConfigStore, ManifestStore, Watchlist

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_ARGS = 2
EXIT_LOCKED = 3

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def setup_logging(settings: Settings, run_date: str, verbose: bool = False) -> logging.Handler:
    """Console logging plus a per-date log file under logs/."""
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)

    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = (settings.logs_dir / f"pipeline-{run_date}.log").resolve()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(log_path):
            return handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    return file_handler


def cmd_run(args, settings: Settings) -> int:
    try:
        run_date = get_run_date(args.date)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_BAD_ARGS

    handler = setup_logging(settings, run_date, verbose=args.verbose)
    try:
        orchestrator = PipelineOrchestrator(settings)
        run = asyncio.run(orchestrator.run(run_date=run_date, area=args.area, recrawl=args.recrawl))
    finally:
        logging.getLogger().removeHandler(handler)
        handler.close()

    if run is None:
        return EXIT_LOCKED
    if run.status.failed_stage is not None:
        return EXIT_FAILED
    return EXIT_OK


def cmd_status(args, settings: Settings) -> int:
    config = ConfigStore(settings.config_path).load()
    print("\nPipeline config:")
    for key, value in config.model_dump().items():
        print(f"  {key:30} {value}")

    manifests = ManifestStore(settings.runs_dir)
    run = manifests.load(config.last_run_id) if config.last_run_id else None
    if run is None:
        print("\nNo runs recorded.")
        return EXIT_OK

    print(f"\nLast run {run.run_id} ({run.run_date}, area {run.area or 'all'}): {run.status.value}")
    if run.resumed_from:
        print(f"  resumed from {run.resumed_from.value}")
    for record in run.stages:
        note = record.reason or record.error or ""
        print(f"  {record.stage.value:18} | {record.status.value:10} | "
              f"{record.started_at or '-':32} | {record.finished_at or '-':32} | {note}")
    return EXIT_OK


def cmd_watchlist(args, settings: Settings) -> int:
    watchlist = Watchlist(settings.watchlist_path)
    # bare `watchlist` lists entries
    if args.action == "add":
        entry = watchlist.add(args.venue_id, args.status, args.reason)
        print(f"✅ {entry.venue_id} -> {entry.status}")
    elif args.action == "remove":
        if not watchlist.remove(args.venue_id):
            print(f"Error: {args.venue_id} is not on the watchlist", file=sys.stderr)
            return EXIT_FAILED
        print(f"✅ Removed {args.venue_id}")
    else:
        entries = watchlist.load()
        print(f"\nFound {len(entries)} watchlist entr{'y' if len(entries) == 1 else 'ies'}:\n")
        for entry in entries:
            print(f"  {entry.venue_id:30} | {entry.status:8} | {entry.reason or ''}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spotwatch", description="Incremental venue promotion pipeline")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Execute one pipeline pass")
    run_parser.add_argument("--date", help="Logical run date (YYYYMMDD), default today")
    run_parser.add_argument("--area", help="Only process venues in this area")
    run_parser.add_argument("--recrawl", action="store_true", help="Rebuild today's snapshots from scratch")
    run_parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    subparsers.add_parser("status", help="Show the config record and last run manifest")

    watch_parser = subparsers.add_parser("watchlist", help="Manage excluded/flagged venues")
    watch_sub = watch_parser.add_subparsers(dest="action", help="Watchlist actions")
    add_parser = watch_sub.add_parser("add", help="Add or update a venue")
    add_parser.add_argument("venue_id", help="Venue ID")
    add_parser.add_argument("--status", choices=["excluded", "flagged"], default="excluded")
    add_parser.add_argument("--reason", default=None, help="Why the venue is listed")
    remove_parser = watch_sub.add_parser("remove", help="Remove a venue")
    remove_parser.add_argument("venue_id", help="Venue ID")
    watch_sub.add_parser("list", help="List entries")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI function."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_BAD_ARGS

    settings = Settings.from_env()
    if args.command == "run":
        return cmd_run(args, settings)
    if args.command == "status":
        return cmd_status(args, settings)
    return cmd_watchlist(args, settings)


if __name__ == "__main__":
    sys.exit(main())

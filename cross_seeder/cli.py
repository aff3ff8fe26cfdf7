"""
Command Line Interface for Cross-Seeder
Run the API server, trigger one-shot scans and inspect history and cache.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_DATA_PATH = "./data"
DEFAULT_DB_FILE = "cross_seed.db"


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _db_path(args) -> str:
    return args.db or os.path.join(args.data_path, DEFAULT_DB_FILE)


def _format_ts(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _add_storage_args(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--data-path", default=DEFAULT_DATA_PATH,
        help="Root of the database, cache and output folders"
    )
    parser.add_argument(
        "--db", help=f"SQLite database path (default: <data-path>/{DEFAULT_DB_FILE})"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Cross-Seeder - find and inject cross-seedable releases of completed torrents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the API server and scheduler
  cross-seeder serve --port 8080 --data-path /data

  # Dry-run scan of instance 1
  cross-seeder scan --instance 1 --dry-run

  # Show schedules
  cross-seeder status

  # Recently searched torrents
  cross-seeder history --instance 1 --limit 20

  # Remove cached torrents older than 14 days
  cross-seeder cache expire --instance 1 --max-age-days 14

Environment Variables:
  HOST                  - Server bind address (default: 0.0.0.0)
  PORT                  - Server port (default: 8080)
  DATA_PATH             - Data directory (default: ./data)
  API_KEY               - Shared secret required in X-Api-Key
  SCHEDULER_ENABLED     - Arm periodic scans on startup (default: true)
  LOG_LEVEL             - Logging level (default: INFO)
  LOG_FILE              - Log file path (enables rotation)
  LOG_FORMAT            - Log format: text or json (default: text)
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", "-H", default="0.0.0.0", help="Host to bind to"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8080, help="Port to listen on"
    )
    serve_parser.add_argument(
        "--data-path", "-d", default=DEFAULT_DATA_PATH, help="Data directory"
    )
    serve_parser.add_argument(
        "--log-level", "-l", default="INFO", help="Log level"
    )
    serve_parser.add_argument(
        "--log-file", help="Log file path (enables rotation)"
    )
    serve_parser.add_argument(
        "--log-format", choices=["text", "json"], default="text",
        help="Log format: text or json"
    )
    serve_parser.add_argument(
        "--no-scheduler", action="store_true",
        help="Do not arm periodic scans"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload (dev mode)"
    )

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Run one scan of an instance")
    _add_storage_args(scan_parser)
    scan_parser.add_argument(
        "--instance", "-i", type=int, required=True, help="Instance ID"
    )
    scan_parser.add_argument(
        "--user", "-u", type=int, help="Run as this user (default: instance owner)"
    )
    scan_parser.add_argument(
        "--force", "-f", action="store_true",
        help="Re-search torrents that were already searched"
    )
    scan_parser.add_argument(
        "--dry-run", action=argparse.BooleanOptionalAction, default=None,
        help="Override the configured dry-run flag"
    )
    scan_parser.add_argument(
        "--log-level", "-l", default="INFO", help="Log level"
    )

    # Status command
    status_parser = subparsers.add_parser("status", help="Show scan configurations")
    _add_storage_args(status_parser)

    # History command
    history_parser = subparsers.add_parser("history", help="Show searched torrents")
    _add_storage_args(history_parser)
    history_parser.add_argument(
        "--instance", "-i", type=int, required=True, help="Instance ID"
    )
    history_parser.add_argument(
        "--limit", "-n", type=int, default=50, help="Number of entries"
    )
    history_parser.add_argument(
        "--decisions", action="store_true", help="Also list candidate decisions"
    )

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Manage cached torrents")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command")

    cache_stats = cache_subparsers.add_parser("stats", help="Show cache statistics")
    cache_stats.add_argument("--data-path", default=DEFAULT_DATA_PATH, help="Data directory")
    cache_stats.add_argument("--instance", "-i", type=int, required=True, help="Instance ID")

    cache_clear = cache_subparsers.add_parser("clear", help="Delete cached and staged torrents")
    cache_clear.add_argument("--data-path", default=DEFAULT_DATA_PATH, help="Data directory")
    cache_clear.add_argument("--instance", "-i", type=int, required=True, help="Instance ID")

    cache_expire = cache_subparsers.add_parser("expire", help="Delete old cached torrents")
    cache_expire.add_argument("--data-path", default=DEFAULT_DATA_PATH, help="Data directory")
    cache_expire.add_argument("--instance", "-i", type=int, required=True, help="Instance ID")
    cache_expire.add_argument(
        "--max-age-days", type=float, default=30, help="Maximum age in days"
    )

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        run_server(args)
    elif args.command == "scan":
        asyncio.run(run_scan(args))
    elif args.command == "status":
        asyncio.run(run_status(args))
    elif args.command == "history":
        asyncio.run(run_history(args))
    elif args.command == "cache" and args.cache_command:
        asyncio.run(run_cache(args))
    else:
        parser.print_help()
        sys.exit(1)


def run_server(args):
    """Run the API server."""
    import uvicorn

    setup_logging(args.log_level)

    # Settings are read from the environment by the app factory
    os.environ["HOST"] = args.host
    os.environ["PORT"] = str(args.port)
    os.environ["DATA_PATH"] = args.data_path
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["SCHEDULER_ENABLED"] = "false" if args.no_scheduler else "true"
    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file

    logger.info(f"Starting cross-seeder on {args.host}:{args.port}")
    logger.info(f"Data path: {args.data_path}")

    uvicorn.run(
        "cross_seeder.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


async def run_scan(args):
    """Run one scan and print its result."""
    from .cache import TorrentCache
    from .orchestrator import CrossSeedOrchestrator
    from .persistence import PersistenceManager

    setup_logging(args.log_level)

    db_path = _db_path(args)
    if not os.path.exists(db_path):
        print(f"Database not found: {db_path}")
        sys.exit(1)

    pm = PersistenceManager(db_path)
    await pm.initialize()

    try:
        user_id = args.user
        if user_id is None:
            instance = await pm.get_instance(args.instance)
            if instance is None:
                print(f"Instance not found: {args.instance}")
                sys.exit(1)
            user_id = instance.user_id

        orchestrator = CrossSeedOrchestrator(pm, TorrentCache(args.data_path))
        result = await orchestrator.scan(
            args.instance, user_id, force=args.force, dry_run_override=args.dry_run
        )
        print(json.dumps(result.to_dict(), indent=2))
        if result.errors:
            sys.exit(2)
    finally:
        await pm.close()


async def run_status(args):
    """Show scan configurations."""
    from .persistence import PersistenceManager

    db_path = _db_path(args)
    if not os.path.exists(db_path):
        print(f"Database not found: {db_path}")
        sys.exit(1)

    pm = PersistenceManager(db_path)
    await pm.initialize()

    try:
        configs = await pm.list_scan_configs()
        if not configs:
            print("No instances configured for cross-seeding.")
            return

        print(f"\n=== Cross-Seed Configurations ({len(configs)}) ===")
        print(f"{'Instance':<10} {'Label':<20} {'Enabled':<8} {'Every':<7} {'Dry Run':<8} {'Last Run':<20} {'Next Run':<20}")
        print("-" * 97)
        for config in configs:
            instance = await pm.get_instance(config.instance_id)
            label = instance.label if instance else "?"
            label = label[:17] + "..." if len(label) > 20 else label
            print(
                f"{config.instance_id:<10} {label:<20} {str(config.enabled):<8} "
                f"{str(config.interval_hours) + 'h':<7} {str(config.dry_run):<8} "
                f"{_format_ts(config.last_run):<20} {_format_ts(config.next_run):<20}"
            )
    finally:
        await pm.close()


async def run_history(args):
    """Show searched torrents of an instance."""
    from .persistence import PersistenceManager

    db_path = _db_path(args)
    if not os.path.exists(db_path):
        print(f"Database not found: {db_path}")
        sys.exit(1)

    pm = PersistenceManager(db_path)
    await pm.initialize()

    try:
        searchees = await pm.list_searchees(args.instance, limit=args.limit)
        total = await pm.count_searchees(args.instance)
        if not searchees:
            print("No search history.")
            return

        print(f"\nSearch History ({len(searchees)} of {total}):\n")
        print(f"{'ID':<6} {'Name':<40} {'Files':<6} {'Decisions':<10} {'Last Searched':<20}")
        print("-" * 86)
        for s in searchees:
            name = s.name[:37] + "..." if len(s.name) > 40 else s.name
            print(f"{s.id:<6} {name:<40} {s.file_count:<6} {s.decision_count:<10} {_format_ts(s.last_searched):<20}")
            if args.decisions:
                for d in await pm.list_decisions(s.id):
                    print(f"         {d.decision.value:<20} {d.candidate_name}")
    finally:
        await pm.close()


async def run_cache(args):
    """Manage cached and staged torrents."""
    from .cache import TorrentCache

    cache = TorrentCache(args.data_path)

    if args.cache_command == "stats":
        stats = await cache.stats(args.instance)
        output = await cache.output_stats(args.instance)
        print(f"Cache:  {stats.count} torrents, {stats.total_size_bytes / 1024:.1f} KiB")
        print(f"Output: {output.count} torrents")
        for name in output.files:
            print(f"  {name}")

    elif args.cache_command == "clear":
        cleared = await cache.clear(args.instance)
        staged = await cache.clear_output(args.instance)
        print(f"Cleared {cleared} cached and {staged} staged torrents.")

    elif args.cache_command == "expire":
        deleted = await cache.expire(args.instance, args.max_age_days)
        print(f"Deleted {deleted} cached torrents older than {args.max_age_days:g} days.")


if __name__ == "__main__":
    main()

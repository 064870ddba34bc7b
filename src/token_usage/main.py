"""Command line entry point for the token usage service.

Usage:
    # Run the HTTP API (and the aggregation scheduler when enabled)
    token-usage serve

    # Merge a span of raw events into buckets
    token-usage aggregate --from 2024-01-15T00:00:00 --to 2024-01-16T00:00:00

    # Merge everything since the last run up to the current hour
    token-usage aggregate

    # Recompute one access key's buckets from raw events
    token-usage rebuild --dimension-type access_key --dimension-id ak_1 \\
        --start 2024-01-01 --end 2024-01-31T23:59:59

    # Delete buckets older than the retention period (or a given cutoff)
    token-usage cleanup [--before 2023-01-01]
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime

import uvicorn
from dotenv import load_dotenv
from pydantic import BaseModel

from token_usage.aggregation import get_aggregation_service
from token_usage.config import get_settings
from token_usage.db import close_database, init_database
from token_usage.events import DimensionType

logger = logging.getLogger(__name__)

LOG_FORMATS = {
    "json": (
        '{"time": "%(asctime)s", "level": "%(levelname)s", '
        '"logger": "%(name)s", "message": "%(message)s"}'
    ),
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def setup_logging() -> None:
    """Send log records to stdout in the configured format and level."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format=LOG_FORMATS[settings.log_format],
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def serve() -> None:
    """Run the HTTP API until interrupted."""
    settings = get_settings()

    from token_usage.telemetry import setup_telemetry, shutdown_telemetry

    setup_telemetry()
    logger.info(
        "Serving %s on %s:%d (scheduler=%s, otel=%s)",
        settings.service_name,
        settings.service_host,
        settings.service_port,
        settings.aggregation_scheduler_enabled,
        settings.otel_enabled,
    )

    from token_usage.api.app import create_app

    try:
        uvicorn.run(
            create_app(),
            host=settings.service_host,
            port=settings.service_port,
            log_level=settings.log_level.lower(),
        )
    finally:
        shutdown_telemetry()


async def aggregate(from_time: datetime | None, to_time: datetime | None) -> BaseModel:
    """Merge ``[from_time, to_time)``, or every pending span when both are None."""
    service = get_aggregation_service()
    if from_time is None:
        return await service.run_pending_aggregation()
    return await service.perform_incremental_aggregation(from_time, to_time)


async def rebuild(
    dimension_type: DimensionType, dimension_id: str, start: datetime, end: datetime
) -> BaseModel:
    """Recompute one dimension value's buckets in ``[start, end]``."""
    return await get_aggregation_service().rebuild_aggregate_data(
        dimension_type, dimension_id, start, end
    )


async def cleanup(before: datetime | None) -> int:
    """Delete expired buckets; the configured retention applies without a cutoff."""
    service = get_aggregation_service()
    if before is None:
        return await service.cleanup_by_retention()
    return await service.cleanup_expired_data(before)


async def run_command(args: argparse.Namespace) -> bool:
    """Run a maintenance command against the usage store and print its outcome.

    Returns:
        Whether the command succeeded.
    """
    await init_database()
    try:
        if args.command == "aggregate":
            result = await aggregate(args.from_time, args.to_time)
        elif args.command == "rebuild":
            result = await rebuild(args.dimension_type, args.dimension_id, args.start, args.end)
        else:
            deleted = await cleanup(args.before)
            print(f"Deleted {deleted} expired buckets")
            return True
    finally:
        await close_database()

    print(result.model_dump_json(indent=2))
    return result.success


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="token-usage",
        description="Token usage metering service and bucket maintenance.",
        epilog=(
            "Environment variables:\n"
            "  DATABASE_URL    Database connection string\n"
            "  LOG_LEVEL       Logging level (default: INFO)\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.set_defaults(command="serve")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the HTTP API (default)")

    aggregate_parser = subparsers.add_parser(
        "aggregate", help="Merge raw events into hour/day/month buckets"
    )
    aggregate_parser.add_argument(
        "--from",
        dest="from_time",
        type=datetime.fromisoformat,
        help="Inclusive span start, ISO 8601 UTC (default: oldest watermark)",
    )
    aggregate_parser.add_argument(
        "--to",
        dest="to_time",
        type=datetime.fromisoformat,
        help="Exclusive span end, ISO 8601 UTC (default: current hour)",
    )

    rebuild_parser = subparsers.add_parser(
        "rebuild", help="Recompute one dimension value's buckets from raw events"
    )
    rebuild_parser.add_argument(
        "--dimension-type",
        type=DimensionType,
        default=DimensionType.ACCESS_KEY,
        help="Dimension type (default: access_key)",
    )
    rebuild_parser.add_argument("--dimension-id", required=True, help="Dimension ID")
    rebuild_parser.add_argument(
        "--start", type=datetime.fromisoformat, required=True, help="Inclusive range start"
    )
    rebuild_parser.add_argument(
        "--end", type=datetime.fromisoformat, required=True, help="Inclusive range end"
    )

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete expired buckets")
    cleanup_parser.add_argument(
        "--before",
        type=datetime.fromisoformat,
        help="Delete buckets whose period ended before this instant (default: retention)",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "aggregate" and (args.from_time is None) != (args.to_time is None):
        parser.error("--from and --to must be given together")

    load_dotenv()
    setup_logging()

    if args.command == "serve":
        serve()
    elif not asyncio.run(run_command(args)):
        sys.exit(1)


if __name__ == "__main__":
    main()

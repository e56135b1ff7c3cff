"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys

from cronarchive.clock import SystemClock
from cronarchive.config import STATE_DB, Config, config
from cronarchive.errors import CronArchiveError
from cronarchive.fetch.client import ReportEngineClient
from cronarchive.fetch.executor import RequestExecutor
from cronarchive.jobs.metrics import RunSummary
from cronarchive.jobs.runner import ArchiveScheduler
from cronarchive.logging_conf import setup_logging
from cronarchive.model.records import ArchiveFilter
from cronarchive.store.archives import ArchiveRecordStore
from cronarchive.store.catalog import SegmentCatalog, SiteCatalog
from cronarchive.store.queue import InvalidationQueue
from cronarchive.store.state import StateDB

logger = logging.getLogger(__name__)


def _int_list(value: str) -> list[int]:
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected comma separated site ids, got {value!r}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Archive invalidated analytics reports")

    # Site selection
    parser.add_argument(
        "--force-idsites",
        type=_int_list,
        default=None,
        help="Comma separated list of site ids to process (default: all sites)",
    )
    parser.add_argument(
        "--sites-with-recent-visits",
        action="store_true",
        help="Only process sites that received visits since yesterday",
    )

    # Archive filter
    parser.add_argument(
        "--skip-segments-today",
        action="store_true",
        help="Skip segment archiving for today unless the segment was created or changed recently",
    )
    parser.add_argument(
        "--force-idsegments",
        action="append",
        default=[],
        metavar="DEFINITION",
        help="Only archive these segment definitions (repeatable)",
    )

    # Performance and run control
    parser.add_argument(
        "--concurrent-requests",
        type=int,
        default=None,
        help=f"Archiving requests run in parallel (default: {config.CONCURRENCY})",
    )
    parser.add_argument(
        "--today-ttl",
        type=int,
        default=None,
        help=f"Seconds an archive for today stays fresh (default: {config.TODAY_ARCHIVE_TTL})",
    )
    parser.add_argument(
        "--stop-after-minutes",
        type=float,
        default=None,
        help="Stop gracefully after M minutes",
    )
    parser.add_argument(
        "--max-consecutive-errors",
        type=int,
        default=None,
        help="Abort after N consecutive failed archiving requests",
    )

    return parser.parse_args(argv)


async def run_archiver(args: argparse.Namespace) -> RunSummary:
    """Wire the stores, the engine client and the scheduler, then run."""
    await StateDB(STATE_DB).initialize()

    clock = SystemClock()
    archive_filter = ArchiveFilter(
        skip_segments_for_today=args.skip_segments_today,
        forced_segments=frozenset(args.force_idsegments),
    )

    async with ReportEngineClient() as engine:
        scheduler = ArchiveScheduler(
            queue=InvalidationQueue(STATE_DB, clock),
            archives=ArchiveRecordStore(STATE_DB),
            sites=SiteCatalog(STATE_DB),
            segments=SegmentCatalog(STATE_DB),
            engine=engine,
            executor=RequestExecutor(engine, config.CONCURRENCY),
            clock=clock,
            archive_filter=archive_filter,
            site_ids=args.force_idsites,
            sites_with_recent_visits=args.sites_with_recent_visits,
            stop_after_minutes=args.stop_after_minutes,
            max_consecutive_errors=args.max_consecutive_errors,
            today_ttl=args.today_ttl,
        )
        return await scheduler.run()


def main() -> None:
    """Main entry point."""
    setup_logging()
    args = parse_args()

    # Override config from args
    if args.concurrent_requests is not None:
        Config.CONCURRENCY = args.concurrent_requests

    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        asyncio.run(run_archiver(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except CronArchiveError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Utility script to inspect and seed the state database."""
import asyncio
import sys
from datetime import date, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from cronarchive.clock import SystemClock
from cronarchive.config import STATE_DB
from cronarchive.model.records import Segment, Site
from cronarchive.store.catalog import SegmentCatalog, SiteCatalog
from cronarchive.store.queue import InvalidationQueue
from cronarchive.store.state import StateDB


async def show_stats() -> None:
    """Show queue statistics and remembered dates."""
    queue = InvalidationQueue(STATE_DB)
    by_status = await queue.stats()
    remembered = await queue.remembered_by_date()

    print(f"State database: {STATE_DB}")
    print(f"Invalidations by status: {by_status}")
    if remembered:
        for day in sorted(remembered):
            print(f"Remembered {day.isoformat()}: sites {sorted(remembered[day])}")
    else:
        print("Remembered dates: (none)")


async def purge_done(days: int) -> None:
    """Delete done invalidations enqueued more than ``days`` days ago."""
    clock = SystemClock()
    deleted = await InvalidationQueue(STATE_DB, clock).purge_done(clock.now() - timedelta(days=days))
    print(f"Deleted {deleted} done invalidations older than {days} days")


async def remember(site_id: int, day: date) -> None:
    """Ask the next run to invalidate every period containing ``day``."""
    await InvalidationQueue(STATE_DB).remember_later(site_id, day)
    print(f"Site {site_id} will invalidate reports for {day.isoformat()} on the next run")


async def add_site(site_id: int, timezone: str) -> None:
    await SiteCatalog(STATE_DB).add_site(Site(id=site_id, timezone=timezone))
    print(f"Registered site {site_id} ({timezone})")


async def add_segment(definition: str, site_id: int | None) -> None:
    segment = Segment(definition=definition, site_id=site_id, created_at=SystemClock().now())
    segment_id = await SegmentCatalog(STATE_DB).add_segment(segment)
    scope = f"site {site_id}" if site_id is not None else "all sites"
    print(f"Registered segment {segment_id} '{definition}' for {scope}")


async def touch_segment(segment_id: int) -> None:
    """Record an edit of the segment now, so the next run archives it for today."""
    await SegmentCatalog(STATE_DB).update_segment(segment_id, last_changed_at=SystemClock().now())
    print(f"Segment {segment_id} marked as changed")


async def set_auto_archive(segment_id: int, enabled: bool) -> None:
    await SegmentCatalog(STATE_DB).update_segment(segment_id, auto_archive=enabled)
    print(f"Segment {segment_id} auto archiving {'enabled' if enabled else 'disabled'}")


async def delete_segment(segment_id: int) -> None:
    await SegmentCatalog(STATE_DB).delete_segment(segment_id)
    print(f"Segment {segment_id} deleted")


def usage() -> None:
    print("Usage:")
    print("  python scripts/queue_state.py stats                         # Show statistics")
    print("  python scripts/queue_state.py purge-done <days>             # Delete old done invalidations")
    print("  python scripts/queue_state.py remember <idsite> <date>      # Invalidate a date on next run")
    print("  python scripts/queue_state.py add-site <idsite> [timezone]  # Register a site")
    print("  python scripts/queue_state.py add-segment <definition> [idsite]")
    print("  python scripts/queue_state.py touch-segment <idsegment>     # Mark a segment as just edited")
    print("  python scripts/queue_state.py auto-archive <idsegment> on|off")
    print("  python scripts/queue_state.py delete-segment <idsegment>")


async def run(command: str, args: list[str]) -> None:
    await StateDB(STATE_DB).initialize()

    if command == "stats":
        await show_stats()
    elif command == "purge-done" and len(args) == 1:
        await purge_done(int(args[0]))
    elif command == "remember" and len(args) == 2:
        await remember(int(args[0]), date.fromisoformat(args[1]))
    elif command == "add-site" and len(args) in (1, 2):
        await add_site(int(args[0]), args[1] if len(args) == 2 else "UTC")
    elif command == "add-segment" and len(args) in (1, 2):
        await add_segment(args[0], int(args[1]) if len(args) == 2 else None)
    elif command == "touch-segment" and len(args) == 1:
        await touch_segment(int(args[0]))
    elif command == "auto-archive" and len(args) == 2 and args[1] in ("on", "off"):
        await set_auto_archive(int(args[0]), args[1] == "on")
    elif command == "delete-segment" and len(args) == 1:
        await delete_segment(int(args[0]))
    else:
        usage()
        sys.exit(1)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        usage()
        sys.exit(1)

    asyncio.run(run(sys.argv[1], sys.argv[2:]))

"""Sites and segments known to the archiver."""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from cronarchive.config import STATE_DB
from cronarchive.errors import SiteNotFoundError
from cronarchive.model.records import Segment, Site
from cronarchive.store.state import connect, to_datetime, to_text

logger = logging.getLogger(__name__)


class SiteCatalog:
    """Read access to sites, plus the writes used to register them."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def add_site(self, site: Site) -> None:
        async with connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO sites (id, name, timezone) VALUES (?, ?, ?)",
                (site.id, site.name, site.timezone),
            )
            await db.commit()

    async def get_site(self, site_id: int) -> Site:
        async with connect(self.db_path) as db:
            cursor = await db.execute("SELECT id, name, timezone FROM sites WHERE id = ?", (site_id,))
            row = await cursor.fetchone()
        if row is None:
            raise SiteNotFoundError(f"Site {site_id} does not exist")
        return Site(id=row["id"], name=row["name"], timezone=row["timezone"])

    async def all_site_ids(self) -> list[int]:
        async with connect(self.db_path) as db:
            cursor = await db.execute("SELECT id FROM sites ORDER BY id")
            return [row["id"] for row in await cursor.fetchall()]


class SegmentCatalog:
    """Stored segment definitions."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def add_segment(self, segment: Segment) -> int:
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO segments (definition, site_id, created_at, last_changed_at, auto_archive)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    segment.definition,
                    segment.site_id,
                    to_text(segment.created_at),
                    to_text(segment.last_changed_at) if segment.last_changed_at else None,
                    int(segment.auto_archive),
                ),
            )
            await db.commit()
            return cursor.lastrowid

    async def update_segment(
        self,
        segment_id: int,
        last_changed_at: Optional[datetime] = None,
        auto_archive: Optional[bool] = None,
    ) -> None:
        """Update the given fields of a segment."""
        updates = {}
        if last_changed_at is not None:
            updates["last_changed_at"] = to_text(last_changed_at)
        if auto_archive is not None:
            updates["auto_archive"] = int(auto_archive)
        if not updates:
            return

        assignments = ", ".join(f"{column} = ?" for column in updates)
        async with connect(self.db_path) as db:
            await db.execute(
                f"UPDATE segments SET {assignments} WHERE id = ?",
                (*updates.values(), segment_id),
            )
            await db.commit()

    async def delete_segment(self, segment_id: int) -> None:
        async with connect(self.db_path) as db:
            await db.execute("UPDATE segments SET deleted = 1 WHERE id = ?", (segment_id,))
            await db.commit()

    async def active_segments(self, site_id: int) -> list[Segment]:
        """Auto-archived segments for the site, including all-sites segments."""
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT definition, site_id, created_at, last_changed_at, auto_archive
                FROM segments
                WHERE deleted = 0 AND auto_archive = 1 AND (site_id IS NULL OR site_id = ?)
                ORDER BY id
                """,
                (site_id,),
            )
            rows = await cursor.fetchall()

        segments = {}
        for row in rows:
            # Same definition stored twice (site + all sites) archives once
            segments.setdefault(
                row["definition"],
                Segment(
                    definition=row["definition"],
                    site_id=row["site_id"],
                    created_at=to_datetime(row["created_at"]),
                    last_changed_at=to_datetime(row["last_changed_at"]),
                    auto_archive=bool(row["auto_archive"]),
                ),
            )
        return list(segments.values())

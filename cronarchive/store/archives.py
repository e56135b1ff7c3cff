"""Append-only log of archive metadata."""
import logging
from datetime import date
from pathlib import Path
from typing import Optional

from cronarchive.config import STATE_DB
from cronarchive.model.period import Period
from cronarchive.model.records import ArchiveRecord, ArchiveStatus
from cronarchive.store.state import connect, to_datetime, to_text

logger = logging.getLogger(__name__)


class ArchiveRecordStore:
    """Archive rows per (site, period, segment); the newest usable row wins."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def read(self, site_id: int, period: Period, segment: Optional[str] = None) -> Optional[ArchiveRecord]:
        """Most recent OK or INVALIDATED record for the key. ERROR rows are never returned."""
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT site_id, period, date1, date2, segment, status, computed_at
                FROM archives
                WHERE site_id = ? AND period = ? AND date1 = ? AND date2 = ? AND segment = ?
                  AND status IN ('ok', 'invalidated')
                ORDER BY id DESC LIMIT 1
                """,
                (site_id, period.kind.value, to_text(period.date1), to_text(period.date2), segment or ""),
            )
            row = await cursor.fetchone()

        if row is None:
            return None
        return ArchiveRecord(
            site_id=row["site_id"],
            period=Period(
                kind=row["period"],
                date1=date.fromisoformat(row["date1"]),
                date2=date.fromisoformat(row["date2"]),
            ),
            segment=row["segment"] or None,
            status=ArchiveStatus(row["status"]),
            computed_at=to_datetime(row["computed_at"]),
        )

    async def write(self, record: ArchiveRecord) -> None:
        """Append a record."""
        async with connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO archives (site_id, period, date1, date2, segment, status, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.site_id,
                    record.period.kind.value,
                    to_text(record.period.date1),
                    to_text(record.period.date2),
                    record.segment or "",
                    record.status.value,
                    to_text(record.computed_at),
                ),
            )
            await db.commit()

    async def mark_invalidated(self, site_id: int, period: Period, segment: Optional[str] = None) -> bool:
        """Append an INVALIDATED copy of the latest record, keeping its computed_at.

        Returns False when there is nothing to invalidate.
        """
        latest = await self.read(site_id, period, segment)
        if latest is None or latest.status is ArchiveStatus.INVALIDATED:
            return False
        await self.write(latest.model_copy(update={"status": ArchiveStatus.INVALIDATED}))
        return True

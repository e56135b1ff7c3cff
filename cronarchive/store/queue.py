"""Durable invalidation queue backed by SQLite."""
import logging
import uuid
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from cronarchive.clock import Clock, SystemClock
from cronarchive.config import STATE_DB, config
from cronarchive.model.period import Period
from cronarchive.model.records import Invalidation, InvalidationStatus
from cronarchive.store.state import connect, to_datetime, to_text

logger = logging.getLogger(__name__)

_COLUMNS = "id, site_id, period, date1, date2, segment, status, retries, enqueued_at, claimed_at, claimed_by"


class InvalidationQueue:
    """Pending (re)archiving requests, one pending row per (site, period, segment).

    Claims are a conditional pending -> processing UPDATE, so two runs
    sharing the database never dispatch the same row. Every claim carries
    the queue's ``claim_token``; releasing or resolving only touches rows
    still held under the token that claimed them.
    """

    def __init__(
        self,
        db_path: Path = STATE_DB,
        clock: Optional[Clock] = None,
        max_retries: Optional[int] = None,
        claim_token: Optional[str] = None,
    ):
        self.db_path = db_path
        self.clock = clock or SystemClock()
        self.max_retries = max_retries if max_retries is not None else config.MAX_RETRIES
        self.claim_token = claim_token or uuid.uuid4().hex

    async def enqueue(self, site_id: int, period: Period, segment: Optional[str] = None) -> bool:
        """Add a pending entry. Returns False if an equivalent one is already pending."""
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO invalidations
                    (site_id, period, date1, date2, segment, status, retries, enqueued_at)
                VALUES (?, ?, ?, ?, ?, 'pending', 0, ?)
                """,
                (
                    site_id,
                    period.kind.value,
                    to_text(period.date1),
                    to_text(period.date2),
                    segment or "",
                    to_text(self.clock.now()),
                ),
            )
            await db.commit()
            inserted = cursor.rowcount == 1

        if not inserted:
            logger.debug(f"Invalidation already pending for site {site_id}, {period}, segment '{segment or ''}'")
        return inserted

    async def remember_later(self, site_id: int, day: date) -> None:
        """Record that every period covering ``day`` must be re-evaluated for the site."""
        async with connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO remembered_dates (site_id, date, remembered_at)
                VALUES (?, ?, ?)
                """,
                (site_id, to_text(day), to_text(self.clock.now())),
            )
            await db.commit()

    async def remembered_by_date(self) -> dict[date, list[int]]:
        """All remembered dates with the sites waiting on each."""
        async with connect(self.db_path) as db:
            cursor = await db.execute("SELECT site_id, date FROM remembered_dates")
            rows = await cursor.fetchall()

        grouped: dict[date, list[int]] = defaultdict(list)
        for row in rows:
            grouped[date.fromisoformat(row["date"])].append(row["site_id"])
        return dict(grouped)

    async def remembered_for(self, site_id: int) -> list[date]:
        """The site's remembered dates, newest first."""
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT date FROM remembered_dates WHERE site_id = ? ORDER BY date DESC",
                (site_id,),
            )
            return [date.fromisoformat(row["date"]) for row in await cursor.fetchall()]

    async def forget_remembered(self, site_id: int, day: date) -> None:
        """Drop a remembered date once its invalidations are queued."""
        async with connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM remembered_dates WHERE site_id = ? AND date = ?",
                (site_id, to_text(day)),
            )
            await db.commit()

    async def next_for(self, site_id: int) -> Optional[Invalidation]:
        """Claim the oldest pending entry of the site, or None when exhausted."""
        async with connect(self.db_path) as db:
            while True:
                # Take the write lock up front so concurrent claimers queue on the busy timeout
                await db.execute("BEGIN IMMEDIATE")
                cursor = await db.execute(
                    f"""
                    SELECT {_COLUMNS} FROM invalidations
                    WHERE site_id = ? AND status = 'pending'
                    ORDER BY id LIMIT 1
                    """,
                    (site_id,),
                )
                row = await cursor.fetchone()
                await cursor.close()
                if row is None:
                    await db.commit()
                    return None

                claimed_at = self.clock.now()
                cursor = await db.execute(
                    """
                    UPDATE invalidations SET status = 'processing', claimed_at = ?, claimed_by = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (to_text(claimed_at), self.claim_token, row["id"]),
                )
                await db.commit()
                if cursor.rowcount == 1:
                    invalidation = _to_invalidation(row)
                    return invalidation.model_copy(
                        update={
                            "status": InvalidationStatus.PROCESSING,
                            "claimed_at": claimed_at,
                            "claimed_by": self.claim_token,
                        }
                    )
                # Claimed by a concurrent run, try the next one
                logger.debug(f"Invalidation {row['id']} was claimed concurrently")

    async def resolve(self, invalidation: Invalidation, success: bool) -> None:
        """Mark done on success; on failure put it back to pending until retries run out."""
        if success:
            await self._set_done(invalidation)
            return

        retries = invalidation.retries + 1
        if retries >= self.max_retries:
            logger.warning(f"Giving up on invalidation {invalidation} after {retries} failed attempts")
            await self._set_done(invalidation, retries=retries)
            return
        await self._back_to_pending(invalidation, retries)

    async def release(self, invalidation: Invalidation) -> None:
        """Return a claimed entry to pending without counting a retry."""
        await self._back_to_pending(invalidation, invalidation.retries)

    async def release_stale(self, older_than: datetime) -> int:
        """Return entries claimed before ``older_than`` (crashed runs) to pending.

        The crashed run's token no longer matches afterwards, so a late
        release or resolve from that run is ignored.
        """
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                SELECT {_COLUMNS} FROM invalidations
                WHERE status = 'processing' AND claimed_at < ?
                """,
                (to_text(older_than),),
            )
            stale = [_to_invalidation(row) for row in await cursor.fetchall()]

        for invalidation in stale:
            await self._back_to_pending(invalidation, invalidation.retries)
        if stale:
            logger.info(f"Released {len(stale)} stale invalidations claimed before {older_than.isoformat()}")
        return len(stale)

    async def pending(self, site_id: Optional[int] = None) -> list[Invalidation]:
        """Pending entries in enqueue order."""
        query = f"SELECT {_COLUMNS} FROM invalidations WHERE status = 'pending'"
        params: tuple = ()
        if site_id is not None:
            query += " AND site_id = ?"
            params = (site_id,)
        query += " ORDER BY id"

        async with connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            return [_to_invalidation(row) for row in await cursor.fetchall()]

    async def stats(self) -> dict[str, int]:
        """Count of entries per status."""
        async with connect(self.db_path) as db:
            cursor = await db.execute("SELECT status, COUNT(*) FROM invalidations GROUP BY status")
            return {row[0]: row[1] for row in await cursor.fetchall()}

    async def purge_done(self, before: datetime) -> int:
        """Delete done entries enqueued before ``before``."""
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM invalidations WHERE status = 'done' AND enqueued_at < ?",
                (to_text(before),),
            )
            await db.commit()
            return cursor.rowcount

    async def _set_done(self, invalidation: Invalidation, retries: Optional[int] = None) -> None:
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE invalidations SET status = 'done', retries = ?
                WHERE id = ? AND status = 'processing' AND claimed_by = ?
                """,
                (
                    retries if retries is not None else invalidation.retries,
                    invalidation.id,
                    invalidation.claimed_by,
                ),
            )
            await db.commit()
        if cursor.rowcount == 0:
            logger.warning(f"Invalidation {invalidation} is no longer claimed by this run, leaving it as is")

    async def _back_to_pending(self, invalidation: Invalidation, retries: int) -> None:
        claim = (invalidation.id, invalidation.claimed_by)
        async with connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE OR IGNORE invalidations
                SET status = 'pending', retries = ?, claimed_at = NULL, claimed_by = NULL
                WHERE id = ? AND status = 'processing' AND claimed_by = ?
                """,
                (retries, *claim),
            )
            if cursor.rowcount == 0:
                # An equivalent entry was enqueued while this one was claimed
                await db.execute(
                    """
                    UPDATE invalidations SET status = 'done'
                    WHERE id = ? AND status = 'processing' AND claimed_by = ?
                    """,
                    claim,
                )
            await db.commit()


def _to_invalidation(row) -> Invalidation:
    return Invalidation(
        id=row["id"],
        site_id=row["site_id"],
        period=Period(
            kind=row["period"],
            date1=date.fromisoformat(row["date1"]),
            date2=date.fromisoformat(row["date2"]),
        ),
        segment=row["segment"] or None,
        status=InvalidationStatus(row["status"]),
        retries=row["retries"],
        enqueued_at=to_datetime(row["enqueued_at"]),
        claimed_at=to_datetime(row["claimed_at"]),
        claimed_by=row["claimed_by"],
    )

"""Turns data-change signals into queued invalidations."""
import logging
from datetime import timedelta
from typing import Iterable, Optional

from cronarchive.clock import Clock, SystemClock
from cronarchive.jobs.validity import PeriodValidityEvaluator
from cronarchive.model.period import Period
from cronarchive.model.records import ArchiveParams, Segment, Site
from cronarchive.ports import ArchiveStore, ReportEngine
from cronarchive.store.queue import InvalidationQueue

logger = logging.getLogger(__name__)


async def probe_visits(engine: ReportEngine, site_id: int, period: Period) -> Optional[int]:
    """Visit count for the period, or None if the probe failed.

    Callers treat None as "has visits" so that work is never dropped on a
    failed probe.
    """
    try:
        return await engine.probe_visits(site_id, period)
    except Exception as e:
        logger.warning(f"Visit probe failed for idSite = {site_id}, period = {period}: {e}")
        return None


class Invalidator:
    """Enqueues invalidations for the all-visits archive and every segment."""

    def __init__(
        self,
        queue: InvalidationQueue,
        archives: ArchiveStore,
        engine: ReportEngine,
        evaluator: PeriodValidityEvaluator,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.archives = archives
        self.engine = engine
        self.evaluator = evaluator
        self.clock = clock or SystemClock()

    async def invalidate(self, site_id: int, periods: Iterable[Period], segments: Iterable[Segment]) -> int:
        """Invalidate each period for all visits plus each segment. Returns entries added."""
        definitions = [None] + [segment.definition for segment in segments]
        added = 0
        for period in periods:
            for definition in definitions:
                await self.archives.mark_invalidated(site_id, period, definition)
                if await self.queue.enqueue(site_id, period, definition):
                    added += 1
        return added

    async def apply_remembered(self, site: Site, segments: list[Segment]) -> int:
        """Materialize the site's "invalidate later" dates into queue entries.

        A date is forgotten only after all of its entries are enqueued, so a
        failure part way leaves it remembered for the next run.
        """
        added = 0
        for day in await self.queue.remembered_for(site.id):
            logger.info(f"  Will invalidate archived reports for {day.isoformat()} for following websites ids: {site.id}")
            added += await self.invalidate(site.id, Period.covering(day), segments)
            await self.queue.forget_remembered(site.id, day)
        return added

    async def invalidate_recent_date(self, date_label: str, site: Site, segments: list[Segment]) -> int:
        """Invalidate the day period for 'today' or 'yesterday' unless it can be skipped."""
        if date_label not in ("today", "yesterday"):
            raise ValueError(f"Unsupported recent date {date_label!r}")

        today = site.local_date(self.clock.now())
        day = today if date_label == "today" else today - timedelta(days=1)
        period = Period.build("day", day)
        name = date_label.capitalize()

        visits = await probe_visits(self.engine, site.id, period)
        if visits == 0:
            logger.info(f"  {name} archive can be skipped due to no visits for idSite = {site.id}, skipping invalidation...")
            return 0

        params = ArchiveParams(site=site, period=period)
        if await self.evaluator.is_valid(params, is_yesterday=date_label == "yesterday"):
            logger.info(f"  Found existing valid archive for {date_label}, skipping invalidation...")
            return 0

        logger.info(
            f"  Will invalidate archived reports for {date_label} in site ID = {site.id}'s timezone ({day.isoformat()})."
        )
        return await self.invalidate(site.id, [period], segments)

"""Decides whether an existing archive can be reused."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from cronarchive.clock import Clock, SystemClock
from cronarchive.config import config
from cronarchive.model.records import ArchiveParams, ArchiveRecord, ArchiveStatus
from cronarchive.ports import ArchiveStore

logger = logging.getLogger(__name__)


class PeriodValidityEvaluator:
    """Checks the newest archive record of a key against the freshness rules.

    - periods that do not contain today never go stale once archived OK;
    - periods containing today are reusable for ``ttl`` after computation,
      even when already invalidated (the queue reprocesses them anyway);
    - for yesterday, an archive computed before the site-local day rolled
      over is stale whatever its age.
    """

    def __init__(self, store: ArchiveStore, clock: Optional[Clock] = None, ttl: Optional[int] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.ttl = timedelta(seconds=ttl if ttl is not None else config.TODAY_ARCHIVE_TTL)

    async def is_valid(self, params: ArchiveParams, is_yesterday: bool = False) -> bool:
        record = await self.store.read(params.site.id, params.period, params.segment)
        if record is None:
            logger.debug(f"No archive for site {params.site.id}, {params.period}, segment '{params.segment or ''}'")
            return False

        now = self.clock.now()
        today = params.site.local_date(now)

        if is_yesterday:
            if params.site.local_date(record.computed_at) != today:
                logger.debug(f"Archive for {params.period} was computed before the day changed, reprocessing")
                return False
            return self._is_fresh(record, now)

        if not params.period.contains_today(today):
            return record.status is ArchiveStatus.OK

        return self._is_fresh(record, now)

    def _is_fresh(self, record: ArchiveRecord, now: datetime) -> bool:
        if record.status not in (ArchiveStatus.OK, ArchiveStatus.INVALIDATED):
            return False
        return now - record.computed_at < self.ttl

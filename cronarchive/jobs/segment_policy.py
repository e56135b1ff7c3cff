"""Whether a segment is archived for today while segments are skipped for today."""
import logging
from datetime import timedelta
from typing import Iterable, Optional

from cronarchive.clock import Clock, SystemClock
from cronarchive.config import config
from cronarchive.model.records import Segment

logger = logging.getLogger(__name__)


class SegmentRecencyPolicy:
    """Segments created or edited within ``window`` still archive today."""

    def __init__(self, clock: Optional[Clock] = None, window: Optional[timedelta] = None):
        self.clock = clock or SystemClock()
        self.window = window or timedelta(hours=config.SEGMENT_RECENCY_HOURS)

    def should_archive_today(
        self,
        definition: str,
        active_segments: Iterable[Segment],
        window: Optional[timedelta] = None,
    ) -> bool:
        window = window or self.window
        for segment in active_segments:
            if segment.definition == definition:
                return self.clock.now() - segment.changed_at < window
        return False

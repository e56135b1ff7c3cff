"""Data models for sites, segments, invalidations and archives."""
from datetime import datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from cronarchive.model.period import Period


class Site(BaseModel):
    """A tracked website."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Site id")
    timezone: str = Field(default="UTC", description="IANA timezone name")
    name: str = Field(default="")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def local_date(self, moment: datetime):
        """Calendar date of ``moment`` in the site's timezone."""
        return moment.astimezone(self.tz).date()


class Segment(BaseModel):
    """A stored segment definition."""

    definition: str = Field(..., description="Segment expression, e.g. browserCode==IE")
    site_id: Optional[int] = Field(default=None, description="None means all sites")
    created_at: datetime
    last_changed_at: Optional[datetime] = None
    auto_archive: bool = True

    @property
    def changed_at(self) -> datetime:
        if self.last_changed_at is None:
            return self.created_at
        return max(self.created_at, self.last_changed_at)

    def applies_to(self, site_id: int) -> bool:
        return self.site_id is None or self.site_id == site_id


class InvalidationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"


class Invalidation(BaseModel):
    """A queued request to (re)compute one archive."""

    id: int
    site_id: int
    period: Period
    segment: Optional[str] = Field(default=None, description="Segment definition, None for all visits")
    status: InvalidationStatus = InvalidationStatus.PENDING
    retries: int = 0
    enqueued_at: datetime
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = Field(default=None, description="Claim token of the run processing the entry")

    @property
    def key(self) -> tuple[int, Period, str]:
        return (self.site_id, self.period, self.segment or "")

    def __str__(self) -> str:
        return (
            f"[idinvalidation = {self.id}, idsite = {self.site_id}, "
            f"period = {self.period}, segment = '{self.segment or ''}']"
        )


class ArchiveStatus(str, Enum):
    OK = "ok"
    INVALIDATED = "invalidated"
    ERROR = "error"


class ArchiveRecord(BaseModel):
    """Metadata row for one computed archive. Rows are append-only."""

    site_id: int
    period: Period
    segment: Optional[str] = None
    status: ArchiveStatus
    computed_at: datetime


class ArchiveParams(BaseModel):
    """Site, period and segment identifying an archive."""

    model_config = ConfigDict(frozen=True)

    site: Site
    period: Period
    segment: Optional[str] = None


class ArchiveFilter(BaseModel):
    """Per-run restrictions on what gets archived."""

    model_config = ConfigDict(frozen=True)

    skip_segments_for_today: bool = False
    forced_segments: frozenset[str] = Field(default_factory=frozenset)

    def allows_segment(self, segment: Optional[str]) -> bool:
        """False if a forced segment list is set and ``segment`` is not in it."""
        if not self.forced_segments:
            return True
        return segment is not None and segment in self.forced_segments


class ArchiveRequest(BaseModel):
    """One recomputation request handed to the executor."""

    invalidation: Invalidation
    site_id: int
    period: Period
    segment: Optional[str] = None

    @classmethod
    def for_invalidation(cls, invalidation: Invalidation) -> "ArchiveRequest":
        return cls(
            invalidation=invalidation,
            site_id=invalidation.site_id,
            period=invalidation.period,
            segment=invalidation.segment,
        )

    def __str__(self) -> str:
        return (
            f"idSite={self.site_id}&period={self.period.kind.value}"
            f"&date={self.period.label}&segment={self.segment or ''}"
        )


class ArchiveResult(BaseModel):
    """Outcome of one recomputation request."""

    visits: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

"""Capabilities the scheduler depends on.

Concrete implementations live in ``cronarchive.store`` (SQLite) and
``cronarchive.fetch`` (HTTP report engine); tests plug in in-process fakes.
"""
from typing import Optional, Protocol

from cronarchive.model.period import Period
from cronarchive.model.records import ArchiveRecord, ArchiveRequest, ArchiveResult, Segment, Site


class ReportEngine(Protocol):
    """Backend that computes reports."""

    async def ping(self) -> None:
        """Raise if the backend cannot be reached."""

    async def probe_visits(self, site_id: int, period: Period) -> int:
        """Cheap count of visits recorded in the period."""

    async def compute(self, request: ArchiveRequest) -> ArchiveResult:
        """Recompute one archive."""


class ConcurrentExecutor(Protocol):
    """Runs a batch of requests in parallel; results keep request order."""

    async def run(self, requests: list[ArchiveRequest]) -> list[ArchiveResult]:
        ...


class ArchiveStore(Protocol):
    async def read(self, site_id: int, period: Period, segment: Optional[str] = None) -> Optional[ArchiveRecord]:
        ...

    async def write(self, record: ArchiveRecord) -> None:
        ...

    async def mark_invalidated(self, site_id: int, period: Period, segment: Optional[str] = None) -> bool:
        ...


class SiteSource(Protocol):
    async def get_site(self, site_id: int) -> Site:
        ...

    async def all_site_ids(self) -> list[int]:
        ...


class SegmentSource(Protocol):
    async def active_segments(self, site_id: int) -> list[Segment]:
        ...

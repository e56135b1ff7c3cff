"""Shared fixtures: SQLite stores under tmp_path, a frozen clock and an in-process engine."""
import asyncio
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from cronarchive.clock import FrozenClock
from cronarchive.jobs.metrics_exporter import MetricsExporter
from cronarchive.jobs.runner import ArchiveScheduler
from cronarchive.model.period import Period
from cronarchive.model.records import ArchiveRequest, ArchiveResult, Site
from cronarchive.store.archives import ArchiveRecordStore
from cronarchive.store.catalog import SegmentCatalog, SiteCatalog
from cronarchive.store.queue import InvalidationQueue
from cronarchive.store.state import StateDB


class FakeEngine:
    """Report engine answering from a {(site_id, date): visits} map."""

    def __init__(self, visits: dict[tuple[int, date], int] | None = None):
        self.visits = visits or {}
        self.failing: set[tuple[int, Period, str | None]] = set()
        self.fail_all = False
        self.fail_ping = False
        self.fail_probe = False
        self.probed: list[tuple[int, Period]] = []
        self.computed: list[ArchiveRequest] = []

    def count(self, site_id: int, period: Period) -> int:
        return sum(n for (sid, day), n in self.visits.items() if sid == site_id and period.contains(day))

    async def ping(self) -> None:
        if self.fail_ping:
            raise ConnectionError("engine unreachable")

    async def probe_visits(self, site_id: int, period: Period) -> int:
        self.probed.append((site_id, period))
        if self.fail_probe:
            raise RuntimeError("probe failed")
        return self.count(site_id, period)

    async def compute(self, request: ArchiveRequest) -> ArchiveResult:
        self.computed.append(request)
        if self.fail_all or (request.site_id, request.period, request.segment) in self.failing:
            return ArchiveResult(elapsed_ms=1.0, error="archiving failed")
        return ArchiveResult(visits=self.count(request.site_id, request.period), elapsed_ms=1.0)


class FakeExecutor:
    """Runs a batch sequentially and remembers every batch."""

    def __init__(self, engine: FakeEngine):
        self.engine = engine
        self.batches: list[list[ArchiveRequest]] = []

    async def run(self, requests: list[ArchiveRequest]) -> list[ArchiveResult]:
        self.batches.append(list(requests))
        return [await self.engine.compute(request) for request in requests]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "state.db"
    asyncio.run(StateDB(path).initialize())
    return path


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2020, 2, 3, 4, 5, 6, tzinfo=timezone.utc))


@pytest.fixture
def queue(db_path: Path, clock: FrozenClock) -> InvalidationQueue:
    return InvalidationQueue(db_path, clock, max_retries=3)


@pytest.fixture
def archives(db_path: Path) -> ArchiveRecordStore:
    return ArchiveRecordStore(db_path)


@pytest.fixture
def sites(db_path: Path) -> SiteCatalog:
    catalog = SiteCatalog(db_path)
    asyncio.run(catalog.add_site(Site(id=1, name="Site 1", timezone="UTC")))
    return catalog


@pytest.fixture
def segments(db_path: Path) -> SegmentCatalog:
    return SegmentCatalog(db_path)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def executor(engine: FakeEngine) -> FakeExecutor:
    return FakeExecutor(engine)


@pytest.fixture
def make_scheduler(queue, archives, sites, segments, engine, executor, clock, tmp_path):
    """Build a scheduler wired to the fixtures; keyword arguments override defaults."""

    def factory(**kwargs) -> ArchiveScheduler:
        options = dict(
            queue=queue,
            archives=archives,
            sites=sites,
            segments=segments,
            engine=engine,
            executor=executor,
            clock=clock,
            concurrency=3,
            today_ttl=900,
            no_visits_max_age_days=365,
            exporter=MetricsExporter("test-run", tmp_path / "summaries.jsonl"),
        )
        options.update(kwargs)
        return ArchiveScheduler(**options)

    return factory

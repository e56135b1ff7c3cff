"""Tests for the archive scheduler control loop."""
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone

import orjson
import pytest

from cronarchive.errors import ConfigurationError, TooManyErrorsError
from cronarchive.model.period import Period
from cronarchive.model.records import ArchiveFilter, ArchiveRecord, ArchiveStatus, Segment, Site

CREATED = datetime(2019, 1, 1, tzinfo=timezone.utc)
D12 = Period.build("day", "2019-12-12")


def computed_keys(engine):
    return [(request.site_id, request.period, request.segment) for request in engine.computed]


def test_end_to_end_forced_segment(make_scheduler, queue, segments, engine, executor, caplog):
    """Test four days of visits archive their days, weeks, month and year; the empty day is skipped."""
    caplog.set_level(logging.INFO)
    engine.visits.update({
        (1, date(2019, 12, 12)): 3,
        (1, date(2019, 12, 11)): 2,
        (1, date(2019, 12, 10)): 1,
        (1, date(2019, 12, 2)): 4,
    })
    asyncio.run(segments.add_segment(Segment(definition="actions>=2", created_at=CREATED)))
    asyncio.run(segments.add_segment(Segment(definition="actions>=4", created_at=CREATED)))
    for day in ("2019-12-12", "2019-12-11", "2019-12-10", "2019-12-05", "2019-12-02"):
        asyncio.run(queue.remember_later(1, date.fromisoformat(day)))

    scheduler = make_scheduler(archive_filter=ArchiveFilter(forced_segments=frozenset({"actions>=2"})))
    summary = asyncio.run(scheduler.run())

    expected = {
        Period.build("day", "2019-12-12"),
        Period.build("day", "2019-12-11"),
        Period.build("day", "2019-12-10"),
        Period.build("day", "2019-12-02"),
        Period.build("week", "2019-12-09"),
        Period.build("week", "2019-12-02"),
        Period.build("month", "2019-12-01"),
        Period.build("year", "2019-01-01"),
    }
    assert {period for _, period, _ in computed_keys(engine)} == expected
    assert {segment for _, _, segment in computed_keys(engine)} == {"actions>=2"}
    assert len(engine.computed) == 8

    # Intersecting periods never share a batch
    assert [r.period for r in executor.batches[0]] == [
        Period.build("day", "2019-12-12"),
        Period.build("day", "2019-12-11"),
        Period.build("day", "2019-12-10"),
    ]
    for batch in executor.batches:
        assert len(batch) <= 3
        for i, first in enumerate(batch):
            for second in batch[i + 1:]:
                assert not first.period.intersects(second.period)

    assert summary.archives_processed == 8
    assert summary.requests_issued == 8
    assert summary.errors == 0
    assert summary.skipped == 1
    assert summary.visits_found == 40
    assert summary.sites_processed == 1

    # Entries filtered out by the forced segment list stay queued for later runs
    remaining = asyncio.run(queue.pending(1))
    assert len(remaining) == 18
    assert {i.segment for i in remaining} == {None, "actions>=4"}

    assert "Found invalidated archive we can skip (no visits)" in caplog.text
    assert "- Limiting segment archiving to following segments:" in caplog.text
    assert "No more sites left to archive, stopping." in caplog.text
    assert "Done archiving!" in caplog.text
    assert "Processed 8 archives." in caplog.text


def test_archives_are_recorded(make_scheduler, queue, archives, engine, clock):
    """Test a computed archive is stored as OK at the current time."""
    engine.visits[(1, date(2019, 12, 12))] = 1
    asyncio.run(queue.enqueue(1, D12))

    asyncio.run(make_scheduler().run())

    record = asyncio.run(archives.read(1, D12))
    assert record.status is ArchiveStatus.OK
    assert record.computed_at == clock.now()
    assert asyncio.run(queue.stats()) == {"done": 1}


def test_invalid_site_does_not_stop_run(make_scheduler, queue, engine, caplog):
    """Test a failing site is logged and the next site still completes."""
    caplog.set_level(logging.INFO)
    engine.visits[(1, date(2019, 12, 12))] = 1
    asyncio.run(queue.enqueue(1, D12))

    summary = asyncio.run(make_scheduler(site_ids=[99999, 1]).run())

    assert "Failed to archive site 99999, moving on" in caplog.text
    assert "Start processing archives for site 1." in caplog.text
    assert "No next invalidated archive." in caplog.text
    assert "Finished archiving for site 1" in caplog.text
    assert summary.sites_processed == 1
    assert summary.archives_processed == 1


def test_skip_segments_today_keeps_recent_segments(make_scheduler, queue, segments, engine, clock, caplog):
    """Test only recently changed segments are archived for today when segments are skipped for today."""
    caplog.set_level(logging.INFO)
    engine.visits[(1, date(2020, 2, 3))] = 3
    asyncio.run(segments.add_segment(Segment(definition="browserCode==IE", created_at=clock.now() - timedelta(hours=30))))
    asyncio.run(segments.add_segment(Segment(definition="visitCount>5", created_at=clock.now() - timedelta(hours=1))))

    scheduler = make_scheduler(archive_filter=ArchiveFilter(skip_segments_for_today=True))
    asyncio.run(scheduler.run())

    today = Period.build("day", "2020-02-03")
    assert computed_keys(engine) == [(1, today, None), (1, today, "visitCount>5")]
    assert [(i.period, i.segment) for i in asyncio.run(queue.pending(1))] == [(today, "browserCode==IE")]
    assert (
        'Segment "visitCount>5" was created or changed recently and will therefore archive today (for site ID = 1)'
        in caplog.text
    )
    assert "- Will skip segments archiving for today unless they were created recently" in caplog.text


def test_skip_segments_today_leaves_past_periods_alone(make_scheduler, queue, segments, engine):
    """Test an old segment is still archived for periods not containing today."""
    engine.visits[(1, date(2019, 12, 12))] = 1
    asyncio.run(segments.add_segment(Segment(definition="browserCode==IE", created_at=CREATED)))
    asyncio.run(queue.enqueue(1, D12, "browserCode==IE"))

    asyncio.run(make_scheduler(archive_filter=ArchiveFilter(skip_segments_for_today=True)).run())

    assert computed_keys(engine) == [(1, D12, "browserCode==IE")]


def test_failed_request_is_retried_next_run(make_scheduler, queue, archives, engine):
    """Test a failed computation goes back to pending and is not retried in the same run."""
    engine.visits[(1, date(2019, 12, 12))] = 1
    engine.failing.add((1, D12, None))
    asyncio.run(queue.enqueue(1, D12))

    summary = asyncio.run(make_scheduler().run())

    assert summary.errors == 1
    assert summary.archives_processed == 0
    assert len(engine.computed) == 1
    assert asyncio.run(archives.read(1, D12)) is None
    pending = asyncio.run(queue.pending(1))
    assert len(pending) == 1
    assert pending[0].retries == 1

    engine.failing.clear()
    summary = asyncio.run(make_scheduler().run())
    assert summary.archives_processed == 1
    assert asyncio.run(queue.pending(1)) == []


def test_consecutive_errors_abort_run(make_scheduler, queue, engine, tmp_path, caplog):
    """Test reaching the error ceiling aborts with TooManyErrorsError and still exports the summary."""
    engine.fail_all = True
    for day in ("2019-12-10", "2019-12-11", "2019-12-12"):
        engine.visits[(1, date.fromisoformat(day))] = 1
        asyncio.run(queue.enqueue(1, Period.build("day", day)))

    with pytest.raises(TooManyErrorsError):
        asyncio.run(make_scheduler(max_consecutive_errors=2).run())

    assert all(i.retries == 1 for i in asyncio.run(queue.pending(1)))
    assert len(asyncio.run(queue.pending(1))) == 3
    line = orjson.loads((tmp_path / "summaries.jsonl").read_bytes().splitlines()[0])
    assert line["errors"] == 3
    assert "max_consecutive_errors=2" in line["stop_reason"]


def test_time_budget_stops_before_sites(make_scheduler, queue, engine):
    """Test an exhausted time budget stops the run gracefully."""
    engine.visits[(1, date(2019, 12, 12))] = 1
    asyncio.run(queue.enqueue(1, D12))

    summary = asyncio.run(make_scheduler(stop_after_minutes=0).run())

    assert engine.computed == []
    assert "stop_after_minutes" in summary.stop_reason
    assert len(asyncio.run(queue.pending(1))) == 1


def test_unreachable_engine_aborts_before_sites(make_scheduler, queue, engine):
    """Test a failing ping raises ConfigurationError and touches no site."""
    engine.fail_ping = True
    asyncio.run(queue.enqueue(1, D12))

    with pytest.raises(ConfigurationError):
        asyncio.run(make_scheduler().run())

    assert engine.computed == []
    assert engine.probed == []


def test_duplicate_of_processed_key_is_skipped(make_scheduler, queue, engine):
    """Test an entry for a key already archived in this run is consumed without a request."""
    engine.visits[(1, date(2019, 12, 12))] = 1
    asyncio.run(queue.enqueue(1, D12))

    scheduler = make_scheduler()
    scheduler.processed_keys.add((1, D12, ""))
    summary = asyncio.run(scheduler.run())

    assert engine.computed == []
    assert summary.skipped == 1
    assert asyncio.run(queue.stats()) == {"done": 1}


def test_failed_probe_does_not_skip(make_scheduler, queue, engine):
    """Test an entry is archived when the visit probe fails."""
    engine.fail_probe = True
    asyncio.run(queue.enqueue(1, D12))

    asyncio.run(make_scheduler().run())

    assert (1, D12, None) in computed_keys(engine)


def test_no_visits_skip_only_for_recent_periods(make_scheduler, queue, engine):
    """Test empty periods older than the max age are still archived."""
    recent = Period.build("day", "2020-01-20")
    asyncio.run(queue.enqueue(1, D12))
    asyncio.run(queue.enqueue(1, recent))

    summary = asyncio.run(make_scheduler(no_visits_max_age_days=30).run())

    assert computed_keys(engine) == [(1, D12, None)]
    assert summary.skipped == 1


def test_sites_with_recent_visits(make_scheduler, queue, sites, engine):
    """Test only sites with visits since yesterday are processed."""
    asyncio.run(sites.add_site(Site(id=2, timezone="UTC")))
    engine.visits[(1, date(2019, 12, 12))] = 1
    engine.visits[(2, date(2019, 12, 12))] = 1
    engine.visits[(2, date(2020, 2, 2))] = 1
    asyncio.run(queue.enqueue(1, D12))
    asyncio.run(queue.enqueue(2, D12))

    summary = asyncio.run(make_scheduler(sites_with_recent_visits=True).run())

    assert {site_id for site_id, _, _ in computed_keys(engine)} == {2}
    assert summary.sites_processed == 1
    assert len(asyncio.run(queue.pending(1))) == 1


def test_usable_archive_for_today_is_not_requested(make_scheduler, queue, archives, engine, clock, caplog):
    """Test a fresh archive for today is reused and the entry kept for a later run."""
    caplog.set_level(logging.INFO)
    today = Period.build("day", "2020-02-03")
    engine.visits[(1, date(2020, 2, 3))] = 1
    asyncio.run(
        archives.write(
            ArchiveRecord(site_id=1, period=today, status=ArchiveStatus.OK, computed_at=clock.now() - timedelta(minutes=1))
        )
    )
    asyncio.run(queue.enqueue(1, today))

    asyncio.run(make_scheduler().run())

    assert engine.computed == []
    assert "Found usable archive for" in caplog.text
    assert len(asyncio.run(queue.pending(1))) == 1


def test_stale_claims_are_recovered(make_scheduler, queue, engine, clock):
    """Test entries left processing by a crashed run are picked up again."""
    engine.visits[(1, date(2019, 12, 12))] = 1
    asyncio.run(queue.enqueue(1, D12))
    asyncio.run(queue.next_for(1))
    clock.advance(hours=2)

    asyncio.run(make_scheduler().run())

    assert computed_keys(engine) == [(1, D12, None)]


def test_summary_is_exported(make_scheduler, queue, engine, tmp_path):
    """Test one summary line is appended per run."""
    engine.visits[(1, date(2019, 12, 12))] = 2
    asyncio.run(queue.enqueue(1, D12))

    asyncio.run(make_scheduler().run())
    asyncio.run(make_scheduler().run())

    lines = (tmp_path / "summaries.jsonl").read_bytes().splitlines()
    assert len(lines) == 2
    first = orjson.loads(lines[0])
    assert first["run_id"] == "test-run"
    assert first["archives_processed"] == 1
    assert first["visits_found"] == 2

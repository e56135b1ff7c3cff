"""Tests for the segment recency policy."""
from datetime import datetime, timedelta, timezone

from cronarchive.clock import FrozenClock
from cronarchive.jobs.segment_policy import SegmentRecencyPolicy
from cronarchive.model.records import Segment

NOW = datetime(2020, 2, 3, 12, 0, tzinfo=timezone.utc)


def make_policy() -> SegmentRecencyPolicy:
    return SegmentRecencyPolicy(FrozenClock(NOW), timedelta(hours=24))


def test_old_segment_is_not_archived_today():
    """Test a segment created 30 hours ago falls outside a 24h window."""
    segments = [Segment(definition="browserCode==IE", created_at=NOW - timedelta(hours=30))]
    assert make_policy().should_archive_today("browserCode==IE", segments) is False


def test_recent_segment_is_archived_today():
    """Test a segment created within the window is archived today."""
    segments = [Segment(definition="browserCode==IE", created_at=NOW - timedelta(hours=2))]
    assert make_policy().should_archive_today("browserCode==IE", segments) is True


def test_recently_edited_segment_is_archived_today():
    """Test the last change counts, not only the creation."""
    segments = [
        Segment(
            definition="visitCount>5",
            created_at=NOW - timedelta(days=30),
            last_changed_at=NOW - timedelta(hours=1),
        )
    ]
    assert make_policy().should_archive_today("visitCount>5", segments) is True


def test_unknown_segment_is_not_archived_today():
    """Test a definition missing from the active segments is skipped."""
    segments = [Segment(definition="browserCode==IE", created_at=NOW)]
    assert make_policy().should_archive_today("visitCount>5", segments) is False


def test_window_override():
    """Test the window can be given per call."""
    segments = [Segment(definition="browserCode==IE", created_at=NOW - timedelta(hours=30))]
    assert make_policy().should_archive_today("browserCode==IE", segments, window=timedelta(hours=48)) is True

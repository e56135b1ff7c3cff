"""SQLite state database shared by the queue, the archive log and the catalog."""
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from cronarchive.config import STATE_DB
from cronarchive.errors import StorageError

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS invalidations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        site_id INTEGER NOT NULL,
        period TEXT NOT NULL,
        date1 TEXT NOT NULL,
        date2 TEXT NOT NULL,
        segment TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        retries INTEGER NOT NULL DEFAULT 0,
        enqueued_at TEXT NOT NULL,
        claimed_at TEXT,
        claimed_by TEXT
    )
    """,
    # At most one pending entry per key
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_invalidations_pending
    ON invalidations(site_id, period, date1, date2, segment) WHERE status = 'pending'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_invalidations_site_status
    ON invalidations(site_id, status, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS remembered_dates (
        site_id INTEGER NOT NULL,
        date TEXT NOT NULL,
        remembered_at TEXT NOT NULL,
        PRIMARY KEY (site_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archives (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        site_id INTEGER NOT NULL,
        period TEXT NOT NULL,
        date1 TEXT NOT NULL,
        date2 TEXT NOT NULL,
        segment TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        computed_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_archives_key
    ON archives(site_id, period, date1, date2, segment, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS sites (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        timezone TEXT NOT NULL DEFAULT 'UTC'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS segments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        definition TEXT NOT NULL,
        site_id INTEGER,
        created_at TEXT NOT NULL,
        last_changed_at TEXT,
        auto_archive INTEGER NOT NULL DEFAULT 1,
        deleted INTEGER NOT NULL DEFAULT 0
    )
    """,
]


@asynccontextmanager
async def connect(db_path: Path) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection, turning SQLite failures into StorageError."""
    # Checked up front: a failed aiosqlite connect leaves its worker thread behind
    db_path = Path(db_path)
    if db_path.is_dir() or not db_path.parent.is_dir():
        raise StorageError(f"State database {db_path} unavailable: not a file path in an existing directory")

    try:
        async with aiosqlite.connect(db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db
    except aiosqlite.Error as e:
        raise StorageError(f"State database {db_path} unavailable: {e}") from e


class StateDB:
    """Creates the schema used by the stores."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        async with connect(self.db_path) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
            logger.debug(f"State database initialized at {self.db_path}")


def to_text(value: datetime | date) -> str:
    # Timestamps are stored in UTC so that text comparison orders them
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def to_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)

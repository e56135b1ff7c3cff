"""Running totals for an archiving run."""
import time
import logging
from collections import defaultdict
from typing import Dict

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class RunSummary(BaseModel):
    """Totals reported once at the end of a run."""

    archives_processed: int = 0
    requests_issued: int = 0
    errors: int = 0
    visits_found: int = 0
    skipped: int = 0
    sites_processed: int = 0
    elapsed_ms: float = 0.0
    stop_reason: str | None = None


class Metrics:
    """Track archiving counters and request timings."""

    def __init__(self, total_sites: int):
        self.total_sites = total_sites
        self.start_time = time.time()
        self.counters: Dict[str, int] = defaultdict(int)
        self.request_time_ms = 0.0
        self.stop_reason: str | None = None

    def increment(self, key: str, amount: int = 1) -> None:
        """Increment a counter."""
        self.counters[key] = self.counters.get(key, 0) + amount

    def record_result(self, visits: int, elapsed_ms: float, ok: bool) -> None:
        """Account for one executor outcome."""
        self.increment("requests")
        self.request_time_ms += elapsed_ms
        if ok:
            self.increment("archived")
            self.increment("visits", visits)
        else:
            self.increment("errors")

    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000

    def get_summary(self) -> RunSummary:
        """Get summary statistics."""
        return RunSummary(
            archives_processed=self.counters.get("archived", 0),
            requests_issued=self.counters.get("requests", 0),
            errors=self.counters.get("errors", 0),
            visits_found=self.counters.get("visits", 0),
            skipped=self.counters.get("skipped", 0),
            sites_processed=self.counters.get("sites", 0),
            elapsed_ms=round(self.elapsed_ms(), 1),
            stop_reason=self.stop_reason,
        )

    def report(self) -> None:
        """Log the final summary block."""
        summary = self.get_summary()
        errors = f"{summary.errors} errors" if summary.errors else "no error"
        logger.info("=" * 60)
        logger.info("SUMMARY")
        logger.info(f"Processed {summary.archives_processed} archives.")
        logger.info(f"Total API requests: {summary.requests_issued}")
        logger.info(f"done: {summary.requests_issued} req, {self.request_time_ms:.0f} ms, {errors}")
        if summary.skipped:
            logger.info(f"Skipped invalidations: {summary.skipped}")
        logger.info(f"Time elapsed: {summary.elapsed_ms / 1000:.3f}s")
        logger.info("=" * 60)

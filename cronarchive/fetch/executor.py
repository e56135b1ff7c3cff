"""Bounded-concurrency executor for archive requests."""
import asyncio
import logging
import time

from cronarchive.model.records import ArchiveRequest, ArchiveResult
from cronarchive.ports import ReportEngine

logger = logging.getLogger(__name__)


class RequestExecutor:
    """Runs up to ``concurrency`` engine requests at once.

    ``run`` returns when the whole batch has completed. A failing request
    yields an error result and never cancels its siblings.
    """

    def __init__(self, engine: ReportEngine, concurrency: int):
        self.engine = engine
        self.concurrency = concurrency

    async def run(self, requests: list[ArchiveRequest]) -> list[ArchiveResult]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(request: ArchiveRequest) -> ArchiveResult:
            async with semaphore:
                start = time.perf_counter()
                try:
                    return await self.engine.compute(request)
                except Exception as e:
                    elapsed_ms = (time.perf_counter() - start) * 1000
                    logger.error(f"Archiving request failed for {request}: {e}")
                    return ArchiveResult(elapsed_ms=elapsed_ms, error=str(e) or e.__class__.__name__)

        return list(await asyncio.gather(*(run_one(request) for request in requests)))

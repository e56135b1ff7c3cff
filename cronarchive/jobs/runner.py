"""Main job runner orchestrating invalidation and archiving."""
import logging
import time
import uuid
from datetime import date, timedelta
from typing import Iterable, Optional

from cronarchive.clock import Clock, SystemClock
from cronarchive.config import config
from cronarchive.errors import ConfigurationError, SiteNotFoundError, StorageError, TooManyErrorsError
from cronarchive.jobs.invalidator import Invalidator, probe_visits
from cronarchive.jobs.metrics import Metrics, RunSummary
from cronarchive.jobs.metrics_exporter import MetricsExporter
from cronarchive.jobs.run_control import RunControl
from cronarchive.jobs.segment_policy import SegmentRecencyPolicy
from cronarchive.jobs.validity import PeriodValidityEvaluator
from cronarchive.model.period import Period
from cronarchive.model.records import (
    ArchiveFilter,
    ArchiveParams,
    ArchiveRecord,
    ArchiveRequest,
    ArchiveResult,
    ArchiveStatus,
    Invalidation,
    Segment,
    Site,
)
from cronarchive.ports import ArchiveStore, ConcurrentExecutor, ReportEngine, SegmentSource, SiteSource
from cronarchive.store.queue import InvalidationQueue

logger = logging.getLogger(__name__)


class ArchiveScheduler:
    """Processes queued invalidations site by site in bounded-concurrency batches."""

    def __init__(
        self,
        queue: InvalidationQueue,
        archives: ArchiveStore,
        sites: SiteSource,
        segments: SegmentSource,
        engine: ReportEngine,
        executor: ConcurrentExecutor,
        clock: Optional[Clock] = None,
        archive_filter: Optional[ArchiveFilter] = None,
        site_ids: Optional[Iterable[int]] = None,
        sites_with_recent_visits: bool = False,
        concurrency: Optional[int] = None,
        stop_after_minutes: Optional[float] = None,
        max_consecutive_errors: Optional[int] = None,
        today_ttl: Optional[int] = None,
        segment_window: Optional[timedelta] = None,
        no_visits_max_age_days: Optional[int] = None,
        stale_claim_minutes: Optional[int] = None,
        exporter: Optional[MetricsExporter] = None,
    ):
        self.queue = queue
        self.archives = archives
        self.sites = sites
        self.segments = segments
        self.engine = engine
        self.executor = executor
        self.clock = clock or SystemClock()
        self.archive_filter = archive_filter or ArchiveFilter()
        self.site_ids = list(site_ids) if site_ids is not None else None
        self.sites_with_recent_visits = sites_with_recent_visits
        self.concurrency = concurrency or config.CONCURRENCY
        self.no_visits_max_age_days = (
            no_visits_max_age_days if no_visits_max_age_days is not None else config.NO_VISITS_MAX_AGE_DAYS
        )
        self.stale_claim_minutes = stale_claim_minutes or config.STALE_CLAIM_MINUTES

        self.run_id = str(uuid.uuid4())
        self.evaluator = PeriodValidityEvaluator(archives, self.clock, today_ttl)
        self.segment_policy = SegmentRecencyPolicy(self.clock, segment_window)
        self.invalidator = Invalidator(queue, archives, engine, self.evaluator, self.clock)
        self.run_control = RunControl(
            stop_after_minutes=stop_after_minutes if stop_after_minutes is not None else config.STOP_AFTER_MINUTES,
            max_consecutive_errors=(
                max_consecutive_errors if max_consecutive_errors is not None else config.MAX_CONSECUTIVE_ERRORS
            ),
        )
        self.exporter = exporter or MetricsExporter(self.run_id)
        self.metrics = Metrics(0)

        # Keys archived successfully during this run
        self.processed_keys: set[tuple] = set()

    async def initialize(self) -> None:
        """Check the backend and recover entries left claimed by crashed runs."""
        try:
            await self.engine.ping()
        except Exception as e:
            raise ConfigurationError(f"Report engine is unreachable: {e}") from e

        cutoff = self.clock.now() - timedelta(minutes=self.stale_claim_minutes)
        await self.queue.release_stale(cutoff)

    async def run(self) -> RunSummary:
        """Run the archiving job. Returns the run summary."""
        await self.initialize()

        site_ids = await self._select_sites()
        self.metrics = Metrics(len(site_ids))
        self._log_notes(site_ids)

        logger.info("START")
        logger.info("Starting reports archiving...")
        try:
            for position, site_id in enumerate(site_ids, start=1):
                exceeded, reason = self.run_control.time_exceeded()
                if exceeded:
                    self.metrics.stop_reason = reason
                if self.metrics.stop_reason:
                    logger.warning(f"Stop condition met: {self.metrics.stop_reason}, stopping.")
                    break

                try:
                    await self._process_site(site_id, position, len(site_ids))
                except (StorageError, TooManyErrorsError):
                    raise
                except Exception as e:
                    logger.error(f"Failed to archive site {site_id}, moving on: {e}", exc_info=True)
                    self.metrics.increment("site_errors")
            else:
                logger.info("No more sites left to archive, stopping.")
            logger.info("Done archiving!")
        finally:
            self.metrics.report()
            await self._export_summary()

        return self.metrics.get_summary()

    async def _select_sites(self) -> list[int]:
        """Explicit list, every site, or only sites with visits since yesterday."""
        if self.site_ids is not None:
            site_ids = list(dict.fromkeys(self.site_ids))
        else:
            site_ids = await self.sites.all_site_ids()

        if not self.sites_with_recent_visits:
            return site_ids

        selected = []
        for site_id in site_ids:
            try:
                site = await self.sites.get_site(site_id)
            except SiteNotFoundError as e:
                logger.warning(f"Skipping site {site_id}: {e}")
                continue
            today = site.local_date(self.clock.now())
            recent = Period.build("range", f"{today - timedelta(days=1)},{today}")
            if await probe_visits(self.engine, site_id, recent) != 0:
                selected.append(site_id)
        return selected

    def _log_notes(self, site_ids: list[int]) -> None:
        logger.info("=" * 60)
        logger.info("INIT")
        logger.info(f"Run ID: {self.run_id}")
        logger.info("NOTES")
        logger.info(f"- Reports for today will be processed at most every {int(self.evaluator.ttl.total_seconds())} seconds.")
        logger.info(f"- Running up to {self.concurrency} archiving requests in parallel.")
        if self.archive_filter.forced_segments:
            logger.info("- Limiting segment archiving to following segments:")
            for definition in sorted(self.archive_filter.forced_segments):
                logger.info(f"  * {definition}")
        if self.archive_filter.skip_segments_for_today:
            logger.info("- Will skip segments archiving for today unless they were created recently")
        if self.site_ids is not None:
            logger.info(f"- Will process {len(self.site_ids)} websites (--force-idsites)")
        elif self.sites_with_recent_visits:
            logger.info(f"- Will process {len(site_ids)} websites with visits since yesterday")
        else:
            logger.info(f"- Will process all {len(site_ids)} websites")
        logger.info("=" * 60)

    async def _process_site(self, site_id: int, position: int, total: int) -> None:
        site = await self.sites.get_site(site_id)
        start = time.time()
        logger.info(f"Start processing archives for site {site.id}.")

        segments = await self.segments.active_segments(site.id)

        logger.info("Checking for queued invalidations...")
        await self.invalidator.apply_remembered(site, segments)
        await self.invalidator.invalidate_recent_date("today", site, segments)
        await self.invalidator.invalidate_recent_date("yesterday", site, segments)
        today_segments = self._segments_archiving_today(site, segments)
        logger.info("Done invalidating")

        requests = await self._process_queue(site, today_segments)

        self.metrics.increment("sites")
        logger.info(
            f"Finished archiving for site {site.id}, {requests} API requests, "
            f"Time elapsed: {time.time() - start:.3f}s [{position} / {total} done]"
        )

    def _segments_archiving_today(self, site: Site, segments: list[Segment]) -> set[str]:
        """Segments whose today-containing periods are archived in this run."""
        archiving_today = set()
        for segment in segments:
            recent = self.segment_policy.should_archive_today(segment.definition, segments)
            if recent:
                logger.info(
                    f'  Segment "{segment.definition}" was created or changed recently '
                    f"and will therefore archive today (for site ID = {site.id})"
                )
            if recent or not self.archive_filter.skip_segments_for_today:
                archiving_today.add(segment.definition)
        return archiving_today

    async def _process_queue(self, site: Site, today_segments: set[str]) -> int:
        """Drain the site's queue batch by batch. Returns the number of requests issued."""
        today = site.local_date(self.clock.now())
        visits_cache: dict[Period, Optional[int]] = {}
        held: list[Invalidation] = []
        failed: list[Invalidation] = []
        requests_issued = 0

        try:
            while True:
                batch: list[Invalidation] = []
                deferred: list[Invalidation] = []
                dispatched = False
                try:
                    await self._build_batch(site, today, today_segments, visits_cache, batch, deferred, held)
                    if batch:
                        failed.extend(await self._dispatch(site, batch))
                        requests_issued += len(batch)
                    dispatched = True
                finally:
                    # Release only touches entries still processing
                    for invalidation in deferred if dispatched else deferred + batch:
                        await self.queue.release(invalidation)

                if not batch:
                    break

                reached, reason = self.run_control.too_many_errors()
                if reached:
                    self.metrics.stop_reason = reason
                    logger.error(f"Stop condition met: {reason}, aborting.")
                    raise TooManyErrorsError(reason)

                exceeded, reason = self.run_control.time_exceeded()
                if exceeded:
                    self.metrics.stop_reason = reason
                    break
        finally:
            # Failed entries go back to pending only now so this run does not retry them
            for invalidation in failed:
                await self.queue.resolve(invalidation, success=False)
            for invalidation in held:
                await self.queue.release(invalidation)

        return requests_issued

    async def _build_batch(
        self,
        site: Site,
        today: date,
        today_segments: set[str],
        visits_cache: dict[Period, Optional[int]],
        batch: list[Invalidation],
        deferred: list[Invalidation],
        held: list[Invalidation],
    ) -> None:
        """Claim entries into ``batch`` until it is full; intersecting ones go to ``deferred``."""
        while len(batch) < self.concurrency:
            invalidation = await self.queue.next_for(site.id)
            if invalidation is None:
                logger.info("No next invalidated archive.")
                break

            if invalidation.key in self.processed_keys or any(b.key == invalidation.key for b in batch):
                logger.debug(f"Found duplicate invalidated archive {invalidation}")
                await self._consume_skipped(invalidation)
                continue

            if not self.archive_filter.allows_segment(invalidation.segment):
                logger.debug(f"Skipping invalidated archive {invalidation}: segment is not in the forced segments list")
                held.append(invalidation)
                continue

            contains_today = invalidation.period.contains_today(today)
            if contains_today and invalidation.segment and invalidation.segment not in today_segments:
                logger.debug(f"Skipping invalidated archive {invalidation}: segments are skipped for today")
                held.append(invalidation)
                continue

            if any(
                b.segment == invalidation.segment and b.period.intersects(invalidation.period)
                for b in batch
            ):
                logger.debug(
                    f"Found archive with intersecting period with others in concurrent batch, "
                    f"skipping until next batch: {invalidation}"
                )
                deferred.append(invalidation)
                continue

            if contains_today:
                params = ArchiveParams(site=site, period=invalidation.period, segment=invalidation.segment)
                if await self.evaluator.is_valid(params):
                    logger.info(f"Found usable archive for {invalidation}, skipping request.")
                    held.append(invalidation)
                    continue

            if invalidation.period not in visits_cache:
                visits_cache[invalidation.period] = await probe_visits(self.engine, site.id, invalidation.period)
            if visits_cache[invalidation.period] == 0 and self._no_visits_skip_applies(invalidation.period, today):
                logger.info(f"Found invalidated archive we can skip (no visits): {invalidation}")
                await self._consume_skipped(invalidation)
                continue

            logger.info(f"Processing invalidation: {invalidation}.")
            batch.append(invalidation)

    def _no_visits_skip_applies(self, period: Period, today: date) -> bool:
        return (today - period.date2).days <= self.no_visits_max_age_days

    async def _consume_skipped(self, invalidation: Invalidation) -> None:
        await self.queue.resolve(invalidation, success=True)
        self.metrics.increment("skipped")

    async def _dispatch(self, site: Site, batch: list[Invalidation]) -> list[Invalidation]:
        """Run one batch through the executor and record the outcomes. Returns failed entries."""
        requests = [ArchiveRequest.for_invalidation(invalidation) for invalidation in batch]
        for request in requests:
            logger.info(f"Starting archiving for ?{request}")

        results = list(await self.executor.run(requests))
        if len(results) != len(requests):
            logger.error(f"Executor returned {len(results)} results for {len(requests)} requests")
            results += [ArchiveResult(error="no result returned")] * (len(requests) - len(results))

        computed_at = self.clock.now()
        failed = []
        for invalidation, result in zip(batch, results):
            period = invalidation.period
            segment = invalidation.segment or ""
            self.metrics.record_result(result.visits, result.elapsed_ms, result.ok)

            await self.archives.write(
                ArchiveRecord(
                    site_id=site.id,
                    period=period,
                    segment=invalidation.segment,
                    status=ArchiveStatus.OK if result.ok else ArchiveStatus.ERROR,
                    computed_at=computed_at,
                )
            )

            if result.ok:
                self.processed_keys.add(invalidation.key)
                self.run_control.record_success()
                await self.queue.resolve(invalidation, success=True)
                logger.info(
                    f"Archived website id {site.id}, period = {period.kind.value}, date = {period.label}, "
                    f"segment = '{segment}', {result.visits} visits found. "
                    f"Time elapsed: {result.elapsed_ms / 1000:.3f}s"
                )
            else:
                self.run_control.record_error()
                failed.append(invalidation)
                logger.error(
                    f"Error archiving website id {site.id}, period = {period.kind.value}, "
                    f"date = {period.label}, segment = '{segment}': {result.error}"
                )

        return failed

    async def _export_summary(self) -> None:
        try:
            await self.exporter.export_summary(self.metrics.get_summary())
        except OSError as e:
            logger.warning(f"Could not export run summary: {e}")

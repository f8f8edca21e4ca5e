"""Calendar sync across all active properties."""
import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, tzinfo
from typing import Callable, List, Optional

from feed.fetcher import CalendarFetcher
from feed.parser import CalendarParser
from processor.checkout_extractor import (
    DEFAULT_HORIZON_DAYS,
    UTC,
    extract_checkouts,
    filter_upcoming_checkouts,
    local_day,
)
from processor.errors import FetchError, PersistenceError, SyncError
from processor.job_reconciler import JobReconciler, select_cleaner
from processor.models import JobOutcome, PlannedJob, Property, PropertyResult, SyncSummary

logger = logging.getLogger(__name__)

# HTTP statuses below 500 that are still worth another attempt
RETRYABLE_CLIENT_STATUSES = (408, 429)


class SyncOrchestrator:
    """Runs fetch, parse, extract, filter and reconcile for every property."""

    BACKGROUND_DRAIN_SECONDS = 5

    def __init__(
        self,
        persistence,
        fetcher: CalendarFetcher,
        parser: CalendarParser,
        reconciler: JobReconciler,
        notifier=None,
        tz: tzinfo = UTC,
        horizon_days: int = DEFAULT_HORIZON_DAYS,
        timeout_seconds: Optional[float] = None,
        max_concurrency: int = 5,
        fetch_attempts: int = 3,
        retry_base_delay: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            persistence: Storage collaborator (see DynamoDBManager)
            fetcher: Calendar fetcher
            parser: Calendar parser
            reconciler: Job reconciler
            notifier: Optional object with notify(user_id, title, body, notification_type)
            tz: Operating timezone
            horizon_days: Days ahead to create jobs for (default: 30)
            timeout_seconds: Overall run timeout, None for no limit
            max_concurrency: Properties synced at the same time (default: 5)
            fetch_attempts: Total fetch attempts per property (default: 3)
            retry_base_delay: First retry delay in seconds, doubled each retry
            clock: Returns the current time (default: datetime.now(tz))
        """
        self.persistence = persistence
        self.fetcher = fetcher
        self.parser = parser
        self.reconciler = reconciler
        self.notifier = notifier
        self.tz = tz
        self.horizon_days = horizon_days
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.fetch_attempts = max(1, fetch_attempts)
        self.retry_base_delay = retry_base_delay
        self.clock = clock or (lambda: datetime.now(self.tz))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._background: List[asyncio.Future] = []

    async def run_sync(self) -> SyncSummary:
        """
        Sync all active properties.

        A failing property never stops the others. Properties still running
        when the timeout expires are reported as failed.

        Returns:
            SyncSummary with per-property details

        Raises:
            PersistenceError: If the active properties cannot be listed
        """
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency + 1,
            thread_name_prefix='calendar-sync'
        )
        self._background = []
        try:
            properties = await self._run_blocking(self.persistence.list_active_properties)
            if not properties:
                logger.info("No active properties to sync")
                return SyncSummary.from_results([])

            logger.info(f"Starting calendar sync for {len(properties)} properties")
            results = await self._sync_all(properties)
            await self._drain_background()
        finally:
            # Threads of abandoned properties are left to finish on their own
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        summary = SyncSummary.from_results(results)
        logger.info(
            "Calendar sync completed",
            extra={
                'attempted': summary.attempted,
                'succeeded': summary.succeeded,
                'failed': summary.failed,
                'jobs_created': summary.jobs_created
            }
        )
        return summary

    async def _sync_all(self, properties: List[Property]) -> List[PropertyResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def limited(prop: Property) -> PropertyResult:
            async with semaphore:
                return await self.sync_property(prop)

        tasks = [asyncio.ensure_future(limited(prop)) for prop in properties]
        done, pending = await asyncio.wait(tasks, timeout=self.timeout_seconds)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for prop, task in zip(properties, tasks):
            if task in done and not task.cancelled() and task.exception() is None:
                results.append(task.result())
            elif task in done:
                logger.error(
                    f"Sync task for property {prop.property_id} failed",
                    exc_info=task.exception()
                )
                results.append(self._failed_result(prop, "Unexpected error"))
            else:
                logger.warning(
                    f"Sync of property {prop.property_id} abandoned after timeout",
                    extra={'property_id': prop.property_id}
                )
                message = f"Sync timed out after {self.timeout_seconds:g} seconds"
                results.append(self._failed_result(prop, message))
                # Drained with notifications, so the write gets the same short grace period
                self._run_in_background(self._record_timeout_safely, prop.property_id, message)
        return results

    async def sync_property(self, prop: Property) -> PropertyResult:
        """
        Run one sync pass for a property and record its outcome.

        Args:
            prop: Property to sync

        Returns:
            PropertyResult for the property
        """
        result = PropertyResult(property_id=prop.property_id, property_name=prop.name)

        try:
            result.jobs_created = await self._run_pipeline(prop)
            result.success = True
        except SyncError as e:
            result.error = str(e)
            logger.warning(
                f"Sync failed for property {prop.property_id}: {e}",
                extra={'property_id': prop.property_id, 'error_type': type(e).__name__}
            )
        except Exception as e:
            result.error = f"Unexpected error ({type(e).__name__})"
            logger.error(
                f"Unexpected error syncing property {prop.property_id}",
                extra={'property_id': prop.property_id, 'error_type': type(e).__name__},
                exc_info=True
            )

        if result.success:
            await self._record_status(
                self.persistence.mark_property_synced, prop.property_id, self.clock()
            )
        else:
            await self._record_status(
                self.persistence.mark_property_sync_error, prop.property_id, result.error
            )
        return result

    async def _run_pipeline(self, prop: Property) -> int:
        ical_text = await self._fetch_with_retry(prop)
        events = self.parser.parse(ical_text)
        checkouts = extract_checkouts(events, self.tz)

        now = self.clock()
        upcoming = filter_upcoming_checkouts(checkouts, self.horizon_days, now, self.tz)
        logger.info(
            f"Property {prop.property_id}: {len(events)} events, "
            f"{len(checkouts)} checkouts, {len(upcoming)} upcoming",
            extra={'property_id': prop.property_id}
        )

        existing_keys = await self._run_blocking(
            self.persistence.list_existing_job_keys, prop.property_id
        )
        cleaners = await self._run_blocking(
            self.persistence.get_assigned_cleaners, prop.property_id
        )
        active_job_count = 0
        if self.reconciler.max_active_jobs is not None:
            active_job_count = await self._run_blocking(
                self.persistence.count_active_jobs, prop.property_id, local_day(now, self.tz)
            )

        planned = self.reconciler.plan(
            prop.property_id,
            upcoming,
            existing_keys,
            cleaner_id=select_cleaner(cleaners),
            active_job_count=active_job_count
        )

        jobs_created = await self._create_jobs(prop, planned)

        skipped_for_limit = sum(1 for job in planned if job.outcome is JobOutcome.SKIPPED_LIMIT)
        if skipped_for_limit:
            self._notify_job_limit(prop, skipped_for_limit)

        return jobs_created

    async def _create_jobs(self, prop: Property, planned: List[PlannedJob]) -> int:
        created = 0
        for job in planned:
            if job.outcome is not JobOutcome.CREATED:
                continue
            try:
                written = await self._run_blocking(self.persistence.create_job, job.record)
            except PersistenceError as e:
                job.outcome = JobOutcome.FAILED
                logger.warning(
                    f"Error creating job for property {prop.property_id}: {e}",
                    extra={
                        'property_id': prop.property_id,
                        'checkout_date': job.record.checkout_date.isoformat()
                    }
                )
                continue

            if written:
                created += 1
            else:
                job.outcome = JobOutcome.SKIPPED_EXISTING
        return created

    async def _fetch_with_retry(self, prop: Property) -> str:
        for attempt in range(1, self.fetch_attempts + 1):
            try:
                return await self._run_blocking(self.fetcher.fetch, prop.ical_url)
            except FetchError as e:
                if attempt >= self.fetch_attempts or not self._is_retryable(e):
                    raise
                # Calculate exponential backoff delay
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Fetch failed for property {prop.property_id} "
                    f"(attempt {attempt}/{self.fetch_attempts}): {e}. "
                    f"Retrying in {delay} seconds..."
                )
                await asyncio.sleep(delay)

    @staticmethod
    def _is_retryable(error: FetchError) -> bool:
        status = error.status_code
        return status is None or status >= 500 or status in RETRYABLE_CLIENT_STATUSES

    async def _record_status(self, method, property_id: str, value) -> None:
        try:
            await self._run_blocking(method, property_id, value)
        except Exception as e:
            logger.warning(
                f"Failed to record sync status for property {property_id}: {e}",
                extra={'property_id': property_id}
            )

    def _notify_job_limit(self, prop: Property, skipped: int) -> None:
        if self.notifier is None or not prop.user_id:
            return

        body = (
            f"{skipped} upcoming cleaning(s) at {prop.name} were not scheduled "
            f"because the limit of {self.reconciler.max_active_jobs} active jobs was reached."
        )
        self._run_in_background(
            self._notify_safely, prop.user_id, 'Job limit reached', body, 'job_limit_reached'
        )

    def _notify_safely(self, user_id: str, title: str, body: str, notification_type: str) -> None:
        try:
            self.notifier.notify(user_id, title, body, notification_type)
        except Exception as e:
            logger.warning(f"Notification dispatch failed: {type(e).__name__}")

    def _record_timeout_safely(self, property_id: str, message: str) -> None:
        try:
            self.persistence.mark_property_sync_error(property_id, message)
        except Exception as e:
            logger.warning(
                f"Failed to record sync status for property {property_id}: {e}",
                extra={'property_id': property_id}
            )

    def _run_in_background(self, func, *args) -> None:
        loop = asyncio.get_running_loop()
        self._background.append(
            loop.run_in_executor(self._executor, functools.partial(func, *args))
        )

    async def _drain_background(self) -> None:
        if self._background:
            await asyncio.wait(self._background, timeout=self.BACKGROUND_DRAIN_SECONDS)

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    @staticmethod
    def _failed_result(prop: Property, error: str) -> PropertyResult:
        return PropertyResult(
            property_id=prop.property_id,
            property_name=prop.name,
            success=False,
            jobs_created=0,
            error=error
        )

"""Reconciliation of inferred checkouts against existing cleaning jobs."""
import logging
from datetime import date, tzinfo
from typing import Iterable, List, Optional, Sequence, Set

from processor.checkout_extractor import UTC, local_day
from processor.models import (
    AssignedCleaner,
    Checkout,
    JobOutcome,
    JobRecord,
    JobStatus,
    PlannedJob,
)

logger = logging.getLogger(__name__)


def select_cleaner(cleaners: Iterable[AssignedCleaner]) -> Optional[str]:
    """
    Pick the cleaner for new jobs of a property.

    The primary cleaner wins. Without one, the earliest linked cleaner is
    used, ties broken by cleaner id.

    Args:
        cleaners: Cleaners assigned to the property

    Returns:
        Cleaner id or None if the property has no cleaners
    """
    cleaners = list(cleaners)
    if not cleaners:
        return None

    primaries = [c for c in cleaners if c.is_primary]
    candidates = primaries or cleaners
    chosen = min(candidates, key=lambda c: (c.created_at or '', c.cleaner_id))
    return chosen.cleaner_id


class JobReconciler:
    """Decides which checkouts become new cleaning jobs."""

    def __init__(self, tz: tzinfo = UTC, max_active_jobs: Optional[int] = None):
        """
        Initialize the reconciler.

        Args:
            tz: Operating timezone; job keys are calendar days in it
            max_active_jobs: Optional cap on pending/confirmed jobs per property
        """
        self.tz = tz
        self.max_active_jobs = max_active_jobs

    def plan(
        self,
        property_id: str,
        checkouts: Sequence[Checkout],
        existing_keys: Set[date],
        cleaner_id: Optional[str] = None,
        active_job_count: int = 0
    ) -> List[PlannedJob]:
        """
        Plan job creation for a property's upcoming checkouts.

        Existing jobs are never touched, so manual edits survive later syncs.

        Args:
            property_id: Property the checkouts belong to
            checkouts: Upcoming checkouts in checkout-date order
            existing_keys: Checkout days that already have a job
            cleaner_id: Cleaner to assign to new jobs
            active_job_count: Jobs already counting against the limit

        Returns:
            One PlannedJob per checkout, same order as the input
        """
        seen = set(existing_keys)
        planned = []
        created = 0

        for checkout in checkouts:
            checkout_day = local_day(checkout.date, self.tz)

            if checkout_day in seen:
                planned.append(PlannedJob(checkout, JobOutcome.SKIPPED_EXISTING))
                continue

            if self._limit_reached(active_job_count + created):
                planned.append(PlannedJob(checkout, JobOutcome.SKIPPED_LIMIT))
                continue

            seen.add(checkout_day)
            created += 1
            planned.append(PlannedJob(
                checkout,
                JobOutcome.CREATED,
                self._build_record(property_id, checkout, checkout_day, cleaner_id)
            ))

        logger.info(
            f"Reconciled {len(checkouts)} checkouts for property {property_id}: "
            f"{created} to create",
            extra={'property_id': property_id}
        )
        return planned

    def _limit_reached(self, active_count: int) -> bool:
        return self.max_active_jobs is not None and active_count >= self.max_active_jobs

    def _build_record(
        self,
        property_id: str,
        checkout: Checkout,
        checkout_day: date,
        cleaner_id: Optional[str]
    ) -> JobRecord:
        checkin_day = None
        if checkout.next_checkin_date is not None:
            checkin_day = local_day(checkout.next_checkin_date, self.tz)

        return JobRecord(
            property_id=property_id,
            checkout_date=checkout_day,
            cleaner_id=cleaner_id,
            checkin_date=checkin_day,
            status=JobStatus.PENDING.value,
            is_same_day_turnaround=checkout.has_same_day_checkin
        )

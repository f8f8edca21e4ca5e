"""Data models for calendar sync."""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CalendarEvent:
    """Normalized VEVENT from a booking feed."""
    uid: str
    summary: str
    start: datetime
    end: datetime
    location: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Checkout:
    """Booking end that may need a cleaning."""
    date: datetime
    source_event: CalendarEvent
    has_same_day_checkin: bool
    next_checkin_date: Optional[datetime] = None


@dataclass
class Property:
    """Rental property with a calendar subscription."""
    property_id: str
    name: str
    ical_url: str
    user_id: Optional[str] = None
    last_synced: Optional[str] = None
    sync_error: Optional[str] = None


@dataclass(frozen=True)
class AssignedCleaner:
    """Cleaner linked to a property."""
    cleaner_id: str
    is_primary: bool = False
    created_at: str = ""


class JobStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses counted towards a property's active job limit
ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.CONFIRMED.value)


@dataclass
class JobRecord:
    """Cleaning job to be written, keyed by property and checkout day."""
    property_id: str
    checkout_date: date
    cleaner_id: Optional[str] = None
    checkin_date: Optional[date] = None
    status: str = JobStatus.PENDING.value
    is_same_day_turnaround: bool = False


class JobOutcome(str, Enum):
    CREATED = "created"
    SKIPPED_EXISTING = "skipped-existing"
    SKIPPED_LIMIT = "skipped-limit"
    FAILED = "failed"


@dataclass
class PlannedJob:
    """Reconciler decision for one checkout."""
    checkout: Checkout
    outcome: JobOutcome
    record: Optional[JobRecord] = None


@dataclass
class PropertyResult:
    """Result of syncing a single property."""
    property_id: str
    property_name: str
    success: bool = False
    jobs_created: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'property_id': self.property_id,
            'property_name': self.property_name,
            'success': self.success,
            'jobs_created': self.jobs_created,
        }
        if self.error is not None:
            data['error'] = self.error
        return data


@dataclass
class SyncSummary:
    """Result of a full sync run."""
    attempted: int
    succeeded: int
    failed: int
    jobs_created: int
    details: List[PropertyResult] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[PropertyResult]) -> 'SyncSummary':
        succeeded = sum(1 for r in results if r.success)
        return cls(
            attempted=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            jobs_created=sum(r.jobs_created for r in results),
            details=list(results)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempted': self.attempted,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'jobs_created': self.jobs_created,
            'details': [r.to_dict() for r in self.details],
        }

"""Checkout inference from booking calendar events."""
import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from processor.models import CalendarEvent, Checkout

logger = logging.getLogger(__name__)

UTC = ZoneInfo('UTC')

BLOCKED_EXACT_LABELS = ('busy',)
BLOCKED_LABEL_MARKERS = ('blocked', 'unavailable', 'not available')

DEFAULT_HORIZON_DAYS = 30


def is_blocked(label: Optional[str]) -> bool:
    """
    Tell whether a calendar label marks host unavailability, not a stay.

    Args:
        label: Event summary

    Returns:
        True for blocked/unavailable entries
    """
    folded = (label or '').casefold()
    if folded in BLOCKED_EXACT_LABELS:
        return True
    return any(marker in folded for marker in BLOCKED_LABEL_MARKERS)


def local_day(value: datetime, tz: tzinfo = UTC) -> date:
    """Calendar day of a timestamp in the operating timezone."""
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(tz).date()


def detect_same_day_turnaround(
    checkout_date: datetime,
    events: Sequence[CalendarEvent],
    tz: tzinfo = UTC
) -> bool:
    """
    Check whether any non-blocked event starts on the checkout day.

    The triggering event is not excluded, so a booking that starts and ends
    on the same day counts as its own turnaround.

    Args:
        checkout_date: Checkout timestamp
        events: All events of the property
        tz: Operating timezone

    Returns:
        True if a check-in falls on the checkout day
    """
    checkout_day = local_day(checkout_date, tz)
    for event in events:
        if local_day(event.start, tz) == checkout_day and not is_blocked(event.summary):
            return True
    return False


def _next_checkin(sorted_events: Sequence[CalendarEvent], index: int) -> Optional[datetime]:
    for event in sorted_events[index + 1:]:
        if not is_blocked(event.summary):
            return event.start
    return None


def extract_checkouts(events: Sequence[CalendarEvent], tz: tzinfo = UTC) -> List[Checkout]:
    """
    Derive checkouts from a property's events.

    Args:
        events: Parsed calendar events, in any order
        tz: Operating timezone for calendar-day comparison

    Returns:
        One Checkout per non-blocked event, ordered by checkout date
    """
    if not events:
        return []

    # sorted() is stable, ties keep feed order
    sorted_events = sorted(events, key=lambda e: e.end)
    checkouts = []

    for index, event in enumerate(sorted_events):
        if is_blocked(event.summary):
            continue

        checkouts.append(Checkout(
            date=event.end,
            source_event=event,
            has_same_day_checkin=detect_same_day_turnaround(event.end, sorted_events, tz),
            next_checkin_date=_next_checkin(sorted_events, index)
        ))

    logger.debug(
        f"Extracted {len(checkouts)} checkouts from {len(events)} events"
    )
    return checkouts


def filter_upcoming_checkouts(
    checkouts: Sequence[Checkout],
    days: int = DEFAULT_HORIZON_DAYS,
    now: Optional[datetime] = None,
    tz: tzinfo = UTC
) -> List[Checkout]:
    """
    Keep checkouts between today and today + days, both inclusive.

    Args:
        checkouts: Checkouts to filter
        days: Horizon in days (default: 30)
        now: Reference time (default: current time)
        tz: Timezone that defines "today"

    Returns:
        Filtered checkouts in input order
    """
    if now is None:
        now = datetime.now(tz)
    today = local_day(now, tz)
    last_day = today + timedelta(days=days)

    return [
        checkout for checkout in checkouts
        if today <= local_day(checkout.date, tz) <= last_day
    ]

"""iCal parsing for booking feeds (Airbnb, VRBO, Booking.com and similar)."""
import logging
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

from icalendar import Calendar

from processor.errors import ParseError
from processor.models import CalendarEvent

logger = logging.getLogger(__name__)

_BEGIN_CALENDAR_RE = re.compile(r'BEGIN:VCALENDAR', re.IGNORECASE)

DEFAULT_SUMMARY = 'Untitled Event'


def to_local_datetime(value, tz: tzinfo) -> datetime:
    """
    Convert an iCal date or datetime value to an aware datetime in tz.

    All-day values become local midnight; floating times are read as local.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value.astimezone(tz)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=tz)
    raise ValueError(f"Unsupported date value: {type(value).__name__}")


class CalendarParser:
    """Parser turning raw iCal text into CalendarEvent objects."""

    def __init__(self, tz: Optional[tzinfo] = None):
        """
        Initialize the parser.

        Args:
            tz: Operating timezone used for all-day and floating times
                (default: UTC)
        """
        self.tz = tz or ZoneInfo('UTC')

    def parse(self, ical_text: str) -> List[CalendarEvent]:
        """
        Parse all VEVENTs from a calendar document.

        Broken events are skipped so one bad entry does not lose the feed.

        Args:
            ical_text: Raw calendar text

        Returns:
            List of CalendarEvent objects in feed order

        Raises:
            ParseError: If the document itself cannot be parsed
        """
        calendar = self._load_calendar(ical_text)

        events = []
        skipped = 0
        for component in calendar.walk('VEVENT'):
            try:
                event = self._parse_component(component)
            except Exception as e:
                skipped += 1
                logger.warning(f"Failed to parse calendar event: {e}")
                continue
            if event:
                events.append(event)

        logger.info(
            f"Parsed {len(events)} events from calendar "
            f"({skipped} malformed entries skipped)"
        )
        return events

    def _load_calendar(self, ical_text: str) -> Calendar:
        if not ical_text or not _BEGIN_CALENDAR_RE.search(ical_text):
            raise ParseError("Calendar data has no VCALENDAR block")
        try:
            calendar = Calendar.from_ical(ical_text)
        except Exception as e:
            logger.warning(f"Calendar document rejected: {e}")
            raise ParseError() from e
        if getattr(calendar, 'name', None) != 'VCALENDAR':
            raise ParseError("Calendar data has no VCALENDAR block")
        return calendar

    def _parse_component(self, component) -> Optional[CalendarEvent]:
        """
        Parse a single VEVENT component.

        Args:
            component: icalendar Event component

        Returns:
            CalendarEvent or None if the entry has no start time
        """
        if component.errors:
            logger.warning(
                f"Calendar event has invalid properties: "
                f"{[name for name, _ in component.errors]}"
            )

        dtstart = component.get('DTSTART')
        if dtstart is None:
            return None

        start = to_local_datetime(getattr(dtstart, 'dt', None), self.tz)

        dtend = component.get('DTEND')
        duration = component.get('DURATION')
        if dtend is not None:
            end = to_local_datetime(getattr(dtend, 'dt', None), self.tz)
        elif duration is not None and isinstance(getattr(duration, 'dt', None), timedelta):
            end = start + duration.dt
        else:
            end = start

        summary = str(component.get('SUMMARY') or '').strip() or DEFAULT_SUMMARY
        location = component.get('LOCATION')
        description = component.get('DESCRIPTION')

        return CalendarEvent(
            uid=str(component.get('UID') or ''),
            summary=summary,
            start=start,
            end=end,
            location=str(location) if location else None,
            description=str(description) if description else None
        )

"""Exception types raised by the calendar sync pipeline."""
from typing import Optional


class SyncError(Exception):
    """Base class for errors recorded against a single property."""


class FetchError(SyncError):
    """Calendar feed could not be retrieved."""

    def __init__(self, status_code: Optional[int], description: str):
        self.status_code = status_code
        self.description = description
        if status_code is None:
            message = f"Failed to fetch calendar: {description}"
        else:
            message = f"Failed to fetch calendar: {status_code} {description}".rstrip()
        super().__init__(message)


class EmptyFeedError(SyncError):
    """Calendar feed returned an empty body."""

    def __init__(self, message: str = "Calendar feed is empty"):
        super().__init__(message)


class ParseError(SyncError):
    """Calendar feed is not a valid iCal document."""

    def __init__(self, message: str = "Failed to parse calendar data"):
        super().__init__(message)


class PersistenceError(SyncError):
    """A storage call failed."""

"""HTTP fetcher for iCal booking feeds."""
import logging
import re

import requests

from processor.errors import EmptyFeedError, FetchError

logger = logging.getLogger(__name__)

_WEBCAL_RE = re.compile(r'^webcal://', re.IGNORECASE)


def normalize_calendar_url(url: str) -> str:
    """
    Rewrite calendar subscription URLs to plain HTTPS.

    Args:
        url: Feed URL, possibly using the webcal:// pseudo-scheme

    Returns:
        URL usable by an HTTP client
    """
    return _WEBCAL_RE.sub('https://', url.strip())


class CalendarFetcher:
    """Downloads raw calendar text from booking platforms."""

    ACCEPT_HEADER = 'text/calendar, application/ics, text/plain'

    def __init__(self, timeout: int = 30):
        """
        Initialize the fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.timeout = timeout

    def fetch(self, url: str) -> str:
        """
        Fetch a calendar feed.

        Failures are reported once; retrying is left to the caller.

        Args:
            url: Feed URL (http, https or webcal)

        Returns:
            Raw calendar text

        Raises:
            FetchError: If the request fails or returns a non-success status
            EmptyFeedError: If the response body is blank
        """
        if not url or not url.strip():
            raise FetchError(None, "Calendar URL is missing")

        fetch_url = normalize_calendar_url(url)

        try:
            response = requests.get(
                fetch_url,
                headers={'Accept': self.ACCEPT_HEADER},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            # Exception text embeds the URL, which carries the feed's secret token
            logger.warning(f"Calendar request failed: {type(e).__name__}")
            raise FetchError(None, type(e).__name__) from e

        if not response.ok:
            logger.warning(
                f"Calendar request returned HTTP {response.status_code}"
            )
            raise FetchError(response.status_code, response.reason or '')

        body = response.text
        if not body or not body.strip():
            raise EmptyFeedError()

        logger.debug(f"Fetched {len(body)} characters of calendar data")
        return body

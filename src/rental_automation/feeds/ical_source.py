"""iCal reservation feeds."""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

import httpx
from icalendar import Calendar

from rental_automation.config import UNAVAILABLE_SUMMARIES, ExtractionPattern

logger = logging.getLogger(__name__)


class EventFetchError(Exception):
    """A feed could not be fetched after all retries."""


@dataclass(frozen=True)
class ReservationEvent:
    """A reservation window from a calendar feed."""

    start: date | datetime
    end: date | datetime
    summary: str
    description: str
    platform: str
    uid: str = ""

    def __repr__(self) -> str:
        return f"<ReservationEvent {self.platform} {self.summary!r} {self.start}-{self.end}>"


@dataclass(frozen=True)
class ReservationDetails:
    """Identifier and code fragment extracted from an event."""

    reservation_number: str
    phone_number: str


def is_unavailable(summary: str) -> bool:
    """True for placeholder blocks that are not guest stays."""
    cleaned = summary.strip().lower()
    return not cleaned or cleaned in UNAVAILABLE_SUMMARIES


def extract_reservation(
    event: ReservationEvent, pattern: ExtractionPattern
) -> Optional[ReservationDetails]:
    """Pull the reservation identifier and 4-digit phone fragment out of an event.

    The description is searched first, then the summary.

    Returns:
        The details, or None if either value is missing
    """
    texts = [event.description or "", event.summary or ""]

    reservation = None
    phone = None
    for text in texts:
        if reservation is None:
            match = re.search(pattern.reservation, text)
            if match:
                reservation = match.group(1)
        if phone is None:
            match = re.search(pattern.phone, text)
            if match:
                phone = match.group(1)

    if not reservation or not phone:
        return None
    return ReservationDetails(reservation_number=reservation, phone_number=phone[-4:])


def parse_ical_feed(ical_content: str, platform: str) -> list[ReservationEvent]:
    """Parse an iCal feed into reservation events, dropping unavailable blocks.

    Raises:
        ValueError: If the content cannot be parsed
    """
    try:
        cal = Calendar.from_ical(ical_content)
    except Exception as e:
        raise ValueError(f"Failed to parse iCal content: {e}")

    events: list[ReservationEvent] = []
    for component in cal.walk():
        if component.name != "VEVENT":
            continue

        summary = str(component.get("SUMMARY", "")).strip()
        if is_unavailable(summary):
            continue

        dtstart = component.get("DTSTART")
        dtend = component.get("DTEND")
        if not dtstart or not dtend:
            continue

        events.append(
            ReservationEvent(
                start=dtstart.dt,
                end=dtend.dt,
                summary=summary,
                description=str(component.get("DESCRIPTION", "")).strip(),
                platform=platform,
                uid=str(component.get("UID", "")),
            )
        )

    return events


class ICalEventSource:
    """Fetches every configured feed and tags its events with the feed's platform."""

    def __init__(
        self,
        feeds: dict[str, str],
        attempts: int = 5,
        retry_interval: float = 30.0,
        allow_empty: bool = False,
        timeout: float = 30.0,
    ):
        """Initialize the source.

        Args:
            feeds: Platform tag -> iCal URL
            attempts: Fetch attempts per feed before giving up
            retry_interval: Seconds between attempts
            allow_empty: Accept a feed with no events instead of retrying
            timeout: Request timeout in seconds
        """
        self.feeds = feeds
        self.attempts = max(1, attempts)
        self.retry_interval = retry_interval
        self.allow_empty = allow_empty
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_and_parse(self, platform: str, url: str) -> list[ReservationEvent]:
        """Fetch one feed once.

        Raises:
            httpx.HTTPError: If the fetch fails
            ValueError: If the content cannot be parsed
        """
        client = await self._get_client()
        response = await client.get(url)
        response.raise_for_status()
        return parse_ical_feed(response.text, platform)

    async def _fetch_with_retry(self, platform: str, url: str) -> list[ReservationEvent]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            if attempt == 1:
                logger.info(f"Getting events from {platform} feed..")
            else:
                logger.info(f"Getting events from {platform} feed (retry {attempt}/{self.attempts})..")
            try:
                events = await self.fetch_and_parse(platform, url)
                # Some feeds intermittently come back empty
                if not events and not self.allow_empty:
                    raise ValueError("No events returned")
                logger.info(f"Found {len(events)} events in {platform} feed")
                return events
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Error getting events from {platform} feed: {e}")
                if attempt < self.attempts:
                    await asyncio.sleep(self.retry_interval)

        raise EventFetchError(
            f"{platform} feed failed after {self.attempts} attempts: {last_error}"
        )

    async def fetch_events(self) -> list[ReservationEvent]:
        """Fetch all feeds.

        Raises:
            EventFetchError: If any feed cannot be fetched, so a partial
                outage is never mistaken for cancellations
        """
        events: list[ReservationEvent] = []
        for platform, url in self.feeds.items():
            if not url:
                continue
            events.extend(await self._fetch_with_retry(platform, url))
        return events

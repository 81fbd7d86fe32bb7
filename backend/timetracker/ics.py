from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import requests
from icalendar import Calendar

from .errors import TimetrackerError
from .models import CalendarEvent
from .utils import LOCAL_TZ, ensure_local, normalize_calendar_urls

logger = logging.getLogger(__name__)

DEFAULT_EVENT_COLOR = "#ffffff"
UNTITLED_EVENT = "Untitled"


class CalendarFeedError(TimetrackerError):
    """A calendar feed could not be fetched or parsed."""


def _coerce_ical_datetime(value: Any) -> Optional[dt.datetime]:
    if value is None:
        return None
    attr = getattr(value, "dt", value)
    if isinstance(attr, dt.datetime):
        if attr.tzinfo is None:
            attr = attr.replace(tzinfo=LOCAL_TZ)
        return ensure_local(attr)
    if isinstance(attr, dt.date):
        return dt.datetime.combine(attr, dt.time.min, tzinfo=LOCAL_TZ)
    return None


def _ical_to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def _normalize_event_color(value: str) -> str:
    text = value.strip()
    if not text:
        return DEFAULT_EVENT_COLOR
    if text.startswith("#"):
        return text
    return f"#{text}"


def source_name_for(calendar: Calendar, url: str) -> str:
    name = _ical_to_string(calendar.get("X-WR-CALNAME")).strip()
    if name:
        return name
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path)).stem or url
    host = parsed.hostname or ""
    if host.startswith("www."):
        host = host[len("www."):]
    return host or url


def fetch_calendar_text(url: str, timeout: float = 15) -> str:
    parsed = urlparse(url)
    try:
        if parsed.scheme == "file":
            return Path(unquote(parsed.path)).read_text(encoding="utf-8")
        response = requests.get(url, timeout=timeout, headers={"Accept": "text/calendar"})
        response.raise_for_status()
    except (OSError, requests.RequestException) as exc:
        raise CalendarFeedError(f"Could not fetch calendar {url}: {exc}") from exc
    return response.text


def parse_calendar(text: str, url: str) -> List[CalendarEvent]:
    try:
        calendar = Calendar.from_ical(text)
    except ValueError as exc:
        raise CalendarFeedError(f"Calendar {url} is not valid iCalendar data: {exc}") from exc

    source = source_name_for(calendar, url)
    events: List[CalendarEvent] = []
    for index, vevent in enumerate(calendar.walk("VEVENT")):
        start_time = _coerce_ical_datetime(vevent.get("dtstart"))
        if start_time is None:
            continue
        end_time = _coerce_ical_datetime(vevent.get("dtend")) or start_time
        uid = _ical_to_string(vevent.get("uid")).strip() or f"{source}-{index}"
        events.append(
            CalendarEvent(
                id=f"ics-{uid}",
                title=_ical_to_string(vevent.get("summary")).strip() or UNTITLED_EVENT,
                start_time=start_time,
                end_time=end_time,
                source_name=source,
                color=_normalize_event_color(_ical_to_string(vevent.get("color"))),
                description=_ical_to_string(vevent.get("description")),
                location=_ical_to_string(vevent.get("location")),
                url=_ical_to_string(vevent.get("url")),
            )
        )
    return events


@dataclass
class FeedResult:
    events: List[CalendarEvent] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


Fetcher = Callable[[str], str]


def fetch_calendar_events(urls: Iterable[str], fetch: Fetcher = fetch_calendar_text) -> FeedResult:
    """Fetch every feed; one failing URL does not affect the others."""
    result = FeedResult()
    for url in normalize_calendar_urls(urls):
        try:
            result.events.extend(parse_calendar(fetch(url), url))
        except CalendarFeedError as exc:
            logger.error("Failed to load calendar feed %s: %s", url, exc)
            result.errors[url] = str(exc)
    logger.info("Fetched %d calendar events (%d feeds failed)", len(result.events), len(result.errors))
    return result


class CalendarCache:
    """Last fetched events; a refresh is skipped while another one runs."""

    def __init__(self) -> None:
        self._loading = Lock()
        self.events: List[CalendarEvent] = []
        self.errors: Dict[str, str] = {}
        self.fetched = False
        self.fetched_at: Optional[dt.datetime] = None

    @property
    def loading(self) -> bool:
        return self._loading.locked()

    def refresh(self, urls: Iterable[str], fetch: Fetcher = fetch_calendar_text) -> bool:
        if not self._loading.acquire(blocking=False):
            logger.debug("Calendar refresh already in progress")
            return False
        try:
            result = fetch_calendar_events(urls, fetch)
            self.events = result.events
            self.errors = result.errors
            self.fetched = True
            self.fetched_at = ensure_local(dt.datetime.now(LOCAL_TZ))
        finally:
            self._loading.release()
        return True

    def in_range(self, start: dt.datetime, end: dt.datetime) -> List[CalendarEvent]:
        return sorted(
            (event for event in self.events if event.start_time < end and event.end_time >= start),
            key=lambda event: event.start_time,
        )

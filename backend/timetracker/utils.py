from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, List, Optional
from zoneinfo import ZoneInfo

from .config import settings

LOCAL_TZ = ZoneInfo(settings.timezone)


def now() -> dt.datetime:
    """Wall clock in the local zone, truncated to the file format's resolution."""
    return dt.datetime.now(LOCAL_TZ).replace(microsecond=0)


def ensure_local(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(LOCAL_TZ).replace(microsecond=0)


def ensure_local_optional(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    return ensure_local(value)


def to_millis(value: dt.datetime) -> int:
    return int(value.timestamp() * 1000)


def normalize_calendar_url(value: Any) -> Optional[str]:
    """Return a trimmed calendar URL, or None for blank input."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.lower().startswith("webcal://"):
        text = "https://" + text[len("webcal://"):]
    return text


def normalize_calendar_urls(values: Iterable[Any]) -> List[str]:
    seen: set[str] = set()
    normalized: List[str] = []
    for value in values:
        candidate = normalize_calendar_url(value)
        if not candidate or candidate in seen:
            continue
        normalized.append(candidate)
        seen.add(candidate)
    return normalized

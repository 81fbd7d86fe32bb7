from __future__ import annotations

import datetime as dt
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .models import TimeRecord
from .store import RecordStore
from .utils import LOCAL_TZ, ensure_local

RANGE_KINDS = ("day", "week", "month", "year", "custom")


def format_duration(seconds: float, show_seconds: bool = True) -> str:
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if show_seconds:
        if hours > 0:
            return f"{hours}:{minutes:02d}:{secs:02d}"
        return f"{minutes}:{secs:02d}"
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{secs}s"


def _midnight(day: dt.date) -> dt.datetime:
    return dt.datetime.combine(day, dt.time.min, tzinfo=LOCAL_TZ)


def time_range(
    kind: str,
    at: Optional[dt.datetime] = None,
    custom_start: Optional[dt.date] = None,
    custom_end: Optional[dt.date] = None,
) -> Tuple[dt.datetime, dt.datetime]:
    """Half-open ``[start, end)`` range around ``at``. Weeks start on Monday."""
    day = ensure_local(at or dt.datetime.now(LOCAL_TZ)).date()
    if kind == "day":
        start = day
        end = day + dt.timedelta(days=1)
    elif kind == "week":
        start = day - dt.timedelta(days=day.weekday())
        end = start + dt.timedelta(days=7)
    elif kind == "month":
        start = day.replace(day=1)
        end = (start + dt.timedelta(days=32)).replace(day=1)
    elif kind == "year":
        start = day.replace(month=1, day=1)
        end = start.replace(year=start.year + 1)
    elif kind == "custom":
        if custom_start is None or custom_end is None:
            raise ValueError("custom range needs both a start and an end date")
        if custom_end < custom_start:
            raise ValueError("custom range ends before it starts")
        start = custom_start
        end = custom_end + dt.timedelta(days=1)
    else:
        raise ValueError(f"Unknown time range: {kind}")
    return _midnight(start), _midnight(end)


def _clipped_seconds(record: TimeRecord, start: dt.datetime, end: dt.datetime, now: Optional[dt.datetime]) -> int:
    record_end = record.end_time or now
    if record_end is None:
        return 0
    clipped_start = max(record.start_time, start)
    clipped_end = min(record_end, end)
    if clipped_end <= clipped_start:
        return 0
    return int((clipped_end - clipped_start).total_seconds())


def project_durations(
    records: Iterable[TimeRecord],
    start: dt.datetime,
    end: dt.datetime,
    now: Optional[dt.datetime] = None,
) -> Dict[int, int]:
    """Seconds per project inside the range.

    Running records are only counted when ``now`` is given.
    """
    totals: Dict[int, int] = defaultdict(int)
    for record in records:
        seconds = _clipped_seconds(record, start, end, now)
        if seconds:
            totals[record.project_id] += seconds
    return dict(totals)


@dataclass
class ProjectTotal:
    project_id: int
    name: str
    color: str
    icon: str
    seconds: int
    formatted: str


def project_summary(
    store: RecordStore,
    start: dt.datetime,
    end: dt.datetime,
    show_seconds: bool = True,
    now: Optional[dt.datetime] = None,
) -> List[ProjectTotal]:
    totals = project_durations(store.records, start, end, now)
    rows: List[ProjectTotal] = []
    for project_id, seconds in totals.items():
        project = store.get_project(project_id)
        rows.append(
            ProjectTotal(
                project_id=project_id,
                name=store.project_label(project_id),
                color=project.color if project else "",
                icon=project.icon if project else "",
                seconds=seconds,
                formatted=format_duration(seconds, show_seconds),
            )
        )
    rows.sort(key=lambda row: (-row.seconds, row.name.casefold()))
    return rows


def daily_series(
    records: Iterable[TimeRecord],
    start: dt.datetime,
    end: dt.datetime,
    now: Optional[dt.datetime] = None,
) -> Dict[int, List[Tuple[dt.date, int]]]:
    """Per project, one ``(day, seconds)`` point for every day of the range."""
    records = list(records)
    days: List[dt.date] = []
    cursor = start.date()
    while _midnight(cursor) < end:
        days.append(cursor)
        cursor += dt.timedelta(days=1)

    series: Dict[int, List[Tuple[dt.date, int]]] = {}
    for index, day in enumerate(days):
        day_start = max(_midnight(day), start)
        day_end = min(_midnight(day + dt.timedelta(days=1)), end)
        for project_id, seconds in project_durations(records, day_start, day_end, now).items():
            points = series.setdefault(project_id, [(d, 0) for d in days])
            points[index] = (day, seconds)
    return series

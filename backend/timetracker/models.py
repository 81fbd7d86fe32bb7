from __future__ import annotations

import copy
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

NO_PROJECT = -1
UNCATEGORIZED = -1

DEFAULT_CATEGORY_COLOR = "#88C0D0"
DEFAULT_TIMEBLOCK_COLOR = "#6b7280"


@dataclass(slots=True)
class Category:
    id: int
    name: str
    color: str = DEFAULT_CATEGORY_COLOR
    archived: bool = False
    order: int = 0


@dataclass(slots=True)
class Project:
    id: int
    name: str
    icon: str
    color: str
    category_id: int = UNCATEGORIZED
    archived: bool = False
    order: int = 0


@dataclass(slots=True)
class TimeRecord:
    """A tracked interval. ``end_time`` is None while the timer is running."""

    id: int
    project_id: int
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    title: str = ""

    @property
    def is_running(self) -> bool:
        return self.end_time is None

    def mark_stopped(self, now: dt.datetime) -> None:
        if self.end_time is not None:
            return
        self.end_time = now

    def duration_seconds(self, now: Optional[dt.datetime] = None) -> int:
        end = self.end_time or now
        if end is None:
            return 0
        return max(int((end - self.start_time).total_seconds()), 0)


@dataclass(slots=True)
class Timesheet:
    """Aggregate root of everything stored in the timesheet file."""

    records: List[TimeRecord] = field(default_factory=list)
    projects: List[Project] = field(default_factory=list)
    categories: List[Category] = field(default_factory=list)

    def copy(self) -> "Timesheet":
        return copy.deepcopy(self)


@dataclass(slots=True)
class Timeblock:
    """A planned block of time, stored apart from the tracked records."""

    id: int
    title: str
    start_time: dt.datetime
    end_time: dt.datetime
    color: str = DEFAULT_TIMEBLOCK_COLOR
    notes: str = ""


@dataclass(slots=True)
class CalendarEvent:
    """Read-only event taken from an external ICS feed."""

    id: str
    title: str
    start_time: dt.datetime
    end_time: dt.datetime
    source_name: str
    color: str = "#ffffff"
    description: str = ""
    location: str = ""
    url: str = ""

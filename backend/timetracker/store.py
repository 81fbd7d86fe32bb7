from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .models import (
    DEFAULT_CATEGORY_COLOR,
    NO_PROJECT,
    UNCATEGORIZED,
    Category,
    Project,
    Timeblock,
    TimeRecord,
    Timesheet,
)
from .utils import ensure_local, ensure_local_optional

UNKNOWN_PROJECT_LABEL = "Unknown project"
NO_PROJECT_LABEL = "No project"
UNCATEGORIZED_LABEL = "Uncategorized"

PROJECT_FIELDS = {"name", "icon", "color", "category_id", "archived", "order"}
CATEGORY_FIELDS = {"name", "color", "archived", "order"}
RECORD_FIELDS = {"project_id", "start_time", "end_time", "title"}
TIMEBLOCK_FIELDS = {"title", "start_time", "end_time", "color", "notes"}


class _HasId(Protocol):
    id: int


def next_id(items: Iterable[_HasId]) -> int:
    """``max(ids) + 1``, or 1 for an empty collection.

    Not collision safe with concurrent writers; all access is serialized.
    """
    ids = [item.id for item in items]
    if not ids:
        return 1
    return max(ids) + 1


def _apply_changes(target: Any, changes: Dict[str, Any], allowed: set[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    for key, value in changes.items():
        if key in {"start_time", "end_time"}:
            value = ensure_local_optional(value)
        setattr(target, key, value)


class RecordStore:
    """In-memory owner of a :class:`Timesheet` with its derived queries."""

    def __init__(self, timesheet: Optional[Timesheet] = None) -> None:
        self.timesheet = timesheet if timesheet is not None else Timesheet()

    @property
    def records(self) -> List[TimeRecord]:
        return self.timesheet.records

    @property
    def projects(self) -> List[Project]:
        return self.timesheet.projects

    @property
    def categories(self) -> List[Category]:
        return self.timesheet.categories

    def replace(self, timesheet: Timesheet) -> None:
        self.timesheet = timesheet

    # ------------------------------------------------------------------
    # Running state
    # ------------------------------------------------------------------
    def running_records(self) -> List[TimeRecord]:
        return [record for record in self.records if record.end_time is None]

    def running_record_for(self, project_id: int) -> Optional[TimeRecord]:
        for record in self.records:
            if record.end_time is None and record.project_id == project_id:
                return record
        return None

    def is_project_running(self, project_id: int) -> bool:
        return self.running_record_for(project_id) is not None

    def last_stopped_record(self) -> Optional[TimeRecord]:
        """Completed record with the latest end time; ties go to the highest id."""
        completed = [record for record in self.records if record.end_time is not None]
        if not completed:
            return None
        return max(completed, key=lambda record: (record.end_time, record.id))

    def recent_title_for(self, project_id: int) -> str:
        completed = [
            record
            for record in self.records
            if record.project_id == project_id and record.end_time is not None
        ]
        if not completed:
            return ""
        latest = max(completed, key=lambda record: (record.end_time, record.id))
        return latest.title

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_record(self, record_id: int) -> Optional[TimeRecord]:
        return next((record for record in self.records if record.id == record_id), None)

    def get_project(self, project_id: int) -> Optional[Project]:
        return next((project for project in self.projects if project.id == project_id), None)

    def get_category(self, category_id: int) -> Optional[Category]:
        return next((category for category in self.categories if category.id == category_id), None)

    def find_project_by_name(self, name: str) -> Optional[Project]:
        wanted = name.strip().casefold()
        return next((project for project in self.projects if project.name.casefold() == wanted), None)

    def find_category_by_name(self, name: str) -> Optional[Category]:
        wanted = name.strip().casefold()
        return next((category for category in self.categories if category.name.casefold() == wanted), None)

    def project_label(self, project_id: int) -> str:
        if project_id == NO_PROJECT:
            return NO_PROJECT_LABEL
        project = self.get_project(project_id)
        return project.name if project else UNKNOWN_PROJECT_LABEL

    def category_label(self, category_id: int) -> str:
        category = self.get_category(category_id)
        return category.name if category else UNCATEGORIZED_LABEL

    def records_for_project(self, project_id: int) -> List[TimeRecord]:
        return [record for record in self.records if record.project_id == project_id]

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    def create_category(self, name: str, color: str = DEFAULT_CATEGORY_COLOR) -> Category:
        category = Category(
            id=next_id(self.categories),
            name=name.strip(),
            color=color,
            archived=False,
            order=len(self.categories),
        )
        self.categories.append(category)
        return category

    def update_category(self, category_id: int, changes: Dict[str, Any]) -> Optional[Category]:
        category = self.get_category(category_id)
        if category is None:
            return None
        _apply_changes(category, changes, CATEGORY_FIELDS)
        return category

    def archive_category(self, category_id: int, archived: bool = True) -> bool:
        return self.update_category(category_id, {"archived": archived}) is not None

    def delete_category(self, category_id: int) -> bool:
        """Remove a category and move its projects to "uncategorized"."""
        category = self.get_category(category_id)
        if category is None:
            return False
        self.timesheet.categories = [c for c in self.categories if c.id != category_id]
        for project in self.projects:
            if project.category_id == category_id:
                project.category_id = UNCATEGORIZED
        return True

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    def create_project(
        self,
        name: str,
        icon: str,
        color: str,
        category_id: int = UNCATEGORIZED,
    ) -> Project:
        project = Project(
            id=next_id(self.projects),
            name=name.strip(),
            icon=icon.strip(),
            color=color,
            category_id=category_id,
            archived=False,
            order=len(self.projects),
        )
        self.projects.append(project)
        return project

    def update_project(self, project_id: int, changes: Dict[str, Any]) -> Optional[Project]:
        project = self.get_project(project_id)
        if project is None:
            return None
        _apply_changes(project, changes, PROJECT_FIELDS)
        return project

    def archive_project(self, project_id: int, archived: bool = True) -> bool:
        return self.update_project(project_id, {"archived": archived}) is not None

    def delete_project(self, project_id: int) -> bool:
        """Remove a project. Its records keep the now dangling id."""
        if self.get_project(project_id) is None:
            return False
        self.timesheet.projects = [p for p in self.projects if p.id != project_id]
        return True

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def add_record(
        self,
        project_id: int,
        start_time: dt.datetime,
        end_time: Optional[dt.datetime] = None,
        title: str = "",
    ) -> TimeRecord:
        record = TimeRecord(
            id=next_id(self.records),
            project_id=project_id,
            start_time=ensure_local(start_time),
            end_time=ensure_local_optional(end_time),
            title=title,
        )
        self.records.append(record)
        return record

    def update_record(self, record_id: int, changes: Dict[str, Any]) -> Optional[TimeRecord]:
        record = self.get_record(record_id)
        if record is None:
            return None
        _apply_changes(record, changes, RECORD_FIELDS)
        return record

    def delete_record(self, record_id: int) -> bool:
        if self.get_record(record_id) is None:
            return False
        self.timesheet.records = [r for r in self.records if r.id != record_id]
        return True


class TimeblockStore:
    """Planned timeblocks, kept in their own file."""

    def __init__(self, timeblocks: Optional[List[Timeblock]] = None) -> None:
        self.timeblocks: List[Timeblock] = list(timeblocks or [])

    def get(self, timeblock_id: int) -> Optional[Timeblock]:
        return next((block for block in self.timeblocks if block.id == timeblock_id), None)

    def in_range(self, start: dt.datetime, end: dt.datetime) -> List[Timeblock]:
        return sorted(
            (block for block in self.timeblocks if block.start_time < end and block.end_time > start),
            key=lambda block: block.start_time,
        )

    def create(
        self,
        title: str,
        start_time: dt.datetime,
        end_time: dt.datetime,
        color: str,
        notes: str = "",
    ) -> Timeblock:
        block = Timeblock(
            id=next_id(self.timeblocks),
            title=title.strip(),
            start_time=ensure_local(start_time),
            end_time=ensure_local(end_time),
            color=color,
            notes=notes.strip(),
        )
        self.timeblocks.append(block)
        return block

    def update(self, timeblock_id: int, changes: Dict[str, Any]) -> Optional[Timeblock]:
        block = self.get(timeblock_id)
        if block is None:
            return None
        _apply_changes(block, changes, TIMEBLOCK_FIELDS)
        return block

    def delete(self, timeblock_id: int) -> bool:
        if self.get(timeblock_id) is None:
            return False
        self.timeblocks = [block for block in self.timeblocks if block.id != timeblock_id]
        return True

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, model_serializer

from .models import DEFAULT_CATEGORY_COLOR, DEFAULT_TIMEBLOCK_COLOR, NO_PROJECT, UNCATEGORIZED


def _serialize_datetime(value: dt.datetime) -> str:
    return value.isoformat()


def _serialize_optional(value: Optional[dt.datetime]) -> Optional[str]:
    return _serialize_datetime(value) if value else None


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    color: str
    archived: bool
    order: int


class CategoryCreateRequest(BaseModel):
    name: str
    color: str = DEFAULT_CATEGORY_COLOR


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    archived: Optional[bool] = None
    order: Optional[int] = None


class ArchiveRequest(BaseModel):
    archived: bool = True


class ProjectResponse(BaseModel):
    id: int
    name: str
    icon: str
    color: str
    category_id: int
    category_name: str
    archived: bool
    order: int
    running: bool


class ProjectCreateRequest(BaseModel):
    name: str
    icon: str
    color: str = DEFAULT_CATEGORY_COLOR
    category_id: int = UNCATEGORIZED


class ProjectUpdateRequest(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    category_id: Optional[int] = None
    archived: Optional[bool] = None
    order: Optional[int] = None


class RecordResponse(BaseModel):
    id: int
    project_id: int
    project_name: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime]
    title: str
    running: bool
    duration_seconds: int

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "start_time": _serialize_datetime(self.start_time),
            "end_time": _serialize_optional(self.end_time),
            "title": self.title,
            "running": self.running,
            "duration_seconds": self.duration_seconds,
        }


class RecordCreateRequest(BaseModel):
    project_id: int = NO_PROJECT
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    title: str = ""


class RecordUpdateRequest(BaseModel):
    project_id: Optional[int] = None
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    title: Optional[str] = None


class TimerStartRequest(BaseModel):
    project_id: int = NO_PROJECT
    title: str = ""
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None


class TimerStopRequest(BaseModel):
    project_id: int = NO_PROJECT


class TimerEventResponse(BaseModel):
    action: str
    changed: bool
    record_ids: List[int] = Field(default_factory=list)
    stopped_ids: List[int] = Field(default_factory=list)
    running: List[RecordResponse] = Field(default_factory=list)


class TimeblockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    title: str
    start_time: dt.datetime
    end_time: dt.datetime
    color: str
    notes: str

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "start_time": _serialize_datetime(self.start_time),
            "end_time": _serialize_datetime(self.end_time),
            "color": self.color,
            "notes": self.notes,
        }


class TimeblockCreateRequest(BaseModel):
    title: str
    start_time: dt.datetime
    end_time: dt.datetime
    color: str = DEFAULT_TIMEBLOCK_COLOR
    notes: str = ""


class TimeblockUpdateRequest(BaseModel):
    title: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None
    color: Optional[str] = None
    notes: Optional[str] = None


class ContentRequest(BaseModel):
    content: str


class MergeResponse(BaseModel):
    replaced: List[int]
    added: List[int]
    skipped: List[int]
    categories_added: List[str]
    projects_added: List[str]


class ImportSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    records_imported: int
    records_skipped: int
    projects_added: int
    projects_matched: int
    categories_added: int
    categories_matched: int


class BackupResponse(BaseModel):
    name: str
    size: int
    modified_at: dt.datetime


class CalendarEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    title: str
    start_time: dt.datetime
    end_time: dt.datetime
    source_name: str
    color: str
    description: str
    location: str
    url: str


class CalendarEventsResponse(BaseModel):
    fetched: bool
    loading: bool
    events: List[CalendarEventResponse]
    errors: Dict[str, str]


class ProjectTotalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    project_id: int
    name: str
    color: str
    icon: str
    seconds: int
    formatted: str


class ChartPoint(BaseModel):
    day: dt.date
    seconds: int


class ReportResponse(BaseModel):
    range: str
    start: dt.datetime
    end: dt.datetime
    total_seconds: int
    total_formatted: str
    projects: List[ProjectTotalResponse]
    series: Dict[int, List[ChartPoint]]


class EmbedConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    type: str
    project_id: Optional[int]
    category_id: Optional[int]
    recent_records: int
    show_timer: bool
    size: str


class EmbedResponse(BaseModel):
    config: EmbedConfigResponse
    projects: List[ProjectResponse]
    running: List[RecordResponse]
    recent: List[RecordResponse]


class StatusResponse(BaseModel):
    loaded: bool
    revision: int
    last_error: Optional[str]
    unsaved_changes: bool
    read_only: bool = False
    running_records: int
    timesheet_path: str


class ReloadResponse(BaseModel):
    result: str
    revision: int


class SettingsResponse(BaseModel):
    app_name: str
    timezone: str
    data_dir: str
    retroactive_tracking_enabled: bool
    multitasking_enabled: bool
    retroactive_tolerance_seconds: int
    show_seconds: bool
    show_archived_projects: bool
    grid_columns: int
    default_time_range: str
    custom_start_date: Optional[dt.date]
    custom_end_date: Optional[dt.date]
    embedded_recent_records_count: int
    sort_mode: str
    category_filter: List[int]
    ics_calendars: List[str]
    enable_timeblocking: bool


class SettingsUpdateRequest(BaseModel):
    retroactive_tracking_enabled: Optional[bool] = None
    multitasking_enabled: Optional[bool] = None
    retroactive_tolerance_seconds: Optional[int] = Field(default=None, ge=0)
    show_seconds: Optional[bool] = None
    show_archived_projects: Optional[bool] = None
    grid_columns: Optional[int] = Field(default=None, ge=1, le=6)
    default_time_range: Optional[Literal["day", "week", "month", "year", "custom"]] = None
    custom_start_date: Optional[dt.date] = None
    custom_end_date: Optional[dt.date] = None
    embedded_recent_records_count: Optional[int] = Field(default=None, ge=0)
    sort_mode: Optional[Literal["manual", "category", "name", "color", "recent"]] = None
    category_filter: Optional[List[int]] = None
    ics_calendars: Optional[List[str]] = None
    enable_timeblocking: Optional[bool] = None


class BackupCreateResponse(BaseModel):
    created: bool
    backup: Optional[BackupResponse] = None

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from pydantic import ValidationError

from .codec import PROJECT_ID_REFERENCE
from .embed import parse_embed_config, select_embed_view
from .engine import EditRecord, StartTimer, StopAllTimers, StopTimer, TimerEvent, ToggleLastTimer
from .errors import InvariantViolation, TimerError, TimesheetFormatError
from .models import NO_PROJECT, UNCATEGORIZED, Category, Project, Timeblock, TimeRecord
from .reconcile import MergeResult
from .reports import daily_series, format_duration, project_summary, time_range
from .schemas import (
    BackupCreateResponse,
    BackupResponse,
    CalendarEventResponse,
    CalendarEventsResponse,
    ChartPoint,
    EmbedConfigResponse,
    EmbedResponse,
    ImportSummaryResponse,
    MergeResponse,
    ProjectResponse,
    ProjectTotalResponse,
    RecordResponse,
    ReportResponse,
    SettingsResponse,
    TimerEventResponse,
)
from .state import TrackerState
from .storage import FileInfo
from .store import RecordStore
from .utils import LOCAL_TZ, ensure_local, ensure_local_optional


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _conflict(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)


def _require_text(value: Optional[str], detail: str) -> str:
    text = (value or "").strip()
    if not text:
        raise _bad_request(detail)
    return text


def _check_interval(start_time: dt.datetime, end_time: Optional[dt.datetime]) -> None:
    if end_time is not None and ensure_local(end_time) <= ensure_local(start_time):
        raise _bad_request("End time must be after start time")


# ----------------------------------------------------------------------
# Projections
# ----------------------------------------------------------------------
def record_response(store: RecordStore, record: TimeRecord, now: dt.datetime) -> RecordResponse:
    return RecordResponse(
        id=record.id,
        project_id=record.project_id,
        project_name=store.project_label(record.project_id),
        start_time=record.start_time,
        end_time=record.end_time,
        title=record.title,
        running=record.is_running,
        duration_seconds=record.duration_seconds(now),
    )


def project_response(store: RecordStore, project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        icon=project.icon,
        color=project.color,
        category_id=project.category_id,
        category_name=store.category_label(project.category_id),
        archived=project.archived,
        order=project.order,
        running=store.is_project_running(project.id),
    )


def _running_responses(state: TrackerState) -> List[RecordResponse]:
    now = state.clock()
    return [record_response(state.store, record, now) for record in state.store.running_records()]


def _event_response(state: TrackerState, event: TimerEvent) -> TimerEventResponse:
    return TimerEventResponse(
        action=event.action,
        changed=event.changed,
        record_ids=list(event.record_ids),
        stopped_ids=list(event.stopped_ids),
        running=_running_responses(state),
    )


def _apply(state: TrackerState, command: Any) -> TimerEvent:
    try:
        return state.apply(command)
    except TimerError as exc:
        raise _bad_request(str(exc)) from exc
    except InvariantViolation as exc:
        raise _conflict(str(exc)) from exc
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc


def _require_project_reference(store: RecordStore, project_id: int) -> None:
    if project_id != NO_PROJECT and store.get_project(project_id) is None:
        raise _not_found("Project not found")


# ----------------------------------------------------------------------
# Timers
# ----------------------------------------------------------------------
def start_timer(
    state: TrackerState,
    project_id: int,
    title: str = "",
    start_time: Optional[dt.datetime] = None,
    end_time: Optional[dt.datetime] = None,
) -> TimerEventResponse:
    _require_project_reference(state.store, project_id)
    if start_time is not None:
        _check_interval(start_time, end_time)
    elif end_time is not None and not state.preferences.retroactive_tracking_enabled:
        _check_interval(state.clock(), end_time)
    command = StartTimer(
        project_id=project_id,
        title=title.strip(),
        start_time=ensure_local_optional(start_time),
        end_time=ensure_local_optional(end_time),
    )
    return _event_response(state, _apply(state, command))


def stop_timer(state: TrackerState, project_id: int) -> TimerEventResponse:
    return _event_response(state, _apply(state, StopTimer(project_id)))


def stop_all_timers(state: TrackerState) -> TimerEventResponse:
    return _event_response(state, _apply(state, StopAllTimers()))


def toggle_last_timer(state: TrackerState) -> TimerEventResponse:
    return _event_response(state, _apply(state, ToggleLastTimer()))


def running_timers(state: TrackerState) -> List[RecordResponse]:
    return _running_responses(state)


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
def list_records(
    state: TrackerState,
    project_id: Optional[int] = None,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
) -> List[RecordResponse]:
    now = state.clock()
    start = ensure_local_optional(start)
    end = ensure_local_optional(end)
    results: List[RecordResponse] = []
    for record in state.store.records:
        if project_id is not None and record.project_id != project_id:
            continue
        record_end = record.end_time or now
        if start is not None and record_end < start:
            continue
        if end is not None and record.start_time > end:
            continue
        results.append(record_response(state.store, record, now))
    results.sort(key=lambda item: (item.start_time, item.id), reverse=True)
    return results


def get_record(state: TrackerState, record_id: int) -> RecordResponse:
    record = state.store.get_record(record_id)
    if record is None:
        raise _not_found("Record not found")
    return record_response(state.store, record, state.clock())


def create_record(
    state: TrackerState,
    project_id: int,
    start_time: dt.datetime,
    end_time: Optional[dt.datetime],
    title: str,
) -> RecordResponse:
    _require_project_reference(state.store, project_id)
    _check_interval(start_time, end_time)
    with state.mutate() as store:
        if end_time is None and not state.preferences.multitasking_enabled and store.running_records():
            raise _conflict("Another timer is already running")
        record = store.add_record(project_id, start_time, end_time, title.strip())
    return record_response(state.store, record, state.clock())


def update_record(state: TrackerState, record_id: int, changes: Dict[str, Any]) -> RecordResponse:
    record = state.store.get_record(record_id)
    if record is None:
        raise _not_found("Record not found")
    if "project_id" in changes:
        if changes["project_id"] is None:
            changes["project_id"] = NO_PROJECT
        if changes["project_id"] != record.project_id:
            _require_project_reference(state.store, changes["project_id"])
    if "start_time" in changes and changes["start_time"] is None:
        raise _bad_request("Start time is required")
    if "title" in changes:
        changes["title"] = (changes["title"] or "").strip()
    start_time = changes.get("start_time", record.start_time)
    end_time = changes.get("end_time", record.end_time)
    _check_interval(start_time, end_time)
    _apply(state, EditRecord(record_id, changes))
    return get_record(state, record_id)


def delete_record(state: TrackerState, record_id: int) -> None:
    with state.mutate() as store:
        if not store.delete_record(record_id):
            raise _not_found("Record not found")


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------
def _sorted_projects(state: TrackerState, projects: List[Project]) -> List[Project]:
    mode = state.preferences.sort_mode
    store = state.store
    if mode == "name":
        return sorted(projects, key=lambda p: p.name.casefold())
    if mode == "color":
        return sorted(projects, key=lambda p: (p.color.lower(), p.order))
    if mode == "category":
        return sorted(projects, key=lambda p: (store.category_label(p.category_id).casefold(), p.order))
    if mode == "recent":
        last_used: Dict[int, dt.datetime] = {}
        for record in store.records:
            moment = record.end_time or state.clock()
            if record.project_id not in last_used or moment > last_used[record.project_id]:
                last_used[record.project_id] = moment
        oldest = dt.datetime.min.replace(tzinfo=LOCAL_TZ)
        return sorted(projects, key=lambda p: (last_used.get(p.id, oldest), -p.order), reverse=True)
    return sorted(projects, key=lambda p: p.order)


def list_projects(state: TrackerState, include_archived: Optional[bool] = None) -> List[ProjectResponse]:
    if include_archived is None:
        include_archived = state.preferences.show_archived_projects
    projects = [p for p in state.store.projects if include_archived or not p.archived]
    category_filter = set(state.preferences.category_filter)
    if category_filter:
        projects = [p for p in projects if p.category_id in category_filter]
    return [project_response(state.store, p) for p in _sorted_projects(state, projects)]


def get_project(state: TrackerState, project_id: int) -> ProjectResponse:
    project = state.store.get_project(project_id)
    if project is None:
        raise _not_found("Project not found")
    return project_response(state.store, project)


def _check_category_reference(store: RecordStore, category_id: int) -> None:
    if category_id != UNCATEGORIZED and store.get_category(category_id) is None:
        raise _not_found("Category not found")


def _check_project_name(store: RecordStore, name: str, project_id: Optional[int] = None) -> None:
    if PROJECT_ID_REFERENCE.fullmatch(name):
        raise _bad_request("Project name cannot have the form #<number>")
    existing = store.find_project_by_name(name)
    if existing is not None and existing.id != project_id:
        raise _conflict("A project with this name already exists")


def create_project(
    state: TrackerState,
    name: str,
    icon: str,
    color: str,
    category_id: int = UNCATEGORIZED,
) -> ProjectResponse:
    name = _require_text(name, "Project name is required")
    icon = _require_text(icon, "Project icon is required")
    _check_project_name(state.store, name)
    _check_category_reference(state.store, category_id)
    with state.mutate() as store:
        project = store.create_project(name, icon, color, category_id)
    return project_response(state.store, project)


def update_project(state: TrackerState, project_id: int, changes: Dict[str, Any]) -> ProjectResponse:
    if state.store.get_project(project_id) is None:
        raise _not_found("Project not found")
    changes = {key: value for key, value in changes.items() if value is not None}
    if "name" in changes:
        changes["name"] = _require_text(changes["name"], "Project name is required")
        _check_project_name(state.store, changes["name"], project_id)
    if "icon" in changes:
        changes["icon"] = _require_text(changes["icon"], "Project icon is required")
    if "category_id" in changes:
        _check_category_reference(state.store, changes["category_id"])
    with state.mutate() as store:
        project = store.update_project(project_id, changes)
    return project_response(state.store, project)


def archive_project(state: TrackerState, project_id: int, archived: bool) -> ProjectResponse:
    with state.mutate() as store:
        if not store.archive_project(project_id, archived):
            raise _not_found("Project not found")
    return get_project(state, project_id)


def delete_project(state: TrackerState, project_id: int) -> None:
    with state.mutate() as store:
        if not store.delete_project(project_id):
            raise _not_found("Project not found")


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------
def list_categories(state: TrackerState, include_archived: bool = True) -> List[Category]:
    categories = [c for c in state.store.categories if include_archived or not c.archived]
    return sorted(categories, key=lambda c: c.order)


def _check_category_name(store: RecordStore, name: str, category_id: Optional[int] = None) -> None:
    existing = store.find_category_by_name(name)
    if existing is not None and existing.id != category_id:
        raise _conflict("A category with this name already exists")


def create_category(state: TrackerState, name: str, color: str) -> Category:
    name = _require_text(name, "Category name is required")
    _check_category_name(state.store, name)
    with state.mutate() as store:
        return store.create_category(name, color)


def update_category(state: TrackerState, category_id: int, changes: Dict[str, Any]) -> Category:
    if state.store.get_category(category_id) is None:
        raise _not_found("Category not found")
    changes = {key: value for key, value in changes.items() if value is not None}
    if "name" in changes:
        changes["name"] = _require_text(changes["name"], "Category name is required")
        _check_category_name(state.store, changes["name"], category_id)
    with state.mutate() as store:
        return store.update_category(category_id, changes)


def archive_category(state: TrackerState, category_id: int, archived: bool) -> Category:
    with state.mutate() as store:
        if not store.archive_category(category_id, archived):
            raise _not_found("Category not found")
        return store.get_category(category_id)


def delete_category(state: TrackerState, category_id: int) -> None:
    with state.mutate() as store:
        if not store.delete_category(category_id):
            raise _not_found("Category not found")


# ----------------------------------------------------------------------
# Timeblocks
# ----------------------------------------------------------------------
def list_timeblocks(
    state: TrackerState,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
) -> List[Timeblock]:
    if start is None or end is None:
        return sorted(state.timeblocks.timeblocks, key=lambda block: block.start_time)
    return state.timeblocks.in_range(ensure_local(start), ensure_local(end))


def create_timeblock(
    state: TrackerState,
    title: str,
    start_time: dt.datetime,
    end_time: dt.datetime,
    color: str,
    notes: str = "",
) -> Timeblock:
    title = _require_text(title, "Timeblock title is required")
    _check_interval(start_time, end_time)
    with state.mutate_timeblocks() as blocks:
        return blocks.create(title, start_time, end_time, color, notes)


def update_timeblock(state: TrackerState, timeblock_id: int, changes: Dict[str, Any]) -> Timeblock:
    block = state.timeblocks.get(timeblock_id)
    if block is None:
        raise _not_found("Timeblock not found")
    changes = {key: value for key, value in changes.items() if value is not None}
    if "title" in changes:
        changes["title"] = _require_text(changes["title"], "Timeblock title is required")
    _check_interval(changes.get("start_time", block.start_time), changes.get("end_time", block.end_time))
    with state.mutate_timeblocks() as blocks:
        return blocks.update(timeblock_id, changes)


def delete_timeblock(state: TrackerState, timeblock_id: int) -> None:
    with state.mutate_timeblocks() as blocks:
        if not blocks.delete(timeblock_id):
            raise _not_found("Timeblock not found")


# ----------------------------------------------------------------------
# Reconciliation, imports and backups
# ----------------------------------------------------------------------
def _merge_response(result: MergeResult) -> MergeResponse:
    return MergeResponse(
        replaced=result.records.replaced,
        added=result.records.added,
        skipped=result.records.skipped,
        categories_added=result.categories_added,
        projects_added=result.projects_added,
    )


def reconcile_content(state: TrackerState, content: str) -> MergeResponse:
    try:
        result = state.reconcile_with(content)
    except TimesheetFormatError as exc:
        raise _bad_request(str(exc)) from exc
    return _merge_response(result)


def import_legacy(state: TrackerState, content: str) -> ImportSummaryResponse:
    _require_text(content, "Please paste the backup file contents")
    try:
        summary = state.import_legacy(content)
    except TimesheetFormatError as exc:
        raise _bad_request(str(exc)) from exc
    return ImportSummaryResponse.model_validate(summary)


def _backup_response(info: FileInfo) -> BackupResponse:
    return BackupResponse(
        name=info.name,
        size=info.size,
        modified_at=dt.datetime.fromtimestamp(info.mtime, tz=LOCAL_TZ).replace(microsecond=0),
    )


def list_backups(state: TrackerState) -> List[BackupResponse]:
    return [_backup_response(info) for info in state.backups.list_backups()]


def create_backup(state: TrackerState) -> BackupCreateResponse:
    try:
        info = state.create_backup()
    except OSError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    if info is None:
        return BackupCreateResponse(created=False)
    return BackupCreateResponse(created=True, backup=_backup_response(info))


def read_backup_content(state: TrackerState, name: str) -> str:
    try:
        return state.backups.read_backup(name)
    except FileNotFoundError as exc:
        raise _not_found("Backup not found") from exc
    except UnicodeDecodeError as exc:
        raise _bad_request("Backup is not valid UTF-8 text") from exc


def restore_backup(state: TrackerState, name: str) -> None:
    try:
        state.restore_backup(name)
    except FileNotFoundError as exc:
        raise _not_found("Backup not found") from exc
    except (TimesheetFormatError, UnicodeDecodeError) as exc:
        raise _bad_request(str(exc)) from exc


def merge_backup(state: TrackerState, name: str) -> MergeResponse:
    try:
        result = state.merge_backup(name)
    except FileNotFoundError as exc:
        raise _not_found("Backup not found") from exc
    except (TimesheetFormatError, UnicodeDecodeError) as exc:
        raise _bad_request(str(exc)) from exc
    return _merge_response(result)


def delete_backup(state: TrackerState, name: str) -> None:
    try:
        deleted = state.backups.delete_backup(name)
    except FileNotFoundError as exc:
        raise _not_found("Backup not found") from exc
    if not deleted:
        raise _not_found("Backup not found")


# ----------------------------------------------------------------------
# Calendar, reports and embedded blocks
# ----------------------------------------------------------------------
def calendar_events(
    state: TrackerState,
    start: dt.datetime,
    end: dt.datetime,
    refresh: bool = False,
) -> CalendarEventsResponse:
    if end <= start:
        raise _bad_request("End time must be after start time")
    if refresh or not state.calendar.fetched:
        state.refresh_calendars()
    events = state.calendar.in_range(ensure_local(start), ensure_local(end))
    return CalendarEventsResponse(
        fetched=state.calendar.fetched,
        loading=state.calendar.loading,
        events=[CalendarEventResponse.model_validate(event) for event in events],
        errors=dict(state.calendar.errors),
    )


def project_report(
    state: TrackerState,
    range_kind: Optional[str] = None,
    at: Optional[dt.datetime] = None,
    start_date: Optional[dt.date] = None,
    end_date: Optional[dt.date] = None,
    include_running: bool = False,
) -> ReportResponse:
    preferences = state.preferences
    kind = range_kind or preferences.default_time_range
    if kind == "custom":
        start_date = start_date or preferences.custom_start_date
        end_date = end_date or preferences.custom_end_date
    try:
        start, end = time_range(kind, at or state.clock(), start_date, end_date)
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc
    now = state.clock() if include_running else None
    totals = project_summary(state.store, start, end, preferences.show_seconds, now)
    series = daily_series(state.store.records, start, end, now)
    total_seconds = sum(row.seconds for row in totals)
    return ReportResponse(
        range=kind,
        start=start,
        end=end,
        total_seconds=total_seconds,
        total_formatted=format_duration(total_seconds, preferences.show_seconds),
        projects=[ProjectTotalResponse.model_validate(row) for row in totals],
        series={
            project_id: [ChartPoint(day=day, seconds=seconds) for day, seconds in points]
            for project_id, points in series.items()
        },
    )


def embed_view(state: TrackerState, content: str) -> EmbedResponse:
    store = state.store
    config = parse_embed_config(content, store, state.preferences.embedded_recent_records_count)
    view = select_embed_view(config, store)
    now = state.clock()
    return EmbedResponse(
        config=EmbedConfigResponse.model_validate(view.config),
        projects=[project_response(store, project) for project in view.projects],
        running=[record_response(store, record, now) for record in view.running],
        recent=[record_response(store, record, now) for record in view.recent],
    )


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------
def settings_response(state: TrackerState, snapshot: Optional[Dict[str, Any]] = None) -> SettingsResponse:
    snapshot = snapshot if snapshot is not None else state.preferences_snapshot()
    return SettingsResponse(
        app_name=state.settings.app_name,
        timezone=state.settings.timezone,
        data_dir=str(state.settings.data_dir),
        **snapshot,
    )


def update_settings(state: TrackerState, updates: Dict[str, Any]) -> SettingsResponse:
    start_date = updates.get("custom_start_date", state.preferences.custom_start_date)
    end_date = updates.get("custom_end_date", state.preferences.custom_end_date)
    if start_date and end_date and end_date < start_date:
        raise _bad_request("Custom range ends before it starts")
    try:
        snapshot = state.apply_preferences(updates)
    except ValidationError as exc:
        raise _bad_request(str(exc)) from exc
    return settings_response(state, snapshot)

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from . import services
from .config import settings
from .models import Category, Timeblock
from .schemas import (
    ArchiveRequest,
    BackupCreateResponse,
    BackupResponse,
    CalendarEventsResponse,
    CategoryCreateRequest,
    CategoryResponse,
    CategoryUpdateRequest,
    ContentRequest,
    EmbedResponse,
    ImportSummaryResponse,
    MergeResponse,
    ProjectCreateRequest,
    ProjectResponse,
    ProjectUpdateRequest,
    RecordCreateRequest,
    RecordResponse,
    RecordUpdateRequest,
    ReloadResponse,
    ReportResponse,
    SettingsResponse,
    SettingsUpdateRequest,
    StatusResponse,
    TimeblockCreateRequest,
    TimeblockResponse,
    TimeblockUpdateRequest,
    TimerEventResponse,
    TimerStartRequest,
    TimerStopRequest,
)
from .state import TrackerState

logger = logging.getLogger(__name__)


async def _background_loop(state: TrackerState, stop: asyncio.Event) -> None:
    """Poll the file for outside edits and autosave on their own intervals."""
    loop = asyncio.get_running_loop()
    next_poll = loop.time() + settings.poll_interval_seconds
    next_autosave = loop.time() + settings.autosave_interval_seconds
    while not stop.is_set():
        timeout = max(0.0, min(next_poll, next_autosave) - loop.time())
        try:
            await asyncio.wait_for(stop.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        if stop.is_set():
            break
        current = loop.time()
        if current >= next_poll:
            await asyncio.to_thread(state.reload_if_changed)
            next_poll = current + settings.poll_interval_seconds
        if current >= next_autosave:
            await asyncio.to_thread(state.autosave)
            next_autosave = current + settings.autosave_interval_seconds


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    state: TrackerState = app.state.tracker_state
    await asyncio.to_thread(state.load)
    stop = asyncio.Event()
    task = asyncio.create_task(_background_loop(state, stop))
    try:
        yield
    finally:
        stop.set()
        await task
        if not state.save():
            logger.error("Final save on shutdown failed: %s", state.last_error)


tracker_state = TrackerState(settings)

app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.tracker_state = tracker_state
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_state(request: Request) -> TrackerState:
    return request.app.state.tracker_state


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/status", response_model=StatusResponse)
def read_status(state: TrackerState = Depends(get_state)) -> StatusResponse:
    return StatusResponse(**state.status())


@app.post("/reload", response_model=ReloadResponse)
def reload_timesheet(state: TrackerState = Depends(get_state)) -> ReloadResponse:
    result = state.reload_if_changed()
    return ReloadResponse(result=result, revision=state.revision)


@app.post("/save", response_model=StatusResponse)
def save_timesheet(state: TrackerState = Depends(get_state)) -> StatusResponse:
    state.save()
    return StatusResponse(**state.status())


# ----------------------------------------------------------------------
# Timers
# ----------------------------------------------------------------------
@app.post("/timer/start", response_model=TimerEventResponse)
def timer_start(payload: TimerStartRequest, state: TrackerState = Depends(get_state)) -> TimerEventResponse:
    return services.start_timer(state, payload.project_id, payload.title, payload.start_time, payload.end_time)


@app.post("/timer/stop", response_model=TimerEventResponse)
def timer_stop(payload: TimerStopRequest, state: TrackerState = Depends(get_state)) -> TimerEventResponse:
    return services.stop_timer(state, payload.project_id)


@app.post("/timer/stop-all", response_model=TimerEventResponse)
def timer_stop_all(state: TrackerState = Depends(get_state)) -> TimerEventResponse:
    return services.stop_all_timers(state)


@app.post("/timer/toggle-last", response_model=TimerEventResponse)
def timer_toggle_last(state: TrackerState = Depends(get_state)) -> TimerEventResponse:
    return services.toggle_last_timer(state)


@app.get("/timer/running", response_model=list[RecordResponse])
def timer_running(state: TrackerState = Depends(get_state)) -> list[RecordResponse]:
    return services.running_timers(state)


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
@app.get("/records", response_model=list[RecordResponse])
def records_list(
    project_id: Optional[int] = None,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    state: TrackerState = Depends(get_state),
) -> list[RecordResponse]:
    return services.list_records(state, project_id, start, end)


@app.post("/records", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
def records_create(payload: RecordCreateRequest, state: TrackerState = Depends(get_state)) -> RecordResponse:
    return services.create_record(state, payload.project_id, payload.start_time, payload.end_time, payload.title)


@app.get("/records/{record_id}", response_model=RecordResponse)
def records_get(record_id: int, state: TrackerState = Depends(get_state)) -> RecordResponse:
    return services.get_record(state, record_id)


@app.patch("/records/{record_id}", response_model=RecordResponse)
def records_update(
    record_id: int,
    payload: RecordUpdateRequest,
    state: TrackerState = Depends(get_state),
) -> RecordResponse:
    changes = payload.model_dump(exclude_unset=True)
    return services.update_record(state, record_id, changes)


@app.delete("/records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def records_delete(record_id: int, state: TrackerState = Depends(get_state)) -> Response:
    services.delete_record(state, record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------
@app.get("/projects", response_model=list[ProjectResponse])
def projects_list(
    include_archived: Optional[bool] = None,
    state: TrackerState = Depends(get_state),
) -> list[ProjectResponse]:
    return services.list_projects(state, include_archived)


@app.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
def projects_create(payload: ProjectCreateRequest, state: TrackerState = Depends(get_state)) -> ProjectResponse:
    return services.create_project(state, payload.name, payload.icon, payload.color, payload.category_id)


@app.get("/projects/{project_id}", response_model=ProjectResponse)
def projects_get(project_id: int, state: TrackerState = Depends(get_state)) -> ProjectResponse:
    return services.get_project(state, project_id)


@app.patch("/projects/{project_id}", response_model=ProjectResponse)
def projects_update(
    project_id: int,
    payload: ProjectUpdateRequest,
    state: TrackerState = Depends(get_state),
) -> ProjectResponse:
    return services.update_project(state, project_id, payload.model_dump(exclude_unset=True))


@app.post("/projects/{project_id}/archive", response_model=ProjectResponse)
def projects_archive(
    project_id: int,
    payload: ArchiveRequest,
    state: TrackerState = Depends(get_state),
) -> ProjectResponse:
    return services.archive_project(state, project_id, payload.archived)


@app.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def projects_delete(project_id: int, state: TrackerState = Depends(get_state)) -> Response:
    services.delete_project(state, project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------
@app.get("/categories", response_model=list[CategoryResponse])
def categories_list(include_archived: bool = True, state: TrackerState = Depends(get_state)) -> List[Category]:
    return services.list_categories(state, include_archived)


@app.post("/categories", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
def categories_create(payload: CategoryCreateRequest, state: TrackerState = Depends(get_state)) -> Category:
    return services.create_category(state, payload.name, payload.color)


@app.patch("/categories/{category_id}", response_model=CategoryResponse)
def categories_update(
    category_id: int,
    payload: CategoryUpdateRequest,
    state: TrackerState = Depends(get_state),
) -> Category:
    return services.update_category(state, category_id, payload.model_dump(exclude_unset=True))


@app.post("/categories/{category_id}/archive", response_model=CategoryResponse)
def categories_archive(
    category_id: int,
    payload: ArchiveRequest,
    state: TrackerState = Depends(get_state),
) -> Category:
    return services.archive_category(state, category_id, payload.archived)


@app.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
def categories_delete(category_id: int, state: TrackerState = Depends(get_state)) -> Response:
    services.delete_category(state, category_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Timeblocks
# ----------------------------------------------------------------------
@app.get("/timeblocks", response_model=list[TimeblockResponse])
def timeblocks_list(
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    state: TrackerState = Depends(get_state),
) -> List[Timeblock]:
    return services.list_timeblocks(state, start, end)


@app.post("/timeblocks", response_model=TimeblockResponse, status_code=status.HTTP_201_CREATED)
def timeblocks_create(payload: TimeblockCreateRequest, state: TrackerState = Depends(get_state)) -> Timeblock:
    return services.create_timeblock(
        state,
        payload.title,
        payload.start_time,
        payload.end_time,
        payload.color,
        payload.notes,
    )


@app.patch("/timeblocks/{timeblock_id}", response_model=TimeblockResponse)
def timeblocks_update(
    timeblock_id: int,
    payload: TimeblockUpdateRequest,
    state: TrackerState = Depends(get_state),
) -> Timeblock:
    return services.update_timeblock(state, timeblock_id, payload.model_dump(exclude_unset=True))


@app.delete("/timeblocks/{timeblock_id}", status_code=status.HTTP_204_NO_CONTENT)
def timeblocks_delete(timeblock_id: int, state: TrackerState = Depends(get_state)) -> Response:
    services.delete_timeblock(state, timeblock_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Reconciliation, imports and backups
# ----------------------------------------------------------------------
@app.post("/reconcile", response_model=MergeResponse)
def reconcile(payload: ContentRequest, state: TrackerState = Depends(get_state)) -> MergeResponse:
    return services.reconcile_content(state, payload.content)


@app.post("/import/legacy", response_model=ImportSummaryResponse)
def import_legacy(payload: ContentRequest, state: TrackerState = Depends(get_state)) -> ImportSummaryResponse:
    return services.import_legacy(state, payload.content)


@app.get("/backups", response_model=list[BackupResponse])
def backups_list(state: TrackerState = Depends(get_state)) -> list[BackupResponse]:
    return services.list_backups(state)


@app.post("/backups", response_model=BackupCreateResponse)
def backups_create(state: TrackerState = Depends(get_state)) -> BackupCreateResponse:
    return services.create_backup(state)


@app.get("/backups/{name}", response_class=PlainTextResponse)
def backups_read(name: str, state: TrackerState = Depends(get_state)) -> str:
    return services.read_backup_content(state, name)


@app.post("/backups/{name}/restore", status_code=status.HTTP_204_NO_CONTENT)
def backups_restore(name: str, state: TrackerState = Depends(get_state)) -> Response:
    services.restore_backup(state, name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/backups/{name}/merge", response_model=MergeResponse)
def backups_merge(name: str, state: TrackerState = Depends(get_state)) -> MergeResponse:
    return services.merge_backup(state, name)


@app.delete("/backups/{name}", status_code=status.HTTP_204_NO_CONTENT)
def backups_delete(name: str, state: TrackerState = Depends(get_state)) -> Response:
    services.delete_backup(state, name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Calendar, reports and embedded blocks
# ----------------------------------------------------------------------
@app.get("/calendar/events", response_model=CalendarEventsResponse)
def calendar_events(
    start: dt.datetime,
    end: dt.datetime,
    refresh: bool = False,
    state: TrackerState = Depends(get_state),
) -> CalendarEventsResponse:
    return services.calendar_events(state, start, end, refresh)


@app.get("/reports/projects", response_model=ReportResponse)
def reports_projects(
    range: Optional[str] = None,
    at: Optional[dt.datetime] = None,
    start_date: Optional[dt.date] = None,
    end_date: Optional[dt.date] = None,
    include_running: bool = False,
    state: TrackerState = Depends(get_state),
) -> ReportResponse:
    return services.project_report(state, range, at, start_date, end_date, include_running)


@app.post("/embed", response_model=EmbedResponse)
def embed(payload: ContentRequest, state: TrackerState = Depends(get_state)) -> EmbedResponse:
    return services.embed_view(state, payload.content)


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------
@app.get("/settings", response_model=SettingsResponse)
def read_settings(state: TrackerState = Depends(get_state)) -> SettingsResponse:
    return services.settings_response(state)


@app.patch("/settings", response_model=SettingsResponse)
def write_settings(payload: SettingsUpdateRequest, state: TrackerState = Depends(get_state)) -> SettingsResponse:
    updates = payload.model_dump(exclude_unset=True)
    return services.update_settings(state, updates)

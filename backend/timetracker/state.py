from __future__ import annotations

import datetime as dt
import functools
import json
import logging
from contextlib import contextmanager
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing_extensions import Literal

from .backups import BackupManager
from .codec import create_timesheet, decode_timeblocks, decode_timesheet, serialize_timeblocks, serialize_timesheet
from .config import Settings
from .engine import Command, TimerEngine, TimerEvent, TrackingPolicy
from .errors import TimesheetFormatError
from .ics import CalendarCache, Fetcher, fetch_calendar_text
from .legacy_import import ImportSummary, import_legacy_backup
from .models import Timesheet
from .reconcile import MergeResult, reconcile_timesheets
from .storage import FileHost, FileInfo, LocalFileHost
from .store import RecordStore, TimeblockStore
from .utils import now as local_now, normalize_calendar_urls

logger = logging.getLogger(__name__)

UNCHANGED = "unchanged"
RELOADED = "reloaded"
MERGED = "merged"
FAILED = "failed"

# UnicodeDecodeError covers files that are not valid UTF-8
READ_ERRORS = (OSError, UnicodeDecodeError, TimesheetFormatError)


class TrackerPreferences(BaseModel):
    """User preferences kept in a small JSON file next to the timesheet."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    retroactive_tracking_enabled: bool = False
    multitasking_enabled: bool = False
    retroactive_tolerance_seconds: int = Field(default=0, ge=0)
    show_seconds: bool = True
    show_archived_projects: bool = False
    grid_columns: int = Field(default=3, ge=1, le=6)
    default_time_range: Literal["day", "week", "month", "year", "custom"] = "week"
    custom_start_date: Optional[dt.date] = None
    custom_end_date: Optional[dt.date] = None
    embedded_recent_records_count: int = Field(default=5, ge=0)
    sort_mode: Literal["manual", "category", "name", "color", "recent"] = "manual"
    category_filter: List[int] = Field(default_factory=list)
    ics_calendars: List[str] = Field(default_factory=list)
    enable_timeblocking: bool = True

    @field_validator("ics_calendars", mode="before")
    @classmethod
    def _normalize_calendars(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return normalize_calendar_urls(value)

    def policy(self) -> TrackingPolicy:
        return TrackingPolicy(
            retroactive=self.retroactive_tracking_enabled,
            multitasking=self.multitasking_enabled,
            tolerance=dt.timedelta(seconds=self.retroactive_tolerance_seconds),
        )


Subscriber = Callable[[int], None]


class TrackerState:
    """Process-wide owner of the timesheet, its file and the timer engine.

    All access is serialized through one re-entrant lock. Every changed
    operation is written through to the file host and then broadcast to
    subscribers with a new revision number. Failed writes never raise; the
    message is kept in :attr:`last_error` and the in-memory state stays
    authoritative until the next successful save.
    """

    def __init__(
        self,
        base_settings: Settings,
        host: Optional[FileHost] = None,
        clock: Callable[[], dt.datetime] = local_now,
        calendar_fetcher: Optional[Fetcher] = None,
    ) -> None:
        self._lock = RLock()
        self.settings = base_settings
        self.host: FileHost = host if host is not None else LocalFileHost(base_settings.data_dir)
        self.clock = clock
        self.timesheet_path = base_settings.timesheet_path
        self.timeblocks_path = base_settings.timeblocks_path
        self.preferences_path = base_settings.preferences_path

        self.preferences = TrackerPreferences()
        self.store = RecordStore(create_timesheet())
        self.timeblocks = TimeblockStore()
        self.engine = TimerEngine(self.store, policy=self._policy, clock=clock)
        self.engine.subscribe(self._on_timer_event)
        self.backups = BackupManager(
            self.host,
            base_settings.backup_folder,
            base_settings.backup_retention_days,
            clock,
        )
        self.calendar = CalendarCache()
        if calendar_fetcher is None:
            calendar_fetcher = functools.partial(fetch_calendar_text, timeout=base_settings.ics_timeout_seconds)
        self.calendar_fetcher: Fetcher = calendar_fetcher

        self.last_error: Optional[str] = None
        self.revision = 0
        self.loaded = False
        self._disk_snapshot: Optional[Timesheet] = None
        # Set while the file on disk could not be read; nothing is written over it
        self._timesheet_read_only = False
        self._timeblocks_read_only = False
        self._subscribers: List[Subscriber] = []

    # ------------------------------------------------------------------
    # Refresh broadcast
    # ------------------------------------------------------------------
    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def _broadcast(self) -> None:
        self.revision += 1
        for subscriber in list(self._subscribers):
            subscriber(self.revision)

    def _policy(self) -> TrackingPolicy:
        return self.preferences.policy()

    def _record_error(self, message: str, exc: BaseException) -> None:
        self.last_error = f"{message}: {exc}"
        logger.error(message, exc_info=exc)

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------
    def load(self) -> bool:
        with self._lock:
            self.load_preferences()
            timesheet_ok = self._load_timesheet()
            timeblocks_ok = self._load_timeblocks()
            ok = timesheet_ok and timeblocks_ok
            self.loaded = True
            if ok:
                self.last_error = None
            self._broadcast()
            return ok

    def _load_timesheet(self) -> bool:
        missing = False
        try:
            missing = not self.host.file_exists(self.timesheet_path)
            if missing:
                timesheet = create_timesheet()
                self.host.create_file(self.timesheet_path, serialize_timesheet(timesheet))
                logger.info("Created new timesheet at %s", self.timesheet_path)
            else:
                text = self.host.read_file(self.timesheet_path)
                self._backup_text(text)
                timesheet = decode_timesheet(text).timesheet
        except READ_ERRORS as exc:
            self._timesheet_read_only = not missing
            self._record_error("Could not load timesheet", exc)
            return False
        self._timesheet_read_only = False
        self.store.replace(timesheet)
        self._disk_snapshot = timesheet.copy()
        logger.info(
            "Loaded %d records, %d projects and %d categories",
            len(timesheet.records),
            len(timesheet.projects),
            len(timesheet.categories),
        )
        return True

    def _load_timeblocks(self) -> bool:
        try:
            if not self.host.file_exists(self.timeblocks_path):
                self.timeblocks.timeblocks = []
                return True
            blocks, _ = decode_timeblocks(self.host.read_file(self.timeblocks_path))
        except READ_ERRORS as exc:
            self._timeblocks_read_only = True
            self._record_error("Could not load timeblocks", exc)
            return False
        self._timeblocks_read_only = False
        self.timeblocks.timeblocks = blocks
        return True

    def _backup_text(self, text: str) -> Optional[FileInfo]:
        try:
            return self.backups.create_backup(text)
        except OSError as exc:
            self._record_error("Could not create backup", exc)
            return None

    @property
    def read_only(self) -> bool:
        """True while the timesheet on disk failed to load and must not be overwritten."""
        return self._timesheet_read_only

    def _persist(self) -> bool:
        if self._timesheet_read_only:
            logger.warning("Not saving: %s could not be loaded and is left untouched", self.timesheet_path)
            return False
        content = serialize_timesheet(self.store.timesheet)
        try:
            self.host.write_file(self.timesheet_path, content)
        except OSError as exc:
            self._record_error("Could not save timesheet", exc)
            return False
        self._disk_snapshot = self.store.timesheet.copy()
        self.last_error = None
        return True

    def _persist_timeblocks(self) -> bool:
        if self._timeblocks_read_only:
            logger.warning("Not saving: %s could not be loaded and is left untouched", self.timeblocks_path)
            return False
        try:
            self.host.write_file(self.timeblocks_path, serialize_timeblocks(self.timeblocks.timeblocks))
        except OSError as exc:
            self._record_error("Could not save timeblocks", exc)
            return False
        return True

    def save(self) -> bool:
        with self._lock:
            return self._persist()

    @property
    def has_unsaved_changes(self) -> bool:
        with self._lock:
            return self._disk_snapshot is None or self.store.timesheet != self._disk_snapshot

    def autosave(self) -> bool:
        """Save when the in-memory timesheet differs from the last written one."""
        with self._lock:
            if self._timesheet_read_only or not self.has_unsaved_changes:
                return False
            return self._persist()

    def reload_if_changed(self) -> str:
        """Pick up edits made to the file by another process.

        Identical content is ignored. When the in-memory timesheet has
        changes that never reached the disk, both sides are reconciled
        instead of discarding the local edits. After a failed load, a file
        that reads cleanly again replaces the in-memory timesheet and
        re-enables saving.
        """
        with self._lock:
            try:
                if not self.host.file_exists(self.timesheet_path):
                    return UNCHANGED
                disk = decode_timesheet(self.host.read_file(self.timesheet_path)).timesheet
            except READ_ERRORS as exc:
                self._record_error("Could not read timesheet", exc)
                return FAILED
            if self._timesheet_read_only:
                self._timesheet_read_only = False
                if self._timeblocks_read_only:
                    self._load_timeblocks()
                self.store.replace(disk)
                self._disk_snapshot = disk.copy()
                if not self._timeblocks_read_only:
                    self.last_error = None
                self._broadcast()
                logger.info("Timesheet is readable again; reloaded")
                return RELOADED
            if disk == self.store.timesheet:
                return UNCHANGED
            if self.has_unsaved_changes:
                merged = reconcile_timesheets(self.store.timesheet, disk, self.clock())
                self.store.replace(merged.timesheet)
                self._persist()
                self._broadcast()
                logger.info("Timesheet changed on disk; merged with unsaved edits")
                return MERGED
            self.store.replace(disk)
            self._disk_snapshot = disk.copy()
            self._broadcast()
            logger.info("Timesheet changed on disk; reloaded")
            return RELOADED

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def apply(self, command: Command) -> TimerEvent:
        with self._lock:
            return self.engine.apply(command)

    def _on_timer_event(self, event: TimerEvent) -> None:
        self._persist()
        self._broadcast()

    @contextmanager
    def mutate(self) -> Iterator[RecordStore]:
        """Edit the record store directly; rolled back if the block raises."""
        with self._lock:
            snapshot = self.store.timesheet.copy()
            try:
                yield self.store
            except Exception:
                self.store.replace(snapshot)
                raise
            self._persist()
            self._broadcast()

    @contextmanager
    def mutate_timeblocks(self) -> Iterator[TimeblockStore]:
        with self._lock:
            snapshot = list(self.timeblocks.timeblocks)
            try:
                yield self.timeblocks
            except Exception:
                self.timeblocks.timeblocks = snapshot
                raise
            self._persist_timeblocks()
            self._broadcast()

    def reconcile_with(self, text: str) -> MergeResult:
        incoming = decode_timesheet(text).timesheet
        with self._lock:
            result = reconcile_timesheets(self.store.timesheet, incoming, self.clock())
            self.store.replace(result.timesheet)
            self._persist()
            self._broadcast()
            return result

    def import_legacy(self, text: str) -> ImportSummary:
        with self.mutate() as store:
            return import_legacy_backup(store.timesheet, text)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    def create_backup(self) -> Optional[FileInfo]:
        with self._lock:
            return self.backups.create_backup(serialize_timesheet(self.store.timesheet))

    def restore_backup(self, name: str) -> Timesheet:
        with self._lock:
            incoming = decode_timesheet(self.backups.read_backup(name)).timesheet
            self._backup_text(serialize_timesheet(self.store.timesheet))
            self.store.replace(incoming)
            self._timesheet_read_only = False
            self._persist()
            self._broadcast()
            logger.info("Restored timesheet from backup %s", name)
            return incoming

    def merge_backup(self, name: str) -> MergeResult:
        return self.reconcile_with(self.backups.read_backup(name))

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    def load_preferences(self) -> None:
        with self._lock:
            try:
                if not self.host.file_exists(self.preferences_path):
                    return
                raw = json.loads(self.host.read_file(self.preferences_path))
                if not isinstance(raw, dict):
                    raise ValueError("preferences file does not contain an object")
                self.preferences = TrackerPreferences.model_validate(raw)
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("Ignoring unreadable preferences file: %s", exc)
                self.preferences = TrackerPreferences()

    def preferences_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self.preferences.model_dump(mode="json")

    def apply_preferences(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and store preference updates. Raises ``ValidationError``."""
        with self._lock:
            merged = {**self.preferences.model_dump(), **updates}
            updated = TrackerPreferences.model_validate(merged)
            calendars_changed = updated.ics_calendars != self.preferences.ics_calendars
            self.preferences = updated
            try:
                self.host.write_file(
                    self.preferences_path,
                    json.dumps(updated.model_dump(mode="json"), indent=2),
                )
            except OSError as exc:
                self._record_error("Could not save preferences", exc)
            if calendars_changed:
                self.calendar.fetched = False
            self._broadcast()
            return updated.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------
    def refresh_calendars(self) -> bool:
        with self._lock:
            urls = list(self.preferences.ics_calendars)
        refreshed = self.calendar.refresh(urls, self.calendar_fetcher)
        if refreshed:
            with self._lock:
                self._broadcast()
        return refreshed

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "loaded": self.loaded,
                "revision": self.revision,
                "last_error": self.last_error,
                "unsaved_changes": self.has_unsaved_changes,
                "read_only": self._timesheet_read_only,
                "running_records": len(self.store.running_records()),
                "timesheet_path": self.timesheet_path,
            }

"""Timer operations over the record store.

Every mutation goes through :meth:`TimerEngine.apply`, which checks the
running-timer invariant, rolls back on failure and notifies listeners
(persistence and view refresh) once per changed operation.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import InvariantViolation, TimerError
from .models import NO_PROJECT, TimeRecord
from .store import RecordStore
from .utils import ensure_local, now as local_now, to_millis

logger = logging.getLogger(__name__)

STARTED = "started"
STOPPED = "stopped"
STOPPED_ALL = "stopped_all"
CREATED = "created"
EXTENDED = "extended"
GAP_FILLED = "gap_filled"
EDITED = "edited"
NOOP = "noop"


@dataclass(frozen=True)
class TrackingPolicy:
    retroactive: bool = False
    multitasking: bool = False
    tolerance: dt.timedelta = dt.timedelta(0)


@dataclass(frozen=True)
class StartTimer:
    project_id: int
    title: str = ""
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None


@dataclass(frozen=True)
class StopTimer:
    project_id: int


@dataclass(frozen=True)
class StopAllTimers:
    pass


@dataclass(frozen=True)
class ToggleLastTimer:
    pass


@dataclass(frozen=True)
class EditRecord:
    record_id: int
    changes: Mapping[str, Any] = field(default_factory=dict)


Command = Union[StartTimer, StopTimer, StopAllTimers, ToggleLastTimer, EditRecord]


@dataclass(frozen=True)
class TimerEvent:
    action: str
    record_ids: Tuple[int, ...] = ()
    stopped_ids: Tuple[int, ...] = ()

    @property
    def changed(self) -> bool:
        return self.action != NOOP


NO_CHANGE = TimerEvent(NOOP)

Listener = Callable[[TimerEvent], None]
PolicySource = Union[TrackingPolicy, Callable[[], TrackingPolicy]]


class TimerEngine:
    def __init__(
        self,
        store: RecordStore,
        policy: PolicySource = TrackingPolicy(),
        clock: Callable[[], dt.datetime] = local_now,
    ) -> None:
        self.store = store
        self._policy = policy
        self._clock = clock
        self._listeners: List[Listener] = []
        self._handlers: Dict[type, Callable[[Any, TrackingPolicy], TimerEvent]] = {
            StartTimer: self._start,
            StopTimer: self._stop,
            StopAllTimers: self._stop_all,
            ToggleLastTimer: self._toggle_last,
            EditRecord: self._edit,
        }

    @property
    def policy(self) -> TrackingPolicy:
        if callable(self._policy):
            return self._policy()
        return self._policy

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _now(self) -> dt.datetime:
        return ensure_local(self._clock())

    # ------------------------------------------------------------------
    # Command API
    # ------------------------------------------------------------------
    def apply(self, command: Command) -> TimerEvent:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported timer command: {command!r}")
        policy = self.policy
        snapshot = self.store.timesheet.copy()
        running_before = len(self.store.running_records())
        try:
            event = handler(command, policy)
        except Exception:
            self.store.replace(snapshot)
            raise
        if not event.changed:
            return event
        if not policy.multitasking:
            running_after = len(self.store.running_records())
            if running_after > max(1, running_before):
                self.store.replace(snapshot)
                raise InvariantViolation(
                    f"{type(command).__name__} would leave {running_after} timers running"
                )
        logger.debug("Timer event %s for records %s", event.action, event.record_ids or event.stopped_ids)
        for listener in list(self._listeners):
            listener(event)
        return event

    def start(
        self,
        project_id: int,
        title: str = "",
        start_time: Optional[dt.datetime] = None,
        end_time: Optional[dt.datetime] = None,
    ) -> TimerEvent:
        return self.apply(StartTimer(project_id, title, start_time, end_time))

    def stop(self, project_id: int) -> TimerEvent:
        return self.apply(StopTimer(project_id))

    def stop_all(self) -> TimerEvent:
        return self.apply(StopAllTimers())

    def toggle_last(self) -> TimerEvent:
        return self.apply(ToggleLastTimer())

    def edit_record(self, record_id: int, changes: Mapping[str, Any]) -> bool:
        """Merge ``changes`` into a record. Times are not validated here."""
        return self.apply(EditRecord(record_id, dict(changes))).changed

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _start(self, command: StartTimer, policy: TrackingPolicy) -> TimerEvent:
        project_id = command.project_id
        if project_id != NO_PROJECT and self.store.get_project(project_id) is None:
            logger.debug("Ignoring start for unknown project %s", project_id)
            return NO_CHANGE
        if policy.retroactive:
            return self._start_retroactive(command, policy)

        if command.end_time is not None:
            start_time = command.start_time or self._now()
            record = self.store.add_record(project_id, start_time, command.end_time, command.title)
            return TimerEvent(CREATED, record_ids=(record.id,))

        existing = self.store.running_record_for(project_id)
        if existing is not None:
            existing.mark_stopped(self._now())
            return TimerEvent(STOPPED, stopped_ids=(existing.id,))

        stopped: Tuple[int, ...] = ()
        if not policy.multitasking:
            stopped = self._stop_running(self._now())
        start_time = command.start_time or self._now()
        record = self.store.add_record(project_id, start_time, None, command.title)
        return TimerEvent(STARTED, record_ids=(record.id,), stopped_ids=stopped)

    def _start_retroactive(self, command: StartTimer, policy: TrackingPolicy) -> TimerEvent:
        if command.project_id == NO_PROJECT:
            raise TimerError("Retroactive tracking needs a project to assign the gap to")
        end_time = ensure_local(command.end_time) if command.end_time else self._now()
        last = self.store.last_stopped_record()
        if command.start_time is not None:
            anchor = ensure_local(command.start_time)
        elif last is not None and last.end_time is not None:
            anchor = last.end_time
        else:
            return NO_CHANGE

        if to_millis(end_time) - to_millis(anchor) <= 0:
            return NO_CHANGE

        extended = self._extendable(last, command.project_id, anchor, policy)
        if extended is not None:
            if end_time <= extended.end_time:
                return NO_CHANGE
            extended.end_time = end_time
            if command.title:
                extended.title = command.title
            return TimerEvent(EXTENDED, record_ids=(extended.id,))

        record = self.store.add_record(command.project_id, anchor, end_time, command.title)
        return TimerEvent(GAP_FILLED, record_ids=(record.id,))

    @staticmethod
    def _extendable(
        last: Optional[TimeRecord],
        project_id: int,
        anchor: dt.datetime,
        policy: TrackingPolicy,
    ) -> Optional[TimeRecord]:
        if last is None or last.end_time is None or last.project_id != project_id:
            return None
        if abs(anchor - last.end_time) > policy.tolerance:
            return None
        return last

    def _stop(self, command: StopTimer, policy: TrackingPolicy) -> TimerEvent:
        record = self.store.running_record_for(command.project_id)
        if record is None:
            return NO_CHANGE
        record.mark_stopped(self._now())
        return TimerEvent(STOPPED, stopped_ids=(record.id,))

    def _stop_all(self, command: StopAllTimers, policy: TrackingPolicy) -> TimerEvent:
        stopped = self._stop_running(self._now())
        if not stopped:
            return NO_CHANGE
        return TimerEvent(STOPPED_ALL, stopped_ids=stopped)

    def _stop_running(self, when: dt.datetime) -> Tuple[int, ...]:
        stopped: List[int] = []
        for record in self.store.running_records():
            record.mark_stopped(when)
            stopped.append(record.id)
        return tuple(stopped)

    def _toggle_last(self, command: ToggleLastTimer, policy: TrackingPolicy) -> TimerEvent:
        last = self.store.last_stopped_record()
        if last is None:
            return NO_CHANGE
        project = self.store.get_project(last.project_id)
        if project is None:
            return NO_CHANGE
        if self.store.is_project_running(project.id):
            return self._stop(StopTimer(project.id), policy)
        return self._start(StartTimer(project.id), policy)

    def _edit(self, command: EditRecord, policy: TrackingPolicy) -> TimerEvent:
        record = self.store.update_record(command.record_id, dict(command.changes))
        if record is None:
            return NO_CHANGE
        return TimerEvent(EDITED, record_ids=(record.id,))

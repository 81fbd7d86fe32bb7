from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from timetracker.codec import create_timesheet
from timetracker.config import Settings
from timetracker.ics import CalendarFeedError
from timetracker.main import app, get_state
from timetracker.state import TrackerState
from timetracker.storage import LocalFileHost
from timetracker.store import RecordStore
from timetracker.utils import LOCAL_TZ


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.current = start

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs: float) -> dt.datetime:
        self.current = self.current + dt.timedelta(**kwargs)
        return self.current

    def set(self, value: dt.datetime) -> dt.datetime:
        self.current = value
        return self.current


def local(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> dt.datetime:
    return dt.datetime(year, month, day, hour, minute, second, tzinfo=LOCAL_TZ)


def offline_fetch(url: str) -> str:
    raise CalendarFeedError(f"network disabled in tests: {url}")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(local(2024, 1, 1, 9, 0))


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path)


@pytest.fixture()
def host(tmp_path: Path) -> LocalFileHost:
    return LocalFileHost(tmp_path)


@pytest.fixture()
def store() -> RecordStore:
    store = RecordStore(create_timesheet())
    store.create_project("Work", "💼", "#ff0000", 1)
    store.create_project("Side", "💻", "#00ff00")
    return store


@pytest.fixture()
def state(test_settings: Settings, host: LocalFileHost, clock: FakeClock) -> TrackerState:
    tracker = TrackerState(test_settings, host=host, clock=clock, calendar_fetcher=offline_fetch)
    tracker.load()
    return tracker


@pytest.fixture()
def client(state: TrackerState) -> Generator[TestClient, None, None]:
    previous = app.state.tracker_state
    app.state.tracker_state = state
    app.dependency_overrides[get_state] = lambda: state
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.tracker_state = previous

from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from timetracker.state import TrackerState

LEGACY_BACKUP = "\n".join(
    [
        "recordType\t1\tReading\tic_menu_book_24px\t-16711936\t0",
        "record\t1\t1\t1704096000000\t1704099600000\tchapter one",
    ]
)


def _create_projects(client: TestClient) -> None:
    assert client.post("/projects", json={"name": "Work", "icon": "💼", "color": "#ff0000"}).status_code == 201
    assert client.post("/projects", json={"name": "Side", "icon": "💻", "color": "#00ff00"}).status_code == 201


def test_health_and_status(client: TestClient):
    assert client.get("/healthz").json() == {"status": "ok"}

    status_resp = client.get("/status")
    assert status_resp.status_code == 200
    data = status_resp.json()
    assert data["loaded"] is True
    assert data["last_error"] is None
    assert data["running_records"] == 0

    assert client.post("/reload").json()["result"] == "unchanged"


def test_project_and_category_management(client: TestClient):
    category_resp = client.post("/categories", json={"name": "Clients", "color": "#112233"})
    assert category_resp.status_code == 201
    category_id = category_resp.json()["id"]
    assert category_id == 2
    assert client.post("/categories", json={"name": "clients"}).status_code == 409

    project_resp = client.post(
        "/projects",
        json={"name": "Work", "icon": "💼", "color": "#ff0000", "category_id": category_id},
    )
    assert project_resp.status_code == 201
    project = project_resp.json()
    assert project["category_name"] == "Clients"
    assert project["running"] is False

    assert client.post("/projects", json={"name": " work ", "icon": "💼"}).status_code == 409
    assert client.post("/projects", json={"name": "Empty", "icon": "  "}).status_code == 400
    assert client.post("/projects", json={"name": "#12", "icon": "📌"}).status_code == 400
    assert client.post("/projects", json={"name": "Lost", "icon": "📌", "category_id": 99}).status_code == 404

    rename_resp = client.patch(f"/projects/{project['id']}", json={"name": "Consulting"})
    assert rename_resp.status_code == 200
    assert rename_resp.json()["name"] == "Consulting"

    archive_resp = client.post(f"/projects/{project['id']}/archive", json={"archived": True})
    assert archive_resp.json()["archived"] is True
    assert client.get("/projects").json() == []
    assert len(client.get("/projects", params={"include_archived": True}).json()) == 1

    assert client.delete(f"/categories/{category_id}").status_code == 204
    moved = client.get(f"/projects/{project['id']}").json()
    assert moved["category_id"] == -1
    assert moved["category_name"] == "Uncategorized"

    assert client.delete(f"/projects/{project['id']}").status_code == 204
    assert client.get(f"/projects/{project['id']}").status_code == 404
    assert [c["name"] for c in client.get("/categories").json()] == ["Uncategorized"]


def test_timer_flow(client: TestClient, state: TrackerState):
    _create_projects(client)

    start_resp = client.post("/timer/start", json={"project_id": 1, "title": "planning"})
    assert start_resp.status_code == 200
    started = start_resp.json()
    assert started["action"] == "started"
    assert [r["title"] for r in started["running"]] == ["planning"]
    assert started["running"][0]["start_time"] == "2024-01-01T09:00:00+01:00"

    state.clock.advance(minutes=30)
    switch = client.post("/timer/start", json={"project_id": 2}).json()
    assert switch["action"] == "started"
    assert switch["stopped_ids"] == [1]
    assert [r["project_id"] for r in switch["running"]] == [2]

    toggled = client.post("/timer/toggle-last").json()
    assert toggled["action"] == "started"
    assert toggled["stopped_ids"] == [2]
    assert [r["project_name"] for r in toggled["running"]] == ["Work"]

    state.clock.advance(minutes=15)
    stopped = client.post("/timer/stop", json={"project_id": 1}).json()
    assert stopped["action"] == "stopped"
    assert stopped["running"] == []

    noop = client.post("/timer/stop-all").json()
    assert noop["action"] == "noop"
    assert noop["changed"] is False
    assert client.get("/timer/running").json() == []

    assert client.post("/timer/start", json={"project_id": 99}).status_code == 404
    bad_range = client.post(
        "/timer/start",
        json={"project_id": 1, "start_time": "2024-01-01T06:00:00+01:00", "end_time": "2024-01-01T05:00:00+01:00"},
    )
    assert bad_range.status_code == 400

    created = client.post(
        "/timer/start",
        json={"project_id": 1, "start_time": "2024-01-01T05:00:00+01:00", "end_time": "2024-01-01T06:00:00+01:00"},
    ).json()
    assert created["action"] == "created"
    assert created["running"] == []

    assert len(client.get("/records", params={"project_id": 1}).json()) == 3
    assert client.get("/status").json()["unsaved_changes"] is False


def test_start_with_only_an_end_time_is_checked_against_now(client: TestClient):
    _create_projects(client)

    past = client.post("/timer/start", json={"project_id": 1, "end_time": "2023-12-31T09:00:00+01:00"})
    assert past.status_code == 400
    assert past.json()["detail"] == "End time must be after start time"
    assert client.get("/records").json() == []

    future = client.post("/timer/start", json={"project_id": 1, "end_time": "2024-01-01T10:00:00+01:00"}).json()
    assert future["action"] == "created"
    record = client.get(f"/records/{future['record_ids'][0]}").json()
    assert record["start_time"] == "2024-01-01T09:00:00+01:00"
    assert record["end_time"] == "2024-01-01T10:00:00+01:00"


def test_retroactive_tracking_through_settings(client: TestClient, state: TrackerState):
    _create_projects(client)
    record_resp = client.post(
        "/records",
        json={"project_id": 1, "start_time": "2024-01-01T07:00:00+01:00", "end_time": "2024-01-01T08:00:00+01:00"},
    )
    assert record_resp.status_code == 201

    settings_resp = client.patch("/settings", json={"retroactive_tracking_enabled": True})
    assert settings_resp.status_code == 200
    assert settings_resp.json()["retroactive_tracking_enabled"] is True

    gap = client.post("/timer/start", json={"project_id": 2, "title": "email"}).json()
    assert gap["action"] == "gap_filled"
    filled = client.get(f"/records/{gap['record_ids'][0]}").json()
    assert filled["start_time"] == "2024-01-01T08:00:00+01:00"
    assert filled["end_time"] == "2024-01-01T09:00:00+01:00"
    assert filled["duration_seconds"] == 3600

    assert client.post("/timer/start", json={"project_id": 2}).json()["action"] == "noop"

    state.clock.advance(minutes=10)
    extended = client.post("/timer/start", json={"project_id": 2}).json()
    assert extended["action"] == "extended"
    assert extended["record_ids"] == gap["record_ids"]

    assert client.post("/timer/start", json={"project_id": -1}).status_code == 400


def test_multitasking_setting(client: TestClient):
    _create_projects(client)
    assert client.patch("/settings", json={"multitasking_enabled": True}).status_code == 200
    client.post("/timer/start", json={"project_id": 1})
    both = client.post("/timer/start", json={"project_id": 2}).json()
    assert both["stopped_ids"] == []
    assert len(both["running"]) == 2
    assert client.get("/status").json()["running_records"] == 2

    stop_all = client.post("/timer/stop-all").json()
    assert stop_all["action"] == "stopped_all"
    assert sorted(stop_all["stopped_ids"]) == [1, 2]


def test_settings_validation(client: TestClient):
    current = client.get("/settings").json()
    assert current["timezone"] == "Europe/Berlin"
    assert current["grid_columns"] == 3

    assert client.patch("/settings", json={"grid_columns": 9}).status_code == 422
    bad_dates = client.patch("/settings", json={"custom_start_date": "2024-02-01", "custom_end_date": "2024-01-01"})
    assert bad_dates.status_code == 400

    calendars = client.patch("/settings", json={"ics_calendars": ["webcal://example.com/team.ics", ""]}).json()
    assert calendars["ics_calendars"] == ["https://example.com/team.ics"]


def test_record_management(client: TestClient):
    _create_projects(client)
    payload = {
        "project_id": 1,
        "start_time": "2024-01-01T07:00:00+01:00",
        "end_time": "2024-01-01T08:00:00+01:00",
        "title": " review ",
    }
    created = client.post("/records", json=payload)
    assert created.status_code == 201
    record = created.json()
    assert record["title"] == "review"
    assert record["project_name"] == "Work"
    assert record["duration_seconds"] == 3600
    assert record["running"] is False

    backwards = dict(payload, end_time="2024-01-01T06:00:00+01:00")
    assert client.post("/records", json=backwards).status_code == 400
    assert client.post("/records", json=dict(payload, project_id=99)).status_code == 404

    client.post("/timer/start", json={"project_id": 2})
    manual_running = {"project_id": 1, "start_time": "2024-01-01T08:30:00+01:00"}
    conflict = client.post("/records", json=manual_running)
    assert conflict.status_code == 409
    assert conflict.json()["detail"] == "Another timer is already running"

    reopen = client.patch(f"/records/{record['id']}", json={"end_time": None})
    assert reopen.status_code == 409
    assert client.get(f"/records/{record['id']}").json()["end_time"] == "2024-01-01T08:00:00+01:00"

    updated = client.patch(f"/records/{record['id']}", json={"title": "code review", "project_id": 2})
    assert updated.status_code == 200
    assert updated.json()["title"] == "code review"
    assert updated.json()["project_name"] == "Side"
    assert client.patch(f"/records/{record['id']}", json={"end_time": "2024-01-01T06:00:00+01:00"}).status_code == 400

    listed = client.get("/records").json()
    assert [item["running"] for item in listed] == [True, False]

    assert client.delete(f"/records/{record['id']}").status_code == 204
    assert client.get(f"/records/{record['id']}").status_code == 404
    assert client.delete(f"/records/{record['id']}").status_code == 404


def test_timeblocks(client: TestClient, state: TrackerState):
    block = {"title": "Focus", "start_time": "2024-01-01T10:00:00+01:00", "end_time": "2024-01-01T12:00:00+01:00"}
    created = client.post("/timeblocks", json=block)
    assert created.status_code == 201
    assert created.json()["color"] == "#6b7280"
    block_id = created.json()["id"]

    assert client.post("/timeblocks", json=dict(block, title=" ")).status_code == 400
    assert client.post("/timeblocks", json=dict(block, end_time="2024-01-01T09:00:00+01:00")).status_code == 400

    renamed = client.patch(f"/timeblocks/{block_id}", json={"title": "Deep work"})
    assert renamed.json()["title"] == "Deep work"

    in_range = client.get("/timeblocks", params={"start": "2024-01-01T11:00:00", "end": "2024-01-01T13:00:00"})
    assert [b["id"] for b in in_range.json()] == [block_id]
    assert state.host.file_exists(state.timeblocks_path)

    assert client.delete(f"/timeblocks/{block_id}").status_code == 204
    assert client.delete(f"/timeblocks/{block_id}").status_code == 404


def test_legacy_import_and_reconcile(client: TestClient):
    imported = client.post("/import/legacy", json={"content": LEGACY_BACKUP})
    assert imported.status_code == 200
    assert imported.json()["records_imported"] == 1
    assert imported.json()["projects_added"] == 1
    assert client.post("/import/legacy", json={"content": "   "}).status_code == 400
    assert client.post("/import/legacy", json={"content": "nothing\tuseful"}).status_code == 400

    projects = client.get("/projects").json()
    assert [(p["name"], p["icon"], p["color"]) for p in projects] == [("Reading", "📖", "#00ff00")]

    incoming = "\n".join(
        [
            "category,1,Uncategorized,#88C0D0,0,0",
            "project,7,Remote,🌍,#123456,0,-1,0",
            "record,50,Remote,2024-01-01 10:00:00,2024-01-01 11:00:00,synced",
        ]
    )
    merged = client.post("/reconcile", json={"content": incoming})
    assert merged.status_code == 200
    assert merged.json()["projects_added"] == ["Remote"]
    assert merged.json()["added"] == [50]
    titles = sorted(r["title"] for r in client.get("/records").json())
    assert titles == ["chapter one", "synced"]


def test_backups(client: TestClient, state: TrackerState):
    initial = client.get("/backups").json()
    assert len(initial) == 1
    assert client.post("/backups").json() == {"created": False, "backup": None}

    _create_projects(client)
    state.clock.advance(minutes=1)
    created = client.post("/backups").json()
    assert created["created"] is True
    name = created["backup"]["name"]
    assert name == "timesheet-2024-01-01T09-01-00.csv"
    assert "project,1,Work" in client.get(f"/backups/{name}").text

    assert client.delete("/projects/1").status_code == 204
    state.clock.advance(minutes=1)
    assert client.post(f"/backups/{name}/restore").status_code == 204
    assert [p["name"] for p in client.get("/projects").json()] == ["Work", "Side"]

    merge = client.post(f"/backups/{name}/merge").json()
    assert merge["projects_added"] == []

    assert client.get("/backups/missing.csv").status_code == 404
    assert client.post("/backups/missing.csv/restore").status_code == 404
    assert client.delete(f"/backups/{name}").status_code == 204
    assert client.delete(f"/backups/{name}").status_code == 404


def test_undecodable_backup_is_rejected(client: TestClient, tmp_path: Path):
    folder = tmp_path / ".timebackups"
    folder.mkdir(exist_ok=True)
    (folder / "broken.csv").write_bytes(b"project,1,W\xffrk,x,#000000,0,1\n")
    assert client.get("/backups/broken.csv").status_code == 400
    assert client.post("/backups/broken.csv/restore").status_code == 400
    assert client.post("/backups/broken.csv/merge").status_code == 400
    assert client.get("/status").json()["read_only"] is False


def test_reports_and_embed(client: TestClient, state: TrackerState):
    _create_projects(client)
    client.post(
        "/records",
        json={"project_id": 1, "start_time": "2024-01-01T07:00:00+01:00", "end_time": "2024-01-01T08:00:00+01:00"},
    )
    client.post("/timer/start", json={"project_id": 2})
    state.clock.advance(minutes=30)

    report = client.get("/reports/projects", params={"range": "day"}).json()
    assert report["start"] == "2024-01-01T00:00:00+01:00"
    assert report["total_seconds"] == 3600
    assert report["total_formatted"] == "1:00:00"
    assert [p["name"] for p in report["projects"]] == ["Work"]
    assert report["series"]["1"] == [{"day": "2024-01-01", "seconds": 3600}]

    running = client.get("/reports/projects", params={"range": "day", "include_running": True}).json()
    assert running["total_seconds"] == 3600 + 1800
    assert client.get("/reports/projects", params={"range": "fortnight"}).status_code == 400

    embed = client.post("/embed", json={"content": "projectName: work\nrecentRecords: 1"}).json()
    assert embed["config"]["type"] == "project"
    assert embed["config"]["project_id"] == 1
    assert [p["name"] for p in embed["projects"]] == ["Work"]
    assert len(embed["recent"]) == 1
    assert embed["running"] == []


def test_calendar_events_report_feed_errors(client: TestClient):
    params = {"start": "2024-01-01T00:00:00", "end": "2024-01-02T00:00:00"}
    empty = client.get("/calendar/events", params=params).json()
    assert empty == {"fetched": True, "loading": False, "events": [], "errors": {}}

    client.patch("/settings", json={"ics_calendars": ["https://calendar.example.com/team.ics"]})
    failed = client.get("/calendar/events", params=dict(params, refresh=True)).json()
    assert list(failed["errors"]) == ["https://calendar.example.com/team.ics"]

    assert client.get("/calendar/events", params={"start": params["end"], "end": params["start"]}).status_code == 400

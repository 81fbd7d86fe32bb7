from __future__ import annotations

import datetime as dt

from timetracker.codec import create_timesheet
from timetracker.models import Project, TimeRecord
from timetracker.reconcile import reconcile_records, reconcile_timesheets
from timetracker.utils import LOCAL_TZ


def _at(hour: int, minute: int = 0) -> dt.datetime:
    return dt.datetime(2024, 1, 1, hour, minute, tzinfo=LOCAL_TZ)


NOW = _at(12)


def _record(record_id: int, start: int, end=None, project_id: int = 1, title: str = "") -> TimeRecord:
    return TimeRecord(
        id=record_id,
        project_id=project_id,
        start_time=_at(start),
        end_time=_at(end) if end is not None else None,
        title=title,
    )


def test_running_copy_beats_completed_copy():
    active = [_record(1, 8, 9)]
    incoming = [_record(1, 8, None)]
    result = reconcile_records(active, incoming, NOW)
    assert result.records[0].end_time is None
    assert result.replaced == [1]

    result = reconcile_records(incoming, active, NOW)
    assert result.records[0].end_time is None
    assert result.replaced == []


def test_later_end_wins_and_ties_keep_active():
    active = [_record(1, 8, 9, title="active"), _record(2, 9, 11, title="active")]
    incoming = [_record(1, 8, 10, title="incoming"), _record(2, 9, 11, title="incoming")]
    result = reconcile_records(active, incoming, NOW)
    assert [record.title for record in result.records] == ["incoming", "active"]
    assert result.records[1] is active[1]


def test_incoming_only_records_are_added_unless_they_overlap():
    active = [_record(1, 8, 9)]
    incoming = [
        _record(2, 9, 10),
        _record(3, 8, 10),
        _record(4, 10, 11),
    ]
    result = reconcile_records(active, incoming, NOW)
    assert result.added == [2, 4]
    assert result.skipped == [3]
    assert [record.id for record in result.records] == [1, 2, 4]


def test_running_records_count_until_now():
    active = [_record(1, 10, None)]
    incoming = [_record(2, 11, None), _record(3, 8, 9)]
    result = reconcile_records(active, incoming, NOW)
    assert result.skipped == [2]
    assert result.added == [3]


def test_reconcile_timesheets_maps_projects_by_name():
    active = create_timesheet()
    active.projects.append(Project(id=1, name="Work", icon="💼", color="#ff0000"))
    active.records.append(_record(1, 8, 9, project_id=1))

    incoming = create_timesheet()
    incoming.projects.append(Project(id=5, name="work", icon="💼", color="#ff0000"))
    incoming.projects.append(Project(id=6, name="Side", icon="💻", color="#00ff00", category_id=1))
    incoming.records.append(_record(7, 9, 10, project_id=5))
    incoming.records.append(_record(8, 10, 11, project_id=6))
    incoming.records.append(_record(9, 11, 12, project_id=-1))

    result = reconcile_timesheets(active, incoming, NOW)
    merged = result.timesheet
    assert result.projects_added == ["Side"]
    assert result.categories_added == []
    side = next(project for project in merged.projects if project.name == "Side")
    assert side.id == 2
    assert side.category_id == 1
    by_id = {record.id: record for record in merged.records}
    assert by_id[7].project_id == 1
    assert by_id[8].project_id == 2
    assert by_id[9].project_id == -1
    assert len(active.records) == 1

from __future__ import annotations

import datetime as dt

import pytest

from timetracker.codec import create_timesheet
from timetracker.errors import TimesheetFormatError
from timetracker.legacy_import import FALLBACK_ICON, convert_icon, import_legacy_backup
from timetracker.models import Project

BACKUP = "\n".join(
    [
        "category\t1\tJob\t-16711936",
        "recordType\t10\tCoding\tic_laptop_windows_24px\t-65536\t0",
        "recordType\t11\tGym\tunknown_icon\t-16776961\t1",
        "recordType\t12\tMath\t101\t-1\t0",
        "typeCategory\t10\t1",
        "record\t100\t10\t1704096000000\t1704099600000\tfeature work",
        "record\t101\t11\t1704103200000\t1704106800000",
        "record\t102\t99\t1704103200000\t1704106800000\torphan",
        "record\tbroken\t10\t1\t2\t",
        "settings\tsomething\tignored",
    ]
)


def test_import_creates_categories_projects_and_records():
    timesheet = create_timesheet()
    summary = import_legacy_backup(timesheet, BACKUP)

    assert summary.categories_added == 1
    assert summary.projects_added == 3
    assert summary.records_imported == 2
    assert summary.records_skipped == 1

    job = next(category for category in timesheet.categories if category.name == "Job")
    assert job.id == 2
    assert job.color == "#00ff00"

    coding, gym, math = timesheet.projects
    assert (coding.icon, coding.color, coding.category_id) == ("💻", "#ff0000", job.id)
    assert (gym.icon, gym.color, gym.archived, gym.category_id) == (FALLBACK_ICON, "#0000ff", True, -1)
    assert (math.icon, math.color) == ("101", "#ffffff")

    first = timesheet.records[0]
    assert first.project_id == coding.id
    assert first.title == "feature work"
    assert first.start_time == dt.datetime(2024, 1, 1, 8, 0, tzinfo=dt.timezone.utc)
    assert first.end_time == dt.datetime(2024, 1, 1, 9, 0, tzinfo=dt.timezone.utc)
    assert timesheet.records[1].title == ""


def test_import_is_idempotent():
    timesheet = create_timesheet()
    import_legacy_backup(timesheet, BACKUP)
    summary = import_legacy_backup(timesheet, BACKUP)
    assert summary.records_imported == 0
    assert summary.records_skipped == 3
    assert summary.projects_added == 0
    assert summary.projects_matched == 3
    assert summary.categories_matched == 1
    assert len(timesheet.records) == 2


def test_existing_projects_are_matched_case_insensitively():
    timesheet = create_timesheet()
    timesheet.projects.append(Project(id=4, name="coding", icon="⌨️", color="#123456"))
    import_legacy_backup(timesheet, BACKUP)
    names = [project.name for project in timesheet.projects]
    assert names.count("coding") == 1
    assert "Coding" not in names
    assert timesheet.records[0].project_id == 4


def test_empty_backup_is_rejected():
    with pytest.raises(TimesheetFormatError):
        import_legacy_backup(create_timesheet(), "category\t1\tJob\t0\n")


def test_convert_icon():
    assert convert_icon("ic_favorite_24px") == "❤️"
    assert convert_icon("204") == "204"
    assert convert_icon("2041") == FALLBACK_ICON
    assert convert_icon("ic_something_else") == FALLBACK_ICON

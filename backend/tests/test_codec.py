from __future__ import annotations

import datetime as dt

from timetracker.codec import (
    create_timesheet,
    decode_timesheet,
    normalize_color,
    parse_datetime,
    parse_timeblocks,
    parse_timesheet,
    serialize_timeblocks,
    serialize_timesheet,
)
from timetracker.models import NO_PROJECT, Project, Timeblock, TimeRecord, Timesheet
from timetracker.utils import LOCAL_TZ

UTC = dt.timezone.utc


def _at(hour: int, minute: int = 0, day: int = 1) -> dt.datetime:
    return dt.datetime(2024, 1, day, hour, minute, tzinfo=LOCAL_TZ)


def _sample() -> Timesheet:
    data = create_timesheet()
    data.projects.append(Project(id=1, name="Client, Inc.", icon="💼", color="#ff0000", category_id=1, order=0))
    data.projects.append(Project(id=2, name="Reading", icon="📖", color="#00ff00", archived=True, order=1))
    data.records.append(TimeRecord(id=1, project_id=1, start_time=_at(8), end_time=_at(9), title='said "hi", then left'))
    data.records.append(TimeRecord(id=2, project_id=NO_PROJECT, start_time=_at(9), end_time=_at(9, 30)))
    data.records.append(TimeRecord(id=3, project_id=2, start_time=_at(10)))
    return data


def test_round_trip_preserves_everything():
    data = _sample()
    assert parse_timesheet(serialize_timesheet(data)) == data


def test_serialize_writes_rows_in_fixed_order():
    lines = serialize_timesheet(_sample()).splitlines()
    tags = [line.split(",", 1)[0] for line in lines]
    assert tags == ["category", "project", "project", "record", "record", "record"]
    assert lines[-1] == "record,3,Reading,2024-01-01 10:00:00,,"


def test_running_record_has_empty_end_time():
    parsed = parse_timesheet("record,1,,2024-01-01 10:00:00,,\n")
    assert parsed.records[0].end_time is None
    assert parsed.records[0].project_id == NO_PROJECT


def test_unknown_tags_and_bad_rows_are_skipped():
    text = "\n".join(
        [
            "category,1,Uncategorized,#88C0D0,0",
            "widget,1,something",
            "project,1,Work,💼,#ff0000,0,1",
            "record,not-a-number,Work,2024-01-01 08:00:00,2024-01-01 09:00:00,",
            "record,2,Work,yesterday,2024-01-01 09:00:00,",
            "record,3,Work,2024-01-01 10:00:00,2024-01-01 11:00:00,ok",
            "",
        ]
    )
    result = decode_timesheet(text)
    assert [record.id for record in result.timesheet.records] == [3]
    assert [error.line_no for error in result.errors] == [4, 5]
    assert "line 4" in str(result.errors[0])


def test_records_resolve_projects_defined_later_in_the_file():
    text = "record,1,Work,2024-01-01 08:00:00,2024-01-01 09:00:00,\nproject,7,Work,💼,#ff0000,0,-1\n"
    parsed = parse_timesheet(text)
    assert parsed.records[0].project_id == 7


def test_dangling_project_id_survives_round_trip():
    data = Timesheet(records=[TimeRecord(id=1, project_id=42, start_time=_at(8), end_time=_at(9))])
    text = serialize_timesheet(data)
    assert "record,1,#42," in text
    assert parse_timesheet(text).records[0].project_id == 42


def test_dangling_id_is_not_captured_by_a_numeric_project_name():
    data = Timesheet(
        projects=[Project(id=3, name="7", icon="x", color="#000000")],
        records=[
            TimeRecord(id=1, project_id=7, start_time=_at(8), end_time=_at(9)),
            TimeRecord(id=2, project_id=3, start_time=_at(9), end_time=_at(10)),
        ],
    )
    parsed = parse_timesheet(serialize_timesheet(data))
    assert [record.project_id for record in parsed.records] == [7, 3]
    assert parsed == data


def test_bare_numeric_reference_is_read_as_id():
    text = "record,1,42,2024-01-01 08:00:00,2024-01-01 09:00:00,\n"
    assert parse_timesheet(text).records[0].project_id == 42


def test_optional_order_column_defaults_to_row_position():
    text = "project,5,A,x,#000000,0,-1\nproject,6,B,y,#000000,0,-1\n"
    parsed = parse_timesheet(text)
    assert [project.order for project in parsed.projects] == [0, 1]
    assert parsed.projects[0].category_id == -1


def test_parse_datetime_accepts_all_supported_formats():
    expected = dt.datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
    assert parse_datetime("1704096000000") == expected
    assert parse_datetime("1704096000123") == expected
    assert parse_datetime("2024-01-01T08:00:00Z") == expected
    assert parse_datetime("2024-01-01T08:00:00+00:00") == expected
    assert parse_datetime("2024-01-01 10:00:00") == dt.datetime(2024, 1, 1, 10, 0, tzinfo=LOCAL_TZ)
    assert parse_datetime("not a date") is None
    assert parse_datetime("") is None


def test_colors_are_normalized():
    assert normalize_color("#ABCDEF") == "#ABCDEF"
    assert normalize_color("-16777216") == "#000000"
    assert normalize_color("-1") == "#ffffff"
    assert normalize_color("4294901760") == "#ff0000"
    assert normalize_color("-65536") == "#ff0000"


def test_create_timesheet_seeds_uncategorized():
    data = create_timesheet()
    assert len(data.categories) == 1
    category = data.categories[0]
    assert (category.id, category.name, category.color) == (1, "Uncategorized", "#88C0D0")
    assert data.projects == [] and data.records == []


def test_timeblocks_round_trip_and_skip_incomplete_rows():
    blocks = [
        Timeblock(id=1, title="Focus", start_time=_at(9), end_time=_at(11), color="#123456", notes="deep, work"),
        Timeblock(id=2, title="Review", start_time=_at(14), end_time=_at(15)),
    ]
    text = serialize_timeblocks(blocks)
    assert parse_timeblocks(text) == blocks

    broken = text + "timeblock,3,Broken,2024-01-01 16:00:00,,#000000,\n"
    assert [block.id for block in parse_timeblocks(broken)] == [1, 2]

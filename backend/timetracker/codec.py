"""Reading and writing the timesheet and timeblocks text files.

Timesheet format, one row per line, comma separated with RFC 4180 quoting::

    category,<id>,<name>,<color>,<archived>[,<order>]
    project,<id>,<name>,<icon>,<color>,<archived>,<categoryId>[,<order>]
    record,<id>,<projectName-or-#id>,<startTime>,<endTime>,<title>

Times are written as ``YYYY-MM-DD HH:MM:SS`` in local time. Running timers
have an empty end time. Records whose project no longer exists keep
its id as ``#<id>``. Rows with an unknown tag are ignored so that newer
files can still be read.

Timeblocks format::

    timeblock,<id>,<title>,<startTime>,<endTime>,<color>,<notes>
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from .errors import RowParseError, TimesheetFormatError
from .models import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_TIMEBLOCK_COLOR,
    NO_PROJECT,
    UNCATEGORIZED,
    Category,
    Project,
    Timeblock,
    TimeRecord,
    Timesheet,
)
from .utils import LOCAL_TZ

logger = logging.getLogger(__name__)

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_EPOCH_MILLIS = re.compile(r"-?\d+")
PROJECT_ID_REFERENCE = re.compile(r"#(\d+)")


@dataclass
class ParseResult:
    timesheet: Timesheet
    errors: List[RowParseError] = field(default_factory=list)


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------
def argb_to_hex(color: int) -> str:
    """Convert a 32-bit ARGB integer (possibly signed) to ``#rrggbb``."""
    unsigned = color & 0xFFFFFFFF
    return f"#{unsigned & 0xFFFFFF:06x}"


def normalize_color(value: str) -> str:
    text = value.strip()
    if text.startswith("#"):
        return text
    try:
        return argb_to_hex(int(text))
    except ValueError:
        return text


def parse_datetime(value: str, tz: ZoneInfo = LOCAL_TZ) -> Optional[dt.datetime]:
    text = value.strip()
    if not text:
        return None
    try:
        return dt.datetime.strptime(text, DATETIME_FORMAT).replace(tzinfo=tz)
    except ValueError:
        pass
    if _EPOCH_MILLIS.fullmatch(text):
        try:
            return dt.datetime.fromtimestamp(int(text) / 1000, tz=tz).replace(microsecond=0)
        except (OverflowError, OSError, ValueError):
            return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz).replace(microsecond=0)


def format_datetime(value: dt.datetime, tz: ZoneInfo = LOCAL_TZ) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(tz).strftime(DATETIME_FORMAT)


def _field(parts: Sequence[str], index: int, default: str = "") -> str:
    if index < len(parts):
        return parts[index]
    return default


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise RowParseError(f"{name} is not an integer: {value!r}") from None


def _parse_optional_int(value: str, default: int) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return default


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true"}


def _require_fields(parts: Sequence[str], count: int, tag: str) -> None:
    if len(parts) < count:
        raise RowParseError(f"{tag} row needs at least {count} fields, got {len(parts)}")


def _read_rows(text: str) -> List[Tuple[int, List[str]]]:
    reader = csv.reader(io.StringIO(text, newline=""))
    rows: List[Tuple[int, List[str]]] = []
    try:
        for parts in reader:
            if not any(part.strip() for part in parts):
                continue
            rows.append((reader.line_num, parts))
    except csv.Error as exc:
        raise TimesheetFormatError(f"Timesheet is not readable (line {reader.line_num}): {exc}") from exc
    return rows


def _write_rows(rows: List[List[object]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerows(rows)
    return buffer.getvalue()


# ----------------------------------------------------------------------
# Timesheet rows
# ----------------------------------------------------------------------
def _parse_category(parts: Sequence[str], position: int) -> Category:
    _require_fields(parts, 3, "category")
    return Category(
        id=_parse_int(parts[1], "category id"),
        name=parts[2],
        color=normalize_color(_field(parts, 3)) or DEFAULT_CATEGORY_COLOR,
        archived=_parse_bool(_field(parts, 4)),
        order=_parse_optional_int(_field(parts, 5), position),
    )


def _parse_project(parts: Sequence[str], position: int) -> Project:
    _require_fields(parts, 3, "project")
    return Project(
        id=_parse_int(parts[1], "project id"),
        name=parts[2],
        icon=_field(parts, 3),
        color=normalize_color(_field(parts, 4)) or DEFAULT_CATEGORY_COLOR,
        archived=_parse_bool(_field(parts, 5)),
        category_id=_parse_optional_int(_field(parts, 6), UNCATEGORIZED),
        order=_parse_optional_int(_field(parts, 7), position),
    )


def _resolve_project_reference(value: str, by_name: Dict[str, int]) -> int:
    if not value:
        return NO_PROJECT
    if value in by_name:
        return by_name[value]
    text = value.strip()
    match = PROJECT_ID_REFERENCE.fullmatch(text)
    if match:
        return int(match.group(1))
    try:
        return int(text)
    except ValueError:
        return NO_PROJECT


def _parse_record(parts: Sequence[str], by_name: Dict[str, int], tz: ZoneInfo) -> TimeRecord:
    _require_fields(parts, 4, "record")
    record_id = _parse_int(parts[1], "record id")
    start_time = parse_datetime(parts[3], tz)
    if start_time is None:
        raise RowParseError(f"invalid start time: {parts[3]!r}")
    end_raw = _field(parts, 4)
    end_time: Optional[dt.datetime] = None
    if end_raw.strip():
        end_time = parse_datetime(end_raw, tz)
        if end_time is None:
            raise RowParseError(f"invalid end time: {end_raw!r}")
    return TimeRecord(
        id=record_id,
        project_id=_resolve_project_reference(parts[2], by_name),
        start_time=start_time,
        end_time=end_time,
        title=_field(parts, 5),
    )


def _record_project_reference(record: TimeRecord, names: Dict[int, str]) -> str:
    if record.project_id == NO_PROJECT:
        return ""
    name = names.get(record.project_id)
    if name is None:
        return f"#{record.project_id}"
    return name


def decode_timesheet(text: str, tz: ZoneInfo = LOCAL_TZ) -> ParseResult:
    """Parse timesheet text, collecting bad rows instead of failing on them."""
    result = ParseResult(timesheet=Timesheet())
    data = result.timesheet
    pending_records: List[Tuple[int, List[str]]] = []

    for line_no, parts in _read_rows(text):
        tag = parts[0].strip()
        try:
            if tag == "category":
                data.categories.append(_parse_category(parts, len(data.categories)))
            elif tag == "project":
                data.projects.append(_parse_project(parts, len(data.projects)))
            elif tag == "record":
                pending_records.append((line_no, parts))
            else:
                logger.debug("Skipping row with unknown tag %r on line %d", tag, line_no)
        except RowParseError as exc:
            exc.line_no = line_no
            exc.raw = ",".join(parts)
            result.errors.append(exc)

    # Records are resolved last so project rows may appear anywhere in the file
    by_name: Dict[str, int] = {}
    for project in data.projects:
        by_name.setdefault(project.name, project.id)
    for line_no, parts in pending_records:
        try:
            data.records.append(_parse_record(parts, by_name, tz))
        except RowParseError as exc:
            exc.line_no = line_no
            exc.raw = ",".join(parts)
            result.errors.append(exc)

    for error in result.errors:
        logger.warning("Skipped timesheet row: %s", error)
    return result


def parse_timesheet(text: str, tz: ZoneInfo = LOCAL_TZ) -> Timesheet:
    return decode_timesheet(text, tz).timesheet


def serialize_timesheet(data: Timesheet, tz: ZoneInfo = LOCAL_TZ) -> str:
    rows: List[List[object]] = []
    for category in data.categories:
        rows.append(
            [
                "category",
                category.id,
                category.name,
                category.color,
                "1" if category.archived else "0",
                category.order,
            ]
        )
    for project in data.projects:
        rows.append(
            [
                "project",
                project.id,
                project.name,
                project.icon,
                project.color,
                "1" if project.archived else "0",
                project.category_id,
                project.order,
            ]
        )
    names = {project.id: project.name for project in reversed(data.projects)}
    for record in data.records:
        rows.append(
            [
                "record",
                record.id,
                _record_project_reference(record, names),
                format_datetime(record.start_time, tz),
                format_datetime(record.end_time, tz) if record.end_time else "",
                record.title,
            ]
        )
    return _write_rows(rows)


def create_timesheet() -> Timesheet:
    """A fresh timesheet with the seeded "Uncategorized" category."""
    return Timesheet(
        categories=[Category(id=1, name="Uncategorized", color=DEFAULT_CATEGORY_COLOR, archived=False, order=0)]
    )


# ----------------------------------------------------------------------
# Timeblocks
# ----------------------------------------------------------------------
def _parse_timeblock(parts: Sequence[str], tz: ZoneInfo) -> Timeblock:
    _require_fields(parts, 5, "timeblock")
    start_time = parse_datetime(parts[3], tz)
    end_time = parse_datetime(parts[4], tz)
    if start_time is None or end_time is None:
        raise RowParseError("timeblock needs both a start and an end time")
    return Timeblock(
        id=_parse_int(parts[1], "timeblock id"),
        title=parts[2],
        start_time=start_time,
        end_time=end_time,
        color=_field(parts, 5) or DEFAULT_TIMEBLOCK_COLOR,
        notes=_field(parts, 6),
    )


def decode_timeblocks(text: str, tz: ZoneInfo = LOCAL_TZ) -> Tuple[List[Timeblock], List[RowParseError]]:
    timeblocks: List[Timeblock] = []
    errors: List[RowParseError] = []
    for line_no, parts in _read_rows(text):
        if parts[0].strip() != "timeblock":
            continue
        try:
            timeblocks.append(_parse_timeblock(parts, tz))
        except RowParseError as exc:
            exc.line_no = line_no
            exc.raw = ",".join(parts)
            errors.append(exc)
            logger.warning("Skipped timeblock row: %s", exc)
    return timeblocks, errors


def parse_timeblocks(text: str, tz: ZoneInfo = LOCAL_TZ) -> List[Timeblock]:
    return decode_timeblocks(text, tz)[0]


def serialize_timeblocks(timeblocks: Sequence[Timeblock], tz: ZoneInfo = LOCAL_TZ) -> str:
    rows: List[List[object]] = []
    for block in timeblocks:
        rows.append(
            [
                "timeblock",
                block.id,
                block.title,
                format_datetime(block.start_time, tz),
                format_datetime(block.end_time, tz),
                block.color,
                block.notes or "",
            ]
        )
    return _write_rows(rows)

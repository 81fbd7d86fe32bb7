"""Import of Simple Time Tracker ``.backup`` exports.

The backup is tab separated; the rows this importer understands are::

    recordType    <id> <name> <icon> <color> <archived> ...
    record        <id> <typeId> <startMillis> <endMillis> [<comment>]
    category      <id> <name> <color> ...
    typeCategory  <typeId> <categoryId>

Colors are signed ARGB integers. Importing the same backup twice adds
nothing the second time.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .codec import argb_to_hex
from .errors import TimesheetFormatError
from .models import UNCATEGORIZED, Category, Project, TimeRecord, Timesheet
from .store import next_id
from .utils import LOCAL_TZ

logger = logging.getLogger(__name__)

FALLBACK_ICON = "📌"

ICON_MAP: Dict[str, str] = {
    "ic_account_balance_24px": "🏛️",
    "ic_phone_iphone_24px": "📱",
    "ic_public_24px": "🌐",
    "ic_check_circle_24px": "✅",
    "ic_electric_car_24px": "🚗",
    "ic_airplanemode_active_24px": "✈️",
    "ic_videogame_asset_24px": "🎮",
    "ic_menu_book_24px": "📖",
    "ic_sports_motorsports_24px": "🏍️",
    "ic_keyboard_24px": "⌨️",
    "ic_laptop_windows_24px": "💻",
    "ic_train_24px": "🚆",
    "ic_business_center_24px": "💼",
    "ic_local_hospital_24px": "🏥",
    "ic_audiotrack_24px": "🎸",
    "ic_headset_24px": "🎧",
    "ic_desktop_windows_24px": "🖥️",
    "ic_fitness_center_24px": "🏋️",
    "ic_assignment_24px": "📋",
    "ic_park_24px": "🌳",
    "ic_restaurant_menu_24px": "🍽️",
    "ic_airline_seat_individual_suite_24px": "🛏️",
    "ic_phone_android_24px": "📱",
    "ic_chat_24px": "💬",
    "ic_directions_car_24px": "🚗",
    "ic_elderly_24px": "🚶",
    "ic_wash_24px": "🧼",
    "ic_airline_seat_recline_extra_24px": "💺",
    "ic_group_24px": "👥",
    "ic_motorcycle_24px": "🏍️",
    "ic_schedule_24px": "⏰",
    "ic_event_note_24px": "📅",
    "ic_local_grocery_store_24px": "🛒",
    "ic_query_builder_24px": "⏱️",
    "ic_favorite_24px": "❤️",
}

_COURSE_CODE = re.compile(r"\d{3}")


@dataclass
class LegacyRecordType:
    id: int
    name: str
    icon: str
    color: int
    archived: bool


@dataclass
class LegacyRecord:
    id: int
    type_id: int
    start_millis: int
    end_millis: int
    comment: str


@dataclass
class LegacyCategory:
    id: int
    name: str
    color: int


@dataclass
class LegacyBackup:
    record_types: List[LegacyRecordType] = field(default_factory=list)
    records: List[LegacyRecord] = field(default_factory=list)
    categories: List[LegacyCategory] = field(default_factory=list)
    type_categories: Dict[int, int] = field(default_factory=dict)


@dataclass
class ImportSummary:
    records_imported: int = 0
    records_skipped: int = 0
    projects_added: int = 0
    projects_matched: int = 0
    categories_added: int = 0
    categories_matched: int = 0


def convert_icon(name: str) -> str:
    if name in ICON_MAP:
        return ICON_MAP[name]
    if _COURSE_CODE.fullmatch(name):
        return name
    return FALLBACK_ICON


def parse_legacy_backup(text: str) -> LegacyBackup:
    backup = LegacyBackup()
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split("\t")
        tag = parts[0].strip()
        try:
            if tag == "recordType" and len(parts) >= 6:
                backup.record_types.append(
                    LegacyRecordType(
                        id=int(parts[1]),
                        name=parts[2],
                        icon=parts[3],
                        color=int(parts[4]),
                        archived=parts[5].strip() == "1",
                    )
                )
            elif tag == "record" and len(parts) >= 5:
                backup.records.append(
                    LegacyRecord(
                        id=int(parts[1]),
                        type_id=int(parts[2]),
                        start_millis=int(parts[3]),
                        end_millis=int(parts[4]),
                        comment=parts[5] if len(parts) > 5 else "",
                    )
                )
            elif tag == "category" and len(parts) >= 4:
                backup.categories.append(
                    LegacyCategory(id=int(parts[1]), name=parts[2], color=int(parts[3]))
                )
            elif tag == "typeCategory" and len(parts) >= 3:
                backup.type_categories[int(parts[1])] = int(parts[2])
        except ValueError:
            logger.warning("Skipped legacy backup line %d: %r", line_no, line)
    return backup


def _from_millis(value: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(value / 1000, tz=LOCAL_TZ).replace(microsecond=0)


def _find_by_name(items, name: str):
    wanted = name.casefold()
    return next((item for item in items if item.name.casefold() == wanted), None)


def import_legacy_backup(timesheet: Timesheet, text: str) -> ImportSummary:
    """Merge a legacy backup into ``timesheet`` in place."""
    backup = parse_legacy_backup(text)
    if not backup.record_types and not backup.records:
        raise TimesheetFormatError("No valid data found in the backup file")

    summary = ImportSummary()

    category_map: Dict[int, int] = {}
    for legacy in backup.categories:
        existing: Optional[Category] = _find_by_name(timesheet.categories, legacy.name)
        if existing is None:
            existing = Category(
                id=next_id(timesheet.categories),
                name=legacy.name,
                color=argb_to_hex(legacy.color),
                archived=False,
                order=len(timesheet.categories),
            )
            timesheet.categories.append(existing)
            summary.categories_added += 1
        else:
            summary.categories_matched += 1
        category_map[legacy.id] = existing.id

    project_map: Dict[int, int] = {}
    for legacy_type in backup.record_types:
        project: Optional[Project] = _find_by_name(timesheet.projects, legacy_type.name)
        if project is None:
            category_id = category_map.get(backup.type_categories.get(legacy_type.id, UNCATEGORIZED), UNCATEGORIZED)
            project = Project(
                id=next_id(timesheet.projects),
                name=legacy_type.name,
                icon=convert_icon(legacy_type.icon),
                color=argb_to_hex(legacy_type.color),
                category_id=category_id,
                archived=legacy_type.archived,
                order=len(timesheet.projects),
            )
            timesheet.projects.append(project)
            summary.projects_added += 1
        else:
            summary.projects_matched += 1
        project_map[legacy_type.id] = project.id

    seen = {(record.project_id, record.start_time) for record in timesheet.records}
    for legacy_record in backup.records:
        project_id = project_map.get(legacy_record.type_id)
        if project_id is None:
            summary.records_skipped += 1
            continue
        start_time = _from_millis(legacy_record.start_millis)
        if (project_id, start_time) in seen:
            summary.records_skipped += 1
            continue
        timesheet.records.append(
            TimeRecord(
                id=next_id(timesheet.records),
                project_id=project_id,
                start_time=start_time,
                end_time=_from_millis(legacy_record.end_millis),
                title=legacy_record.comment,
            )
        )
        seen.add((project_id, start_time))
        summary.records_imported += 1

    logger.info(
        "Imported %d records, %d new projects, %d new categories from legacy backup",
        summary.records_imported,
        summary.projects_added,
        summary.categories_added,
    )
    return summary

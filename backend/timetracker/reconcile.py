"""Merging a second copy of the timesheet into the active one.

Used when the file changed on disk while unsaved edits exist and when a
backup is merged back in. Per record id:

* present in both: a running copy beats a completed one, otherwise the later
  end time wins; ties keep the active copy.
* only in the incoming copy: added unless its interval overlaps a record that
  is already part of the merged set. Running records count up to ``now``.
  Intervals that only touch do not overlap.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .models import NO_PROJECT, UNCATEGORIZED, Category, Project, TimeRecord, Timesheet
from .store import next_id
from .utils import now as local_now

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    records: List[TimeRecord]
    replaced: List[int] = field(default_factory=list)
    added: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)


@dataclass
class MergeResult:
    timesheet: Timesheet
    records: ReconcileResult
    categories_added: List[str] = field(default_factory=list)
    projects_added: List[str] = field(default_factory=list)


def _interval(record: TimeRecord, now: dt.datetime) -> Tuple[dt.datetime, dt.datetime]:
    return record.start_time, record.end_time or now


def _overlaps(record: TimeRecord, others: Sequence[TimeRecord], now: dt.datetime) -> bool:
    start, end = _interval(record, now)
    for other in others:
        other_start, other_end = _interval(other, now)
        if start < other_end and other_start < end:
            return True
    return False


def _prefer_incoming(current: TimeRecord, candidate: TimeRecord) -> bool:
    if current.end_time is None:
        return False
    if candidate.end_time is None:
        return True
    return candidate.end_time > current.end_time


def reconcile_records(
    active: Sequence[TimeRecord],
    incoming: Sequence[TimeRecord],
    now: Optional[dt.datetime] = None,
) -> ReconcileResult:
    now = now or local_now()
    merged: List[TimeRecord] = list(active)
    index: Dict[int, int] = {record.id: position for position, record in enumerate(merged)}
    result = ReconcileResult(records=merged)

    for candidate in incoming:
        position = index.get(candidate.id)
        if position is not None:
            if _prefer_incoming(merged[position], candidate):
                merged[position] = candidate
                result.replaced.append(candidate.id)
            continue
        if _overlaps(candidate, merged, now):
            result.skipped.append(candidate.id)
            continue
        index[candidate.id] = len(merged)
        merged.append(candidate)
        result.added.append(candidate.id)

    logger.info(
        "Reconciled records: %d replaced, %d added, %d skipped",
        len(result.replaced),
        len(result.added),
        len(result.skipped),
    )
    return result


def _merge_categories(target: Timesheet, incoming: Timesheet, added: List[str]) -> Dict[int, int]:
    mapping: Dict[int, int] = {}
    for category in incoming.categories:
        wanted = category.name.casefold()
        match = next((c for c in target.categories if c.name.casefold() == wanted), None)
        if match is None:
            match = Category(
                id=next_id(target.categories),
                name=category.name,
                color=category.color,
                archived=category.archived,
                order=len(target.categories),
            )
            target.categories.append(match)
            added.append(match.name)
        mapping[category.id] = match.id
    return mapping


def _merge_projects(
    target: Timesheet,
    incoming: Timesheet,
    category_map: Dict[int, int],
    added: List[str],
) -> Dict[int, int]:
    mapping: Dict[int, int] = {}
    for project in incoming.projects:
        wanted = project.name.casefold()
        match = next((p for p in target.projects if p.name.casefold() == wanted), None)
        if match is None:
            match = Project(
                id=next_id(target.projects),
                name=project.name,
                icon=project.icon,
                color=project.color,
                category_id=category_map.get(project.category_id, UNCATEGORIZED),
                archived=project.archived,
                order=len(target.projects),
            )
            target.projects.append(match)
            added.append(match.name)
        mapping[project.id] = match.id
    return mapping


def reconcile_timesheets(
    active: Timesheet,
    incoming: Timesheet,
    now: Optional[dt.datetime] = None,
) -> MergeResult:
    """Merge ``incoming`` into a copy of ``active``.

    Projects and categories are matched by name; ones the active timesheet
    does not know are appended with fresh ids and the incoming records are
    remapped onto them before the record merge.
    """
    merged = active.copy()
    categories_added: List[str] = []
    projects_added: List[str] = []
    category_map = _merge_categories(merged, incoming, categories_added)
    project_map = _merge_projects(merged, incoming, category_map, projects_added)

    remapped: List[TimeRecord] = []
    for record in incoming.records:
        project_id = record.project_id
        if project_id != NO_PROJECT:
            project_id = project_map.get(project_id, project_id)
        remapped.append(
            TimeRecord(
                id=record.id,
                project_id=project_id,
                start_time=record.start_time,
                end_time=record.end_time,
                title=record.title,
            )
        )

    records = reconcile_records(merged.records, remapped, now)
    merged.records = records.records
    return MergeResult(
        timesheet=merged,
        records=records,
        categories_added=categories_added,
        projects_added=projects_added,
    )

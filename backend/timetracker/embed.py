"""Configuration and data selection for embedded tracker blocks.

A block is a few ``key: value`` lines, for example::

    type: category
    categoryName: Work
    recentRecords: 3
    showTimer: false
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .models import Project, TimeRecord
from .store import RecordStore

EMBED_TYPES = ("all", "project", "category")
EMBED_SIZES = ("small", "normal", "large")


@dataclass
class EmbedConfig:
    type: str = "all"
    project_id: Optional[int] = None
    category_id: Optional[int] = None
    recent_records: int = 5
    show_timer: bool = True
    size: str = "normal"


@dataclass
class EmbedView:
    config: EmbedConfig
    projects: List[Project] = field(default_factory=list)
    running: List[TimeRecord] = field(default_factory=list)
    recent: List[TimeRecord] = field(default_factory=list)


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        return None


def parse_embed_config(text: str, store: RecordStore, default_recent: int = 5) -> EmbedConfig:
    config = EmbedConfig(recent_records=default_recent)
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = (part.strip() for part in line.split(":", 1))
        key = key.lower()
        if key == "type":
            if value.lower() in EMBED_TYPES:
                config.type = value.lower()
        elif key == "project":
            project_id = _parse_int(value)
            if project_id is not None:
                config.project_id = project_id
                config.type = "project"
        elif key == "projectname":
            project = store.find_project_by_name(value)
            if project is not None:
                config.project_id = project.id
                config.type = "project"
        elif key == "category":
            category_id = _parse_int(value)
            if category_id is not None:
                config.category_id = category_id
                config.type = "category"
        elif key == "categoryname":
            category = store.find_category_by_name(value)
            if category is not None:
                config.category_id = category.id
                config.type = "category"
        elif key == "recentrecords":
            count = _parse_int(value)
            if count is not None:
                config.recent_records = max(count, 0)
        elif key == "showtimer":
            config.show_timer = value.lower() == "true"
        elif key == "size":
            if value.lower() in EMBED_SIZES:
                config.size = value.lower()
    return config


def select_embed_view(config: EmbedConfig, store: RecordStore) -> EmbedView:
    if config.type == "project":
        projects = [p for p in store.projects if p.id == config.project_id]
    elif config.type == "category":
        projects = [p for p in store.projects if p.category_id == config.category_id and not p.archived]
    else:
        projects = [p for p in store.projects if not p.archived]
    projects.sort(key=lambda project: project.order)
    project_ids = {project.id for project in projects}

    view = EmbedView(config=config, projects=projects)
    if config.show_timer:
        view.running = [r for r in store.running_records() if r.project_id in project_ids]
    completed = [r for r in store.records if r.end_time is not None and r.project_id in project_ids]
    completed.sort(key=lambda record: (record.end_time, record.id), reverse=True)
    view.recent = completed[: config.recent_records]
    return view

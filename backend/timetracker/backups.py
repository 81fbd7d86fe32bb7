from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Callable, List, Optional

from .storage import FileHost, FileInfo
from .utils import now as local_now

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
_BACKUP_NAME = re.compile(r"[\w.\-]+\.csv")


class BackupManager:
    """Timestamped copies of the timesheet file with a retention window."""

    def __init__(
        self,
        host: FileHost,
        folder: str = ".timebackups",
        retention_days: int = 5,
        clock: Callable[[], dt.datetime] = local_now,
    ) -> None:
        self.host = host
        self.folder = folder.strip("/") or ".timebackups"
        self.retention = dt.timedelta(days=max(0, retention_days))
        self._clock = clock

    def backup_name(self, when: dt.datetime) -> str:
        return f"timesheet-{when.strftime(BACKUP_TIMESTAMP_FORMAT)}.csv"

    def _path(self, name: str) -> str:
        if not _BACKUP_NAME.fullmatch(name):
            raise FileNotFoundError(name)
        return f"{self.folder}/{name}"

    def list_backups(self) -> List[FileInfo]:
        backups = [info for info in self.host.list_files(self.folder) if info.name.endswith(".csv")]
        backups.sort(key=lambda info: (info.mtime, info.name), reverse=True)
        return backups

    def create_backup(self, content: str) -> Optional[FileInfo]:
        """Store ``content`` as a new backup unless it matches the newest one."""
        backups = self.list_backups()
        if backups and self._newest_matches(backups[0], content):
            logger.info("Backup skipped: content is identical to %s", backups[0].name)
            return None
        name = self.backup_name(self._clock())
        path = self._path(name)
        self.host.write_file(path, content)
        logger.info("Backup created: %s", path)
        self.cleanup()
        return next((info for info in self.list_backups() if info.name == name), None)

    def _newest_matches(self, newest: FileInfo, content: str) -> bool:
        try:
            return self.host.read_file(newest.path) == content
        except UnicodeDecodeError:
            return False

    def read_backup(self, name: str) -> str:
        path = self._path(name)
        if not self.host.file_exists(path):
            raise FileNotFoundError(name)
        return self.host.read_file(path)

    def delete_backup(self, name: str) -> bool:
        path = self._path(name)
        if not self.host.file_exists(path):
            return False
        self.host.delete_file(path)
        logger.info("Deleted backup %s", path)
        return True

    def cleanup(self) -> List[str]:
        cutoff = self._clock().timestamp() - self.retention.total_seconds()
        removed: List[str] = []
        for info in self.list_backups():
            if info.mtime >= cutoff:
                continue
            try:
                self.host.delete_file(info.path)
            except OSError:
                logger.exception("Could not delete old backup %s", info.path)
                continue
            removed.append(info.name)
            logger.info("Deleted old backup: %s", info.path)
        return removed

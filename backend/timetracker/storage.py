from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol


@dataclass(frozen=True)
class FileInfo:
    path: str
    name: str
    size: int
    mtime: float


class FileHost(Protocol):
    """File access used by the state and backup layers.

    Paths are relative to the host root and use forward slashes.
    """

    def read_file(self, path: str) -> str: ...

    def write_file(self, path: str, content: str) -> None: ...

    def file_exists(self, path: str) -> bool: ...

    def create_file(self, path: str, content: str) -> None: ...

    def list_files(self, folder: str) -> List[FileInfo]: ...

    def stat_mtime(self, path: str) -> Optional[float]: ...

    def delete_file(self, path: str) -> None: ...


class LocalFileHost:
    """:class:`FileHost` backed by a directory on the local disk."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.root / path

    def read_file(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8")

    def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_name(f".{target.name}.tmp")
        temp.write_text(content, encoding="utf-8", newline="")
        os.replace(temp, target)

    def file_exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def create_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        if target.exists():
            raise FileExistsError(path)
        self.write_file(path, content)

    def list_files(self, folder: str) -> List[FileInfo]:
        directory = self._resolve(folder)
        if not directory.is_dir():
            return []
        files: List[FileInfo] = []
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            stat = entry.stat()
            files.append(
                FileInfo(
                    path=f"{folder}/{entry.name}",
                    name=entry.name,
                    size=stat.st_size,
                    mtime=stat.st_mtime,
                )
            )
        return files

    def stat_mtime(self, path: str) -> Optional[float]:
        target = self._resolve(path)
        if not target.exists():
            return None
        return target.stat().st_mtime

    def delete_file(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

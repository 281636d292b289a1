"""Contracts for the services the core depends on, plus small in-process
implementations good enough for the CLI and tests."""

from __future__ import annotations

import fnmatch
import json
import logging
import shutil
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

from bulk_editor.errors import DocumentAccessError
from bulk_editor.rewrite.changelog import DocumentChangelog

logger = logging.getLogger(__name__)


class Cache(ABC):
    @abstractmethod
    def get(self, key: str) -> Any | None: ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float) -> None: ...

    @abstractmethod
    def invalidate(self, pattern: str) -> int:
        """Drop every key matching the glob ``pattern``; returns the count."""


class BackupService(ABC):
    @abstractmethod
    def create_backup(self, path: str) -> str: ...


class ChangelogSink(ABC):
    @abstractmethod
    def record(self, changelog: DocumentChangelog) -> None: ...


class MemoryCache(Cache):
    def __init__(self) -> None:
        self._data: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return None
            expires_at, value = hit
            if expires_at < time.monotonic():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._data[key] = (time.monotonic() + ttl, value)

    def invalidate(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._data[k]
        return len(doomed)


class FileBackupService(BackupService):
    """Copies ``<dir>/<name><ext>`` to ``<dir>/<folder>/<name>_backup_<ts><ext>``."""

    def __init__(self, folder_name: str = "Backups") -> None:
        self._folder_name = folder_name

    def create_backup(self, path: str) -> str:
        src = Path(path)
        dest_dir = src.parent / self._folder_name
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        dest = dest_dir / f"{src.stem}_backup_{stamp}{src.suffix}"
        n = 1
        while dest.exists():
            dest = dest_dir / f"{src.stem}_backup_{stamp}_{n}{src.suffix}"
            n += 1
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        except OSError as e:
            raise DocumentAccessError(path, f"backup failed ({e})") from e
        logger.info("Backup created: %s", dest)
        return str(dest)


class JsonChangelogSink(ChangelogSink):
    """Collects changelogs in memory; ``write()`` dumps them as one JSON file."""

    def __init__(self) -> None:
        self._items: list[DocumentChangelog] = []
        self._lock = threading.Lock()

    def record(self, changelog: DocumentChangelog) -> None:
        with self._lock:
            self._items.append(changelog)

    @property
    def changelogs(self) -> list[DocumentChangelog]:
        with self._lock:
            return list(self._items)

    def write(self, path: str | Path) -> None:
        payload = {"documents": [c.to_dict() for c in self.changelogs]}
        Path(path).write_text(json.dumps(payload, indent=2), encoding="utf-8")

"""Versioned key-value persistence for aggregates.

The engine only relies on the ``EntityStore`` protocol: read, write,
compare-and-write and list, each keyed by ``(kind, key)``. Two adapters ship
with the package:

* ``InMemoryStore`` keeps records in a dict, for tests and single-process use.
* ``JsonFileStore`` keeps one JSON file per record under a directory and uses
  atomic write (temp file + rename) so a crash never leaves a torn record.

Created: 2026-10-19
"""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

from pydantic import BaseModel

from chainpulse.config import Settings
from chainpulse.errors import ConcurrencyConflict, InvalidPayload

logger = logging.getLogger(__name__)


class VersionedRecord(BaseModel):
    """A stored value together with its monotonically increasing version."""

    key: str
    version: int
    value: dict[str, Any]


@runtime_checkable
class EntityStore(Protocol):
    async def read(self, kind: str, key: str) -> VersionedRecord | None: ...

    async def write(self, kind: str, key: str, value: dict[str, Any]) -> int: ...

    async def compare_and_write(
        self, kind: str, key: str, expected_version: int | None, value: dict[str, Any]
    ) -> int: ...

    async def list(self, kind: str) -> list[VersionedRecord]: ...


class InMemoryStore:
    """Dict-backed store. Safe to share between threads and tasks."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], VersionedRecord] = {}
        self._mutex = threading.Lock()

    async def read(self, kind: str, key: str) -> VersionedRecord | None:
        with self._mutex:
            return self._data.get((kind, key))

    async def write(self, kind: str, key: str, value: dict[str, Any]) -> int:
        with self._mutex:
            current = self._data.get((kind, key))
            version = current.version + 1 if current else 1
            self._data[(kind, key)] = VersionedRecord(key=key, version=version, value=value)
            return version

    async def compare_and_write(
        self, kind: str, key: str, expected_version: int | None, value: dict[str, Any]
    ) -> int:
        with self._mutex:
            current = self._data.get((kind, key))
            actual = current.version if current else None
            if actual != expected_version:
                raise ConcurrencyConflict(kind, key, expected_version, actual)
            version = (actual or 0) + 1
            self._data[(kind, key)] = VersionedRecord(key=key, version=version, value=value)
            return version

    async def list(self, kind: str) -> list[VersionedRecord]:
        with self._mutex:
            return [rec for (k, _), rec in self._data.items() if k == kind]

    def clear(self) -> None:
        with self._mutex:
            self._data.clear()


class JsonFileStore:
    """One JSON file per record: ``<root>/<kind>/<quoted key>.json``.

    Compare-and-write is atomic within one process. Several processes sharing
    a directory need an external lock around it.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._mutex = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def read(self, kind: str, key: str) -> VersionedRecord | None:
        return await asyncio.to_thread(self._read, kind, key)

    async def write(self, kind: str, key: str, value: dict[str, Any]) -> int:
        return await asyncio.to_thread(self._write, kind, key, value, None, False)

    async def compare_and_write(
        self, kind: str, key: str, expected_version: int | None, value: dict[str, Any]
    ) -> int:
        return await asyncio.to_thread(self._write, kind, key, value, expected_version, True)

    async def list(self, kind: str) -> list[VersionedRecord]:
        return await asyncio.to_thread(self._list, kind)

    # ------------------------------------------------------------------
    # Internal helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _path(self, kind: str, key: str) -> Path:
        return self._root / kind / f"{quote(key, safe='')}.json"

    def _load(self, path: Path) -> VersionedRecord:
        try:
            return VersionedRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise InvalidPayload(f"Corrupted record at {path}: {exc}") from exc

    def _read(self, kind: str, key: str) -> VersionedRecord | None:
        path = self._path(kind, key)
        with self._mutex:
            if not path.exists():
                return None
            return self._load(path)

    def _write(
        self,
        kind: str,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
        check: bool,
    ) -> int:
        path = self._path(kind, key)
        with self._mutex:
            current = self._load(path) if path.exists() else None
            actual = current.version if current else None
            if check and actual != expected_version:
                raise ConcurrencyConflict(kind, key, expected_version, actual)
            record = VersionedRecord(key=key, version=(actual or 0) + 1, value=value)
            self._atomic_write(path, record.model_dump_json(indent=2))
            logger.debug("Stored %s/%s v%d", kind, key, record.version)
            return record.version

    @staticmethod
    def _atomic_write(path: Path, data: str) -> None:
        parent = path.parent
        parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=parent, suffix=".tmp")
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(data)
            Path(tmp).replace(path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _list(self, kind: str) -> list[VersionedRecord]:
        folder = self._root / kind
        if not folder.is_dir():
            return []
        with self._mutex:
            return [self._load(path) for path in sorted(folder.glob("*.json"))]


def create_store(settings: Settings) -> EntityStore:
    """Build the store selected by ``settings.store_backend``."""
    backend = settings.store_backend.lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "file":
        return JsonFileStore(settings.resolved_store_path())
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")

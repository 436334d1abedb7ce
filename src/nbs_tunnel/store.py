"""
Durable snapshot of forwarding records.

Provides:
- RecordStore: load()/save() protocol
- JsonRecordStore: a JSON file, rewritten atomically
- MemoryRecordStore: in-process store for tests and embedding

Stores deal in plain dictionaries; status normalisation is the
registry's job.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

log = logging.getLogger(__name__)


class RecordStore(Protocol):
    def load(self) -> list[dict[str, Any]]: ...

    def save(self, records: list[dict[str, Any]]) -> None: ...


class MemoryRecordStore:
    """Keeps the snapshot in memory."""

    def __init__(self, records: list[dict[str, Any]] | None = None) -> None:
        self._records: list[dict[str, Any]] = [dict(r) for r in records or []]
        self.save_count = 0

    def load(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._records]

    def save(self, records: list[dict[str, Any]]) -> None:
        self._records = [dict(r) for r in records]
        self.save_count += 1


class JsonRecordStore:
    """
    Stores records as a JSON array in a file.

    Writes go to a temporary file in the same directory and are moved
    into place with os.replace, so a crash never leaves a truncated file.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable forwarding store %s: %s", self._path, e)
            return []

        if not isinstance(data, list):
            log.warning("Ignoring forwarding store %s: expected a JSON array", self._path)
            return []
        return [item for item in data if isinstance(item, dict)]

    def save(self, records: list[dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

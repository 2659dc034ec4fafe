"""Persisted lock table shared by every worker process on a host.

The table is one JSON document mapping test id to
``{platform, deviceId, timestamp[, sessionId, expiresAt]}``. It is rewritten in
full on every mutation. Mutations hold an exclusive ``flock`` on a sidecar
``.lock`` file for the whole read-merge-write cycle, and writes go to a temp
file in the same directory that is then renamed over the table, so readers
never observe a partial document.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from devicelease.models import LockEntry, LockTableError

logger = logging.getLogger("devicelease.lock-table")


class LockTableStore:
    """Durable lock table with an advisory cross-process lock."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def read(self) -> dict[str, LockEntry]:
        """Read the table. Missing or corrupt files read as an empty table.

        Individual malformed rows are skipped so one bad entry cannot hide
        every other worker's allocations.
        """
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read lock table %s: %s", self.path, e)
            return {}

        if not isinstance(data, dict):
            logger.error("Lock table %s is not an object, ignoring it", self.path)
            return {}

        entries: dict[str, LockEntry] = {}
        for test_id, raw in data.items():
            try:
                entries[test_id] = LockEntry.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping malformed lock entry %s: %s", test_id, e)
        return entries

    def write(self, entries: dict[str, LockEntry]) -> None:
        """Replace the table atomically.

        Raises:
            LockTableError: If the staged file cannot be written or renamed.
        """
        payload = {
            test_id: entry.model_dump(mode="json", by_alias=True, exclude_none=True)
            for test_id, entry in entries.items()
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent,
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(json.dumps(payload, indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise LockTableError(f"Failed to persist device locks to {self.path}: {e}") from e

    def clear(self) -> bool:
        """Delete the table. Returns True if a file was removed."""
        with self.locked():
            if not self.path.exists():
                return False
            try:
                self.path.unlink()
            except OSError as e:
                raise LockTableError(f"Failed to remove lock table {self.path}: {e}") from e
            return True

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the exclusive cross-process lock for a read-merge-write cycle."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.touch(exist_ok=True)

        with open(self.lock_path, "r") as f:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

"""Read-through cache over categorized JSON fixture files.

A fixture file ``<fixtures_dir>/<type>.json`` holds::

    {"users": {"valid": [{...}, {...}], "admin": [{...}]}}

Loading never raises: a missing or broken file reads as no data.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger("devicelease.fixtures")


class FixtureStore:
    """Loads fixture records and caches them per (type, category)."""

    def __init__(self, fixtures_dir: Path) -> None:
        self.fixtures_dir = Path(fixtures_dir)
        self._cache: dict[tuple[str, str | None], Any] = {}

    def load_test_data(self, data_type: str, category: str | None = None, index: int = 0) -> Any:
        """Return one record of a category, or the whole type without one.

        With a category, ``index`` picks the record; an index outside the
        list falls back to the first record, and an empty or unknown
        category yields ``{}``. Without a category the full
        ``{category: [records]}`` mapping is returned. Results are copies.
        """
        key = (data_type, category)
        if key not in self._cache:
            data = self._read_type(data_type)
            if data is None:
                return {}
            if category is None:
                self._cache[key] = data
            else:
                records = data.get(category) or []
                self._cache[key] = records if isinstance(records, list) else [records]

        cached = self._cache[key]
        if category is None:
            return copy.deepcopy(cached)

        if not cached:
            return {}
        record = cached[index] if 0 <= index < len(cached) else cached[0]
        return copy.deepcopy(record)

    def get_user(self, kind: str = "valid", index: int = 0) -> dict[str, Any]:
        return self.load_test_data("users", kind, index)

    def get_product(self, kind: str = "standard", index: int = 0) -> dict[str, Any]:
        return self.load_test_data("products", kind, index)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _read_type(self, data_type: str) -> dict[str, Any] | None:
        """The sub-object for ``data_type``, or None if it cannot be loaded."""
        path = self.fixtures_dir / f"{data_type}.json"
        if not path.exists():
            logger.warning("Test data file not found: %s", path)
            return None
        try:
            raw = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load test data for %s: %s", data_type, e)
            return None

        section = raw.get(data_type) if isinstance(raw, dict) else None
        if not isinstance(section, dict):
            logger.warning("Test data file %s has no %r object", path, data_type)
            return None
        return section

"""Per-test data isolation.

Concurrent tests seeded from the same fixture would otherwise register the
same username or email. Each test gets a deep copy of its base data with
identity fields tagged by a freshly minted execution context id:

    user@example.com  ->  user+exec-1718000000000-3f9a1c2e@example.com
    alice             ->  alice_exec-1718000000000-3f9a1c2e
"""

from __future__ import annotations

import copy
import logging
import secrets
import time
from typing import Any, Iterable

from devicelease.models import ExecutionContext

logger = logging.getLogger("devicelease.isolation")

DEFAULT_IDENTITY_FIELDS = frozenset({"email", "username"})
CONTEXT_KEY = "_execution_context"


def mint_context_id() -> str:
    """``exec-<epoch ms>-<8 hex chars>``."""
    return f"exec-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def isolate_value(value: str, context_id: str) -> str:
    """Tag one identity value: plus-address emails, suffix everything else."""
    if "@" in value:
        local, _, domain = value.rpartition("@")
        return f"{local}+{context_id}@{domain}"
    return f"{value}_{context_id}"


class IsolationEngine:
    """Owns every live test's isolated record and execution context."""

    def __init__(self, identity_fields: Iterable[str] = DEFAULT_IDENTITY_FIELDS) -> None:
        self.identity_fields = frozenset(identity_fields)
        self._records: dict[str, dict[str, Any]] = {}
        self._contexts: dict[str, ExecutionContext] = {}

    def initialize_test_data(self, test_id: str, base_data: dict[str, Any] | None = None) -> dict[str, Any]:
        """Create the isolated record for ``test_id`` from ``base_data``.

        Re-initializing a test replaces its previous record and context.
        The caller's ``base_data`` is never modified.
        """
        context = ExecutionContext(context_id=self._new_context_id(), test_id=test_id)
        record = self._isolate(copy.deepcopy(base_data or {}), context.context_id)
        record[CONTEXT_KEY] = context.context_id

        self._contexts[test_id] = context
        self._records[test_id] = record
        logger.debug("Initialized test data for %s with context %s", test_id, context.context_id)
        return record

    def get_test_data(self, test_id: str) -> dict[str, Any]:
        return self._records.get(test_id, {})

    def get_context(self, test_id: str) -> ExecutionContext | None:
        return self._contexts.get(test_id)

    def update_test_data(self, test_id: str, new_data: dict[str, Any]) -> dict[str, Any]:
        """Merge ``new_data`` over the test's record, last writer wins per field.

        Updating a test that was never initialized (or already cleaned up)
        changes nothing and returns an empty record.
        """
        current = self._records.get(test_id)
        if current is None:
            logger.warning("No test data to update for test: %s", test_id)
            return {}
        current.update(copy.deepcopy(new_data))
        return current

    def cleanup_test_data(self, test_id: str) -> None:
        self._records.pop(test_id, None)
        self._contexts.pop(test_id, None)

    def active_tests(self) -> list[str]:
        return list(self._records)

    def _new_context_id(self) -> str:
        live = {c.context_id for c in self._contexts.values()}
        context_id = mint_context_id()
        while context_id in live:
            context_id = mint_context_id()
        return context_id

    def _isolate(self, data: Any, context_id: str) -> Any:
        """Rewrite identity fields at any depth, in place on the copy."""
        if isinstance(data, dict):
            for key, value in data.items():
                if key in self.identity_fields and isinstance(value, str) and value:
                    data[key] = isolate_value(value, context_id)
                else:
                    self._isolate(value, context_id)
        elif isinstance(data, list):
            for item in data:
                self._isolate(item, context_id)
        return data

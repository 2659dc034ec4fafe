"""Local device pool with a cross-process persisted lock table."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from devicelease.models import Allocation, Device, LockEntry, LockTableError, ResourceExhaustedError
from devicelease.pool.lock_table import LockTableStore

logger = logging.getLogger("devicelease.pool")


class DevicePoolRegistry:
    """Allocates devices from a fixed catalog to tests, one device per test.

    Each process keeps its own in-memory view of the catalog. The lock table
    is the source of truth across processes: every mutation re-reads it under
    the table lock, merges it into the in-memory view, decides, and writes the
    whole table back.
    """

    def __init__(self, store: LockTableStore, stale_lock_ttl: timedelta | None = None) -> None:
        self._store = store
        self._stale_lock_ttl = stale_lock_ttl
        self._devices: dict[str, list[Device]] = {}
        self._allocations: dict[str, Allocation] = {}
        # Allocations made by this process, kept even if a persist failed
        self._owned: set[str] = set()
        # Entries on disk whose device this process does not know about
        self._foreign: dict[str, LockEntry] = {}

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    def initialize_pool(self, devices_by_platform: dict[str, Iterable[dict[str, Any] | Device]]) -> None:
        """Reset the catalog and reconcile it with the persisted lock table.

        Every device starts free; persisted locks that reference a known
        device mark it in use again (crash recovery). Locks older than the
        stale-lock TTL, or whose lease has expired, are reclaimed.
        """
        self._devices = {}
        for platform, devices in devices_by_platform.items():
            key = platform.lower()
            self._devices[key] = [
                d.model_copy(update={"in_use": False}) if isinstance(d, Device) else Device.from_config(key, d)
                for d in devices
            ]
        self._allocations = {}
        self._owned = set()
        self._foreign = {}

        with self._store.locked():
            self._merge_persisted()
            stale = self._find_stale(self._stale_lock_ttl)
            if stale:
                for test_id in stale:
                    allocation = self._allocations.pop(test_id)
                    logger.warning(
                        "Reclaimed stale lock: test %s held %s %s since %s",
                        test_id, allocation.platform, allocation.device_id, allocation.timestamp.isoformat(),
                    )
                self._recompute_in_use()
                self._persist()

        counts = ", ".join(f"{len(v)} {k}" for k, v in self._devices.items()) or "no devices"
        logger.info(
            "Device pool initialized: %s (%d restored locks)", counts, len(self._allocations),
        )

    async def allocate(
        self,
        platform: str,
        test_id: str,
        capabilities: dict[str, Any] | None = None,
        *,
        lease: timedelta | None = None,
        session_id: str | None = None,
        endpoint: str | None = None,
    ) -> Allocation:
        """Reserve the first free device of ``platform`` for ``test_id``.

        Re-entrant: a test that already holds a device gets the same
        allocation back. ``capabilities`` are accepted for contract parity
        with the farm broker; the local pool does not match on them.

        Raises:
            ResourceExhaustedError: If every device of the platform is in use.
        """
        platform = platform.lower()
        with self._store.locked():
            self._merge_persisted()

            existing = self._allocations.get(test_id)
            if existing is not None:
                logger.info(
                    "Test %s already holds %s device %s", test_id, existing.platform, existing.device_id,
                )
                return existing

            device = next((d for d in self._devices.get(platform, []) if not d.in_use), None)
            if device is None:
                logger.warning("No available %s devices for test: %s", platform, test_id)
                raise ResourceExhaustedError(platform, test_id)

            now = datetime.now(timezone.utc)
            device.in_use = True
            allocation = Allocation(
                test_id=test_id,
                platform=platform,
                device_id=device.device_id,
                session_id=session_id,
                endpoint=endpoint,
                timestamp=now,
                expires_at=now + lease if lease else None,
                device=device.model_dump(exclude={"in_use"}),
            )
            self._allocations[test_id] = allocation
            self._owned.add(test_id)
            self._persist()

        logger.info(
            "Device allocated: %s (%s) to test %s", device.device_id, device.device_name or platform, test_id,
        )
        return allocation

    async def release(self, test_id: str) -> bool:
        """Return the device held by ``test_id`` to the pool.

        Releasing a test that holds nothing is a no-op and still succeeds.
        """
        with self._store.locked():
            self._merge_persisted()

            allocation = self._allocations.pop(test_id, None)
            self._owned.discard(test_id)
            if allocation is None:
                logger.warning("No device lock found for test: %s", test_id)
                return True

            device = self._find_device(allocation.platform, allocation.device_id)
            if device is not None:
                device.in_use = False
            self._persist()

        logger.info("Device released: %s from test %s", allocation.device_id, test_id)
        return True

    def is_allocated(self, test_id: str) -> bool:
        return test_id in self._allocations

    def get_allocation(self, test_id: str) -> Allocation | None:
        return self._allocations.get(test_id)

    def allocations(self) -> dict[str, Allocation]:
        return dict(self._allocations)

    def get_available(self) -> dict[str, list[Device]]:
        """Free devices per platform, from this process's view.

        Diagnostic only: another process may take a device between this
        snapshot and an ``allocate`` call.
        """
        return {
            platform: [d.model_copy() for d in devices if not d.in_use]
            for platform, devices in self._devices.items()
        }

    def get_devices(self, platform: str | None = None) -> list[Device]:
        """Copies of every known device, optionally for one platform."""
        if platform is not None:
            return [d.model_copy() for d in self._devices.get(platform.lower(), [])]
        return [d.model_copy() for devices in self._devices.values() for d in devices]

    def find_allocation_by_device(self, device_id: str) -> Allocation | None:
        for allocation in self._allocations.values():
            if allocation.device_id == device_id:
                return allocation
        return None

    def pool_status(self) -> dict[str, dict[str, int]]:
        """Device totals per platform."""
        return {
            platform: {
                "total": len(devices),
                "in_use": sum(1 for d in devices if d.in_use),
                "available": sum(1 for d in devices if not d.in_use),
            }
            for platform, devices in self._devices.items()
        }

    def refresh(self) -> None:
        """Pull other processes' allocations and releases into this view."""
        with self._store.locked():
            self._merge_persisted()

    async def reclaim_stale(self, max_age: timedelta | None = None) -> list[str]:
        """Release allocations older than ``max_age`` or past their lease.

        Returns the reclaimed test ids.
        """
        with self._store.locked():
            self._merge_persisted()
            stale = self._find_stale(max_age)
            if not stale:
                return []

            for test_id in stale:
                allocation = self._allocations.pop(test_id)
                self._owned.discard(test_id)
                age_minutes = int(
                    (datetime.now(timezone.utc) - allocation.timestamp).total_seconds() / 60
                )
                logger.warning(
                    "Released device %s - held by test %s for %d minutes (expired)",
                    allocation.device_id, test_id, age_minutes,
                )
            self._recompute_in_use()
            self._persist()
            return stale

    def clear(self) -> None:
        """Drop every lock, on disk and in memory."""
        removed = self._store.clear()
        self._allocations = {}
        self._owned = set()
        self._foreign = {}
        self._recompute_in_use()
        if removed:
            logger.info("Removed device lock file %s", self._store.path)

    # ----------------------------------------------------------------
    # Internal helpers
    # ----------------------------------------------------------------

    def _find_device(self, platform: str, device_id: str) -> Device | None:
        for device in self._devices.get(platform, []):
            if device.device_id == device_id:
                return device
        return None

    def _find_stale(self, max_age: timedelta | None) -> list[str]:
        now = datetime.now(timezone.utc)
        return [
            test_id
            for test_id, allocation in self._allocations.items()
            if allocation.is_expired(now) or (max_age is not None and now - allocation.timestamp > max_age)
        ]

    def _merge_persisted(self) -> None:
        """Rebuild the in-memory allocations from disk. Caller holds the lock."""
        persisted = self._store.read()
        merged: dict[str, Allocation] = {}
        foreign: dict[str, LockEntry] = {}

        for test_id, entry in persisted.items():
            device = self._find_device(entry.platform, entry.device_id)
            if device is None:
                foreign[test_id] = entry
                continue
            merged[test_id] = entry.to_allocation(test_id, device)

        # Our own allocations survive a failed persist, unless another test
        # has since been given the same device.
        held = {a.device_id for a in merged.values()}
        for test_id in sorted(self._owned):
            allocation = self._allocations.get(test_id)
            if allocation is None or test_id in merged:
                continue
            if allocation.device_id in held:
                logger.warning(
                    "Lock for test %s on %s was lost and the device was reassigned",
                    test_id, allocation.device_id,
                )
                self._owned.discard(test_id)
                continue
            merged[test_id] = allocation
            held.add(allocation.device_id)

        self._allocations = merged
        self._foreign = foreign
        self._recompute_in_use()

    def _recompute_in_use(self) -> None:
        held = {(a.platform, a.device_id) for a in self._allocations.values()}
        for platform, devices in self._devices.items():
            for device in devices:
                device.in_use = (platform, device.device_id) in held

    def _persist(self) -> None:
        """Write the whole table. A failure is logged; memory stays authoritative."""
        entries = dict(self._foreign)
        entries.update({test_id: a.to_lock_entry() for test_id, a in self._allocations.items()})
        try:
            self._store.write(entries)
        except LockTableError as e:
            logger.error("%s", e)

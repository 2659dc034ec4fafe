"""The allocation contract shared by the local pool and the device farm."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from devicelease.config import LeaseConfig
from devicelease.farm.broker import RemoteDeviceBroker
from devicelease.models import Allocation
from devicelease.pool.lock_table import LockTableStore
from devicelease.pool.registry import DevicePoolRegistry

logger = logging.getLogger("devicelease.allocation")


@runtime_checkable
class AllocationBackend(Protocol):
    """What a test worker needs from wherever its devices come from.

    ``allocate`` raises ``ResourceExhaustedError`` or
    ``RemoteUnavailableError`` when no device can be had; ``release`` is
    idempotent.
    """

    async def allocate(
        self, platform: str, test_id: str, capabilities: dict[str, Any] | None = None,
    ) -> Allocation: ...

    async def release(self, test_id: str) -> bool: ...

    def is_allocated(self, test_id: str) -> bool: ...


def build_local_registry(config: LeaseConfig) -> DevicePoolRegistry:
    """A registry over the configured catalog, reconciled with the lock table."""
    registry = DevicePoolRegistry(
        LockTableStore(config.lock_file), stale_lock_ttl=config.stale_lock_ttl,
    )
    registry.initialize_pool(config.devices)
    return registry


def build_backend(config: LeaseConfig) -> AllocationBackend:
    """The one backend this worker is configured for."""
    if config.backend == "farm":
        logger.info("Using device farm at %s", config.farm_url)
        return RemoteDeviceBroker.from_config(config)
    logger.info("Using local device pool (locks in %s)", config.lock_file)
    return build_local_registry(config)

"""Per-test setup and teardown: a device plus an isolated data record.

A worker builds one ``LeaseCoordinator`` and calls ``setup`` before each
device-dependent test and ``teardown`` after it::

    coordinator = LeaseCoordinator.from_config(LeaseConfig.load())
    leased = await coordinator.setup(make_test_id(__file__, "login works"))
    ...  # drive the app at leased.target with leased.capabilities
    await coordinator.teardown(leased.test_id)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from devicelease.allocation import AllocationBackend, build_backend
from devicelease.config import LeaseConfig
from devicelease.data.fixtures import FixtureStore
from devicelease.data.isolation import IsolationEngine
from devicelease.farm.broker import RemoteDeviceBroker
from devicelease.models import Allocation, ConnectionTarget
from devicelease.target import build_capabilities, parse_endpoint

logger = logging.getLogger("devicelease.lifecycle")


def make_test_id(spec_file: str, test_name: str) -> str:
    """Stable id from a spec file and test title.

    ``make_test_id("specs/login.spec.js", "logs in  ok")`` → ``"login_logs_in_ok"``
    """
    stem = Path(spec_file).name.split(".", 1)[0]
    name = re.sub(r"\s+", "_", test_name)
    return f"{stem}_{name}"


@dataclass
class LeasedTest:
    """Everything a test needs once setup succeeded."""

    test_id: str
    platform: str
    allocation: Allocation
    data: dict[str, Any]
    target: ConnectionTarget
    capabilities: dict[str, Any] = field(default_factory=dict)


class LeaseCoordinator:
    """Glue between the allocation backend and test-data isolation."""

    def __init__(
        self,
        backend: AllocationBackend,
        fixtures: FixtureStore,
        isolation: IsolationEngine | None = None,
        default_platform: str = "android",
        local_endpoint: str | None = None,
    ) -> None:
        self.backend = backend
        self.fixtures = fixtures
        self.isolation = isolation or IsolationEngine()
        self.default_platform = default_platform
        self.local_endpoint = local_endpoint
        self._active: dict[str, LeasedTest] = {}

    @classmethod
    def from_config(cls, config: LeaseConfig) -> LeaseCoordinator:
        return cls(
            backend=build_backend(config),
            fixtures=FixtureStore(config.fixtures_dir),
            default_platform=config.platform,
            local_endpoint=config.appium_url,
        )

    async def setup(
        self,
        test_id: str,
        platform: str | None = None,
        capabilities: dict[str, Any] | None = None,
        base_data: dict[str, Any] | None = None,
    ) -> LeasedTest:
        """Allocate a device and isolate test data for ``test_id``.

        Allocation errors propagate unchanged; the test should not run.
        """
        platform = (platform or self.default_platform).lower()
        allocation = await self.backend.allocate(platform, test_id, capabilities)

        if base_data is None:
            base_data = {
                "platform": platform,
                "device": allocation.device,
                "user": self.fixtures.get_user(),
            }
        data = self.isolation.initialize_test_data(test_id, base_data)

        target = self._target_for(allocation)
        leased = LeasedTest(
            test_id=test_id,
            platform=platform,
            allocation=allocation,
            data=data,
            target=target,
            capabilities=build_capabilities(platform, allocation, capabilities),
        )
        self._active[test_id] = leased
        logger.info(
            "Test %s running on device %s (%s)",
            test_id, allocation.device_id, allocation.device.get("device_name") or allocation.device.get("name") or platform,
        )
        return leased

    async def teardown(self, test_id: str) -> bool:
        """Release the device and drop the isolated record. Safe to repeat.

        A test whose release failed stays active so ``release_all`` retries it.
        """
        released = await self.backend.release(test_id)
        self.isolation.cleanup_test_data(test_id)
        if released:
            self._active.pop(test_id, None)
            logger.info("Test %s completed, device released", test_id)
        else:
            logger.error("Test %s completed but its device could not be released", test_id)
        return released

    async def release_all(self) -> list[str]:
        """Tear down every test still active. Returns the ids released."""
        released = []
        for test_id in list(self._active):
            if await self.teardown(test_id):
                released.append(test_id)
                logger.info("Released device for orphaned test: %s", test_id)
        return released

    def active_tests(self) -> list[str]:
        return list(self._active)

    def _target_for(self, allocation: Allocation) -> ConnectionTarget:
        if isinstance(self.backend, RemoteDeviceBroker):
            return self.backend.connection_target(allocation.test_id)
        return parse_endpoint(allocation.endpoint or self.local_endpoint, default_path="/")

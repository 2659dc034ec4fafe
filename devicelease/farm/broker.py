"""RemoteDeviceBroker: HTTP client for an external device-farm service.

Offers the same allocation contract as the local pool, backed by the farm's
REST API:

- ``GET /status``                       health probe
- ``GET /devices?platformName=P``       ``{devices: [{id, busy, ...}]}``
- ``POST /device``                      ``{device, sessionId, endpoint}``
- ``POST /device/{id}/release``         success or failure

Allocations are cached per test id in this process only. A retried setup step
in the same process gets the cached allocation without a second network
call; a fresh process has no cache and will request a new device, leaving the
old lease to expire on the farm.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from devicelease.config import DEFAULT_RESERVE_TIMEOUT, LeaseConfig
from devicelease.models import (
    Allocation,
    AllocationConflictError,
    AllocationNotFoundError,
    ConnectionTarget,
    RemoteUnavailableError,
)
from devicelease.target import parse_endpoint

logger = logging.getLogger("devicelease.farm")

FARM_TIMEOUT = 10.0  # seconds for HTTP requests
STATUS_TIMEOUT = 5.0


class RemoteDeviceBroker:
    """Requests and releases devices from a device farm on behalf of tests."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        username: str | None = None,
        password: str | None = None,
        reserve_timeout: int = DEFAULT_RESERVE_TIMEOUT,
        timeout: float = FARM_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key or None
        self._username = username or None
        self._password = password or None
        self.reserve_timeout = reserve_timeout
        self._timeout = timeout
        self._allocations: dict[str, Allocation] = {}

    @classmethod
    def from_config(cls, config: LeaseConfig) -> RemoteDeviceBroker:
        return cls(
            base_url=config.farm_url,
            api_key=config.farm_api_key,
            username=config.farm_username,
            password=config.farm_password,
            reserve_timeout=config.reserve_timeout,
            timeout=config.request_timeout,
        )

    # ------------------------------------------------------------------
    # Farm queries
    # ------------------------------------------------------------------

    async def check_status(self) -> bool:
        """Probe the farm. Returns False instead of raising when it is down."""
        try:
            resp = await self._get("/status", timeout=STATUS_TIMEOUT)
        except httpx.HTTPError as e:
            logger.error("Failed to connect to device farm %s: %s", self.base_url, e)
            return False
        if resp.status_code == 200:
            logger.info("Connected to device farm: %s", self.base_url)
            return True
        logger.error("Device farm %s answered status probe with %d", self.base_url, resp.status_code)
        return False

    async def get_available_devices(self, platform: str) -> list[dict[str, Any]]:
        """Devices of ``platform`` the farm reports as not busy. [] on error."""
        try:
            resp = await self._get("/devices", params={"platformName": platform})
            if resp.status_code != 200:
                logger.error(
                    "Failed to get available %s devices: HTTP %d", platform, resp.status_code,
                )
                return []
            devices = resp.json().get("devices") or []
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error("Failed to get available %s devices: %s", platform, e)
            return []

        available = [d for d in devices if not d.get("busy")]
        logger.info("Found %d available %s devices", len(available), platform)
        return available

    # ------------------------------------------------------------------
    # Allocation contract
    # ------------------------------------------------------------------

    async def allocate(
        self,
        platform: str,
        test_id: str,
        capabilities: dict[str, Any] | None = None,
    ) -> Allocation:
        """Reserve a farm device for ``test_id``.

        Raises:
            AllocationConflictError: The farm rejected the request.
            RemoteUnavailableError: The farm was unreachable or answered
                with a server error or an unreadable body.
        """
        cached = self._allocations.get(test_id)
        if cached is not None:
            logger.info("Test %s already has an allocated device", test_id)
            return cached

        payload = {
            "platformName": platform,
            "capabilities": capabilities or {},
            "testId": test_id,
            "reserveTimeout": self.reserve_timeout,
        }
        try:
            resp = await self._post("/device", payload)
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(
                f"Device farm {self.base_url} unreachable: {e}", test_id=test_id,
            ) from e

        body = _json_or_empty(resp)
        if resp.status_code >= 500:
            raise RemoteUnavailableError(
                f"Device farm error {resp.status_code}: {_message(body)}", test_id=test_id,
            )
        if resp.status_code != 200:
            raise AllocationConflictError(
                f"Failed to allocate device: {_message(body)}", test_id=test_id,
            )
        device = body.get("device")
        if not isinstance(device, dict) or "id" not in device:
            if not body:
                raise RemoteUnavailableError(
                    "Device farm returned an unreadable allocation response", test_id=test_id,
                )
            raise AllocationConflictError(
                f"Failed to allocate device: {_message(body)}", test_id=test_id,
            )

        now = datetime.now(timezone.utc)
        allocation = Allocation(
            test_id=test_id,
            platform=platform,
            device_id=str(device["id"]),
            session_id=body.get("sessionId"),
            endpoint=body.get("endpoint"),
            timestamp=now,
            expires_at=now + timedelta(seconds=self.reserve_timeout),
            device=device,
        )
        self._allocations[test_id] = allocation
        logger.info("Allocated device %s for test %s", allocation.device_id, test_id)
        return allocation

    async def request_device(
        self,
        platform: str,
        capabilities: dict[str, Any] | None,
        test_id: str,
    ) -> Allocation | None:
        """Like ``allocate`` but returns None on any farm failure."""
        try:
            return await self.allocate(platform, test_id, capabilities)
        except RemoteUnavailableError as e:
            logger.error("Failed to request %s device: %s", platform, e)
            return None

    async def release_device(self, test_id: str) -> bool:
        """Hand the device held by ``test_id`` back to the farm.

        Nothing cached for the test means nothing to do. On failure the
        allocation stays cached so the release can be retried.
        """
        allocation = self._allocations.get(test_id)
        if allocation is None:
            logger.info("No device allocation found for test %s", test_id)
            return True

        try:
            resp = await self._post(
                f"/device/{allocation.device_id}/release",
                {"sessionId": allocation.session_id, "testId": test_id},
            )
        except httpx.HTTPError as e:
            logger.error("Failed to release device for test %s: %s", test_id, e)
            return False

        if resp.status_code != 200:
            logger.error(
                "Failed to release device for test %s: %s", test_id, _message(_json_or_empty(resp)),
            )
            return False

        del self._allocations[test_id]
        logger.info("Released device %s for test %s", allocation.device_id, test_id)
        return True

    async def release(self, test_id: str) -> bool:
        return await self.release_device(test_id)

    def is_allocated(self, test_id: str) -> bool:
        return test_id in self._allocations

    def get_allocation(self, test_id: str) -> Allocation | None:
        return self._allocations.get(test_id)

    def connection_target(self, test_id: str) -> ConnectionTarget:
        """Where the automation session for ``test_id`` should connect.

        Raises:
            AllocationNotFoundError: If the test holds no farm device.
        """
        allocation = self._allocations.get(test_id)
        if allocation is None:
            raise AllocationNotFoundError(test_id)

        target = parse_endpoint(allocation.endpoint)
        capabilities = dict(allocation.device.get("capabilities") or {})
        capabilities["appium:sessionId"] = allocation.session_id
        return target.model_copy(update={"capabilities": capabilities})

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request_kwargs(self) -> dict[str, Any]:
        """API key header if configured, else Basic auth, else nothing."""
        if self._api_key:
            return {"headers": {"X-API-Key": self._api_key}}
        if self._username and self._password:
            return {"headers": {}, "auth": httpx.BasicAuth(self._username, self._password)}
        return {"headers": {}}

    async def _get(
        self, path: str, params: dict[str, Any] | None = None, timeout: float | None = None,
    ) -> httpx.Response:
        async with httpx.AsyncClient() as client:
            return await client.get(
                f"{self.base_url}{path}",
                params=params,
                timeout=timeout or self._timeout,
                **self._request_kwargs(),
            )

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient() as client:
            return await client.post(
                f"{self.base_url}{path}",
                json=payload,
                timeout=self._timeout,
                **self._request_kwargs(),
            )


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _message(body: dict[str, Any]) -> str:
    return str(body.get("message") or body.get("detail") or "Unknown error")

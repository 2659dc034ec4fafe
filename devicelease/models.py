"""Core data models and the error taxonomy shared by every backend."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DeviceLeaseError(Exception):
    """Base error for allocation and isolation failures."""

    def __init__(self, message: str, test_id: str | None = None) -> None:
        super().__init__(message)
        self.test_id = test_id


class ResourceExhaustedError(DeviceLeaseError):
    """No free device of the requested platform."""

    def __init__(self, platform: str, test_id: str | None = None) -> None:
        super().__init__(f"No available {platform} devices for test: {test_id}", test_id=test_id)
        self.platform = platform


class RemoteUnavailableError(DeviceLeaseError):
    """The device farm could not be reached or did not answer usefully."""


class AllocationConflictError(RemoteUnavailableError):
    """The device farm explicitly rejected an allocation request."""


class AllocationNotFoundError(DeviceLeaseError):
    """An operation needed an allocation that does not exist."""

    def __init__(self, test_id: str) -> None:
        super().__init__(f"No device allocation found for test {test_id}", test_id=test_id)


class LockTableError(DeviceLeaseError):
    """Reading or writing the persisted lock table failed."""


# ---------------------------------------------------------------------------
# Devices and allocations
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Device(BaseModel):
    """A device in the local pool. ``in_use`` is the only field that changes."""

    device_id: str = Field(description="Android serial (id) or iOS UDID")
    platform: str
    device_name: str = ""
    platform_version: str = ""
    in_use: bool = False
    capabilities: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_config(cls, platform: str, raw: dict[str, Any]) -> Device:
        """Build a device from a catalog entry.

        Catalog entries name the device by ``id`` (Android) or ``udid`` (iOS)
        and may carry arbitrary extra capabilities alongside.
        """
        device_id = raw.get("id") or raw.get("udid") or raw.get("device_id")
        if not device_id:
            raise ValueError(f"Device entry for {platform} has no id or udid: {raw!r}")
        known = {"id", "udid", "device_id", "deviceName", "device_name", "platformVersion", "platform_version"}
        return cls(
            device_id=str(device_id),
            platform=platform.lower(),
            device_name=raw.get("deviceName") or raw.get("device_name") or "",
            platform_version=str(raw.get("platformVersion") or raw.get("platform_version") or ""),
            capabilities={k: v for k, v in raw.items() if k not in known},
        )

    def farm_view(self) -> dict[str, Any]:
        """Shape used on the device-farm wire protocol."""
        return {
            "id": self.device_id,
            "busy": self.in_use,
            "platform": self.platform,
            "deviceName": self.device_name,
            "platformVersion": self.platform_version,
            "capabilities": dict(self.capabilities),
        }


class Allocation(BaseModel):
    """Binding between a test and a reserved device, valid until released."""

    test_id: str
    platform: str
    device_id: str
    session_id: str | None = None
    endpoint: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = Field(default=None, description="Lease end, if the reservation is bounded")
    device: dict[str, Any] = Field(
        default_factory=dict,
        description="Device payload: the farm's device object or a snapshot of the local device",
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at

    def to_lock_entry(self) -> LockEntry:
        return LockEntry(
            platform=self.platform,
            device_id=self.device_id,
            timestamp=self.timestamp,
            session_id=self.session_id,
            endpoint=self.endpoint,
            expires_at=self.expires_at,
        )


class LockEntry(BaseModel):
    """One row of the persisted lock table (camelCase on disk)."""

    model_config = ConfigDict(populate_by_name=True)

    platform: str
    device_id: str = Field(alias="deviceId")
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: str | None = Field(default=None, alias="sessionId")
    endpoint: str | None = None
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    def to_allocation(self, test_id: str, device: Device | None = None) -> Allocation:
        return Allocation(
            test_id=test_id,
            platform=self.platform,
            device_id=self.device_id,
            session_id=self.session_id,
            endpoint=self.endpoint,
            timestamp=self.timestamp,
            expires_at=self.expires_at,
            device=device.model_dump(exclude={"in_use"}) if device else {},
        )


# ---------------------------------------------------------------------------
# Test data isolation
# ---------------------------------------------------------------------------


class ExecutionContext(BaseModel):
    """Unique identity minted for one test-data initialization."""

    context_id: str
    test_id: str
    start_time: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Collaborator hand-off
# ---------------------------------------------------------------------------


class ConnectionTarget(BaseModel):
    """Where and how the automation session should connect for a test."""

    protocol: str = "http"
    hostname: str = "localhost"
    port: int = 4723
    path: str = "/wd/hub"
    capabilities: dict[str, Any] = Field(default_factory=dict)

    @property
    def url(self) -> str:
        return f"{self.protocol}://{self.hostname}:{self.port}{self.path}"

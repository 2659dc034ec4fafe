"""Device-farm routes: a local pool served over the broker protocol."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from devicelease.models import ResourceExhaustedError
from devicelease.pool.registry import DevicePoolRegistry

logger = logging.getLogger("devicelease.api.farm")

router = APIRouter(tags=["device-farm"])


def _get_registry(request: Request) -> DevicePoolRegistry:
    """Get the DevicePoolRegistry from app state."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Device pool not initialized")
    return registry


# Request models
class DeviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform_name: str = Field(alias="platformName")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    test_id: str = Field(alias="testId")
    reserve_timeout: int = Field(default=300, alias="reserveTimeout", gt=0)


class ReleaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    test_id: str = Field(alias="testId")


# Routes
@router.get("/status")
async def farm_status(request: Request):
    """Health probe with per-platform device totals."""
    registry = _get_registry(request)
    registry.refresh()
    return {"status": "ok", "platforms": registry.pool_status()}


@router.get("/devices")
async def list_devices(
    request: Request,
    platform_name: str | None = Query(default=None, alias="platformName"),
):
    """List devices, optionally for one platform, with their busy flag."""
    registry = _get_registry(request)
    registry.refresh()
    devices = registry.get_devices(platform_name)
    return {"devices": [d.farm_view() for d in devices], "total": len(devices)}


@router.post("/device")
async def request_device(request: Request, body: DeviceRequest):
    """Reserve a device for a test.

    Returns 200 with ``{device, sessionId, endpoint}``.
    Returns 409 if every device of the platform is in use.
    """
    registry = _get_registry(request)
    await registry.reclaim_stale()

    try:
        allocation = await registry.allocate(
            body.platform_name,
            body.test_id,
            body.capabilities,
            lease=timedelta(seconds=body.reserve_timeout),
            session_id=uuid.uuid4().hex,
            endpoint=request.app.state.appium_url,
        )
    except ResourceExhaustedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    device = {"id": allocation.device_id, **_device_payload(registry, allocation.platform, allocation.device_id)}
    return {
        "device": device,
        "sessionId": allocation.session_id,
        "endpoint": allocation.endpoint or request.app.state.appium_url,
    }


@router.post("/device/{device_id}/release")
async def release_device(request: Request, device_id: str, body: ReleaseRequest):
    """Release a test's device.

    Unknown test ids succeed without doing anything. Returns 409 when the
    test holds a different device or the session id does not match.
    """
    registry = _get_registry(request)
    registry.refresh()

    allocation = registry.get_allocation(body.test_id)
    if allocation is None:
        return {"status": "released", "id": device_id}

    if allocation.device_id != device_id:
        raise HTTPException(
            status_code=409,
            detail=f"Test {body.test_id} holds device {allocation.device_id}, not {device_id}",
        )
    if body.session_id and allocation.session_id and body.session_id != allocation.session_id:
        raise HTTPException(
            status_code=409,
            detail=f"Session {body.session_id} does not own device {device_id}",
        )

    await registry.release(body.test_id)
    return {"status": "released", "id": device_id}


def _device_payload(registry: DevicePoolRegistry, platform: str, device_id: str) -> dict[str, Any]:
    for device in registry.get_devices(platform):
        if device.device_id == device_id:
            view = device.farm_view()
            view.pop("id")
            view["name"] = device.device_name
            return view
    return {}

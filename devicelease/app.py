"""FastAPI application for the device-farm service."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from devicelease import __version__
from devicelease.allocation import build_local_registry
from devicelease.api.farm import router as farm_router
from devicelease.auth import FarmAuthMiddleware
from devicelease.config import LeaseConfig
from devicelease.pool.registry import DevicePoolRegistry

logger = logging.getLogger("devicelease.app")


def create_app(
    config: LeaseConfig | None = None,
    registry: DevicePoolRegistry | None = None,
) -> FastAPI:
    """Build the farm app around a registry (built from ``config`` if not given)."""
    config = config or LeaseConfig.load()

    app = FastAPI(
        title="devicelease farm",
        description="Serves a local device pool over the device-farm protocol",
        version=__version__,
    )
    app.state.registry = registry if registry is not None else build_local_registry(config)
    app.state.appium_url = config.appium_url

    app.add_middleware(
        FarmAuthMiddleware,
        api_key=config.farm_api_key,
        username=config.farm_username,
        password=config.farm_password,
    )
    app.include_router(farm_router)
    return app

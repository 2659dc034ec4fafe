"""Configuration for pools, the device farm client and fixture loading."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

logger = logging.getLogger("devicelease.config")

CONFIG_DIR = Path.home() / ".devicelease"
USER_CONFIG_FILE = CONFIG_DIR / "config.json"
DEFAULT_LOCK_FILE = CONFIG_DIR / "device-locks.json"
DEFAULT_FIXTURES_DIR = Path("testData")

BACKENDS = ("local", "farm")
DEFAULT_FARM_URL = "http://localhost:4723"
DEFAULT_RESERVE_TIMEOUT = 300  # seconds, requested lease per remote allocation
DEFAULT_STALE_LOCK_TTL = timedelta(minutes=30)


@dataclass
class LeaseConfig:
    """Settings for one worker process.

    Build with ``LeaseConfig.load()`` to layer the user config file and
    environment variables over these defaults.
    """

    backend: str = "local"
    platform: str = "android"
    lock_file: Path = DEFAULT_LOCK_FILE
    fixtures_dir: Path = DEFAULT_FIXTURES_DIR
    stale_lock_ttl: timedelta | None = DEFAULT_STALE_LOCK_TTL
    devices: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    farm_url: str = DEFAULT_FARM_URL
    farm_api_key: str = field(default="", repr=False)
    farm_username: str = ""
    farm_password: str = field(default="", repr=False)
    reserve_timeout: int = DEFAULT_RESERVE_TIMEOUT
    request_timeout: float = 10.0

    # Device-farm service (``devicelease serve``)
    serve_host: str = "127.0.0.1"
    serve_port: int = 4780
    appium_url: str = "http://127.0.0.1:4723"

    def __post_init__(self) -> None:
        self.backend = self.backend.lower()
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        self.platform = self.platform.lower()
        self.lock_file = Path(self.lock_file)
        self.fixtures_dir = Path(self.fixtures_dir)
        if self.reserve_timeout <= 0:
            raise ValueError(f"reserve_timeout must be positive, got {self.reserve_timeout}")
        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be positive, got {self.request_timeout}")

    @classmethod
    def load(cls, env: dict[str, str] | None = None, **overrides: Any) -> LeaseConfig:
        """Defaults < ~/.devicelease/config.json < environment < overrides."""
        env = os.environ if env is None else env
        values: dict[str, Any] = {}

        user = read_user_config()
        for key in (
            "backend", "platform", "lock_file", "fixtures_dir", "devices",
            "farm_url", "farm_api_key", "farm_username", "farm_password",
            "reserve_timeout", "request_timeout", "serve_host", "serve_port", "appium_url",
        ):
            if key in user:
                values[key] = user[key]
        if "stale_lock_ttl_minutes" in user:
            values["stale_lock_ttl"] = _ttl_from_minutes(user["stale_lock_ttl_minutes"])

        env_map = {
            "DEVICELEASE_BACKEND": "backend",
            "PLATFORM": "platform",
            "DEVICELEASE_LOCK_FILE": "lock_file",
            "DEVICELEASE_FIXTURES_DIR": "fixtures_dir",
            "DEVICE_FARM_URL": "farm_url",
            "DEVICE_FARM_API_KEY": "farm_api_key",
            "DEVICE_FARM_USERNAME": "farm_username",
            "DEVICE_FARM_PASSWORD": "farm_password",
        }
        for var, key in env_map.items():
            if env.get(var):
                values[key] = env[var]
        if env.get("DEVICE_FARM_RESERVE_TIMEOUT"):
            values["reserve_timeout"] = int(env["DEVICE_FARM_RESERVE_TIMEOUT"])
        if env.get("DEVICELEASE_STALE_LOCK_TTL"):
            values["stale_lock_ttl"] = _ttl_from_minutes(env["DEVICELEASE_STALE_LOCK_TTL"])

        values.update(overrides)
        return cls(**values)


def _ttl_from_minutes(value: Any) -> timedelta | None:
    """Minutes to a TTL. Zero, negative or null disables stale-lock reclaim."""
    if value is None:
        return None
    minutes = float(value)
    if minutes <= 0:
        return None
    return timedelta(minutes=minutes)


def read_user_config() -> dict:
    """Read user config from ~/.devicelease/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        return json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}


def platform_capabilities(platform: str, env: dict[str, str] | None = None) -> dict[str, Any]:
    """Base Appium capabilities for a platform, filled from the environment.

    Unset variables are omitted rather than sent as empty strings.
    """
    env = os.environ if env is None else env
    platform = platform.lower()
    if platform == "ios":
        caps: dict[str, Any] = {
            "platformName": "iOS",
            "appium:automationName": "XCUITest",
            "appium:bundleId": env.get("IOS_BUNDLE_ID"),
        }
    elif platform == "android":
        app_path = env.get("ANDROID_APP_PATH")
        caps = {
            "platformName": "Android",
            "appium:automationName": "UiAutomator2",
            "appium:app": str(Path(app_path).resolve()) if app_path else None,
            "appium:appPackage": env.get("ANDROID_APP_PACKAGE"),
        }
    else:
        caps = {"platformName": platform}
    return {k: v for k, v in caps.items() if v is not None}

"""Hand-off to the automation session: connection target and capabilities."""

from __future__ import annotations

from typing import Any

from devicelease.config import platform_capabilities
from devicelease.models import Allocation, ConnectionTarget

DEFAULT_PROTOCOL = "http"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 4723
DEFAULT_PATH = "/wd/hub"


def parse_endpoint(endpoint: str | None, default_path: str = DEFAULT_PATH) -> ConnectionTarget:
    """Split an opaque endpoint string into protocol, host, port and path.

    Examples:
        parse_endpoint("https://farm.local:4444") → https, farm.local, 4444, /wd/hub
        parse_endpoint("10.0.0.7")                 → http, 10.0.0.7, 4723, /wd/hub
        parse_endpoint("http://h:1/session/x")     → http, h, 1, /session/x
        parse_endpoint(None)                       → http, localhost, 4723, /wd/hub
    """
    if not endpoint:
        return ConnectionTarget(
            protocol=DEFAULT_PROTOCOL, hostname=DEFAULT_HOST, port=DEFAULT_PORT, path=default_path,
        )

    protocol, sep, rest = endpoint.partition("://")
    if not sep:
        protocol, rest = DEFAULT_PROTOCOL, endpoint

    hostport, slash, path = rest.partition("/")
    host, _, port = hostport.partition(":")

    return ConnectionTarget(
        protocol=protocol or DEFAULT_PROTOCOL,
        hostname=host or DEFAULT_HOST,
        port=int(port) if port.isdigit() else DEFAULT_PORT,
        path=f"/{path}" if slash and path else default_path,
    )


def build_capabilities(
    platform: str,
    allocation: Allocation,
    base: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge platform capabilities with the allocated device.

    Local devices contribute name, UDID and (on iOS) platform version. Farm
    devices contribute their own capability block and the session id.
    """
    platform = platform.lower()
    caps = platform_capabilities(platform) if base is None else dict(base)
    device = allocation.device

    caps.update(device.get("capabilities") or {})
    caps["appium:udid"] = allocation.device_id
    name = device.get("device_name") or device.get("deviceName") or device.get("name")
    if name:
        caps["appium:deviceName"] = name
    version = device.get("platform_version") or device.get("platformVersion")
    if platform == "ios" and version:
        caps["appium:platformVersion"] = version
    if allocation.session_id:
        caps["appium:sessionId"] = allocation.session_id
    return caps

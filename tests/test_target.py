"""Tests for endpoint parsing and capability building."""

from __future__ import annotations

import pytest

from devicelease.models import Allocation
from devicelease.target import build_capabilities, parse_endpoint


@pytest.mark.parametrize(
    "endpoint, expected",
    [
        (None, ("http", "localhost", 4723, "/wd/hub")),
        ("", ("http", "localhost", 4723, "/wd/hub")),
        ("https://farm.local:4444", ("https", "farm.local", 4444, "/wd/hub")),
        ("10.0.0.7", ("http", "10.0.0.7", 4723, "/wd/hub")),
        ("https://farm.local", ("https", "farm.local", 4723, "/wd/hub")),
        ("http://h:1/session/x", ("http", "h", 1, "/session/x")),
        ("grid.example.com:8080/", ("http", "grid.example.com", 8080, "/wd/hub")),
        ("http://farm.local:abc/hub", ("http", "farm.local", 4723, "/hub")),
    ],
)
def test_parse_endpoint(endpoint, expected):
    target = parse_endpoint(endpoint)
    assert (target.protocol, target.hostname, target.port, target.path) == expected


def test_parse_endpoint_custom_default_path():
    assert parse_endpoint("http://127.0.0.1:4723", default_path="/").path == "/"
    assert parse_endpoint(None, default_path="/").path == "/"


def test_target_url():
    assert parse_endpoint("https://farm.local:4444").url == "https://farm.local:4444/wd/hub"


def _local_allocation(platform: str) -> Allocation:
    return Allocation(
        test_id="t1",
        platform=platform,
        device_id="UDID-1",
        device={
            "device_id": "UDID-1",
            "platform": platform,
            "device_name": "iPhone 15",
            "platform_version": "17.5",
            "capabilities": {"appium:wdaLocalPort": 8101},
        },
    )


def test_local_ios_capabilities():
    caps = build_capabilities("ios", _local_allocation("ios"), base={"platformName": "iOS"})
    assert caps == {
        "platformName": "iOS",
        "appium:wdaLocalPort": 8101,
        "appium:udid": "UDID-1",
        "appium:deviceName": "iPhone 15",
        "appium:platformVersion": "17.5",
    }


def test_platform_version_only_on_ios():
    caps = build_capabilities("android", _local_allocation("android"), base={})
    assert "appium:platformVersion" not in caps
    assert caps["appium:udid"] == "UDID-1"
    assert "appium:sessionId" not in caps


def test_base_not_modified():
    base = {"platformName": "Android"}
    build_capabilities("android", _local_allocation("android"), base=base)
    assert base == {"platformName": "Android"}


def test_farm_capabilities_carry_session():
    allocation = Allocation(
        test_id="t1",
        platform="android",
        device_id="pixel-7",
        session_id="sess-1",
        device={"id": "pixel-7", "name": "Pixel 7", "capabilities": {"appium:avd": "p7"}},
    )
    caps = build_capabilities("android", allocation, base={"platformName": "Android"})
    assert caps["appium:deviceName"] == "Pixel 7"
    assert caps["appium:avd"] == "p7"
    assert caps["appium:sessionId"] == "sess-1"


def test_default_base_from_environment(monkeypatch):
    monkeypatch.setenv("IOS_BUNDLE_ID", "com.example.app")
    caps = build_capabilities("ios", _local_allocation("ios"))
    assert caps["platformName"] == "iOS"
    assert caps["appium:automationName"] == "XCUITest"
    assert caps["appium:bundleId"] == "com.example.app"

"""Tests for LeaseConfig loading and platform capabilities."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from devicelease import config as config_module
from devicelease.config import LeaseConfig, platform_capabilities, read_user_config


@pytest.fixture
def user_config(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    monkeypatch.setattr(config_module, "USER_CONFIG_FILE", path)
    return path


def test_defaults(user_config):
    config = LeaseConfig.load(env={})
    assert config.backend == "local"
    assert config.platform == "android"
    assert config.stale_lock_ttl == timedelta(minutes=30)
    assert config.reserve_timeout == 300


def test_user_config_file(user_config):
    user_config.write_text(json.dumps({
        "backend": "farm",
        "farm_url": "http://farm:9",
        "devices": {"android": [{"id": "emulator-5554"}]},
        "stale_lock_ttl_minutes": 5,
    }))
    config = LeaseConfig.load(env={})
    assert config.backend == "farm"
    assert config.farm_url == "http://farm:9"
    assert config.devices == {"android": [{"id": "emulator-5554"}]}
    assert config.stale_lock_ttl == timedelta(minutes=5)


def test_env_overrides_user_config(user_config):
    user_config.write_text(json.dumps({"backend": "local", "platform": "android"}))
    config = LeaseConfig.load(env={
        "DEVICELEASE_BACKEND": "FARM",
        "PLATFORM": "iOS",
        "DEVICE_FARM_URL": "http://farm:1",
        "DEVICE_FARM_API_KEY": "k",
        "DEVICE_FARM_RESERVE_TIMEOUT": "60",
        "DEVICELEASE_LOCK_FILE": "/tmp/locks.json",
    })
    assert config.backend == "farm"
    assert config.platform == "ios"
    assert config.farm_api_key == "k"
    assert config.reserve_timeout == 60
    assert config.lock_file == Path("/tmp/locks.json")


def test_overrides_win(user_config):
    config = LeaseConfig.load(env={"PLATFORM": "ios"}, platform="android")
    assert config.platform == "android"


def test_zero_ttl_disables_reclaim(user_config):
    config = LeaseConfig.load(env={"DEVICELEASE_STALE_LOCK_TTL": "0"})
    assert config.stale_lock_ttl is None


def test_secrets_hidden_from_repr():
    config = LeaseConfig(farm_api_key="super-secret", farm_password="pw")
    assert "super-secret" not in repr(config)
    assert "farm_password" not in repr(config)


def test_invalid_values():
    with pytest.raises(ValueError, match="backend"):
        LeaseConfig(backend="cloud")
    with pytest.raises(ValueError, match="reserve_timeout"):
        LeaseConfig(reserve_timeout=0)


def test_broken_user_config_ignored(user_config):
    user_config.write_text("{nope")
    assert read_user_config() == {}


def test_android_capabilities(tmp_path):
    apk = tmp_path / "app.apk"
    caps = platform_capabilities("Android", env={"ANDROID_APP_PATH": str(apk), "ANDROID_APP_PACKAGE": "com.x"})
    assert caps == {
        "platformName": "Android",
        "appium:automationName": "UiAutomator2",
        "appium:app": str(apk.resolve()),
        "appium:appPackage": "com.x",
    }


def test_ios_capabilities_omit_unset():
    assert platform_capabilities("ios", env={}) == {
        "platformName": "iOS",
        "appium:automationName": "XCUITest",
    }

"""Tests for the operator CLI (status / clear-locks / reclaim)."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone

import pytest

from devicelease import config as config_module
from devicelease.main import cli
from devicelease.models import LockEntry
from devicelease.pool.lock_table import LockTableStore


@pytest.fixture
def lock_file(tmp_path, monkeypatch):
    """User config with a two-device catalog and an isolated environment."""
    user_config = tmp_path / "config.json"
    user_config.write_text(json.dumps({
        "devices": {"android": [{"id": "emulator-5554"}, {"id": "emulator-5556"}]},
        "stale_lock_ttl_minutes": 0,
    }))
    monkeypatch.setattr(config_module, "USER_CONFIG_FILE", user_config)
    for var in ("DEVICELEASE_BACKEND", "DEVICELEASE_LOCK_FILE", "DEVICELEASE_STALE_LOCK_TTL", "PLATFORM"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path / "device-locks.json"


def _run(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["devicelease", *argv])
    with pytest.raises(SystemExit) as exc_info:
        cli()
    return exc_info.value.code


def _seed(lock_file, **ages_minutes: int) -> None:
    now = datetime.now(timezone.utc)
    LockTableStore(lock_file).write({
        test_id: LockEntry(
            platform="android",
            device_id=f"emulator-{5554 + 2 * i}",
            timestamp=now - timedelta(minutes=age),
        )
        for i, (test_id, age) in enumerate(ages_minutes.items())
    })


def test_status(lock_file, monkeypatch, capsys):
    _seed(lock_file, login_ok=5)
    assert _run(monkeypatch, "--lock-file", str(lock_file), "status") == 0

    out = capsys.readouterr().out
    assert "Active locks: 1" in out
    assert "login_ok" in out
    assert "android: 1 available / 2 total" in out
    assert "emulator-5556" in out


def test_clear_locks(lock_file, monkeypatch, capsys):
    _seed(lock_file, a=1, b=2)
    assert _run(monkeypatch, "--lock-file", str(lock_file), "clear-locks") == 0

    assert "Cleared 2 device locks" in capsys.readouterr().out
    assert not lock_file.exists()


def test_reclaim_older_than(lock_file, monkeypatch, capsys):
    _seed(lock_file, fresh=1, stale=120)
    assert _run(monkeypatch, "--lock-file", str(lock_file), "reclaim", "--older-than", "60") == 0

    out = capsys.readouterr().out
    assert "Reclaimed 1 locks" in out
    assert "stale" in out
    assert list(LockTableStore(lock_file).read()) == ["fresh"]


def test_invalid_configuration(lock_file, monkeypatch, capsys):
    monkeypatch.setenv("DEVICELEASE_BACKEND", "cloud")
    assert _run(monkeypatch, "--lock-file", str(lock_file), "status") == 2
    assert "Invalid configuration" in capsys.readouterr().err

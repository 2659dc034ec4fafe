"""devicelease operator CLI.

Usage:
    python3 -m devicelease status                 Show locks and free devices
    python3 -m devicelease clear-locks            Delete the lock table
    python3 -m devicelease reclaim --older-than 30
                                                  Release locks older than N minutes
    python3 -m devicelease farm-status            Probe the configured device farm
    python3 -m devicelease serve                  Serve the local pool as a device farm
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone

from devicelease.allocation import build_local_registry
from devicelease.config import LeaseConfig
from devicelease.farm.broker import RemoteDeviceBroker
from devicelease.pool.registry import DevicePoolRegistry

logger = logging.getLogger("devicelease.cli")


def _print_status(registry: DevicePoolRegistry) -> None:
    allocations = registry.allocations()
    now = datetime.now(timezone.utc)

    print(f"Active locks: {len(allocations)}")
    for test_id, allocation in sorted(allocations.items()):
        age = int((now - allocation.timestamp).total_seconds() // 60)
        print(f"  {test_id:<40} {allocation.platform:<8} {allocation.device_id}  ({age}m)")

    for platform, counts in registry.pool_status().items():
        print(
            f"{platform}: {counts['available']} available / {counts['total']} total"
        )
    for platform, devices in registry.get_available().items():
        for device in devices:
            print(f"  free  {platform:<8} {device.device_id}  {device.device_name}")


def _cmd_status(config: LeaseConfig, args: argparse.Namespace) -> int:
    registry = build_local_registry(config)
    _print_status(registry)
    return 0


def _cmd_clear(config: LeaseConfig, args: argparse.Namespace) -> int:
    registry = build_local_registry(config)
    count = len(registry.allocations())
    registry.clear()
    print(f"Cleared {count} device locks ({config.lock_file})")
    return 0


def _cmd_reclaim(config: LeaseConfig, args: argparse.Namespace) -> int:
    # Initialization would already reclaim past the TTL; disable it so only
    # the requested age applies.
    config.stale_lock_ttl = None
    registry = build_local_registry(config)
    max_age = timedelta(minutes=args.older_than) if args.older_than is not None else None
    released = asyncio.run(registry.reclaim_stale(max_age))
    print(f"Reclaimed {len(released)} locks")
    for test_id in released:
        print(f"  {test_id}")
    return 0


def _cmd_farm_status(config: LeaseConfig, args: argparse.Namespace) -> int:
    broker = RemoteDeviceBroker.from_config(config)
    ok = asyncio.run(broker.check_status())
    if not ok:
        print(f"Device farm at {config.farm_url} is not reachable")
        return 1
    print(f"Device farm at {config.farm_url} is up")
    for platform in config.devices or ("android", "ios"):
        devices = asyncio.run(broker.get_available_devices(platform))
        print(f"  {platform}: {len(devices)} available")
    return 0


def _cmd_serve(config: LeaseConfig, args: argparse.Namespace) -> int:
    import uvicorn

    from devicelease.app import create_app

    host = args.host or config.serve_host
    port = args.port or config.serve_port
    app = create_app(config)
    logger.info("Serving device farm on http://%s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level="debug" if args.verbose else "info")
    return 0


def cli() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="devicelease: device pool locks and device-farm service",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--lock-file", default=None, help="Lock table path (overrides config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show active locks and free devices")
    subparsers.add_parser("clear-locks", help="Delete the lock table")

    reclaim_parser = subparsers.add_parser("reclaim", help="Release stale or expired locks")
    reclaim_parser.add_argument(
        "--older-than", type=float, default=None, metavar="MINUTES",
        help="Also release locks held longer than this many minutes",
    )

    subparsers.add_parser("farm-status", help="Probe the configured device farm")

    serve_parser = subparsers.add_parser("serve", help="Serve the local pool as a device farm")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: 4780)")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    overrides = {"lock_file": args.lock_file} if args.lock_file else {}
    try:
        config = LeaseConfig.load(**overrides)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    commands = {
        "status": _cmd_status,
        "clear-locks": _cmd_clear,
        "reclaim": _cmd_reclaim,
        "farm-status": _cmd_farm_status,
        "serve": _cmd_serve,
    }
    sys.exit(commands[args.command](config, args))


if __name__ == "__main__":
    cli()

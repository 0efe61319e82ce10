#!/usr/bin/env python3
"""Entry point for FleetSync."""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import time
from pathlib import Path

# Ensure src/ is on sys.path for local imports when running as a script
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from fleetsync.cisco.driver import SwitchDriver  # noqa: E402
from fleetsync.common.engine import SyncEngine  # noqa: E402
from fleetsync.common.scheduler import BackupScheduler, UpgradeScheduler  # noqa: E402
from fleetsync.common.versioning import ConfigVersionStore  # noqa: E402
from fleetsync.core.config import Settings, SettingsError, load_settings  # noqa: E402
from fleetsync.core.errors import DuplicateError, FleetSyncError  # noqa: E402
from fleetsync.core.logging import setup_logging  # noqa: E402
from fleetsync.core.models import Dialect  # noqa: E402
from fleetsync.core.repository import YamlRepository  # noqa: E402
from fleetsync.core.storage import resolve_archive_dir  # noqa: E402
from fleetsync.mikrotik.driver import RouterOSDriver  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        description=(
            "Synchronize RouterOS and routing-switch devices: discover them, "
            "keep their port and queue inventory and version their configuration."
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=ROOT_DIR / "config" / "local.yml",
        help="Path to the local settings file (YAML)",
    )
    parser.add_argument(
        "--inventory",
        type=Path,
        default=None,
        help="Path to the inventory file (YAML). Overrides config/local.yml.",
    )
    parser.add_argument(
        "--archive-dir",
        type=Path,
        default=None,
        help="Directory where snapshots are archived. Overrides config/local.yml.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting. Overrides config/local.yml logging.level.",
    )

    subcommands = parser.add_subparsers(dest="command", title="commands")

    add_parser = subcommands.add_parser("add-device", help="Discover and register a device")
    add_parser.add_argument("ip", help="Management address of the device")
    add_parser.add_argument("--credential-id", type=int, required=True)
    add_parser.add_argument("--site-id", type=int, default=None)
    add_parser.add_argument("--dialect", choices=[dialect.value for dialect in Dialect], required=True)
    add_parser.add_argument("--role", choices=["node", "client"], default="node")
    add_parser.add_argument("--port", type=int, default=22, help="SSH port")

    credential_parser = subcommands.add_parser("add-credential", help="Store a username/secret pair")
    credential_parser.add_argument("username")
    credential_parser.add_argument("--secret", default=None, help="Secret to store. Prompted for when omitted.")

    site_parser = subcommands.add_parser("add-site", help="Register a site")
    site_parser.add_argument("name")

    backup_parser = subcommands.add_parser("backup", help="Back up one device, or every device")
    backup_parser.add_argument("--device-id", type=int, default=None)

    for name, help_text in (
        ("ports", "List the port inventory of a device"),
        ("limiters", "List the queue rules of a device"),
        ("snapshots", "List the configuration history of a device"),
    ):
        list_parser = subcommands.add_parser(name, help=help_text)
        list_parser.add_argument("device_id", type=int)

    subcommands.add_parser("schedule", help="Run the backup and upgrade schedulers until interrupted")

    return parser


def build_engine(args: argparse.Namespace, settings: Settings, logger: logging.Logger) -> SyncEngine:
    inventory_path = Path(args.inventory) if args.inventory else settings.inventory_path
    logger.debug("loading inventory from %s", inventory_path)
    repository = YamlRepository(inventory_path)
    archive_dir = resolve_archive_dir(args.archive_dir, settings.archive_dir, logger)
    store = ConfigVersionStore(archive_dir, repository, logger)
    drivers = {
        Dialect.ROUTEROS: RouterOSDriver(logger=logger, default_queue=settings.default_queue),
        Dialect.SWITCH: SwitchDriver(logger=logger),
    }
    return SyncEngine(repository, store, timeouts=settings.timeouts, drivers=drivers, logger=logger)


def main(argv: list[str] | None = None) -> int:
    """Run the CLI."""

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except SettingsError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return 2

    logger = setup_logging(settings.logging, cli_level=logging.DEBUG if args.debug else None)
    logger.info("FleetSync run started.")

    if args.command is None:
        parser.print_help()
        logger.info("FleetSync run finished.")
        return 0

    try:
        engine = build_engine(args, settings, logger)
        exit_code = _dispatch(args, engine, settings, logger)
    except DuplicateError as exc:
        logger.info("Device already exists. %s", exc)
        exit_code = 3
    except FleetSyncError as exc:
        logger.error("%s", exc)
        exit_code = 1

    logger.info("FleetSync run finished.")
    return exit_code


def _dispatch(args: argparse.Namespace, engine: SyncEngine, settings: Settings, logger: logging.Logger) -> int:
    if args.command == "add-device":
        device = engine.add_device(args.ip, args.credential_id, args.site_id, args.dialect, args.role, args.port)
        logger.info("device added id=%s hostname=%s", device.id, device.hostname, extra={"device": device.label})
        return 0

    if args.command == "add-credential":
        secret = args.secret if args.secret is not None else getpass.getpass(f"Secret for {args.username}: ")
        if not args.username.strip() or not secret:
            raise FleetSyncError("username and secret must not be empty")
        credential = engine.repository.add_credential(args.username.strip(), secret)
        logger.info("credential added id=%s username=%s", credential.id, credential.username)
        print(credential.id)
        return 0

    if args.command == "add-site":
        if not args.name.strip():
            raise FleetSyncError("site name must not be empty")
        site = engine.repository.add_site(args.name.strip())
        logger.info("site added id=%s name=%s", site.id, site.name)
        print(site.id)
        return 0

    if args.command == "backup":
        if args.device_id is not None:
            snapshot = engine.run_backup(args.device_id)
            logger.info("Backup completed successfully at %s", snapshot.text_export_path)
            return 0
        summary_dir = engine.store.archive_dir / "summary"
        summary = BackupScheduler(engine, summary_dir=summary_dir, logger=logger).run_once()
        return 1 if summary["totals"]["devices_failed"] else 0

    if args.command == "ports":
        for port in engine.list_ports(args.device_id):
            print(f"{port.id}\t{port.physical_name}\t{port.status.value}\t{port.description}")
        usage = engine.port_usage(args.device_id)
        print(
            f"total={usage.total} in_use={usage.in_use} free={usage.free} "
            f"usage={usage.usage_percent:.1f}% free={usage.free_percent:.1f}%"
        )
        return 0

    if args.command == "limiters":
        for limiter in engine.list_limiters(args.device_id):
            print(f"{limiter.id}\t{limiter.name}\t{limiter.bandwidth_limit}\t{limiter.target_port}")
        return 0

    if args.command == "snapshots":
        for snapshot in engine.list_snapshots(args.device_id):
            print(f"{snapshot.captured_at}\t{snapshot.text_hash}\t{snapshot.diff_path or '-'}")
        return 0

    if args.command == "schedule":
        _run_schedulers(engine, settings, logger)
        return 0

    raise FleetSyncError(f"Unknown command: {args.command}")


def _run_schedulers(engine: SyncEngine, settings: Settings, logger: logging.Logger) -> None:
    backups = BackupScheduler(
        engine,
        interval=settings.backup_interval,
        summary_dir=engine.store.archive_dir / "summary",
        logger=logger,
    )
    upgrades = UpgradeScheduler(engine, interval=settings.upgrade_interval, logger=logger)
    backups.start()
    upgrades.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping schedulers.")
    finally:
        backups.stop()
        upgrades.stop()


if __name__ == "__main__":
    raise SystemExit(main())

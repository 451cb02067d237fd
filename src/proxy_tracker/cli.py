"""
Command-line interface for the proxy tracker.

This module provides the main CLI entry point with commands for:
- run: Run the capture loop (or a single iteration with --once)
- status: Show cumulative per-country totals and peer history
- reset / backup: Manage the cumulative state
- update-geo: Refresh the geolocation database
- export: Write the records as pipe-delimited .dat files
- config: Configuration management
"""

import argparse
import asyncio
import dataclasses
import json
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import __version__
from .aggregator import TrafficAggregator
from .audit_logger import AuditLogger
from .config import (
    CaptureConfig,
    DiscordConfig,
    GeoConfig,
    HistoryConfig,
    InstancesConfig,
    LoggingConfig,
    MaintenanceConfig,
    NotificationConfig,
    PersistenceConfig,
    RetryConfig,
    SystemConfig,
    TelegramConfig,
    WatchdogConfig,
    WebhookConfig,
    validate_config,
)
from .exceptions import ConfigError, PersistenceError
from .geo_resolver import GeoIP2CountryLookup, GeoResolver
from .geo_updater import GeoDatabaseUpdater
from .history import ConnectionHistory
from .instances import DockerInstanceController, InstanceController
from .notifications import NotificationRouter
from .record_store import RECORD_FIELDS, RecordStore
from .sampler import PacketSampler, ScapyPacketSource
from .scheduler import CaptureScheduler
from .state_lifecycle import StateLifecycleManager
from .watchdog import StuckInstanceWatchdog


DEFAULT_CONFIG_PATH = Path.home() / ".proxy_tracker" / "config.json"
DEFAULT_DATA_DIR = Path.home() / ".proxy_tracker" / "data"

# (label, age in seconds) rows of the status peer table
PEER_HISTORY_POINTS = [
    ("now", 0),
    ("6h ago", 6 * 3600),
    ("12h ago", 12 * 3600),
    ("24h ago", 24 * 3600),
]


@dataclass
class TrackerComponents:
    """The persistent-state components shared by all commands."""

    store: RecordStore
    resolver: GeoResolver
    aggregator: TrafficAggregator
    lifecycle: StateLifecycleManager
    history: ConnectionHistory
    updater: GeoDatabaseUpdater


def format_bytes(count: int) -> str:
    """Human-readable byte count using binary units."""
    value = float(count)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(value) < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"


def create_logger(config: SystemConfig, verbose: bool = False) -> AuditLogger:
    """Create the logger described by the logging configuration."""
    level = "debug" if verbose else config.logging.level
    logger = AuditLogger.from_level_name(level, config.logging.output_format)
    if config.logging.audit_mode and config.logging.audit_signing_key:
        logger.enable_audit_mode(config.logging.audit_signing_key)
    return logger


def create_notification_router(
    config: SystemConfig,
    logger: Optional[AuditLogger] = None,
) -> Optional[NotificationRouter]:
    """
    Create a notification router from configuration.

    Returns:
        NotificationRouter if any channels are configured, None otherwise
    """
    router = NotificationRouter.from_config(
        config.notifications,
        config.retry,
        logger=logger,
        simulation_mode=config.simulation_mode,
    )
    return router if router.channels else None


def build_components(
    config: SystemConfig,
    logger: Optional[AuditLogger] = None,
) -> TrackerComponents:
    """Wire the record store and everything that persists through it."""
    store = RecordStore(config.persistence.data_dir, config.persistence.hmac_secret)
    lookup = GeoIP2CountryLookup(config.geo.database_path)
    resolver = GeoResolver(
        lookup,
        cache_file=store.geo_cache,
        ceiling=config.geo.cache_ceiling,
        logger=logger,
    )
    resolver.load()
    aggregator = TrafficAggregator(store, resolver, logger=logger)
    lifecycle = StateLifecycleManager(
        store,
        aggregator=aggregator,
        archive_keep=config.persistence.archive_keep,
        logger=logger,
    )
    history = ConnectionHistory(
        store.history,
        interval_seconds=config.history.interval_seconds,
        retention_seconds=config.history.retention_seconds,
        tolerance_seconds=config.history.nearest_tolerance_seconds,
        logger=logger,
    )
    history.load()
    updater = GeoDatabaseUpdater(
        config.geo,
        lookup=lookup,
        logger=logger,
        simulation_mode=config.simulation_mode,
    )
    return TrackerComponents(
        store=store,
        resolver=resolver,
        aggregator=aggregator,
        lifecycle=lifecycle,
        history=history,
        updater=updater,
    )


def build_scheduler(
    config: SystemConfig,
    components: TrackerComponents,
    sampler: PacketSampler,
    controller: Optional[InstanceController] = None,
    watchdog: Optional[StuckInstanceWatchdog] = None,
    logger: Optional[AuditLogger] = None,
) -> CaptureScheduler:
    """
    Create the capture scheduler and register the maintenance tasks.

    Tasks run in this order when due: geo refresh, backup, watchdog check,
    history record.
    """
    scheduler = CaptureScheduler(
        config.capture,
        sampler,
        components.aggregator,
        lifecycle=components.lifecycle,
        controller=controller,
        primary_instance=config.instances.primary_instance,
        max_concurrent_queries=config.instances.max_concurrent_queries,
        logger=logger,
    )

    async def refresh_geo() -> None:
        await components.updater.refresh()

    async def backup_state() -> None:
        components.lifecycle.backup()

    async def check_watchdog() -> None:
        await watchdog.check(await scheduler.collect_peer_counts())

    async def record_history() -> None:
        counts = await scheduler.collect_peer_counts()
        live = [p for p in counts.values() if p is not None]
        components.history.record(
            connected=sum(p.connected for p in live),
            connecting=sum(p.connecting for p in live),
        )

    if config.geo.download_url:
        scheduler.schedule(
            "geo_refresh",
            config.maintenance.geo_refresh_interval_seconds,
            refresh_geo,
            run_immediately=not config.geo.database_path.exists(),
        )
    scheduler.schedule(
        "backup",
        config.maintenance.backup_interval_seconds,
        backup_state,
        run_immediately=False,
    )
    if watchdog is not None and config.watchdog.enabled:
        scheduler.schedule(
            "watchdog",
            config.watchdog.check_interval_seconds,
            check_watchdog,
        )
    if controller is not None:
        scheduler.schedule(
            "history",
            config.history.interval_seconds,
            record_history,
        )
    return scheduler


def create_default_config(
    simulation_mode: bool = False,
    data_dir: Optional[Path] = None,
    hmac_secret: str = "default-secret-change-me",
) -> SystemConfig:
    """
    Create a default system configuration.

    Args:
        simulation_mode: Enable simulation mode (no restarts, downloads or alerts)
        data_dir: Directory of the record files
        hmac_secret: Secret for HMAC protection

    Returns:
        SystemConfig with default settings
    """
    return SystemConfig(
        capture=CaptureConfig(),
        geo=GeoConfig(),
        persistence=PersistenceConfig(
            data_dir=data_dir or DEFAULT_DATA_DIR,
            hmac_secret=hmac_secret,
        ),
        history=HistoryConfig(),
        watchdog=WatchdogConfig(),
        maintenance=MaintenanceConfig(),
        instances=InstancesConfig(),
        retry=RetryConfig(),
        notifications=NotificationConfig(),
        logging=LoggingConfig(),
        simulation_mode=simulation_mode,
    )


def load_config_from_file(config_path: Path) -> Optional[SystemConfig]:
    """
    Load configuration from a JSON file.

    Missing sections and keys fall back to the defaults.

    Returns:
        SystemConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        capture = CaptureConfig(**data.get("capture", {}))

        geo_data = dict(data.get("geo", {}))
        if "database_path" in geo_data:
            geo_data["database_path"] = Path(geo_data["database_path"])
        geo = GeoConfig(**geo_data)

        persistence_data = data.get("persistence", {})
        persistence = PersistenceConfig(
            data_dir=Path(persistence_data.get("data_dir") or DEFAULT_DATA_DIR),
            hmac_secret=persistence_data.get("hmac_secret", "default-secret-change-me"),
            archive_keep=persistence_data.get("archive_keep", 5),
        )

        history = HistoryConfig(**data.get("history", {}))
        watchdog = WatchdogConfig(**data.get("watchdog", {}))
        maintenance = MaintenanceConfig(**data.get("maintenance", {}))
        instances = InstancesConfig(**data.get("instances", {}))
        retry = RetryConfig(**data.get("retry", {}))
        logging_config = LoggingConfig(**data.get("logging", {}))

        notifications_data = data.get("notifications", {})
        notifications = NotificationConfig()

        # Telegram
        telegram_data = notifications_data.get("telegram") or {}
        if telegram_data.get("enabled") and telegram_data.get("bot_token") and telegram_data.get("chat_id"):
            notifications.telegram = TelegramConfig(
                bot_token=telegram_data["bot_token"],
                chat_id=str(telegram_data["chat_id"]),
            )

        # Discord
        discord_data = notifications_data.get("discord") or {}
        if discord_data.get("enabled") and discord_data.get("webhook_url"):
            notifications.discord = DiscordConfig(
                webhook_url=discord_data["webhook_url"],
            )

        # Webhook
        webhook_data = notifications_data.get("webhook") or {}
        if webhook_data.get("enabled") and webhook_data.get("url"):
            notifications.webhook = WebhookConfig(
                url=webhook_data["url"],
                headers=webhook_data.get("headers", {}),
            )

        return SystemConfig(
            capture=capture,
            geo=geo,
            persistence=persistence,
            history=history,
            watchdog=watchdog,
            maintenance=maintenance,
            instances=instances,
            retry=retry,
            notifications=notifications,
            logging=logging_config,
            simulation_mode=data.get("simulation_mode", False),
        )

    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None


def save_config_to_file(config: SystemConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        notifications = {}
        if config.notifications.telegram:
            notifications["telegram"] = {
                "enabled": True,
                **dataclasses.asdict(config.notifications.telegram),
            }
        if config.notifications.discord:
            notifications["discord"] = {
                "enabled": True,
                **dataclasses.asdict(config.notifications.discord),
            }
        if config.notifications.webhook:
            notifications["webhook"] = {
                "enabled": True,
                **dataclasses.asdict(config.notifications.webhook),
            }

        geo = dataclasses.asdict(config.geo)
        geo["database_path"] = str(config.geo.database_path)

        data = {
            "capture": dataclasses.asdict(config.capture),
            "geo": geo,
            "persistence": {
                "data_dir": str(config.persistence.data_dir),
                "hmac_secret": config.persistence.hmac_secret,
                "archive_keep": config.persistence.archive_keep,
            },
            "history": dataclasses.asdict(config.history),
            "watchdog": dataclasses.asdict(config.watchdog),
            "maintenance": dataclasses.asdict(config.maintenance),
            "instances": dataclasses.asdict(config.instances),
            "retry": dataclasses.asdict(config.retry),
            "notifications": notifications,
            "logging": dataclasses.asdict(config.logging),
            "simulation_mode": config.simulation_mode,
        }

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        return True

    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def _resolve_config(args: argparse.Namespace) -> Optional[SystemConfig]:
    """Load the config named on the command line, or the defaults."""
    config_path = Path(args.config) if getattr(args, "config", None) else DEFAULT_CONFIG_PATH
    config = load_config_from_file(config_path)
    if config is None:
        if getattr(args, "config", None):
            print(f"Error: Could not load config from {args.config}", file=sys.stderr)
            return None
        config = create_default_config()

    if getattr(args, "dry_run", False):
        config = dataclasses.replace(config, simulation_mode=True)

    try:
        validate_config(config)
    except ConfigError as e:
        print(f"Error: Invalid configuration: {e.message}", file=sys.stderr)
        return None
    return config


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Platforms without loop signal support stop on KeyboardInterrupt
            pass


async def run_tracker(
    config: SystemConfig,
    once: bool = False,
    logger: Optional[AuditLogger] = None,
) -> int:
    """
    Run the tracker until SIGINT/SIGTERM, or for a single iteration.

    Returns:
        Exit code
    """
    components = build_components(config, logger)
    router = create_notification_router(config, logger)
    sampler = PacketSampler(
        ScapyPacketSource(config.capture.interface),
        local_ips=config.capture.local_ips,
        logger=logger,
    )

    async with DockerInstanceController(
        config.instances,
        logger=logger,
        simulation_mode=config.simulation_mode,
    ) as controller:
        watchdog = StuckInstanceWatchdog(
            controller,
            router=router,
            idle_threshold_seconds=config.watchdog.idle_threshold_seconds,
            cooldown_seconds=config.watchdog.cooldown_seconds,
            logger=logger,
        )
        scheduler = build_scheduler(
            config, components, sampler, controller, watchdog, logger
        )

        if once:
            try:
                report = await scheduler.run_once()
            finally:
                scheduler.close()
            print(f"Deltas: {report.deltas}")
            print(f"Bytes observed: {format_bytes(report.bytes_observed)}")
            print(f"Merged: {report.merged}")
            if report.tasks_run:
                print(f"Tasks: {', '.join(report.tasks_run)}")
            if report.capture_error:
                print(f"Capture error: {report.capture_error}", file=sys.stderr)
            for error in report.errors:
                print(f"  - {error}", file=sys.stderr)
            return 0 if report.capture_error is None and not report.errors else 1

        stop_event = asyncio.Event()
        _install_stop_handlers(stop_event)
        await scheduler.run(stop_event)

    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    if config.simulation_mode:
        print("Simulation mode: no restarts, downloads or alerts will be sent.")

    logger = create_logger(config, verbose=args.verbose)
    try:
        return asyncio.run(run_tracker(config, once=args.once, logger=logger))
    except KeyboardInterrupt:
        return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Handle the 'status' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    components = build_components(config)
    try:
        totals = components.aggregator.read_totals()
        ledger = components.aggregator.read_unique_ips()
        snapshot = components.aggregator.read_snapshot()
    except PersistenceError as e:
        print(f"Error reading state: {e.message}", file=sys.stderr)
        return 1

    unique_counts: dict[str, int] = {}
    for country, _ip in ledger:
        unique_counts[country] = unique_counts.get(country, 0) + 1

    ordered = sorted(totals.values(), key=lambda t: (-t.total, t.country))
    print(f"Countries: {len(ordered)}")
    for entry in ordered[: args.top]:
        print(
            f"  {entry.country:<24} in {format_bytes(entry.bytes_in):>12}  "
            f"out {format_bytes(entry.bytes_out):>12}  "
            f"ips {unique_counts.get(entry.country, 0)}"
        )

    if snapshot:
        print("\nLatest window:")
        for record in sorted(snapshot, key=lambda r: -r.bytes)[: args.top]:
            print(
                f"  {record.direction.value:<3} {record.ip:<40} "
                f"{record.country:<24} {format_bytes(record.bytes)}"
            )

    print("\nPeers:")
    for label, age in PEER_HISTORY_POINTS:
        entry = components.history.nearest(age)
        if entry is None:
            print(f"  {label:<8} -")
        else:
            print(f"  {label:<8} {entry.connected} connected, {entry.connecting} connecting")
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Handle the 'reset' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    components = build_components(config)
    try:
        components.lifecycle.reset(clear_backups=not args.keep_backups)
    except PersistenceError as e:
        print(f"Error: Reset failed: {e.message}", file=sys.stderr)
        return 1
    print("Cumulative state reset.")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Handle the 'backup' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    components = build_components(config)
    backed_up = components.lifecycle.backup()
    if backed_up:
        print(f"Backed up: {', '.join(backed_up)}")
    else:
        print("Nothing to back up.")
    return 0


def cmd_update_geo(args: argparse.Namespace) -> int:
    """Handle the 'update-geo' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    components = build_components(config, create_logger(config))
    result = asyncio.run(components.updater.refresh())
    if not result.success:
        print(f"Error: Geo database update failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Geo database updated ({format_bytes(result.bytes_written)}).")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Handle the 'export' command."""
    config = _resolve_config(args)
    if config is None:
        return 1

    store = RecordStore(config.persistence.data_dir, config.persistence.hmac_secret)
    output_dir = Path(args.output_dir) if args.output_dir else config.persistence.data_dir / "export"
    failures = 0

    for kind in RECORD_FIELDS:
        try:
            lines = store.file(kind).export_lines()
            output_dir.mkdir(parents=True, exist_ok=True)
            with open(output_dir / f"{kind}.dat", "w", encoding="utf-8") as f:
                f.writelines(f"{line}\n" for line in lines)
        except PersistenceError as e:
            print(f"Error exporting {kind}: {e.message}", file=sys.stderr)
            failures += 1
        except OSError as e:
            print(f"Error writing {kind}.dat: {e}", file=sys.stderr)
            failures += 1

    print(f"Exported to: {output_dir}")
    return 1 if failures else 0


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        channels = [
            name
            for name in ("telegram", "discord", "webhook")
            if getattr(config.notifications, name)
        ]
        print(f"Configuration from: {config_path}")
        print(f"  Simulation mode: {config.simulation_mode}")
        print(
            f"  Duty cycle: {config.capture.capture_seconds}s capture / "
            f"{config.capture.idle_seconds}s idle"
        )
        print(f"  Data directory: {config.persistence.data_dir}")
        print(f"  Geo database: {config.geo.database_path}")
        print(f"  Instance prefix: {config.instances.name_prefix}")
        print(f"  Watchdog: {'on' if config.watchdog.enabled else 'off'}")
        print(f"  Alert channels: {', '.join(channels) or 'none'}")
        print(f"  Log level: {config.logging.level}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        config = create_default_config()
        if save_config_to_file(config, config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1
        try:
            validate_config(config)
        except ConfigError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="proxy-tracker",
        description="Per-country traffic attribution for proxy instances",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # 'run' command
    run_parser = subparsers.add_parser(
        "run",
        help="Run the capture loop",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single capture iteration and exit",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulation mode - no restarts, downloads or alerts",
    )
    run_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    run_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    run_parser.set_defaults(func=cmd_run)

    # 'status' command
    status_parser = subparsers.add_parser(
        "status",
        help="Show cumulative totals and peer history",
    )
    status_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    status_parser.add_argument(
        "--top", "-n",
        type=int,
        default=20,
        help="Number of countries and flows to show (default: 20)",
    )
    status_parser.set_defaults(func=cmd_status)

    # 'reset' command
    reset_parser = subparsers.add_parser(
        "reset",
        help="Clear the cumulative totals and IP ledger",
    )
    reset_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    reset_parser.add_argument(
        "--keep-backups",
        action="store_true",
        help="Keep the routine backups so a restart restores them",
    )
    reset_parser.set_defaults(func=cmd_reset)

    # 'backup' command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Write the routine backup now",
    )
    backup_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # 'update-geo' command
    update_geo_parser = subparsers.add_parser(
        "update-geo",
        help="Download and install the geolocation database",
    )
    update_geo_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    update_geo_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulation mode - no download",
    )
    update_geo_parser.set_defaults(func=cmd_update_geo)

    # 'export' command
    export_parser = subparsers.add_parser(
        "export",
        help="Export records as pipe-delimited .dat files",
    )
    export_parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
    )
    export_parser.add_argument(
        "--output-dir", "-o",
        help="Directory for the .dat files (default: <data_dir>/export)",
    )
    export_parser.set_defaults(func=cmd_export)

    # 'config' command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

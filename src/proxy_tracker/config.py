"""
Configuration dataclasses for the proxy tracker.

This module defines all configuration structures used throughout the system:
capture duty cycle, geolocation, persistence, connection history, watchdog,
maintenance intervals, monitored instances, alert channels and logging.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .exceptions import ConfigError


@dataclass
class CaptureConfig:
    """Packet capture duty cycle."""

    capture_seconds: float = 15.0
    idle_seconds: float = 15.0
    interface: Optional[str] = None
    exclude_filter: str = "port 22"
    local_ips: list[str] = field(default_factory=list)
    timeout_grace_seconds: float = 10.0


@dataclass
class GeoConfig:
    """Geolocation database and cache settings."""

    database_path: Path = Path("/usr/share/GeoIP/GeoLite2-Country.mmdb")
    download_url: Optional[str] = None
    cache_ceiling: int = 10000
    max_download_bytes: int = 64 * 1024 * 1024
    min_database_bytes: int = 1024 * 1024


@dataclass
class PersistenceConfig:
    """Location and integrity protection of the record files."""

    data_dir: Path
    hmac_secret: str
    archive_keep: int = 5


@dataclass
class HistoryConfig:
    """Connection history recording."""

    interval_seconds: float = 300.0
    retention_seconds: float = 25 * 3600.0
    nearest_tolerance_seconds: float = 1800.0


@dataclass
class WatchdogConfig:
    """Stuck-instance detection."""

    enabled: bool = True
    idle_threshold_seconds: float = 7200.0
    cooldown_seconds: float = 7200.0
    check_interval_seconds: float = 900.0


@dataclass
class MaintenanceConfig:
    """Intervals of the periodic maintenance tasks."""

    backup_interval_seconds: float = 3 * 3600.0
    geo_refresh_interval_seconds: float = 7 * 24 * 3600.0


@dataclass
class InstancesConfig:
    """How monitored instances are discovered and queried."""

    name_prefix: str = "conduit"
    primary_instance: Optional[str] = None
    status_url_template: str = "http://127.0.0.1:{port}/status"
    status_ports: dict[str, int] = field(default_factory=dict)
    max_concurrent_queries: int = 4
    command_timeout_seconds: float = 30.0


@dataclass
class RetryConfig:
    """Retry behavior for alert delivery."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


@dataclass
class TelegramConfig:
    """Telegram alert channel configuration."""

    bot_token: str
    chat_id: str


@dataclass
class DiscordConfig:
    """Discord alert channel configuration."""

    webhook_url: str


@dataclass
class WebhookConfig:
    """Generic webhook alert channel configuration."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class NotificationConfig:
    """Alert channels configuration."""

    telegram: Optional[TelegramConfig] = None
    discord: Optional[DiscordConfig] = None
    webhook: Optional[WebhookConfig] = None


@dataclass
class LoggingConfig:
    """Logging and audit configuration."""

    level: str = "info"
    audit_mode: bool = False
    audit_signing_key: Optional[str] = None
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    capture: CaptureConfig
    geo: GeoConfig
    persistence: PersistenceConfig
    history: HistoryConfig
    watchdog: WatchdogConfig
    maintenance: MaintenanceConfig
    instances: InstancesConfig
    retry: RetryConfig
    notifications: NotificationConfig
    logging: LoggingConfig
    simulation_mode: bool = False


def validate_config(config: SystemConfig) -> None:
    """
    Reject configurations the tracker cannot run with.

    Raises:
        ConfigError: On the first invalid setting found
    """
    durations = {
        "capture.capture_seconds": config.capture.capture_seconds,
        "history.interval_seconds": config.history.interval_seconds,
        "history.retention_seconds": config.history.retention_seconds,
        "watchdog.idle_threshold_seconds": config.watchdog.idle_threshold_seconds,
        "watchdog.check_interval_seconds": config.watchdog.check_interval_seconds,
        "maintenance.backup_interval_seconds": config.maintenance.backup_interval_seconds,
        "maintenance.geo_refresh_interval_seconds": (
            config.maintenance.geo_refresh_interval_seconds
        ),
    }
    for name, value in durations.items():
        if value <= 0:
            raise ConfigError(
                code="invalid_duration",
                message=f"{name} must be positive, got {value}",
                details={"setting": name, "value": value},
            )

    if config.capture.idle_seconds < 0:
        raise ConfigError(
            code="invalid_duration",
            message="capture.idle_seconds must not be negative",
            details={"value": config.capture.idle_seconds},
        )

    if config.watchdog.cooldown_seconds < 0:
        raise ConfigError(
            code="invalid_duration",
            message="watchdog.cooldown_seconds must not be negative",
            details={"value": config.watchdog.cooldown_seconds},
        )

    if config.geo.cache_ceiling < 1:
        raise ConfigError(
            code="invalid_ceiling",
            message="geo.cache_ceiling must be at least 1",
            details={"value": config.geo.cache_ceiling},
        )

    # Path("") renders as "." so an unset directory shows up as the cwd
    data_dir = config.persistence.data_dir
    if data_dir is None or not str(data_dir).strip() or Path(data_dir) == Path("."):
        raise ConfigError(
            code="missing_data_dir",
            message="persistence.data_dir must be set",
            details={"value": str(data_dir)},
        )

    if config.instances.max_concurrent_queries < 1:
        raise ConfigError(
            code="invalid_concurrency",
            message="instances.max_concurrent_queries must be at least 1",
            details={"value": config.instances.max_concurrent_queries},
        )

    if config.logging.output_format not in ("json", "text", "both"):
        raise ConfigError(
            code="invalid_output_format",
            message=f"Unknown log output format: {config.logging.output_format}",
        )

"""
Proxy Tracker - per-country traffic attribution for proxy instances.

This package samples the traffic of a host running proxy instances on a
duty cycle, attributes it to countries via a geolocation database, keeps
crash-safe cumulative totals across instance restarts and restarts
instances that have been stuck without peers.
"""

__version__ = "0.1.0"
__author__ = "Proxy Tracker Team"

from proxy_tracker.exceptions import (
    TrackerError,
    ConfigError,
    CaptureError,
    GeoLookupError,
    PersistenceError,
    CorruptRecordError,
    InstanceControlError,
    NotificationError,
)
from proxy_tracker.enums import (
    AlertKind,
    Direction,
    InstanceActivity,
    LogLevel,
    RestartOutcome,
)
from proxy_tracker.config import (
    CaptureConfig,
    GeoConfig,
    PersistenceConfig,
    HistoryConfig,
    WatchdogConfig,
    MaintenanceConfig,
    InstancesConfig,
    RetryConfig,
    TelegramConfig,
    DiscordConfig,
    WebhookConfig,
    NotificationConfig,
    LoggingConfig,
    SystemConfig,
    validate_config,
)
from proxy_tracker.models import (
    UNKNOWN_COUNTRY,
    SampleDelta,
    CountryTotals,
    GeoCacheEntry,
    SnapshotRecord,
    ConnectionHistoryEntry,
    PeerCount,
    WatchdogState,
    CaptureResult,
    CycleReport,
)
from proxy_tracker.audit_logger import (
    AuditLogger,
    LogEntry,
)
from proxy_tracker.record_store import (
    RECORD_FIELDS,
    RecordFile,
    RecordStore,
)
from proxy_tracker.sampler import (
    PacketSampler,
    PacketSource,
    ScapyPacketSource,
    classify_packet,
    is_public_address,
)
from proxy_tracker.geo_resolver import (
    CountryLookup,
    GeoIP2CountryLookup,
    GeoResolver,
    normalize_country,
)
from proxy_tracker.geo_updater import (
    GeoDatabaseUpdater,
    RefreshResult,
)
from proxy_tracker.aggregator import (
    MergeResult,
    TrafficAggregator,
    duty_cycle_multiplier,
    scale_bytes,
)
from proxy_tracker.state_lifecycle import (
    StateLifecycleManager,
)
from proxy_tracker.history import (
    ConnectionHistory,
)
from proxy_tracker.instances import (
    DockerInstanceController,
    InstanceController,
    fetch_peer_counts,
)
from proxy_tracker.notifications import (
    AlertPayload,
    NotificationResult,
    NotificationChannel,
    TelegramChannel,
    DiscordChannel,
    WebhookChannel,
    NotificationRouter,
)
from proxy_tracker.watchdog import (
    StuckInstanceWatchdog,
)
from proxy_tracker.scheduler import (
    CaptureScheduler,
    PeriodicTask,
)
from proxy_tracker.cli import (
    main as cli_main,
    create_parser,
    create_default_config,
    load_config_from_file,
    save_config_to_file,
)

__all__ = [
    # Exceptions
    "TrackerError",
    "ConfigError",
    "CaptureError",
    "GeoLookupError",
    "PersistenceError",
    "CorruptRecordError",
    "InstanceControlError",
    "NotificationError",
    # Enums
    "AlertKind",
    "Direction",
    "InstanceActivity",
    "LogLevel",
    "RestartOutcome",
    # Configuration
    "CaptureConfig",
    "GeoConfig",
    "PersistenceConfig",
    "HistoryConfig",
    "WatchdogConfig",
    "MaintenanceConfig",
    "InstancesConfig",
    "RetryConfig",
    "TelegramConfig",
    "DiscordConfig",
    "WebhookConfig",
    "NotificationConfig",
    "LoggingConfig",
    "SystemConfig",
    "validate_config",
    # Models
    "UNKNOWN_COUNTRY",
    "SampleDelta",
    "CountryTotals",
    "GeoCacheEntry",
    "SnapshotRecord",
    "ConnectionHistoryEntry",
    "PeerCount",
    "WatchdogState",
    "CaptureResult",
    "CycleReport",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Record Store
    "RECORD_FIELDS",
    "RecordFile",
    "RecordStore",
    # Sampler
    "PacketSampler",
    "PacketSource",
    "ScapyPacketSource",
    "classify_packet",
    "is_public_address",
    # Geolocation
    "CountryLookup",
    "GeoIP2CountryLookup",
    "GeoResolver",
    "normalize_country",
    "GeoDatabaseUpdater",
    "RefreshResult",
    # Aggregator
    "MergeResult",
    "TrafficAggregator",
    "duty_cycle_multiplier",
    "scale_bytes",
    # State Lifecycle
    "StateLifecycleManager",
    # History
    "ConnectionHistory",
    # Instances
    "DockerInstanceController",
    "InstanceController",
    "fetch_peer_counts",
    # Notifications
    "AlertPayload",
    "NotificationResult",
    "NotificationChannel",
    "TelegramChannel",
    "DiscordChannel",
    "WebhookChannel",
    "NotificationRouter",
    # Watchdog
    "StuckInstanceWatchdog",
    # Scheduler
    "CaptureScheduler",
    "PeriodicTask",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config_from_file",
    "save_config_to_file",
]

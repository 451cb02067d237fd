"""
Property-based tests for configuration module.

Uses Hypothesis to verify validation of the duty cycle and the other
settings, and the save/load round trip of the JSON configuration file.
"""

import dataclasses
import json
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from proxy_tracker.cli import (
    create_default_config,
    load_config_from_file,
    save_config_to_file,
)
from proxy_tracker.config import (
    CaptureConfig,
    DiscordConfig,
    SystemConfig,
    TelegramConfig,
    WebhookConfig,
    validate_config,
)
from proxy_tracker.exceptions import ConfigError


duration_strategy = st.floats(min_value=0.5, max_value=3600, allow_nan=False, allow_infinity=False)


@st.composite
def system_config_strategy(draw) -> SystemConfig:
    """Generate valid SystemConfig objects."""
    config = create_default_config(
        simulation_mode=draw(st.booleans()),
        data_dir=Path(draw(st.sampled_from(["/var/lib/proxy-tracker", "/tmp/tracker-data"]))),
        hmac_secret=draw(st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=8, max_size=32)),
    )
    config.capture = CaptureConfig(
        capture_seconds=draw(duration_strategy),
        idle_seconds=draw(st.floats(min_value=0, max_value=3600, allow_nan=False)),
        exclude_filter=draw(st.sampled_from(["port 22", "", "port 22 or port 53"])),
        local_ips=draw(st.lists(st.sampled_from(["192.0.2.10", "2001:db8::10"]), unique=True)),
    )
    config.geo.cache_ceiling = draw(st.integers(min_value=1, max_value=100000))
    config.instances.status_ports = draw(
        st.dictionaries(
            st.sampled_from(["conduit", "conduit-2", "conduit-3"]),
            st.integers(min_value=1024, max_value=65535),
        )
    )
    config.watchdog.enabled = draw(st.booleans())
    if draw(st.booleans()):
        config.notifications.telegram = TelegramConfig(bot_token="123:abc", chat_id="42")
    if draw(st.booleans()):
        config.notifications.discord = DiscordConfig(webhook_url="https://discord.invalid/hook")
    if draw(st.booleans()):
        config.notifications.webhook = WebhookConfig(
            url="https://hooks.invalid/alert",
            headers={"X-Source": "tracker"},
        )
    return config


class TestConfigValidationProperty:
    """
    Property 1: Valid configurations pass; invalid durations are rejected.
    """

    @given(config=system_config_strategy())
    @settings(max_examples=50)
    def test_generated_configs_are_valid(self, config: SystemConfig) -> None:
        validate_config(config)

    @given(capture=st.floats(max_value=0, allow_nan=False, allow_infinity=False))
    @settings(max_examples=50)
    def test_non_positive_capture_rejected(self, capture: float) -> None:
        config = create_default_config()
        config.capture.capture_seconds = capture

        with pytest.raises(ConfigError) as exc_info:
            validate_config(config)

        assert exc_info.value.code == "invalid_duration"

    @pytest.mark.parametrize(
        "section,name,value,code",
        [
            ("capture", "idle_seconds", -1.0, "invalid_duration"),
            ("history", "retention_seconds", 0.0, "invalid_duration"),
            ("watchdog", "cooldown_seconds", -5.0, "invalid_duration"),
            ("geo", "cache_ceiling", 0, "invalid_ceiling"),
            ("instances", "max_concurrent_queries", 0, "invalid_concurrency"),
            ("logging", "output_format", "xml", "invalid_output_format"),
            ("persistence", "data_dir", Path(""), "missing_data_dir"),
            ("persistence", "data_dir", Path("."), "missing_data_dir"),
            ("persistence", "data_dir", "  ", "missing_data_dir"),
        ],
    )
    def test_invalid_settings_rejected(self, section: str, name: str, value, code: str) -> None:
        config = create_default_config()
        setattr(getattr(config, section), name, value)

        with pytest.raises(ConfigError) as exc_info:
            validate_config(config)

        assert exc_info.value.code == code

    def test_zero_idle_is_allowed(self) -> None:
        config = create_default_config()
        config.capture.idle_seconds = 0

        validate_config(config)


class TestConfigFileRoundTripProperty:
    """
    Property 2: A saved configuration loads back unchanged.
    """

    @given(config=system_config_strategy())
    @settings(max_examples=30, deadline=None)
    def test_save_then_load(self, config: SystemConfig) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "config.json"

            assert save_config_to_file(config, path)
            loaded = load_config_from_file(path)

        assert loaded is not None
        assert dataclasses.asdict(loaded) == dataclasses.asdict(config)

    def test_missing_file_returns_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            assert load_config_from_file(Path(tmpdir) / "absent.json") is None

    def test_malformed_file_returns_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.json"
            path.write_text("{not json", encoding="utf-8")

            assert load_config_from_file(path) is None

    def test_partial_file_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.json"
            path.write_text(
                json.dumps({
                    "capture": {"capture_seconds": 10, "idle_seconds": 20},
                    "persistence": {"data_dir": tmpdir, "hmac_secret": "s3cret"},
                }),
                encoding="utf-8",
            )

            config = load_config_from_file(path)

        assert config is not None
        assert config.capture.capture_seconds == 10
        assert config.capture.exclude_filter == "port 22"
        assert config.persistence.data_dir == Path(tmpdir)
        assert config.geo.cache_ceiling == 10000
        assert config.notifications.telegram is None

    def test_disabled_channels_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.json"
            path.write_text(
                json.dumps({
                    "notifications": {
                        "telegram": {"enabled": False, "bot_token": "1:a", "chat_id": "2"},
                        "discord": {"enabled": True, "webhook_url": "https://discord.invalid/x"},
                    },
                }),
                encoding="utf-8",
            )

            config = load_config_from_file(path)

        assert config.notifications.telegram is None
        assert config.notifications.discord.webhook_url == "https://discord.invalid/x"

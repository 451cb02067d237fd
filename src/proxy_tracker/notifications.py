"""
Alert delivery for the proxy tracker.

Alerts (automatic restarts, failed restarts) are forwarded to every
configured channel: Telegram, Discord or a generic JSON webhook. Delivery
is retried with exponential backoff; a channel that still fails is logged
and never blocks the tracker.
"""

import asyncio
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

import httpx

from .config import (
    DiscordConfig,
    NotificationConfig,
    RetryConfig,
    TelegramConfig,
    WebhookConfig,
)
from .enums import AlertKind, LogLevel

if TYPE_CHECKING:
    from .audit_logger import AuditLogger


_KIND_ICONS = {
    AlertKind.RESTART: "🔄",
    AlertKind.RESTART_FAILED: "🔴",
    AlertKind.INFO: "ℹ️",
}


def format_timestamp(iso_timestamp: str) -> str:
    """Render an ISO timestamp as ``YYYY-MM-DD HH:MM UTC``."""
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return iso_timestamp
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


@dataclass
class AlertPayload:
    """A single alert."""

    message: str
    kind: AlertKind = AlertKind.INFO
    instance_id: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def title(self) -> str:
        icon = _KIND_ICONS.get(self.kind, "")
        if self.instance_id:
            return f"{icon} {self.instance_id}".strip()
        return f"{icon} proxy-tracker".strip()


@dataclass
class NotificationResult:
    """Result of a delivery attempt on one channel."""

    channel: str
    success: bool
    error: Optional[str] = None
    attempts: int = 1


@runtime_checkable
class NotificationChannel(Protocol):
    """Interface of an alert channel."""

    @abstractmethod
    async def send(self, payload: AlertPayload) -> bool:
        """Deliver an alert. Returns True on success."""
        ...

    @abstractmethod
    def get_name(self) -> str:
        ...


class TelegramChannel:
    """Telegram channel using the Bot API."""

    def __init__(self, config: TelegramConfig, simulation_mode: bool = False) -> None:
        self._chat_id = config.chat_id
        self._base_url = f"https://api.telegram.org/bot{config.bot_token}"
        self._simulation_mode = simulation_mode

    async def send(self, payload: AlertPayload) -> bool:
        if self._simulation_mode:
            return True

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    f"{self._base_url}/sendMessage",
                    json={
                        "chat_id": self._chat_id,
                        "text": self.format_message(payload),
                        "parse_mode": "HTML",
                        "disable_web_page_preview": True,
                    },
                    timeout=30.0,
                )
                return response.status_code == 200
            except httpx.HTTPError:
                return False

    def get_name(self) -> str:
        return "telegram"

    def format_message(self, payload: AlertPayload) -> str:
        return (
            f"<b>{payload.title}</b>\n\n"
            f"{payload.message}\n"
            f"<i>{format_timestamp(payload.timestamp)}</i>"
        )


class DiscordChannel:
    """Discord channel using an incoming webhook."""

    def __init__(self, config: DiscordConfig, simulation_mode: bool = False) -> None:
        self._webhook_url = config.webhook_url
        self._simulation_mode = simulation_mode

    async def send(self, payload: AlertPayload) -> bool:
        if self._simulation_mode:
            return True

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    self._webhook_url,
                    json={"embeds": [self.format_embed(payload)]},
                    timeout=30.0,
                )
                # 204 No Content on success
                return response.status_code in (200, 204)
            except httpx.HTTPError:
                return False

    def get_name(self) -> str:
        return "discord"

    def format_embed(self, payload: AlertPayload) -> dict:
        failed = payload.kind == AlertKind.RESTART_FAILED
        return {
            "title": payload.title,
            "description": payload.message,
            "color": 0xFF0000 if failed else 0x3498DB,
            "footer": {"text": format_timestamp(payload.timestamp)},
        }


class WebhookChannel:
    """Generic JSON webhook channel."""

    def __init__(self, config: WebhookConfig, simulation_mode: bool = False) -> None:
        self._url = config.url
        self._headers = config.headers.copy()
        self._simulation_mode = simulation_mode

    async def send(self, payload: AlertPayload) -> bool:
        if self._simulation_mode:
            return True

        headers = {"Content-Type": "application/json"}
        headers.update(self._headers)
        data = {
            "kind": payload.kind.value,
            "instance": payload.instance_id,
            "message": payload.message,
            "timestamp": payload.timestamp,
        }

        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    self._url, json=data, headers=headers, timeout=30.0
                )
                return 200 <= response.status_code < 300
            except httpx.HTTPError:
                return False

    def get_name(self) -> str:
        return "webhook"


class NotificationRouter:
    """Fans alerts out to the registered channels with retry."""

    COMPONENT = "NotificationRouter"

    def __init__(
        self,
        retry_config: RetryConfig,
        logger: Optional["AuditLogger"] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self._channels: list[NotificationChannel] = []
        self._retry_config = retry_config
        self._logger = logger
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        notifications: NotificationConfig,
        retry_config: RetryConfig,
        logger: Optional["AuditLogger"] = None,
        simulation_mode: bool = False,
    ) -> "NotificationRouter":
        """Build a router with a channel for every configured backend."""
        router = cls(retry_config=retry_config, logger=logger)
        if notifications.telegram:
            router.register_channel(TelegramChannel(notifications.telegram, simulation_mode))
        if notifications.discord:
            router.register_channel(DiscordChannel(notifications.discord, simulation_mode))
        if notifications.webhook:
            router.register_channel(WebhookChannel(notifications.webhook, simulation_mode))
        return router

    def register_channel(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)

    def unregister_channel(self, channel_name: str) -> bool:
        for i, channel in enumerate(self._channels):
            if channel.get_name() == channel_name:
                self._channels.pop(i)
                return True
        return False

    @property
    def channels(self) -> list[NotificationChannel]:
        return self._channels.copy()

    async def emit(self, payload: AlertPayload) -> list[NotificationResult]:
        """
        Deliver an alert to all channels.

        Returns:
            One NotificationResult per channel
        """
        if self._logger:
            self._logger.log(
                LogLevel.INFO,
                self.COMPONENT,
                payload.message,
                {"kind": payload.kind.value, "instance": payload.instance_id},
            )

        results = []
        for channel in self._channels:
            results.append(await self._send_with_retry(channel, payload))
        return results

    async def _send_with_retry(
        self,
        channel: NotificationChannel,
        payload: AlertPayload,
    ) -> NotificationResult:
        channel_name = channel.get_name()
        max_attempts = self._retry_config.max_retries + 1
        errors: list[str] = []

        for attempt in range(1, max_attempts + 1):
            try:
                if await channel.send(payload):
                    return NotificationResult(
                        channel=channel_name, success=True, attempts=attempt
                    )
                errors.append("Channel returned failure")
            except Exception as e:
                errors.append(str(e))

            if attempt < max_attempts:
                await self._sleep(self._calculate_delay(attempt - 1))

        if self._logger:
            self._logger.log(
                LogLevel.ERROR,
                self.COMPONENT,
                f"All alert retries failed for channel '{channel_name}'",
                {
                    "channel": channel_name,
                    "kind": payload.kind.value,
                    "instance": payload.instance_id,
                    "attempts": len(errors),
                    "errors": errors,
                },
            )

        return NotificationResult(
            channel=channel_name,
            success=False,
            error=errors[-1] if errors else None,
            attempts=max_attempts,
        )

    def _calculate_delay(self, attempt: int) -> float:
        delay = self._retry_config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._retry_config.max_delay_seconds)

"""
Stuck-Instance Watchdog for the proxy tracker.

An instance that reports zero connected peers for longer than the idle
threshold is assumed stuck and restarted, at most once per cooldown window.
"""

import time
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .enums import AlertKind, LogLevel
from .exceptions import InstanceControlError
from .instances import InstanceController
from .models import PeerCount, WatchdogState
from .notifications import AlertPayload, NotificationRouter


def observe_peers(state: WatchdogState, peers: PeerCount, now: float) -> None:
    """
    Apply one peer observation to an instance's state.

    Any connected peer makes the instance active again and clears its
    restart failures. The idle start is set on the first zero reading and
    left alone on the following ones.
    """
    if peers.connected > 0:
        state.idle_since = None
        state.restart_failures = 0
    elif state.idle_since is None:
        state.idle_since = now


def restart_due(
    state: WatchdogState,
    now: float,
    idle_threshold: float,
    cooldown: float,
) -> bool:
    """True if the instance has been idle too long and is out of cooldown."""
    if state.idle_since is None:
        return False
    if now - state.idle_since <= idle_threshold:
        return False
    if state.last_restart_at is not None and now - state.last_restart_at < cooldown:
        return False
    return True


class StuckInstanceWatchdog:
    """
    Per-instance idle tracking and automatic recovery.

    State is kept in an explicit ``dict[str, WatchdogState]``. A failed
    restart leaves both the idle start and the last restart time untouched,
    so the next check retries instead of waiting out a cooldown.
    """

    COMPONENT = "StuckInstanceWatchdog"

    def __init__(
        self,
        controller: InstanceController,
        router: Optional[NotificationRouter] = None,
        idle_threshold_seconds: float = 7200.0,
        cooldown_seconds: float = 7200.0,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._controller = controller
        self._router = router
        self._idle_threshold = idle_threshold_seconds
        self._cooldown = cooldown_seconds
        self._logger = logger
        self._clock = clock
        self._states: dict[str, WatchdogState] = {}

    @property
    def states(self) -> dict[str, WatchdogState]:
        return self._states

    async def check(
        self,
        peer_counts: dict[str, Optional[PeerCount]],
        now: Optional[float] = None,
    ) -> list[str]:
        """
        Evaluate every listed instance.

        Instances missing from ``peer_counts`` are no longer monitored and
        their state is dropped. A None reading means the status could not be
        fetched and causes no transition.

        Returns:
            IDs of instances that were restarted
        """
        current = self._clock() if now is None else now

        for instance_id in list(self._states):
            if instance_id not in peer_counts:
                del self._states[instance_id]

        restarted = []
        for instance_id, peers in peer_counts.items():
            if await self.observe(instance_id, peers, current):
                restarted.append(instance_id)
        return restarted

    async def observe(
        self,
        instance_id: str,
        peers: Optional[PeerCount],
        now: float,
    ) -> bool:
        """
        Apply one reading and restart the instance if it is stuck.

        Returns:
            True if a restart was performed successfully
        """
        state = self._states.setdefault(instance_id, WatchdogState())
        if peers is None:
            return False

        observe_peers(state, peers, now)
        if not restart_due(state, now, self._idle_threshold, self._cooldown):
            return False

        idle_for = now - (state.idle_since or now)
        try:
            success = await self._controller.restart_instance(instance_id)
        except InstanceControlError as e:
            self._log_error(f"Restart of {instance_id} raised", e)
            success = False

        if not success:
            state.restart_failures += 1
            self._log(
                LogLevel.ERROR,
                f"Automatic restart of {instance_id} failed",
                {
                    "instance": instance_id,
                    "idle_seconds": int(idle_for),
                    "failures": state.restart_failures,
                },
            )
            # One alert per idle period; later failures are only logged
            if state.restart_failures > 1:
                return False
            await self._alert(
                AlertPayload(
                    message=(
                        f"Automatic restart of {instance_id} failed after "
                        f"{_format_duration(idle_for)} without peers; will retry."
                    ),
                    kind=AlertKind.RESTART_FAILED,
                    instance_id=instance_id,
                )
            )
            return False

        state.last_restart_at = now
        state.idle_since = now
        state.restart_failures = 0
        self._log(
            LogLevel.WARN,
            f"Restarted stuck instance {instance_id}",
            {"instance": instance_id, "idle_seconds": int(idle_for)},
        )
        await self._alert(
            AlertPayload(
                message=(
                    f"{instance_id} had no connected peers for "
                    f"{_format_duration(idle_for)} and was restarted automatically."
                ),
                kind=AlertKind.RESTART,
                instance_id=instance_id,
            )
        )
        return True

    async def _alert(self, payload: AlertPayload) -> None:
        if self._router is not None:
            await self._router.emit(payload)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error)


def _format_duration(seconds: float) -> str:
    minutes = int(seconds) // 60
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"

"""Notification router — classification, dedup, quiet hours, retried delivery.

Routing rules (first match wins):

    critical + production  → chat, email, pager
    error / critical       → chat, email, issue tracker
    warning                → chat, issue tracker
    info                   → chat

Repeats of the same ``(source_id, severity)`` inside the dedup window are
collapsed into the first delivery's attempts (``repeat_count`` grows) and
no channel is called again. The first delivery after the window reports
how many repeats were collapsed. Outside the active hours, info and warning
go to email only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from conveyor.events import NotificationEvent, Severity
from conveyor.notifications.channels import ChannelKind, DeliveryPayload, NotificationChannel

if TYPE_CHECKING:
    from conveyor.config import NotificationConfig, QuietHoursConfig

logger = logging.getLogger(__name__)

_QUIET_SEVERITIES = frozenset({Severity.INFO, Severity.WARNING})


def classify(event: NotificationEvent) -> list[ChannelKind]:
    """Channels an event is routed to, before quiet hours apply."""
    if event.severity == Severity.CRITICAL and event.is_production:
        return [ChannelKind.CHAT, ChannelKind.EMAIL, ChannelKind.PAGER]
    if event.severity in (Severity.ERROR, Severity.CRITICAL):
        return [ChannelKind.CHAT, ChannelKind.EMAIL, ChannelKind.ISSUE_TRACKER]
    if event.severity == Severity.WARNING:
        return [ChannelKind.CHAT, ChannelKind.ISSUE_TRACKER]
    return [ChannelKind.CHAT]


@dataclass
class DeliveryAttempt:
    """Outcome of routing one event to one channel."""

    channel: ChannelKind
    event: NotificationEvent
    repeat_count: int = 1
    attempts: int = 0
    delivered: bool = False
    error: str | None = None
    suppressed: bool = False  # Muted by quiet hours; never sent


@dataclass
class _DedupEntry:
    opened_at: datetime
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    collapsed: int = 0


class NotificationRouter:
    """Routes events to channels. Delivery failures never escape ``route()``."""

    def __init__(
        self,
        channels: dict[ChannelKind, NotificationChannel],
        config: NotificationConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._channels = channels
        if config is None:
            self._window = timedelta(hours=1)
            self._max_attempts = 3
            self._backoff_base = 1.0
            self._backoff_max = 30.0
            self._quiet_hours: QuietHoursConfig | None = None
        else:
            self._window = config.dedup_window_delta
            self._max_attempts = config.max_attempts
            self._backoff_base = config.backoff_base
            self._backoff_max = config.backoff_max
            self._quiet_hours = config.quiet_hours
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._recent: dict[tuple[str, Severity], _DedupEntry] = {}

    async def route(self, event: NotificationEvent) -> list[DeliveryAttempt]:
        """Deliver an event, or collapse it into an open dedup window.

        A collapsed repeat returns copies of the first delivery's attempts
        with the grown ``repeat_count``; no channel is called.
        """
        now = self._clock()
        key = (event.source_id, event.severity)
        entry = self._recent.get(key)

        if entry is not None and now - entry.opened_at < self._window:
            entry.collapsed += 1
            for attempt in entry.attempts:
                attempt.repeat_count += 1
            logger.info(
                "Collapsed repeat %s notification for %s (x%d)",
                event.severity.value,
                event.source_id,
                entry.collapsed + 1,
            )
            return [replace(a) for a in entry.attempts]

        collapsed = entry.collapsed if entry is not None else 0
        attempts = await self._send(event, now, suppressed_repeats=collapsed)
        self._recent[key] = _DedupEntry(opened_at=now, attempts=[replace(a) for a in attempts])
        self._expire(now)
        return attempts

    async def flush(self) -> list[DeliveryAttempt]:
        """Deliver a summary for every closed dedup window that collapsed repeats."""
        now = self._clock()
        results: list[DeliveryAttempt] = []
        for key, entry in list(self._recent.items()):
            if now - entry.opened_at < self._window:
                continue
            del self._recent[key]
            if entry.collapsed and entry.attempts:
                event = entry.attempts[0].event
                results.extend(
                    await self._send(
                        event,
                        now,
                        repeat_count=entry.collapsed + 1,
                        suppressed_repeats=entry.collapsed,
                    )
                )
        return results

    async def close(self) -> None:
        for channel in self._channels.values():
            close = getattr(channel, "close", None)
            if close is not None:
                await close()

    # ── Internals ────────────────────────────────────────────────────────────

    def _targets(self, event: NotificationEvent, now: datetime) -> list[ChannelKind]:
        if (
            self._quiet_hours is not None
            and event.severity in _QUIET_SEVERITIES
            and self._quiet_hours.is_quiet(now)
        ):
            return [ChannelKind.EMAIL]
        return classify(event)

    async def _send(
        self,
        event: NotificationEvent,
        now: datetime,
        *,
        repeat_count: int = 1,
        suppressed_repeats: int = 0,
    ) -> list[DeliveryAttempt]:
        payload = DeliveryPayload.from_event(
            event, repeat_count=repeat_count, suppressed_repeats=suppressed_repeats
        )
        targets = self._targets(event, now)
        attempts: list[DeliveryAttempt] = []
        for kind in classify(event):
            if kind not in targets:
                logger.debug("Quiet hours: muted %s for %s", kind.value, event.source_id)
                attempts.append(
                    DeliveryAttempt(
                        channel=kind, event=event, repeat_count=repeat_count, suppressed=True
                    )
                )
        for kind in targets:
            attempts.append(await self._deliver(kind, event, payload))
        return attempts

    async def _deliver(
        self,
        kind: ChannelKind,
        event: NotificationEvent,
        payload: DeliveryPayload,
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(channel=kind, event=event, repeat_count=payload.repeat_count)
        channel = self._channels.get(kind)
        if channel is None:
            attempt.error = "no channel configured"
            logger.warning("No %s channel configured; dropping %s", kind.value, event.title)
            return attempt

        for n in range(1, self._max_attempts + 1):
            attempt.attempts = n
            try:
                await channel.deliver(kind, payload)
            except Exception as e:
                attempt.error = str(e)
                if n >= self._max_attempts:
                    logger.error(
                        "Giving up on %s delivery of '%s' after %d attempts: %s",
                        kind.value,
                        event.title,
                        n,
                        e,
                    )
                    break
                wait = min(self._backoff_base * 2 ** (n - 1), self._backoff_max)
                logger.warning(
                    "%s delivery attempt %d/%d failed: %s (retrying in %.1fs)",
                    kind.value,
                    n,
                    self._max_attempts,
                    e,
                    wait,
                )
                await self._sleep(wait)
            else:
                attempt.delivered = True
                attempt.error = None
                break
        return attempt

    def _expire(self, now: datetime) -> None:
        """Forget closed windows that have nothing left to report."""
        for key, entry in list(self._recent.items()):
            if now - entry.opened_at >= self._window and not entry.collapsed:
                del self._recent[key]

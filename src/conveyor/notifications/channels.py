"""Notification delivery channels.

Channels are the only place a notification leaves the process. A channel
raises ``DeliveryError`` on failure; the router retries and contains it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pydantic import BaseModel

from conveyor.errors import DeliveryError
from conveyor.events import NotificationEvent, Severity

if TYPE_CHECKING:
    from conveyor.config import ChannelConfig

logger = logging.getLogger(__name__)


class ChannelKind(str, Enum):
    CHAT = "chat"
    EMAIL = "email"
    PAGER = "pager"
    ISSUE_TRACKER = "issue_tracker"


class DeliveryPayload(BaseModel):
    """What a channel receives for one notification."""

    title: str
    severity: Severity
    source_id: str
    source_kind: str
    reason: str | None = None
    is_production: bool = False
    repeat_count: int = 1
    suppressed_repeats: int = 0  # Repeats collapsed since the previous delivery
    occurred_at: datetime
    details: dict[str, Any] = {}

    @classmethod
    def from_event(
        cls,
        event: NotificationEvent,
        *,
        repeat_count: int = 1,
        suppressed_repeats: int = 0,
    ) -> DeliveryPayload:
        return cls(
            title=event.title,
            severity=event.severity,
            source_id=event.source_id,
            source_kind=event.source_kind.value,
            reason=event.reason,
            is_production=event.is_production,
            repeat_count=repeat_count,
            suppressed_repeats=suppressed_repeats,
            occurred_at=event.occurred_at,
            details=dict(event.payload),
        )


class NotificationChannel(Protocol):
    name: str

    async def deliver(self, kind: ChannelKind, payload: DeliveryPayload) -> None:
        """Deliver one payload. Raises DeliveryError on failure."""
        ...


# ── Implementations ──────────────────────────────────────────────────────────


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class LoggingChannel:
    """Writes notifications to the application log. Never fails."""

    def __init__(self, kind: ChannelKind):
        self.name = f"log:{kind.value}"

    async def deliver(self, kind: ChannelKind, payload: DeliveryPayload) -> None:
        suffix = f" (x{payload.repeat_count})" if payload.repeat_count > 1 else ""
        logger.log(
            _LOG_LEVELS[payload.severity],
            "[%s] %s%s: %s",
            kind.value,
            payload.title,
            suffix,
            payload.reason or "-",
        )


class WebhookChannel:
    """POSTs the JSON payload to an HTTP endpoint (chat, mail relay, pager, tracker)."""

    def __init__(
        self,
        kind: ChannelKind,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ):
        self.name = f"webhook:{kind.value}"
        self.url = url
        self._headers = {"User-Agent": "Conveyor/0.1.0", **(headers or {})}
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def deliver(self, kind: ChannelKind, payload: DeliveryPayload) -> None:
        if self._client is None:
            await self.start()
        body = {"channel": kind.value, **payload.model_dump(mode="json")}
        try:
            resp = await self._client.post(self.url, json=body)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(self.name, f"{type(e).__name__}: {e}") from e


def build_channels(configs: list[ChannelConfig]) -> dict[ChannelKind, NotificationChannel]:
    """Build one channel per kind. Kinds without configuration log only."""
    channels: dict[ChannelKind, NotificationChannel] = {
        kind: LoggingChannel(kind) for kind in ChannelKind
    }
    for cfg in configs:
        if cfg.type == "webhook":
            if not cfg.url:
                raise ValueError(f"Webhook channel '{cfg.kind.value}' requires a url")
            channels[cfg.kind] = WebhookChannel(
                cfg.kind, cfg.url, headers=cfg.headers, timeout=cfg.timeout
            )
        else:
            channels[cfg.kind] = LoggingChannel(cfg.kind)
        logger.info("Notification channel %s -> %s", cfg.kind.value, cfg.type)
    return channels

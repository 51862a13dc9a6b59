"""Lifecycle notification events and the in-process event bus.

Every component that changes state (scheduler, promotion engine, rollback
controller) publishes a ``NotificationEvent`` on the bus. Subscribers are
called synchronously in publish order; the notification dispatcher enqueues
and returns immediately so publishing never blocks pipeline execution.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SourceKind(str, Enum):
    PIPELINE_RUN = "pipeline_run"
    STAGE = "stage"
    ROLLBACK = "rollback"


class NotificationEvent(BaseModel):
    """A classified signal emitted on a lifecycle transition. Never mutated."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    source_kind: SourceKind
    severity: Severity
    title: str
    reason: str | None = None
    is_production: bool = False
    # Events sharing an ordering key are delivered in publish order
    ordering_key: str | None = None
    payload: dict[str, Any] = {}
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return self.ordering_key or self.source_id


EventHandler = Callable[[NotificationEvent], None]


class EventBus:
    """Fan-out of notification events to subscribers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: NotificationEvent) -> None:
        logger.debug(
            "Event %s/%s: %s (%s)",
            event.source_kind.value,
            event.source_id,
            event.title,
            event.severity.value,
        )
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler error for %s", event.source_id)

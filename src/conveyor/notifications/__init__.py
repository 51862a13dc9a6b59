"""Notification routing — channels, router, and the event bus dispatcher.

Key exports:
    NotificationRouter — classify(), dedup, quiet hours, retried delivery
    NotificationDispatcher — per-source ordered delivery off the event bus
    Channels: ChannelKind, NotificationChannel, LoggingChannel, WebhookChannel
"""

from conveyor.notifications.channels import (
    ChannelKind,
    DeliveryPayload,
    LoggingChannel,
    NotificationChannel,
    WebhookChannel,
    build_channels,
)
from conveyor.notifications.dispatcher import NotificationDispatcher
from conveyor.notifications.router import DeliveryAttempt, NotificationRouter, classify

__all__ = [
    "ChannelKind",
    "DeliveryAttempt",
    "DeliveryPayload",
    "LoggingChannel",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationRouter",
    "WebhookChannel",
    "build_channels",
    "classify",
]

"""Configuration loading for Conveyor.

Reads a YAML engine config (``conveyor.yaml``) into pydantic models and
applies ``CONVEYOR_*`` environment variable overrides for deployment.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, time, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

from conveyor.notifications.channels import ChannelKind
from conveyor.promotion.models import RollbackStrategy

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """Parse ``30s`` / ``5m`` / ``1h`` / ``2d`` (bare numbers are seconds)."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r} (expected e.g. 30s, 5m, 1h, 2d)")
    amount, unit = match.groups()
    return timedelta(seconds=float(amount) * _DURATION_UNITS[unit or "s"])


# ── Config Models ────────────────────────────────────────────────────────────


class SchedulerConfig(BaseModel):
    max_parallel: int | None = Field(None, ge=1)  # None = unbounded


class StoreConfig(BaseModel):
    path: str = "conveyor.db"
    retention_days: int = Field(90, ge=1)


class QuietHoursConfig(BaseModel):
    """Active notification window. Outside it, low-severity chat is muted."""

    enabled: bool = False
    start: time = time(8, 0)
    end: time = time(20, 0)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, v: str) -> str:
        try:
            _zone(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v!r}") from e
        return v

    def is_quiet(self, now: datetime) -> bool:
        """True when ``now`` falls outside the active window."""
        if not self.enabled:
            return False
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(_zone(self.timezone)).time()
        if self.start <= self.end:
            active = self.start <= local < self.end
        else:  # Window wraps midnight
            active = local >= self.start or local < self.end
        return not active


class ChannelConfig(BaseModel):
    """One delivery channel. ``log`` channels never fail; ``webhook`` posts JSON."""

    kind: ChannelKind
    type: Literal["webhook", "log"] = "log"
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(10.0, gt=0)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"Channel url must be http(s), got {v!r}")
        return v


class NotificationConfig(BaseModel):
    dedup_window: str = "1h"
    flush_interval: str = "1m"
    max_attempts: int = Field(3, ge=1)
    backoff_base: float = Field(1.0, ge=0)
    backoff_max: float = Field(30.0, ge=0)
    quiet_hours: QuietHoursConfig = Field(default_factory=QuietHoursConfig)
    channels: list[ChannelConfig] = Field(default_factory=list)

    @field_validator("dedup_window", "flush_interval")
    @classmethod
    def _validate_window(cls, v: str) -> str:
        parse_duration(v)
        return v

    @property
    def dedup_window_delta(self) -> timedelta:
        return parse_duration(self.dedup_window)

    @property
    def flush_interval_seconds(self) -> float:
        return parse_duration(self.flush_interval).total_seconds()


class RollbackConfig(BaseModel):
    """Shell commands backing each rollback strategy.

    Strategies without a command run the ``rollback.<strategy>`` action,
    which must be registered by an action plugin.
    """

    commands: dict[RollbackStrategy, str] = Field(default_factory=dict)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(8080, ge=1, le=65535)


class EngineConfig(BaseModel):
    """Top-level engine configuration."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    plugins: list[str] = Field(default_factory=list)  # Action plugin module paths


# ── Loader ───────────────────────────────────────────────────────────────────


def load_config(path: Path | None = None) -> EngineConfig:
    """Load engine configuration from a YAML file.

    Args:
        path: Path to the config file. ``None`` uses built-in defaults.

    Raises:
        FileNotFoundError: If ``path`` is given and doesn't exist.
        ValueError: If config validation fails.
    """
    raw: dict = {}
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Conveyor config not found: {path}")
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    config = EngineConfig(**raw)

    # Environment variable overrides for deployment
    db_path = os.environ.get("CONVEYOR_DB_PATH")
    if db_path:
        config.store.path = db_path

    max_parallel = os.environ.get("CONVEYOR_MAX_PARALLEL")
    if max_parallel:
        value = int(max_parallel)
        config.scheduler.max_parallel = value if value > 0 else None

    port = os.environ.get("CONVEYOR_PORT")
    if port:
        config.server.port = int(port)

    logger.info(
        "Loaded Conveyor config: db=%s channels=%d",
        config.store.path,
        len(config.notifications.channels),
    )
    return config

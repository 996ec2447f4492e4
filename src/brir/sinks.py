"""Structured log and notification sinks consumed by the enforcer.

Hosts hand in their own sinks (for example a plugin client's ``app.log`` and
toast endpoints). The defaults below route everything through :mod:`logging`
as compact JSON lines so the enforcer is usable without a host.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Protocol

TELEMETRY_LOGGER = logging.getLogger("brir.telemetry")
LOGGER = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogSink(Protocol):
    """Append-only structured log collaborator."""

    async def log(
        self,
        service: str,
        level: str,
        message: str,
        extra: Mapping[str, Any] | None = None,
    ) -> None: ...


class NotificationSink(Protocol):
    """Fire-and-forget user-visible notification collaborator."""

    async def notify(self, message: str, variant: str = "info") -> None: ...


def _serialise_event_value(value: Any) -> Any:
    """Convert payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


class LoggingSink:
    """Log sink writing one JSON object per record to ``brir.telemetry``."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or TELEMETRY_LOGGER

    async def log(
        self,
        service: str,
        level: str,
        message: str,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        payload = {
            "service": service,
            "level": level,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "extra": _serialise_event_value(dict(extra or {})),
        }
        rendered = json.dumps(payload, separators=(",", ":"), ensure_ascii=True)
        self.logger.log(_LEVELS.get(level.lower(), logging.INFO), rendered)


class LoggingNotifier:
    """Notification sink that records toasts on the standard logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER

    async def notify(self, message: str, variant: str = "info") -> None:
        level = logging.WARNING if variant in {"warning", "error"} else logging.INFO
        self.logger.log(level, "[%s] %s", variant, message)


@dataclass(slots=True)
class LogRecordEntry:
    """Captured structured log record."""

    service: str
    level: str
    message: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MemorySink:
    """Sink that keeps records and notifications in memory.

    Used by the ``replay`` command to echo what a host would have received.
    """

    records: List[LogRecordEntry] = field(default_factory=list)
    notifications: List[tuple[str, str]] = field(default_factory=list)

    async def log(
        self,
        service: str,
        level: str,
        message: str,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        self.records.append(LogRecordEntry(service, level, message, dict(extra or {})))

    async def notify(self, message: str, variant: str = "info") -> None:
        self.notifications.append((message, variant))

    def messages(self, level: str | None = None) -> List[str]:
        return [record.message for record in self.records if level is None or record.level == level]


async def safe_log(
    sink: LogSink,
    service: str,
    level: str,
    message: str,
    extra: Mapping[str, Any] | None = None,
) -> None:
    """Forward to ``sink`` without letting a sink failure escape to the host."""
    try:
        await sink.log(service, level, message, extra)
    except Exception:  # noqa: BLE001 - sink errors stay inside the sink boundary
        LOGGER.warning("Log sink rejected record %r", message, exc_info=True)


async def safe_notify(sink: NotificationSink, message: str, variant: str = "info") -> None:
    """Forward to ``sink`` without letting a sink failure escape to the host."""
    try:
        await sink.notify(message, variant)
    except Exception:  # noqa: BLE001 - sink errors stay inside the sink boundary
        LOGGER.warning("Notification sink rejected %r", message, exc_info=True)


__all__ = [
    "LogRecordEntry",
    "LogSink",
    "LoggingNotifier",
    "LoggingSink",
    "MemorySink",
    "NotificationSink",
    "safe_log",
    "safe_notify",
]

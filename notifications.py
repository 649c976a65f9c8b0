"""In-memory outbox of transient user notifications raised by the engines."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List


logger = logging.getLogger("entkit.notifications")

LEVELS = ("success", "info", "warning", "error")
_LOG_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.WARNING,
}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Notification:
    level: str
    message: str
    resource_key: str | None = None
    meta: dict = field(default_factory=dict)
    notification_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    at: str = field(default_factory=_now)

    def as_dict(self) -> dict:
        return {
            "id": self.notification_id,
            "level": self.level,
            "message": self.message,
            "resource_key": self.resource_key,
            "meta": dict(self.meta),
            "at": self.at,
        }


class Notifier:
    def __init__(self) -> None:
        self._items: List[Notification] = []

    def notify(self, level: str, message: str, resource_key: str | None = None, **meta) -> Notification:
        if level not in LEVELS:
            raise ValueError(f"unknown notification level: {level}")
        item = Notification(level, message, resource_key, meta)
        self._items.append(item)
        logger.log(_LOG_LEVELS[level], "notify level=%s resource=%s message=%s", level, resource_key, message)
        return item

    def success(self, message: str, resource_key: str | None = None, **meta) -> Notification:
        return self.notify("success", message, resource_key, **meta)

    def info(self, message: str, resource_key: str | None = None, **meta) -> Notification:
        return self.notify("info", message, resource_key, **meta)

    def warning(self, message: str, resource_key: str | None = None, **meta) -> Notification:
        return self.notify("warning", message, resource_key, **meta)

    def error(self, message: str, resource_key: str | None = None, **meta) -> Notification:
        return self.notify("error", message, resource_key, **meta)

    def pending(self, level: str | None = None) -> list[Notification]:
        if level is None:
            return list(self._items)
        return [n for n in self._items if n.level == level]

    def latest(self, level: str | None = None) -> Notification | None:
        items = self.pending(level)
        return items[-1] if items else None

    def ack(self, notification_id: str) -> bool:
        for idx, item in enumerate(self._items):
            if item.notification_id == notification_id:
                del self._items[idx]
                return True
        return False

    def drain(self) -> list[Notification]:
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> None:
        self._items.clear()

"""User-facing notifications raised by identity operations."""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Callable, Iterable, Protocol

from msgspec import Struct

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class Notification(Struct, frozen=True):
    level: NotificationLevel
    message: str
    source: str | None = None


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class NotificationCenter:
    """Fan notifications out to listeners and keep a bounded history.

    The view layer subscribes and renders each notification as a toast.
    """

    def __init__(self, *, history: int = 50) -> None:
        self._history: deque[Notification] = deque(maxlen=max(1, history))
        self._listeners: list[Callable[[Notification], None]] = []

    def notify(self, notification: Notification) -> None:
        self._history.append(notification)
        for listener in tuple(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

    def success(self, message: str, *, source: str | None = None) -> None:
        self.notify(Notification(NotificationLevel.SUCCESS, message, source))

    def error(self, message: str, *, source: str | None = None) -> None:
        self.notify(Notification(NotificationLevel.ERROR, message, source))

    def info(self, message: str, *, source: str | None = None) -> None:
        self.notify(Notification(NotificationLevel.INFO, message, source))

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def history(self) -> tuple[Notification, ...]:
        return tuple(self._history)

    def errors(self) -> Iterable[Notification]:
        return (item for item in self._history if item.level is NotificationLevel.ERROR)

    def clear(self) -> None:
        self._history.clear()


__all__ = ["Notification", "NotificationCenter", "NotificationLevel", "Notifier"]

"""
Notification channel adapters
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from lonelycare.logging_config import get_logger
from lonelycare.models import AlertLevel, NotificationChannelKind

logger = get_logger(__name__)


class NotificationChannel(ABC):
    """One delivery capability. send() returns True on delivery."""

    def __init__(self, name: str, kind: NotificationChannelKind):
        self.name = name
        self.kind = kind

    @abstractmethod
    async def send(self, subject_id: str, level: AlertLevel, message: str) -> bool:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, kind={self.kind.value})"


class LoggingChannel(NotificationChannel):
    """Writes alerts to the log, the host's local notification stand-in."""

    def __init__(self, name: str = "log",
                 kind: NotificationChannelKind = NotificationChannelKind.LOCAL_NOTIFICATION):
        super().__init__(name, kind)
        self.alert_logger = get_logger(f"lonelycare.alerts.{name}")

    async def send(self, subject_id: str, level: AlertLevel, message: str) -> bool:
        if level in (AlertLevel.DANGER, AlertLevel.EMERGENCY):
            self.alert_logger.error(f"[{level.value}] {subject_id}: {message}")
        else:
            self.alert_logger.warning(f"[{level.value}] {subject_id}: {message}")
        return True


class CallbackChannel(NotificationChannel):
    """Adapts a plain or async callable(subject_id, level, message) -> bool."""

    def __init__(self, name: str, kind: NotificationChannelKind, callback: Callable[..., Any]):
        super().__init__(name, kind)
        self.callback = callback

    async def send(self, subject_id: str, level: AlertLevel, message: str) -> bool:
        result = self.callback(subject_id, level, message)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

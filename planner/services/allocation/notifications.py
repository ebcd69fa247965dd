"""
User-facing outcome reporting.
"""

import logging
from abc import ABC, abstractmethod

from .types import NotificationKind


logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """One-way message channel. The engine never waits on it."""

    @abstractmethod
    def notify(self, message: str, kind: NotificationKind = NotificationKind.INFO) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes toasts to the log."""

    LEVELS = {
        NotificationKind.SUCCESS: logging.INFO,
        NotificationKind.INFO: logging.INFO,
        NotificationKind.ERROR: logging.WARNING,
    }

    def notify(self, message: str, kind: NotificationKind = NotificationKind.INFO) -> None:
        kind = NotificationKind(kind)
        logger.log(self.LEVELS[kind], f"[{kind.value.upper()}] {message}")

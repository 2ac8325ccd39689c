"""
Notification sinks.

The pipeline hands ``{severity, message, context}`` notifications to a sink;
delivering them to chat, email or paging is the job of whatever sits behind
the sink.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tiered_pipeline.utils.timeutil import utc_now

from .logger import get_logger


class NotificationSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Notification(BaseModel):
    severity: NotificationSeverity
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class NotificationSink(ABC):
    @abstractmethod
    def notify(self, notification: Notification) -> None:
        pass

    def send(self, severity: NotificationSeverity, message: str, **context: Any) -> None:
        self.notify(Notification(severity=severity, message=message, context=context))


_LOG_LEVELS = {
    NotificationSeverity.INFO: logging.INFO,
    NotificationSeverity.WARNING: logging.WARNING,
    NotificationSeverity.HIGH: logging.ERROR,
    NotificationSeverity.CRITICAL: logging.CRITICAL,
}


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the structured log, for a log-based alert router to pick up."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or get_logger("tiered-pipeline.notifications")

    def notify(self, notification: Notification) -> None:
        self.logger.log(
            _LOG_LEVELS[notification.severity],
            notification.message,
            extra={"notification_severity": notification.severity.value, **notification.context},
        )


class CollectingNotificationSink(NotificationSink):
    """Keeps notifications in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self.notifications.append(notification)

    def by_severity(self, severity: NotificationSeverity) -> list[Notification]:
        return [n for n in self.notifications if n.severity == severity]

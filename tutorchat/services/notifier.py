"""
Notifier - transient user-facing notifications (toast)

The chat session never raises recoverable errors to its caller; it reports
them here instead. Subscribers (e.g. a websocket pusher) receive each
notification as it is issued.
"""

import logging
from typing import Callable, List

from tutorchat.models.session import Notification, NotificationLevel

logger = logging.getLogger(__name__)


class Notifier:
    """Collects notifications and forwards them to subscribers"""

    def __init__(self):
        self.notifications: List[Notification] = []
        self._subscribers: List[Callable[[Notification], None]] = []

    def subscribe(self, callback: Callable[[Notification], None]) -> None:
        self._subscribers.append(callback)

    def success(self, message: str) -> Notification:
        return self._emit(NotificationLevel.SUCCESS, message)

    def error(self, message: str) -> Notification:
        return self._emit(NotificationLevel.ERROR, message)

    def info(self, message: str) -> Notification:
        return self._emit(NotificationLevel.INFO, message)

    def drain(self) -> List[Notification]:
        """Return pending notifications and clear them"""
        pending = self.notifications
        self.notifications = []
        return pending

    def _emit(self, level: NotificationLevel, message: str) -> Notification:
        notification = Notification(level=level, message=message)
        self.notifications.append(notification)

        if level == NotificationLevel.ERROR:
            logger.warning(f"Notify [{level.value}]: {message}")
        else:
            logger.info(f"Notify [{level.value}]: {message}")

        for callback in self._subscribers:
            try:
                callback(notification)
            except Exception as e:
                logger.error(f"Notification subscriber failed: {e}", exc_info=True)

        return notification


__all__ = [
    "Notifier",
]

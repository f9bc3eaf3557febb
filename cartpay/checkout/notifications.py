"""Notification channel for user-facing checkout signals."""

from enum import Enum
from typing import Protocol

from cartpay.common.logging import logger


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class Notifier(Protocol):
    async def notify(self, kind: NotificationKind, message: str, *, order_id: str | None = None) -> None: ...


class LoggingNotifier:
    """Default channel when no UI is attached: signals go to the log."""

    async def notify(self, kind: NotificationKind, message: str, *, order_id: str | None = None) -> None:
        log = logger.warning if kind is NotificationKind.ERROR else logger.info
        log("checkout notification kind=%s order_id=%s message=%s", kind.value, order_id, message)

"""
External collaborators invoked by the remediation services.

Only the contracts live here, plus logging implementations used when no
real vendor integration is wired in. Notification delivery is
fire-and-forget: a failing channel is logged and the others still run.
"""
from typing import Any, Dict, Optional, Protocol, Sequence

import structlog

logger = structlog.get_logger(__name__)


class NotificationGateway(Protocol):
    def send_to_user(self, user_id: int, message: Dict[str, Any]) -> None:
        """message carries title, content, type and optional data."""
        ...

    def send_to_admins(self, message: Dict[str, Any]) -> None:
        """message carries title, content, type and priority."""
        ...


class DeviceGateway(Protocol):
    def release(self, device_id: int) -> None: ...

    def mark_maintenance(self, device_id: int, reason: str) -> None: ...

    def retry_start(self, device_id: int) -> bool: ...


class LedgerGateway(Protocol):
    def initiate_refund(self, order_id: int, amount: int, reason: str) -> None: ...


class LoggingNotificationChannel:
    """A notification channel that only writes log lines."""

    def __init__(self, name: str = "log"):
        self.name = name

    def send_to_user(self, user_id: int, message: Dict[str, Any]) -> None:
        logger.info("user_notification", channel=self.name, user_id=user_id,
                    title=message.get("title"), type=message.get("type"))

    def send_to_admins(self, message: Dict[str, Any]) -> None:
        logger.warning("admin_notification", channel=self.name, title=message.get("title"),
                       type=message.get("type"), priority=message.get("priority"))


class FanOutNotificationGateway:
    """
    Deliver each message to every channel (app push, SMS, IM, ...).

    A channel failure never propagates; it is logged with the channel name.
    """

    def __init__(self, channels: Sequence[NotificationGateway]):
        self.channels = list(channels)

    def send_to_user(self, user_id: int, message: Dict[str, Any]) -> None:
        for channel in self.channels:
            try:
                channel.send_to_user(user_id, message)
            except Exception:
                logger.exception("notification_channel_failed", channel=_channel_name(channel),
                                 user_id=user_id, title=message.get("title"))

    def send_to_admins(self, message: Dict[str, Any]) -> None:
        for channel in self.channels:
            try:
                channel.send_to_admins(message)
            except Exception:
                logger.exception("notification_channel_failed", channel=_channel_name(channel),
                                 title=message.get("title"))


class LoggingDeviceGateway:
    def release(self, device_id: int) -> None:
        logger.info("device_released", device_id=device_id)

    def mark_maintenance(self, device_id: int, reason: str) -> None:
        logger.warning("device_marked_for_maintenance", device_id=device_id, reason=reason)

    def retry_start(self, device_id: int) -> bool:
        logger.info("device_start_retried", device_id=device_id)
        return True


class LoggingLedgerGateway:
    def initiate_refund(self, order_id: int, amount: int, reason: str) -> None:
        logger.info("refund_initiated", order_id=order_id, amount=amount, reason=reason)


def _channel_name(channel: Any) -> Optional[str]:
    return getattr(channel, "name", type(channel).__name__)

"""Notification channels and routing."""
from .channels import Channel, ConsoleChannel, NullChannel, TelegramChannel
from .router import CRITICAL_ISSUE, CUSTOM, DAILY_DIGEST, LOW_SCORE_ALERT, NotificationRouter

__all__ = [
    "Channel",
    "ConsoleChannel",
    "NullChannel",
    "TelegramChannel",
    "NotificationRouter",
    "LOW_SCORE_ALERT",
    "CRITICAL_ISSUE",
    "DAILY_DIGEST",
    "CUSTOM",
]

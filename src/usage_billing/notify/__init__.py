"""
Usage Billing Rail - Run Report Notifications
"""

from .channel import NotificationChannel, LogNotifier
from .slack import SlackNotifier, SlackNotificationError, build_blocks

__all__ = [
    "NotificationChannel",
    "LogNotifier",
    "SlackNotifier",
    "SlackNotificationError",
    "build_blocks",
]

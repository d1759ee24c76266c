"""Reminder notification channels and the fan-out dispatcher."""

from calsync.notify.channels import (
    ChannelOutcome,
    ChannelStatus,
    EmailChannel,
    LocalAlertChannel,
    NotificationChannel,
    SmsChannel,
)
from calsync.notify.dispatcher import NotificationDispatcher

__all__ = [
    "ChannelOutcome",
    "ChannelStatus",
    "EmailChannel",
    "LocalAlertChannel",
    "NotificationChannel",
    "NotificationDispatcher",
    "SmsChannel",
]

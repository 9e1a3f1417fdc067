"""Notification fan-out for events and alerts."""

from escrow_orderflow.notifier.formatter import NotificationFormatter, truncate_address
from escrow_orderflow.notifier.notifier import (
    AlertChannel,
    DeliveryLedger,
    LogChannel,
    Notifier,
    NotifierStats,
)

__all__ = [
    "AlertChannel",
    "DeliveryLedger",
    "LogChannel",
    "NotificationFormatter",
    "Notifier",
    "NotifierStats",
    "truncate_address",
]

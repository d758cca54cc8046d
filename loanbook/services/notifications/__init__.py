"""Notification services package."""

from loanbook.services.notifications.interface import (
    InvitationPayload,
    NotificationKind,
    NotificationPayload,
    NotificationResult,
    NotificationSink,
    PaymentSubmittedPayload,
)
from loanbook.services.notifications.dispatcher import (
    LoggingNotificationSink,
    NotificationDispatcher,
)

__all__ = [
    "InvitationPayload",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationKind",
    "NotificationPayload",
    "NotificationResult",
    "NotificationSink",
    "PaymentSubmittedPayload",
]

"""Services package."""

from loanbook.services.contacts import ContactBook
from loanbook.services.notifications import (
    InvitationPayload,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationKind,
    NotificationResult,
    NotificationSink,
    PaymentSubmittedPayload,
)
from loanbook.services.storage import (
    AuditStorageInterface,
    ContactStorageInterface,
    DuplicateError,
    InMemoryStorage,
    LoanStorageInterface,
    PaymentStorageInterface,
    SqlDatabase,
    SqlStorage,
    StorageConnectionError,
    StorageError,
    UserStorageInterface,
)

__all__ = [
    # Contacts
    "ContactBook",
    # Notifications
    "InvitationPayload",
    "LoggingNotificationSink",
    "NotificationDispatcher",
    "NotificationKind",
    "NotificationResult",
    "NotificationSink",
    "PaymentSubmittedPayload",
    # Storage services
    "AuditStorageInterface",
    "ContactStorageInterface",
    "DuplicateError",
    "InMemoryStorage",
    "LoanStorageInterface",
    "PaymentStorageInterface",
    "SqlDatabase",
    "SqlStorage",
    "StorageConnectionError",
    "StorageError",
    "UserStorageInterface",
]

"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Ships an in-memory backend and a SQLAlchemy backend; both honour the
same compare-and-swap contract.
"""

from loanbook.services.storage.interface import (
    AuditStorageInterface,
    ContactStorageInterface,
    DuplicateError,
    LoanStorageInterface,
    PaymentStorageInterface,
    StorageConnectionError,
    StorageError,
    UserStorageInterface,
)
from loanbook.services.storage.memory import InMemoryStorage
from loanbook.services.storage.sql import SqlDatabase, SqlStorage

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ContactStorageInterface",
    "LoanStorageInterface",
    "PaymentStorageInterface",
    "UserStorageInterface",
    # Exceptions
    "DuplicateError",
    "StorageConnectionError",
    "StorageError",
    # Implementations
    "InMemoryStorage",
    "SqlDatabase",
    "SqlStorage",
]

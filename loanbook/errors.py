"""
Error kinds for the lending core.

Every failure the core reports belongs to exactly one ErrorKind.
The boundary (LendingService) recovers all of them into an
OperationResult, so callers can tell an authorization failure from a
precondition failure even when a transport collapses them.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure categories surfaced to callers."""
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"


class LendingError(Exception):
    """Base exception for lending operations."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnauthenticatedError(LendingError):
    """No valid caller identity was supplied."""
    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(LendingError):
    """Caller lacks the required role for this loan or payment."""
    kind = ErrorKind.FORBIDDEN


class NotFoundError(LendingError):
    """Loan or payment id does not resolve."""
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")


class InvalidStateError(LendingError):
    """The entity is not in a state that allows the requested transition."""
    kind = ErrorKind.INVALID_STATE

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class LoanValidationError(LendingError):
    """Malformed or missing fields, non-positive amounts, overpayment."""
    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ConflictError(LendingError):
    """A uniqueness constraint was violated (e.g. invitation token)."""
    kind = ErrorKind.CONFLICT

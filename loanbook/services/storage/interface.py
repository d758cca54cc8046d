"""
Abstract Storage Interface

We define an abstract interface for storage operations. This allows us to:
1. Run on SQLite locally and a server database later
2. Use in-memory storage for testing
3. Keep lending logic decoupled from storage implementation

Every status transition is a compare-and-swap: the write only happens
if the row is still in one of the expected statuses, and the method
reports whether it happened. Two identical concurrent requests can
therefore never both succeed.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from loanbook.models.audit import AuditEvent
from loanbook.models.loan import (
    Contact,
    Loan,
    LoanStatus,
    Payment,
    PaymentStatus,
    UserProfile,
)


class LoanStorageInterface(ABC):
    """
    Abstract interface for loan storage operations.

    Any storage implementation (SQLite, PostgreSQL, in-memory)
    must implement these methods.
    """

    @abstractmethod
    async def save_loan(self, loan: Loan) -> bool:
        """
        Insert a new loan.

        Raises:
            DuplicateError: If the id or invitation token already exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Return the loan, or None if it does not exist."""
        pass

    @abstractmethod
    async def get_loan_by_token(self, invitation_token: str) -> Optional[Loan]:
        """Resolve an invitation token to its loan."""
        pass

    @abstractmethod
    async def list_loans_by_lender(self, lender_id: str) -> list[Loan]:
        """Loans created by this user, newest first."""
        pass

    @abstractmethod
    async def list_loans_by_borrower(self, borrower_id: str) -> list[Loan]:
        """Loans bound to this user as borrower, newest first."""
        pass

    @abstractmethod
    async def list_pending_loans_for_email(self, email: str) -> list[Loan]:
        """Pending invitations addressed to this email, newest first."""
        pass

    @abstractmethod
    async def accept_loan(self, loan_id: str, borrower_id: str, at: datetime) -> bool:
        """
        Move a PENDING loan to ACCEPTED and bind its borrower.

        Returns:
            True if the row was pending and is now accepted
        """
        pass

    @abstractmethod
    async def update_loan_status(
        self,
        loan_id: str,
        new_status: LoanStatus,
        from_statuses: Iterable[LoanStatus],
        at: datetime,
    ) -> bool:
        """
        Set the status if the current status is one of from_statuses.

        Returns:
            True if a row changed
        """
        pass

    @abstractmethod
    async def set_loan_evidence(self, loan_id: str, evidence: str, at: datetime) -> bool:
        """
        Store proof of return and force the loan to RETURNED.

        Applies whatever the current status is.

        Returns:
            True if the loan exists
        """
        pass

    @abstractmethod
    async def delete_loan(
        self,
        loan_id: str,
        from_statuses: Iterable[LoanStatus],
    ) -> bool:
        """
        Delete the loan and its payments if its status is one of from_statuses.

        Returns:
            True if the loan was deleted
        """
        pass


class PaymentStorageInterface(ABC):
    """
    Abstract interface for the payment ledger.

    Payments are append-only: they are created once, resolved once,
    and only disappear together with their loan.
    """

    @abstractmethod
    async def save_payment(self, payment: Payment) -> bool:
        """
        Insert a new payment.

        Raises:
            DuplicateError: If the payment id already exists
            StorageError: If the owning loan does not exist or the write fails
        """
        pass

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_payments(self, loan_id: str) -> list[Payment]:
        """Payments of one loan, newest first."""
        pass

    @abstractmethod
    async def count_payments(self, loan_id: str, status: PaymentStatus) -> int:
        pass

    @abstractmethod
    async def sum_payments(self, loan_id: str, status: PaymentStatus) -> Decimal:
        """Sum of amounts of the loan's payments in this status (0 if none)."""
        pass

    @abstractmethod
    async def confirm_payment(
        self,
        payment_id: str,
        confirmed_by: str,
        at: datetime,
    ) -> bool:
        """
        Move a PENDING payment to CONFIRMED.

        Returns:
            True if the payment was pending and is now confirmed
        """
        pass

    @abstractmethod
    async def reject_payment(
        self,
        payment_id: str,
        reason: str,
        rejected_by: Optional[str],
        at: datetime,
    ) -> bool:
        """
        Move a PENDING payment to REJECTED with a reason.

        Returns:
            True if the payment was pending and is now rejected
        """
        pass


class ContactStorageInterface(ABC):
    """Per-user contact books."""

    @abstractmethod
    async def get_contact(self, owner_id: str, email: str) -> Optional[Contact]:
        pass

    @abstractmethod
    async def save_contact(self, contact: Contact) -> bool:
        """
        Insert a contact.

        Raises:
            DuplicateError: If (owner_id, email) already exists
        """
        pass

    @abstractmethod
    async def list_contacts(self, owner_id: str) -> list[Contact]:
        """Contacts of one user ordered by name."""
        pass


class UserStorageInterface(ABC):
    """Registered users. Authentication lives elsewhere."""

    @abstractmethod
    async def save_user(self, user: UserProfile) -> bool:
        """
        Raises:
            DuplicateError: If the id or email is taken
        """
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Events for one entity in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Events sharing a correlation id in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """The most recent events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass

"""
In-Memory Storage Implementation

Implements every storage interface with plain dictionaries. Used in
tests and for single-process deployments that do not need durability.

None of the methods awaits between reading and writing a row, so each
compare-and-swap runs inside a single event-loop step and cannot
interleave with another coroutine.
"""

from datetime import datetime
from decimal import Decimal
from itertools import count
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
from loanbook.services.storage.interface import (
    AuditStorageInterface,
    ContactStorageInterface,
    DuplicateError,
    LoanStorageInterface,
    PaymentStorageInterface,
    StorageError,
    UserStorageInterface,
)


class InMemoryStorage(
    LoanStorageInterface,
    PaymentStorageInterface,
    ContactStorageInterface,
    UserStorageInterface,
    AuditStorageInterface,
):
    """
    Dictionary-backed storage for loans, payments, contacts, users and audit events.

    Models are copied on the way in and out so callers never hold a
    reference to stored state.
    """

    def __init__(self):
        self._loans: dict[str, Loan] = {}
        self._payments: dict[str, Payment] = {}
        self._contacts: dict[tuple[str, str], Contact] = {}
        self._users: dict[str, UserProfile] = {}
        self._events: list[AuditEvent] = []
        # Insertion order breaks ties between identical timestamps
        self._sequence = count()
        self._order: dict[str, int] = {}

    def _newest_first(self, items: Iterable) -> list:
        return sorted(
            items,
            key=lambda item: (item.created_at, self._order.get(item.id, 0)),
            reverse=True,
        )

    # ------------------------------------------------------------------ loans

    async def save_loan(self, loan: Loan) -> bool:
        if loan.id in self._loans:
            raise DuplicateError(f"Loan already exists: {loan.id}")
        if any(l.invitation_token == loan.invitation_token for l in self._loans.values()):
            raise DuplicateError(f"Invitation token already in use: {loan.invitation_token}")
        self._loans[loan.id] = loan.model_copy(deep=True)
        self._order[loan.id] = next(self._sequence)
        return True

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        loan = self._loans.get(loan_id)
        return loan.model_copy(deep=True) if loan else None

    async def get_loan_by_token(self, invitation_token: str) -> Optional[Loan]:
        for loan in self._loans.values():
            if loan.invitation_token == invitation_token:
                return loan.model_copy(deep=True)
        return None

    async def list_loans_by_lender(self, lender_id: str) -> list[Loan]:
        loans = [l.model_copy(deep=True) for l in self._loans.values() if l.lender_id == lender_id]
        return self._newest_first(loans)

    async def list_loans_by_borrower(self, borrower_id: str) -> list[Loan]:
        loans = [l.model_copy(deep=True) for l in self._loans.values() if l.borrower_id == borrower_id]
        return self._newest_first(loans)

    async def list_pending_loans_for_email(self, email: str) -> list[Loan]:
        email = email.strip().lower()
        loans = [
            l.model_copy(deep=True)
            for l in self._loans.values()
            if l.borrower_email == email and l.status == LoanStatus.PENDING
        ]
        return self._newest_first(loans)

    async def accept_loan(self, loan_id: str, borrower_id: str, at: datetime) -> bool:
        loan = self._loans.get(loan_id)
        if loan is None or loan.status != LoanStatus.PENDING:
            return False
        self._loans[loan_id] = loan.model_copy(update={
            "status": LoanStatus.ACCEPTED,
            "borrower_id": borrower_id,
            "updated_at": at,
        })
        return True

    async def update_loan_status(
        self,
        loan_id: str,
        new_status: LoanStatus,
        from_statuses: Iterable[LoanStatus],
        at: datetime,
    ) -> bool:
        loan = self._loans.get(loan_id)
        if loan is None or loan.status not in set(from_statuses):
            return False
        self._loans[loan_id] = loan.model_copy(update={"status": new_status, "updated_at": at})
        return True

    async def set_loan_evidence(self, loan_id: str, evidence: str, at: datetime) -> bool:
        loan = self._loans.get(loan_id)
        if loan is None:
            return False
        self._loans[loan_id] = loan.model_copy(update={
            "evidence": evidence,
            "status": LoanStatus.RETURNED,
            "updated_at": at,
        })
        return True

    async def delete_loan(self, loan_id: str, from_statuses: Iterable[LoanStatus]) -> bool:
        loan = self._loans.get(loan_id)
        if loan is None or loan.status not in set(from_statuses):
            return False
        del self._loans[loan_id]
        # Cascade
        for payment_id in [p.id for p in self._payments.values() if p.loan_id == loan_id]:
            del self._payments[payment_id]
        return True

    # --------------------------------------------------------------- payments

    async def save_payment(self, payment: Payment) -> bool:
        if payment.id in self._payments:
            raise DuplicateError(f"Payment already exists: {payment.id}")
        if payment.loan_id not in self._loans:
            raise StorageError(f"Payment references unknown loan: {payment.loan_id}")
        self._payments[payment.id] = payment.model_copy(deep=True)
        self._order[payment.id] = next(self._sequence)
        return True

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return payment.model_copy(deep=True) if payment else None

    async def list_payments(self, loan_id: str) -> list[Payment]:
        payments = [p.model_copy(deep=True) for p in self._payments.values() if p.loan_id == loan_id]
        return self._newest_first(payments)

    async def count_payments(self, loan_id: str, status: PaymentStatus) -> int:
        return sum(
            1 for p in self._payments.values()
            if p.loan_id == loan_id and p.status == status
        )

    async def sum_payments(self, loan_id: str, status: PaymentStatus) -> Decimal:
        return sum(
            (p.amount for p in self._payments.values() if p.loan_id == loan_id and p.status == status),
            Decimal("0"),
        )

    async def confirm_payment(self, payment_id: str, confirmed_by: str, at: datetime) -> bool:
        payment = self._payments.get(payment_id)
        if payment is None or payment.status != PaymentStatus.PENDING:
            return False
        self._payments[payment_id] = payment.model_copy(update={
            "status": PaymentStatus.CONFIRMED,
            "confirmed_by": confirmed_by,
            "confirmed_at": at,
        })
        return True

    async def reject_payment(
        self,
        payment_id: str,
        reason: str,
        rejected_by: Optional[str],
        at: datetime,
    ) -> bool:
        payment = self._payments.get(payment_id)
        if payment is None or payment.status != PaymentStatus.PENDING:
            return False
        self._payments[payment_id] = payment.model_copy(update={
            "status": PaymentStatus.REJECTED,
            "rejection_reason": reason,
            "confirmed_by": rejected_by,
            "confirmed_at": at,
        })
        return True

    # --------------------------------------------------------------- contacts

    async def get_contact(self, owner_id: str, email: str) -> Optional[Contact]:
        contact = self._contacts.get((owner_id, email.strip().lower()))
        return contact.model_copy(deep=True) if contact else None

    async def save_contact(self, contact: Contact) -> bool:
        key = (contact.owner_id, contact.email)
        if key in self._contacts:
            raise DuplicateError(f"Contact already exists: {contact.email}")
        self._contacts[key] = contact.model_copy(deep=True)
        return True

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        contacts = [c.model_copy(deep=True) for (owner, _), c in self._contacts.items() if owner == owner_id]
        return sorted(contacts, key=lambda c: c.name)

    # ------------------------------------------------------------------ users

    async def save_user(self, user: UserProfile) -> bool:
        if user.id in self._users:
            raise DuplicateError(f"User already exists: {user.id}")
        if any(u.email == user.email for u in self._users.values()):
            raise DuplicateError(f"Email already registered: {user.email}")
        self._users[user.id] = user.model_copy(deep=True)
        return True

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        email = email.strip().lower()
        for user in self._users.values():
            if user.email == email:
                return user.model_copy(deep=True)
        return None

    # ------------------------------------------------------------------ audit

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event.model_copy(deep=True))
        return True

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self._events))[:limit]

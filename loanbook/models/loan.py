"""
Core Data Models for Loanbook

These models define the strict schemas for loans, payments and the
people involved. They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

Loan is the aggregate root. Payments belong to exactly one loan and
are removed with it.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every storage backend round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


Amount = Annotated[Decimal, Field(gt=0, decimal_places=2)]


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class LoanStatus(str, Enum):
    """
    Loan lifecycle status.

    EDIT_PENDING is reserved for proposed amendments. No transition
    enters or leaves it.
    """
    PENDING = "pending"            # Invitation sent, awaiting borrower
    ACCEPTED = "accepted"          # Borrower bound, repayment window open
    REJECTED = "rejected"          # Borrower declined (terminal)
    RETURNED = "returned"          # Fully settled (terminal)
    EDIT_PENDING = "edit-pending"


# Only unactioned or declined loans may be removed by the lender
DELETABLE_LOAN_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.REJECTED})

# Statuses in which a loan must have a bound borrower
BOUND_LOAN_STATUSES = frozenset({
    LoanStatus.ACCEPTED,
    LoanStatus.RETURNED,
    LoanStatus.EDIT_PENDING,
})


class PaymentType(str, Enum):
    """Advisory classification chosen by the borrower."""
    PARTIAL = "partial"
    FULL = "full"


class PaymentStatus(str, Enum):
    """
    Per-payment status.

    A payment leaves PENDING exactly once, by lender action.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


# =============================================================================
# PEOPLE
# =============================================================================

class CallerIdentity(BaseModel):
    """
    Who is issuing a command.

    Supplied by the identity provider on every call. The core trusts it
    and only compares it against stored lender/borrower fields.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    caller_id: str
    caller_email: str
    display_name: Optional[str] = None

    @field_validator('caller_email')
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class UserProfile(BaseModel):
    """A registered user, as needed by the lending core."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=30)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('email')
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class Contact(BaseModel):
    """
    An entry in a user's contact book.

    Keyed by (owner_id, email). Loans only ever add contacts.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    owner_id: str
    email: str = Field(..., min_length=3, max_length=254)
    name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=30)
    notes: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('email')
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


# =============================================================================
# LOAN AGGREGATE
# =============================================================================

class Loan(BaseModel):
    """
    One lending agreement.

    Personal loans model money lent to oneself: they skip the invitation
    and start ACCEPTED with borrower_id == lender_id.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: str = Field(default_factory=new_id)
    invitation_token: str = Field(
        default_factory=new_id,
        description="Unguessable token resolving an invitation link to this loan"
    )

    # Parties
    lender_id: str = Field(..., min_length=1)
    borrower_email: str = Field(..., min_length=1, max_length=254)
    borrower_id: Optional[str] = None
    borrower_name: str = Field(..., min_length=1, max_length=200)

    # Terms
    amount: Amount
    description: str = Field(..., min_length=1, max_length=1000)

    status: LoanStatus = LoanStatus.PENDING
    evidence: Optional[str] = Field(
        default=None,
        description="Proof of return recorded through the single-evidence flow"
    )
    is_personal: bool = False

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('borrower_email')
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode='after')
    def validate_borrower_binding(self) -> 'Loan':
        """
        A borrower is bound once the loan is accepted, never before.

        A returned loan may stay unbound: recording return evidence
        closes a loan whatever its status, including pending.
        """
        if self.is_personal:
            if self.borrower_id != self.lender_id:
                raise ValueError("Personal loans must have borrower_id equal to lender_id")
        elif self.status in BOUND_LOAN_STATUSES:
            if self.borrower_id is None and self.status != LoanStatus.RETURNED:
                raise ValueError(f"A {self.status.value} loan must have a bound borrower")
        elif self.borrower_id is not None:
            raise ValueError(f"A {self.status.value} loan cannot have a bound borrower")
        return self

    @property
    def is_deletable(self) -> bool:
        return self.status in DELETABLE_LOAN_STATUSES

    def is_invited(self, email: str) -> bool:
        """Case-insensitive match against the invitation target."""
        return self.borrower_email == email.strip().lower()


class Payment(BaseModel):
    """
    One repayment attempt against a loan.

    evidence_url points at an externally stored proof image. The core
    never fetches or validates what it points to.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    loan_id: str

    amount: Amount
    payment_type: PaymentType
    evidence_url: str = Field(..., min_length=1, max_length=2048)

    status: PaymentStatus = PaymentStatus.PENDING
    notes: Optional[str] = Field(default=None, max_length=1000)
    rejection_reason: Optional[str] = Field(default=None, max_length=1000)

    created_by: str
    confirmed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None

    @model_validator(mode='after')
    def validate_resolution(self) -> 'Payment':
        """Rejected payments carry a reason; resolved payments carry a timestamp."""
        if self.status == PaymentStatus.REJECTED and not self.rejection_reason:
            raise ValueError("Rejected payments require a rejection reason")
        if self.status != PaymentStatus.PENDING and self.confirmed_at is None:
            raise ValueError("Resolved payments require confirmed_at")
        return self


class LoanBalance(BaseModel):
    """
    Outstanding balance derived from a loan and its payments.

    Never persisted. Pending payments are informational and do not
    reduce the balance.
    """
    model_config = ConfigDict(frozen=True)

    total: Decimal = Decimal("0")
    paid: Decimal = Decimal("0")
    pending: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")

    @property
    def is_settled(self) -> bool:
        """True when confirmed payments cover the principal."""
        return self.balance == 0 and self.paid >= self.total


# =============================================================================
# EVENTS
# =============================================================================

class PaymentConfirmed(BaseModel):
    """
    Published by the payment ledger after a payment is confirmed.

    The loan state machine consumes it to decide on auto-return.
    """
    model_config = ConfigDict(frozen=True)

    loan_id: str
    payment_id: str
    amount: Decimal
    confirmed_by: str
    confirmed_at: datetime
    auto_confirmed: bool = False


# =============================================================================
# READ MODELS
# =============================================================================

class LoanSummary(Loan):
    """A lender's view of a loan, with how many payments await review."""

    pending_payments_count: int = Field(default=0, ge=0)


class LoanOverview(BaseModel):
    """Everything a user sees on their loans dashboard."""

    as_lender: list[LoanSummary] = Field(default_factory=list)
    as_borrower: list[Loan] = Field(default_factory=list)
    pending_invitations: list[Loan] = Field(default_factory=list)


class PaymentHistory(BaseModel):
    """Payments of one loan (newest first) with the current balance."""

    loan_id: str
    payments: list[Payment] = Field(default_factory=list)
    balance: LoanBalance

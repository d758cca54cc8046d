"""
Typed commands and results for the lending boundary.

Request bodies are validated here, before they reach the core.
A command that fails validation never touches storage.
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from loanbook.errors import ErrorKind
from loanbook.models.loan import Amount, PaymentType


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CreateLoanCommand(BaseModel):
    """
    Lender creates a loan.

    Borrower email and name are required unless the loan is personal.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    borrower_email: Optional[str] = Field(default=None, max_length=254)
    borrower_name: Optional[str] = Field(default=None, max_length=200)
    amount: Amount
    description: str = Field(..., min_length=1, max_length=1000)
    is_personal: bool = False

    @field_validator('borrower_email')
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        if not EMAIL_PATTERN.match(v):
            raise ValueError(f"Invalid borrower email: {v}")
        return v.lower()

    @model_validator(mode='after')
    def require_borrower_unless_personal(self) -> 'CreateLoanCommand':
        if not self.is_personal and (not self.borrower_email or not self.borrower_name):
            raise ValueError("Borrower email and name are required for non-personal loans")
        return self


class LoanCommand(BaseModel):
    """Any transition that only needs the target loan (accept, reject, return, delete)."""
    model_config = ConfigDict(str_strip_whitespace=True)

    loan_id: str = Field(..., min_length=1)


class RecordEvidenceCommand(LoanCommand):
    """Lender records proof of return and closes the loan."""

    evidence: str = Field(..., min_length=1, max_length=2048)


class SubmitPaymentCommand(LoanCommand):
    """Borrower reports a repayment with proof."""

    amount: Amount
    payment_type: PaymentType
    evidence_url: str = Field(..., min_length=1, max_length=2048)
    notes: Optional[str] = Field(default=None, max_length=1000)


class PaymentCommand(LoanCommand):
    """Lender acts on one payment of one loan."""

    payment_id: str = Field(..., min_length=1)


class RejectPaymentCommand(PaymentCommand):
    reason: str = Field(..., min_length=1, max_length=1000)


class OperationResult(BaseModel):
    """
    Structured outcome returned by every boundary operation.

    success=True, applied=False means the command was valid but the
    target had already moved on (e.g. a loan accepted twice).
    """

    success: bool
    applied: bool = False
    data: Optional[Any] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, applied: bool = True) -> 'OperationResult':
        return cls(success=True, applied=applied, data=data)

    @classmethod
    def not_applied(cls, message: str) -> 'OperationResult':
        return cls(success=True, applied=False, error_message=message)

    @classmethod
    def failure(cls, kind: Optional[ErrorKind], message: str) -> 'OperationResult':
        return cls(success=False, applied=False, error_kind=kind, error_message=message)

"""
Field rules for lending operations.

Commands arriving through LendingService are already validated by
their pydantic models. The core repeats the checks that protect its
invariants, so that direct callers cannot bypass them.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from loanbook.errors import LoanValidationError
from loanbook.models.commands import EMAIL_PATTERN
from loanbook.models.loan import PaymentType


def require_amount(
    value: Union[Decimal, int, float, str],
    field: str = "amount",
    ceiling: Optional[Decimal] = None,
) -> Decimal:
    """A positive amount with at most two decimal places."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise LoanValidationError(f"Invalid {field}: {value!r}", field=field)

    if not amount.is_finite() or amount <= 0:
        raise LoanValidationError(f"{field.capitalize()} must be greater than zero", field=field)
    if amount.normalize().as_tuple().exponent < -2:
        raise LoanValidationError(f"{field.capitalize()} has more than two decimal places", field=field)
    if ceiling is not None and amount > ceiling:
        raise LoanValidationError(
            f"{field.capitalize()} ({amount}) exceeds the maximum of {ceiling}",
            field=field,
        )
    return amount


def require_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise LoanValidationError(f"{field.replace('_', ' ').capitalize()} is required", field=field)
    return text


def require_email(value: Optional[str], field: str = "borrower_email") -> str:
    email = require_text(value, field).lower()
    if not EMAIL_PATTERN.match(email):
        raise LoanValidationError(f"Invalid email: {email}", field=field)
    return email


def require_payment_type(value: Union[PaymentType, str]) -> PaymentType:
    try:
        return PaymentType(value)
    except ValueError:
        raise LoanValidationError(f"Invalid payment type: {value!r}", field="payment_type")

"""
Balance Calculator

The balance of a loan is derived, never stored:

    total   = principal (0 if the loan does not exist)
    paid    = sum of CONFIRMED payments
    pending = sum of PENDING payments (informational only)
    balance = max(0, total - paid)

Rejected payments count for nothing.
"""

from decimal import Decimal
from typing import Iterable

from loanbook.models.loan import LoanBalance, Payment, PaymentStatus
from loanbook.services.storage import LoanStorageInterface, PaymentStorageInterface


ZERO = Decimal("0")


def balance_from_sums(total: Decimal, paid: Decimal, pending: Decimal) -> LoanBalance:
    remaining = total - paid
    return LoanBalance(
        total=total,
        paid=paid,
        pending=pending,
        balance=remaining if remaining > 0 else ZERO,
    )


def compute_balance(total: Decimal, payments: Iterable[Payment]) -> LoanBalance:
    """Derive the balance from an already loaded list of payments."""
    paid = ZERO
    pending = ZERO
    for payment in payments:
        if payment.status == PaymentStatus.CONFIRMED:
            paid += payment.amount
        elif payment.status == PaymentStatus.PENDING:
            pending += payment.amount
    return balance_from_sums(total, paid, pending)


class BalanceCalculator:
    """Computes LoanBalance from storage."""

    def __init__(
        self,
        loans: LoanStorageInterface,
        payments: PaymentStorageInterface,
    ):
        self._loans = loans
        self._payments = payments

    async def get_loan_balance(self, loan_id: str) -> LoanBalance:
        loan = await self._loans.get_loan(loan_id)
        if loan is None:
            return LoanBalance()

        paid = await self._payments.sum_payments(loan_id, PaymentStatus.CONFIRMED)
        pending = await self._payments.sum_payments(loan_id, PaymentStatus.PENDING)
        return balance_from_sums(loan.amount, paid, pending)

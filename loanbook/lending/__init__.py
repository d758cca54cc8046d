"""
Lending core: loan lifecycle, payment reconciliation and balances.

Every operation takes the caller identity as an explicit argument.
"""

from loanbook.lending.balance import BalanceCalculator, compute_balance
from loanbook.lending.ledger import PaymentLedger
from loanbook.lending.locks import LoanLocks
from loanbook.lending.state_machine import LoanStateMachine

__all__ = [
    "BalanceCalculator",
    "LoanLocks",
    "LoanStateMachine",
    "PaymentLedger",
    "compute_balance",
]

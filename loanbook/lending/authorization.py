"""
Caller identity checks shared by the state machine and the ledger.

Identity is always an explicit argument. Nothing here reads session
or other ambient state.
"""

from typing import Optional

from loanbook.errors import ForbiddenError, UnauthenticatedError
from loanbook.models.loan import CallerIdentity, Loan, LoanStatus


def require_identity(identity: Optional[CallerIdentity]) -> CallerIdentity:
    if identity is None or not identity.caller_id or not identity.caller_email:
        raise UnauthenticatedError("A caller identity is required")
    return identity


def require_lender(loan: Loan, identity: CallerIdentity, action: str) -> None:
    if loan.lender_id != identity.caller_id:
        raise ForbiddenError(f"Only the lender can {action}")


def require_bound_borrower(loan: Loan, identity: CallerIdentity, action: str) -> None:
    if loan.borrower_id is None or loan.borrower_id != identity.caller_id:
        raise ForbiddenError(f"Only the borrower can {action}")


def require_invited_borrower(loan: Loan, identity: CallerIdentity, action: str) -> None:
    if not loan.is_invited(identity.caller_email):
        raise ForbiddenError(f"Only the invited borrower can {action}")


def can_view(loan: Loan, identity: CallerIdentity) -> bool:
    """Lender, bound borrower, or the invitee of a still-pending loan."""
    if identity.caller_id in (loan.lender_id, loan.borrower_id):
        return True
    return loan.status == LoanStatus.PENDING and loan.is_invited(identity.caller_email)

"""
Data Models Package

This package contains all Pydantic models used by Loanbook.
All data flowing through the system must conform to these schemas.
"""

from loanbook.models.loan import (
    BOUND_LOAN_STATUSES,
    DELETABLE_LOAN_STATUSES,
    CallerIdentity,
    Contact,
    Loan,
    LoanBalance,
    LoanOverview,
    LoanStatus,
    LoanSummary,
    Payment,
    PaymentConfirmed,
    PaymentHistory,
    PaymentStatus,
    PaymentType,
    UserProfile,
    utcnow,
)
from loanbook.models.commands import (
    CreateLoanCommand,
    LoanCommand,
    OperationResult,
    PaymentCommand,
    RecordEvidenceCommand,
    RejectPaymentCommand,
    SubmitPaymentCommand,
)
from loanbook.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Loan models
    "BOUND_LOAN_STATUSES",
    "DELETABLE_LOAN_STATUSES",
    "CallerIdentity",
    "Contact",
    "Loan",
    "LoanBalance",
    "LoanOverview",
    "LoanStatus",
    "LoanSummary",
    "Payment",
    "PaymentConfirmed",
    "PaymentHistory",
    "PaymentStatus",
    "PaymentType",
    "UserProfile",
    "utcnow",
    # Commands
    "CreateLoanCommand",
    "LoanCommand",
    "OperationResult",
    "PaymentCommand",
    "RecordEvidenceCommand",
    "RejectPaymentCommand",
    "SubmitPaymentCommand",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

"""
Audit Models for Loanbook

Every state-affecting action on a loan or payment is logged for audit
purposes. This provides:
1. Complete traceability of who moved a loan and when
2. Debugging information when a side effect fails
3. A history both parties can inspect

Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from loanbook.models.loan import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every transition of the loan state machine and the payment ledger
    has its own event type.
    """
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_ACCEPTED = "loan_accepted"
    LOAN_REJECTED = "loan_rejected"
    LOAN_RETURNED = "loan_returned"
    LOAN_AUTO_RETURNED = "loan_auto_returned"
    LOAN_EVIDENCE_RECORDED = "loan_evidence_recorded"
    LOAN_DELETED = "loan_deleted"

    # Payment ledger
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_REJECTED = "payment_rejected"

    # Compare-and-swap lost, nothing changed
    TRANSITION_NOT_APPLIED = "transition_not_applied"

    # Side effects
    NOTIFICATION_FAILED = "notification_failed"
    CONTACT_SYNC_FAILED = "contact_sync_failed"
    SETTLEMENT_CHECK_FAILED = "settlement_check_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'loan', 'payment')"
    )
    entity_id: Optional[str] = None
    actor_id: Optional[str] = Field(
        default=None,
        description="User who triggered the event, if any"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def details_json(self) -> str:
        """Details serialized for a text column (Decimals become strings)."""
        return json.dumps(self.details, default=str) if self.details else ""


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.loan_created(loan_id, lender_id, amount, False)
        event = AuditEventBuilder.payment_confirmed(payment_id, loan_id, lender_id, amount)
    """

    @staticmethod
    def loan_created(
        loan_id: str,
        lender_id: str,
        amount: str,
        is_personal: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        kind = "Personal loan" if is_personal else "Loan invitation"
        return AuditEvent(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan_id,
            actor_id=lender_id,
            correlation_id=correlation_id,
            description=f"{kind} created for {amount}",
            details={"amount": amount, "is_personal": is_personal},
        )

    @staticmethod
    def loan_transition(
        event_type: AuditEventType,
        loan_id: str,
        actor_id: Optional[str],
        from_status: str,
        to_status: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description=f"Loan moved from {from_status} to {to_status}",
            details={"from_status": from_status, "to_status": to_status},
        )

    @staticmethod
    def loan_deleted(
        loan_id: str,
        lender_id: str,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LOAN_DELETED,
            entity_type="loan",
            entity_id=loan_id,
            actor_id=lender_id,
            correlation_id=correlation_id,
            description=f"Loan deleted while {status}",
            details={"status": status},
        )

    @staticmethod
    def payment_submitted(
        payment_id: str,
        loan_id: str,
        borrower_id: str,
        amount: str,
        auto_confirmed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_SUBMITTED,
            entity_type="payment",
            entity_id=payment_id,
            actor_id=borrower_id,
            correlation_id=correlation_id,
            description=f"Payment of {amount} submitted",
            details={
                "loan_id": loan_id,
                "amount": amount,
                "auto_confirmed": auto_confirmed,
            },
        )

    @staticmethod
    def payment_confirmed(
        payment_id: str,
        loan_id: str,
        lender_id: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_CONFIRMED,
            entity_type="payment",
            entity_id=payment_id,
            actor_id=lender_id,
            correlation_id=correlation_id,
            description=f"Payment of {amount} confirmed",
            details={"loan_id": loan_id, "amount": amount},
        )

    @staticmethod
    def payment_rejected(
        payment_id: str,
        loan_id: str,
        lender_id: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_REJECTED,
            entity_type="payment",
            entity_id=payment_id,
            actor_id=lender_id,
            correlation_id=correlation_id,
            description="Payment rejected by lender",
            details={"loan_id": loan_id, "reason": reason},
        )

    @staticmethod
    def transition_not_applied(
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str],
        action: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSITION_NOT_APPLIED,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            description=f"{action} not applied: {entity_type} was already handled",
            details={"action": action},
        )

    @staticmethod
    def side_effect_failed(
        event_type: AuditEventType,
        entity_id: str,
        target: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            severity=AuditSeverity.WARNING,
            entity_type="loan",
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Side effect failed: {target}",
            error_message=error_message,
            details={"target": target},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

"""
Audit Logger

Every loan and payment transition leaves an audit event, so lender
and borrower can both reconstruct what happened to a loan and who
did it.

Writing the trail is best effort: a failed audit write is reported in
the local log and never fails the transition that produced it. Events
of one command share a correlation id.
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from loanbook.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from loanbook.services.storage import AuditStorageInterface


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging with JSON output."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Writes audit events to the structured log and, when configured,
    to audit storage.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        self._storage = storage
        self._logger = structlog.get_logger("loanbook.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Record one event.

        Returns:
            False only when the storage append failed
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage is not None:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_loan_created(
        self,
        loan_id: str,
        lender_id: str,
        amount: str,
        is_personal: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.loan_created(
            loan_id=loan_id,
            lender_id=lender_id,
            amount=amount,
            is_personal=is_personal,
            correlation_id=correlation_id,
        ))

    async def log_loan_transition(
        self,
        event_type: AuditEventType,
        loan_id: str,
        actor_id: Optional[str],
        from_status: str,
        to_status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.loan_transition(
            event_type=event_type,
            loan_id=loan_id,
            actor_id=actor_id,
            from_status=from_status,
            to_status=to_status,
            correlation_id=correlation_id,
        ))

    async def log_loan_deleted(
        self,
        loan_id: str,
        lender_id: str,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.loan_deleted(
            loan_id=loan_id,
            lender_id=lender_id,
            status=status,
            correlation_id=correlation_id,
        ))

    async def log_payment_submitted(
        self,
        payment_id: str,
        loan_id: str,
        borrower_id: str,
        amount: str,
        auto_confirmed: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.payment_submitted(
            payment_id=payment_id,
            loan_id=loan_id,
            borrower_id=borrower_id,
            amount=amount,
            auto_confirmed=auto_confirmed,
            correlation_id=correlation_id,
        ))

    async def log_payment_confirmed(
        self,
        payment_id: str,
        loan_id: str,
        lender_id: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.payment_confirmed(
            payment_id=payment_id,
            loan_id=loan_id,
            lender_id=lender_id,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_payment_rejected(
        self,
        payment_id: str,
        loan_id: str,
        lender_id: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.payment_rejected(
            payment_id=payment_id,
            loan_id=loan_id,
            lender_id=lender_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_not_applied(
        self,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str],
        action: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a compare-and-swap that found the row already handled."""
        await self.log(AuditEventBuilder.transition_not_applied(
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            action=action,
            correlation_id=correlation_id,
        ))

    async def log_side_effect_failed(
        self,
        event_type: AuditEventType,
        loan_id: str,
        target: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.side_effect_failed(
            event_type=event_type,
            entity_id=loan_id,
            target=target,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """One id per boundary command, passed to every event it causes."""
    return uuid4()

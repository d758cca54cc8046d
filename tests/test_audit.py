"""Tests for the audit logger."""

import logging

from loanbook.audit import AuditLogger, configure_logging, create_correlation_id
from loanbook.models.audit import AuditEvent, AuditEventType, AuditSeverity
from loanbook.services.storage import InMemoryStorage


class BrokenAuditStorage(InMemoryStorage):
    async def append_event(self, event):
        raise ConnectionError("audit table locked")


class TestAuditLogger:

    async def test_logs_locally_without_storage(self):
        logger = AuditLogger()
        assert await logger.log(AuditEvent(
            event_type=AuditEventType.LOAN_CREATED,
            description="Loan created",
        ))

    async def test_persists_to_storage(self, storage):
        logger = AuditLogger(storage)
        correlation_id = create_correlation_id()
        await logger.log_loan_created("l1", "u1", "100.00", False, correlation_id=correlation_id)
        await logger.log_loan_transition(
            AuditEventType.LOAN_ACCEPTED, "l1", "u2", "pending", "accepted",
            correlation_id=correlation_id,
        )

        events = await storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED,
            AuditEventType.LOAN_ACCEPTED,
        ]
        assert events[0].details == {"amount": "100.00", "is_personal": False}

    async def test_storage_failure_never_raises(self):
        """Test that a failing audit backend is reported, not propagated."""
        logger = AuditLogger(BrokenAuditStorage())
        assert await logger.log(AuditEvent(
            event_type=AuditEventType.PAYMENT_SUBMITTED,
            description="Payment submitted",
        )) is False

    async def test_error_events(self, storage):
        logger = AuditLogger(storage)
        await logger.log_error("RuntimeError", "boom", details={"operation": "get loan"})

        event = (await storage.get_recent_events(limit=1))[0]
        assert event.event_type == AuditEventType.SYSTEM_ERROR
        assert event.severity == AuditSeverity.ERROR
        assert event.details == {"operation": "get loan"}

    async def test_not_applied_event(self, storage):
        logger = AuditLogger(storage)
        await logger.log_not_applied("payment", "p1", "u1", "confirm payment")

        events = await storage.get_events_by_entity("payment", "p1")
        assert events[0].event_type == AuditEventType.TRANSITION_NOT_APPLIED
        assert events[0].details == {"action": "confirm payment"}

    def test_correlation_ids_are_unique(self):
        assert create_correlation_id() != create_correlation_id()


class TestConfigureLogging:

    def test_sets_root_level(self):
        configure_logging("debug")
        assert logging.getLogger().level == logging.DEBUG
        configure_logging("INFO")
        assert logging.getLogger().level == logging.INFO

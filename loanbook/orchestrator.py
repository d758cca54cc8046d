"""
Main Orchestrator for Loanbook

This module ties together all the components and defines the
boundary every caller goes through:
1. Command  → validated pydantic model (dicts are parsed here)
2. Core     → state machine / ledger (authorization, state, CAS write)
3. Result   → OperationResult, never an exception

DESIGN DECISION: The boundary enforces:
- No malformed command reaches the core
- Every failure is reported with its ErrorKind
- Unexpected errors are audited and answered, never re-raised

Wiring matters: the state machine and the ledger share one lock
registry and one balance calculator, and the state machine subscribes
to the ledger's PaymentConfirmed events.
"""

from typing import Any, Awaitable, Callable, Optional, Type, TypeVar, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, ValidationError

from loanbook.audit import AuditLogger, configure_logging, create_correlation_id
from loanbook.config import get_settings
from loanbook.errors import LendingError, LoanValidationError
from loanbook.lending import BalanceCalculator, LoanLocks, LoanStateMachine, PaymentLedger
from loanbook.lending.authorization import require_identity
from loanbook.models.commands import (
    CreateLoanCommand,
    LoanCommand,
    OperationResult,
    PaymentCommand,
    RecordEvidenceCommand,
    RejectPaymentCommand,
    SubmitPaymentCommand,
)
from loanbook.models.loan import CallerIdentity
from loanbook.services.contacts import ContactBook
from loanbook.services.notifications import NotificationDispatcher, NotificationSink
from loanbook.services.storage import InMemoryStorage, SqlDatabase, SqlStorage


CommandT = TypeVar("CommandT", bound=BaseModel)


def _parse(model: Type[CommandT], command: Union[CommandT, dict]) -> CommandT:
    """Validate a raw request body into its command model."""
    if isinstance(command, model):
        return command
    try:
        return model.model_validate(command)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise LoanValidationError(first.get("msg", str(e)), field=field)


class LendingService:
    """
    Entry point for every lending operation.

    Each method takes the caller identity and a command (model or dict)
    and returns an OperationResult:

        success=True,  applied=True   the change happened
        success=True,  applied=False  already handled, nothing changed
        success=False                 error_kind says why
    """

    def __init__(
        self,
        state_machine: LoanStateMachine,
        ledger: PaymentLedger,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._state_machine = state_machine
        self._ledger = ledger
        self._audit = audit_logger if audit_logger is not None else AuditLogger()
        self._logger = structlog.get_logger("loanbook.service")

    async def _execute(
        self,
        operation: str,
        call: Callable[[UUID], Awaitable[OperationResult]],
        identity: Optional[CallerIdentity] = None,
        anonymous: bool = False,
    ) -> OperationResult:
        correlation_id = create_correlation_id()
        try:
            # Unauthenticated callers are turned away before their command is read
            if not anonymous:
                require_identity(identity)
            return await call(correlation_id)
        except LendingError as e:
            self._logger.info(
                "operation_failed",
                operation=operation,
                kind=e.kind.value,
                error=e.message,
                correlation_id=str(correlation_id),
            )
            return OperationResult.failure(e.kind, e.message)
        except Exception as e:
            await self._audit.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"operation": operation},
                correlation_id=correlation_id,
            )
            return OperationResult.failure(None, f"Unexpected error during {operation}")

    @staticmethod
    def _transition(applied: bool, data: Any = None) -> OperationResult:
        if applied:
            return OperationResult.ok(data)
        return OperationResult.not_applied("Already handled, nothing changed")

    # ------------------------------------------------------------------ loans

    async def create_loan(
        self,
        identity: Optional[CallerIdentity],
        command: Union[CreateLoanCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(CreateLoanCommand, command)
            loan = await self._state_machine.create_loan(
                identity,
                amount=cmd.amount,
                description=cmd.description,
                borrower_email=cmd.borrower_email,
                borrower_name=cmd.borrower_name,
                is_personal=cmd.is_personal,
                correlation_id=correlation_id,
            )
            return OperationResult.ok(loan)

        return await self._execute("create loan", call, identity)

    async def accept_loan(
        self,
        identity: Optional[CallerIdentity],
        command: Union[LoanCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(LoanCommand, command)
            applied = await self._state_machine.accept_loan(identity, cmd.loan_id, correlation_id)
            return self._transition(applied)

        return await self._execute("accept loan", call, identity)

    async def reject_loan(
        self,
        identity: Optional[CallerIdentity],
        command: Union[LoanCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(LoanCommand, command)
            applied = await self._state_machine.reject_loan(identity, cmd.loan_id, correlation_id)
            return self._transition(applied)

        return await self._execute("reject loan", call, identity)

    async def mark_returned(
        self,
        identity: Optional[CallerIdentity],
        command: Union[LoanCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(LoanCommand, command)
            applied = await self._state_machine.mark_returned(identity, cmd.loan_id, correlation_id)
            return self._transition(applied)

        return await self._execute("mark returned", call, identity)

    async def record_return_evidence(
        self,
        identity: Optional[CallerIdentity],
        command: Union[RecordEvidenceCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(RecordEvidenceCommand, command)
            loan = await self._state_machine.record_return_evidence(
                identity, cmd.loan_id, cmd.evidence, correlation_id,
            )
            return OperationResult.ok(loan)

        return await self._execute("record return evidence", call, identity)

    async def delete_loan(
        self,
        identity: Optional[CallerIdentity],
        command: Union[LoanCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(LoanCommand, command)
            applied = await self._state_machine.delete_loan(identity, cmd.loan_id, correlation_id)
            return self._transition(applied)

        return await self._execute("delete loan", call, identity)

    # --------------------------------------------------------------- payments

    async def submit_payment(
        self,
        identity: Optional[CallerIdentity],
        command: Union[SubmitPaymentCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(SubmitPaymentCommand, command)
            payment = await self._ledger.submit_payment(
                identity,
                cmd.loan_id,
                amount=cmd.amount,
                payment_type=cmd.payment_type,
                evidence_url=cmd.evidence_url,
                notes=cmd.notes,
                correlation_id=correlation_id,
            )
            return OperationResult.ok(payment)

        return await self._execute("submit payment", call, identity)

    async def confirm_payment(
        self,
        identity: Optional[CallerIdentity],
        command: Union[PaymentCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(PaymentCommand, command)
            applied = await self._ledger.confirm_loan_payment(
                identity, cmd.loan_id, cmd.payment_id, correlation_id,
            )
            return self._transition(applied)

        return await self._execute("confirm payment", call, identity)

    async def reject_payment(
        self,
        identity: Optional[CallerIdentity],
        command: Union[RejectPaymentCommand, dict],
    ) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            cmd = _parse(RejectPaymentCommand, command)
            applied = await self._ledger.reject_loan_payment(
                identity, cmd.loan_id, cmd.payment_id, cmd.reason, correlation_id,
            )
            return self._transition(applied)

        return await self._execute("reject payment", call, identity)

    # ------------------------------------------------------------------ reads

    async def get_loan(self, identity: Optional[CallerIdentity], loan_id: str) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            return OperationResult.ok(await self._state_machine.get_loan(identity, loan_id))

        return await self._execute("get loan", call, identity)

    async def get_loan_by_invitation(self, invitation_token: str) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            return OperationResult.ok(await self._state_machine.get_loan_by_invitation(invitation_token))

        return await self._execute("get invitation", call, anonymous=True)

    async def list_loans(self, identity: Optional[CallerIdentity]) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            return OperationResult.ok(await self._state_machine.list_loans(identity))

        return await self._execute("list loans", call, identity)

    async def list_payments(self, identity: Optional[CallerIdentity], loan_id: str) -> OperationResult:
        async def call(correlation_id: UUID) -> OperationResult:
            return OperationResult.ok(await self._ledger.list_payments(identity, loan_id))

        return await self._execute("list payments", call, identity)


def create_app_components(
    storage: Optional[Union[InMemoryStorage, SqlStorage]] = None,
    notification_sink: Optional[NotificationSink] = None,
    use_database: bool = False,
    database_url: Optional[str] = None,
) -> tuple[LendingService, Union[InMemoryStorage, SqlStorage]]:
    """
    Factory function to create all application components.

    Args:
        storage: Backend to use. Overrides use_database.
        notification_sink: Delivery provider. Defaults to the logging sink.
        use_database: Open the SQL database from settings (or database_url).
                    Set to False for an in-memory, single-process setup.
        database_url: SQLAlchemy URL overriding LOANBOOK_DB_URL.

    Returns:
        (lending_service, storage)

    Raises:
        StorageConnectionError: The database could not be opened
    """
    configure_logging(get_settings().app.effective_log_level)

    if storage is None:
        if use_database:
            database = SqlDatabase(url=database_url)
            database.connect()
            storage = SqlStorage(database)
        else:
            storage = InMemoryStorage()

    audit_logger = AuditLogger(storage)
    notifications = NotificationDispatcher(notification_sink)
    locks = LoanLocks()
    balances = BalanceCalculator(storage, storage)

    state_machine = LoanStateMachine(
        loans=storage,
        payments=storage,
        users=storage,
        contacts=ContactBook(storage),
        balances=balances,
        locks=locks,
        notifications=notifications,
        audit_logger=audit_logger,
    )
    ledger = PaymentLedger(
        loans=storage,
        payments=storage,
        users=storage,
        balances=balances,
        locks=locks,
        notifications=notifications,
        audit_logger=audit_logger,
    )
    ledger.subscribe(state_machine.handle_payment_confirmed)

    return LendingService(state_machine, ledger, audit_logger), storage

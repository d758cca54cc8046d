"""
Payment Ledger

Append-only record of repayment attempts. Each payment is reported by
the borrower with proof, then confirmed or rejected by the lender
exactly once.

The ledger knows nothing about loan settlement. After a confirmation
it publishes a PaymentConfirmed event; the loan state machine
subscribes to it and decides whether the loan is now returned.
"""

from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union
from uuid import UUID

from loanbook.audit import AuditLogger
from loanbook.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    LoanValidationError,
    NotFoundError,
)
from loanbook.lending.authorization import (
    require_bound_borrower,
    require_identity,
    require_lender,
)
from loanbook.lending.balance import BalanceCalculator
from loanbook.lending.locks import LoanLocks
from loanbook.lending.validation import require_amount, require_payment_type, require_text
from loanbook.models.audit import AuditEventType
from loanbook.models.loan import (
    CallerIdentity,
    Loan,
    LoanStatus,
    Payment,
    PaymentConfirmed,
    PaymentHistory,
    PaymentStatus,
    PaymentType,
    utcnow,
)
from loanbook.services.notifications import (
    NotificationDispatcher,
    NotificationKind,
    PaymentSubmittedPayload,
)
from loanbook.services.storage import (
    DuplicateError,
    LoanStorageInterface,
    PaymentStorageInterface,
    UserStorageInterface,
)


PaymentConfirmedHandler = Callable[[PaymentConfirmed], Awaitable[object]]


class PaymentLedger:
    """
    Records payments and their lender-adjudicated outcome.

    Lifecycle of a payment:
        pending → confirmed   (lender confirms; publishes PaymentConfirmed)
        pending → rejected    (lender rejects with a reason)

    Payments on personal loans are born confirmed.
    """

    def __init__(
        self,
        loans: LoanStorageInterface,
        payments: PaymentStorageInterface,
        users: UserStorageInterface,
        balances: Optional[BalanceCalculator] = None,
        locks: Optional[LoanLocks] = None,
        notifications: Optional[NotificationDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._loans = loans
        self._payments = payments
        self._users = users
        self._balances = balances if balances is not None else BalanceCalculator(loans, payments)
        self._locks = locks if locks is not None else LoanLocks()
        self._notifications = notifications if notifications is not None else NotificationDispatcher()
        self._audit = audit_logger if audit_logger is not None else AuditLogger()
        self._subscribers: list[PaymentConfirmedHandler] = []

    def subscribe(self, handler: PaymentConfirmedHandler) -> None:
        """Register a coroutine called with every PaymentConfirmed event."""
        self._subscribers.append(handler)

    async def _publish(
        self,
        event: PaymentConfirmed,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Deliver an event to every subscriber.

        The payment is already confirmed when this runs, so a failing
        subscriber is audited and the remaining ones still run.
        """
        for handler in self._subscribers:
            try:
                await handler(event)
            except Exception as e:
                await self._audit.log_side_effect_failed(
                    event_type=AuditEventType.SETTLEMENT_CHECK_FAILED,
                    loan_id=event.loan_id,
                    target=f"payment {event.payment_id} confirmed",
                    error_message=str(e),
                    correlation_id=correlation_id,
                )

    async def _load_loan(self, loan_id: str) -> Loan:
        loan = await self._loans.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    async def _load_payment_of(self, loan: Loan, payment_id: str) -> Payment:
        payment = await self._payments.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        if payment.loan_id != loan.id:
            raise LoanValidationError("Payment does not belong to this loan", field="payment_id")
        return payment

    # ----------------------------------------------------------- submission

    async def submit_payment(
        self,
        identity: CallerIdentity,
        loan_id: str,
        amount: Union[Decimal, int, str],
        payment_type: Union[PaymentType, str],
        evidence_url: str,
        notes: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Payment:
        """
        Record a repayment reported by the borrower.

        Raises:
            NotFoundError: Unknown loan
            ForbiddenError: Caller is not the bound borrower
            InvalidStateError: Loan is not accepted
            LoanValidationError: Bad amount, type or evidence, or amount above the balance
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_bound_borrower(loan, identity, "record payments")
        if loan.status != LoanStatus.ACCEPTED:
            raise InvalidStateError(
                f"Payments can only be recorded on accepted loans (loan is {loan.status.value})",
                current_status=loan.status.value,
            )

        amount = require_amount(amount)
        payment_type = require_payment_type(payment_type)
        evidence_url = require_text(evidence_url, "evidence_url")
        notes = (notes or "").strip() or None

        async with self._locks.for_loan(loan_id):
            # Re-read under the lock: the balance check and the insert must see the same loan
            loan = await self._load_loan(loan_id)
            if loan.status != LoanStatus.ACCEPTED:
                raise InvalidStateError(
                    f"Payments can only be recorded on accepted loans (loan is {loan.status.value})",
                    current_status=loan.status.value,
                )

            balance = await self._balances.get_loan_balance(loan_id)
            if amount > balance.balance:
                raise LoanValidationError(
                    f"Amount exceeds the outstanding balance ({balance.balance})",
                    field="amount",
                )

            now = utcnow()
            payment = Payment(
                loan_id=loan_id,
                amount=amount,
                payment_type=payment_type,
                evidence_url=evidence_url,
                notes=notes,
                created_by=identity.caller_id,
                created_at=now,
            )
            if loan.is_personal:
                payment = payment.model_copy(update={
                    "status": PaymentStatus.CONFIRMED,
                    "confirmed_by": identity.caller_id,
                    "confirmed_at": now,
                })

            try:
                await self._payments.save_payment(payment)
            except DuplicateError as e:
                raise ConflictError(str(e))

        await self._audit.log_payment_submitted(
            payment_id=payment.id,
            loan_id=loan_id,
            borrower_id=identity.caller_id,
            amount=str(amount),
            auto_confirmed=loan.is_personal,
            correlation_id=correlation_id,
        )

        if loan.is_personal:
            await self._publish(PaymentConfirmed(
                loan_id=loan_id,
                payment_id=payment.id,
                amount=payment.amount,
                confirmed_by=identity.caller_id,
                confirmed_at=now,
                auto_confirmed=True,
            ), correlation_id)
        else:
            await self._notify_lender(loan, payment, identity, correlation_id)

        return payment

    async def _notify_lender(
        self,
        loan: Loan,
        payment: Payment,
        identity: CallerIdentity,
        correlation_id: Optional[UUID],
    ) -> None:
        """Tell the lender a payment awaits review. Never raises."""
        try:
            lender = await self._users.get_user(loan.lender_id)
            if lender is None:
                return
            result = await self._notifications.dispatch(
                NotificationKind.PAYMENT_SUBMITTED,
                PaymentSubmittedPayload(
                    loan_id=loan.id,
                    payment_id=payment.id,
                    lender_email=lender.email,
                    lender_name=lender.username,
                    borrower_name=identity.display_name or loan.borrower_name,
                    loan_amount=loan.amount,
                    payment_amount=payment.amount,
                    payment_type=payment.payment_type,
                    notes=payment.notes,
                ),
            )
            error = None if result.success else result.error
        except Exception as e:
            error = str(e)

        if error is not None:
            await self._audit.log_side_effect_failed(
                event_type=AuditEventType.NOTIFICATION_FAILED,
                loan_id=loan.id,
                target=NotificationKind.PAYMENT_SUBMITTED.value,
                error_message=error,
                correlation_id=correlation_id,
            )

    # ----------------------------------------------------------- resolution

    async def confirm_payment(
        self,
        payment_id: str,
        confirmed_by: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Move a pending payment to confirmed and publish PaymentConfirmed.

        Returns:
            False if the payment does not exist or is no longer pending
        """
        payment = await self._payments.get_payment(payment_id)
        if payment is None or payment.status != PaymentStatus.PENDING:
            return False

        now = utcnow()
        if not await self._payments.confirm_payment(payment_id, confirmed_by, now):
            await self._audit.log_not_applied(
                entity_type="payment",
                entity_id=payment_id,
                actor_id=confirmed_by,
                action="confirm payment",
                correlation_id=correlation_id,
            )
            return False

        await self._audit.log_payment_confirmed(
            payment_id=payment_id,
            loan_id=payment.loan_id,
            lender_id=confirmed_by,
            amount=str(payment.amount),
            correlation_id=correlation_id,
        )
        await self._publish(PaymentConfirmed(
            loan_id=payment.loan_id,
            payment_id=payment_id,
            amount=payment.amount,
            confirmed_by=confirmed_by,
            confirmed_at=now,
        ), correlation_id)
        return True

    async def reject_payment(
        self,
        payment_id: str,
        reason: str,
        rejected_by: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Move a pending payment to rejected. Has no effect on the loan.

        Raises:
            LoanValidationError: If no reason is given

        Returns:
            False if the payment does not exist or is no longer pending
        """
        reason = require_text(reason, "reason")

        payment = await self._payments.get_payment(payment_id)
        if payment is None or payment.status != PaymentStatus.PENDING:
            return False

        if not await self._payments.reject_payment(payment_id, reason, rejected_by, utcnow()):
            await self._audit.log_not_applied(
                entity_type="payment",
                entity_id=payment_id,
                actor_id=rejected_by,
                action="reject payment",
                correlation_id=correlation_id,
            )
            return False

        await self._audit.log_payment_rejected(
            payment_id=payment_id,
            loan_id=payment.loan_id,
            lender_id=rejected_by or "",
            reason=reason,
            correlation_id=correlation_id,
        )
        return True

    async def confirm_loan_payment(
        self,
        identity: CallerIdentity,
        loan_id: str,
        payment_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Lender confirms one payment of one of their loans.

        Raises:
            NotFoundError: Unknown loan or payment
            ForbiddenError: Caller is not the lender
            LoanValidationError: Payment belongs to another loan
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_lender(loan, identity, "confirm payments")
        payment = await self._load_payment_of(loan, payment_id)

        if payment.status != PaymentStatus.PENDING:
            await self._audit.log_not_applied(
                entity_type="payment",
                entity_id=payment_id,
                actor_id=identity.caller_id,
                action="confirm payment",
                correlation_id=correlation_id,
            )
            if payment.status == PaymentStatus.CONFIRMED and loan.status != LoanStatus.RETURNED:
                # A repeated confirm re-runs a settlement check that failed earlier
                await self._publish(PaymentConfirmed(
                    loan_id=loan_id,
                    payment_id=payment_id,
                    amount=payment.amount,
                    confirmed_by=payment.confirmed_by or identity.caller_id,
                    confirmed_at=payment.confirmed_at or utcnow(),
                ), correlation_id)
            return False
        return await self.confirm_payment(payment_id, identity.caller_id, correlation_id)

    async def reject_loan_payment(
        self,
        identity: CallerIdentity,
        loan_id: str,
        payment_id: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Lender rejects one payment of one of their loans.

        Raises:
            NotFoundError: Unknown loan or payment
            ForbiddenError: Caller is not the lender
            LoanValidationError: Payment belongs to another loan, or no reason
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_lender(loan, identity, "reject payments")
        payment = await self._load_payment_of(loan, payment_id)
        reason = require_text(reason, "reason")

        if payment.status != PaymentStatus.PENDING:
            await self._audit.log_not_applied(
                entity_type="payment",
                entity_id=payment_id,
                actor_id=identity.caller_id,
                action="reject payment",
                correlation_id=correlation_id,
            )
            return False
        return await self.reject_payment(payment_id, reason, identity.caller_id, correlation_id)

    # ---------------------------------------------------------------- reads

    async def list_payments(self, identity: CallerIdentity, loan_id: str) -> PaymentHistory:
        """
        Payments of a loan (newest first) with its balance.

        Raises:
            NotFoundError: Unknown loan
            ForbiddenError: Caller is neither lender nor bound borrower
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        if identity.caller_id not in (loan.lender_id, loan.borrower_id):
            raise ForbiddenError("Only the lender or the borrower can see these payments")

        return PaymentHistory(
            loan_id=loan_id,
            payments=await self._payments.list_payments(loan_id),
            balance=await self._balances.get_loan_balance(loan_id),
        )

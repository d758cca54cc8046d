"""
Loan State Machine

Owns every status change of a loan:

    pending ──accept──▶ accepted ──mark returned / settled──▶ returned
       │                                                        ▲
       └──reject──▶ rejected            record evidence (any) ──┘

Status changes are applied by storage as compare-and-swap updates, so
two racing callers can never both move the same loan. Authorization is
always checked before state, and a missing loan before both.

Contact and notification side effects run after the write. They are
logged when they fail and never undo or fail the transition.
"""

from decimal import Decimal
from typing import Optional, Union
from uuid import UUID

import structlog

from loanbook.audit import AuditLogger
from loanbook.config import AppSettings, get_settings
from loanbook.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from loanbook.lending.authorization import (
    can_view,
    require_identity,
    require_invited_borrower,
    require_lender,
)
from loanbook.lending.balance import BalanceCalculator
from loanbook.lending.locks import LoanLocks
from loanbook.lending.validation import require_amount, require_email, require_text
from loanbook.models.audit import AuditEventType
from loanbook.models.loan import (
    DELETABLE_LOAN_STATUSES,
    CallerIdentity,
    Loan,
    LoanOverview,
    LoanStatus,
    LoanSummary,
    PaymentConfirmed,
    PaymentStatus,
    utcnow,
)
from loanbook.services.contacts import ContactBook
from loanbook.services.notifications import (
    InvitationPayload,
    NotificationDispatcher,
    NotificationKind,
)
from loanbook.services.storage import (
    DuplicateError,
    LoanStorageInterface,
    PaymentStorageInterface,
    UserStorageInterface,
)


class LoanStateMachine:
    """
    Creates loans and moves them through their lifecycle.

    Usage:
        machine = LoanStateMachine(storage, storage, storage, contacts=ContactBook(storage))
        ledger.subscribe(machine.handle_payment_confirmed)
    """

    def __init__(
        self,
        loans: LoanStorageInterface,
        payments: PaymentStorageInterface,
        users: UserStorageInterface,
        contacts: Optional[ContactBook] = None,
        balances: Optional[BalanceCalculator] = None,
        locks: Optional[LoanLocks] = None,
        notifications: Optional[NotificationDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
    ):
        self._loans = loans
        self._payments = payments
        self._users = users
        self._contacts = contacts
        self._balances = balances if balances is not None else BalanceCalculator(loans, payments)
        self._locks = locks if locks is not None else LoanLocks()
        self._notifications = notifications if notifications is not None else NotificationDispatcher()
        self._audit = audit_logger if audit_logger is not None else AuditLogger()
        self._settings = settings if settings is not None else get_settings().app
        self._logger = structlog.get_logger("loanbook.state_machine")

    async def _load_loan(self, loan_id: str) -> Loan:
        loan = await self._loans.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    # ------------------------------------------------------------- creation

    async def create_loan(
        self,
        identity: CallerIdentity,
        amount: Union[Decimal, int, str],
        description: str,
        borrower_email: Optional[str] = None,
        borrower_name: Optional[str] = None,
        is_personal: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> Loan:
        """
        Create a loan.

        A personal loan starts accepted and bound to its lender. Any
        other loan starts pending and invites the borrower by email.

        Raises:
            UnauthenticatedError: No caller identity
            LoanValidationError: Bad amount, description, or missing borrower
            ConflictError: Id or invitation token already taken
        """
        identity = require_identity(identity)
        amount = require_amount(
            amount,
            ceiling=Decimal(str(self._settings.max_loan_amount)),
        )
        description = require_text(description, "description")

        if is_personal:
            loan = Loan(
                lender_id=identity.caller_id,
                borrower_email=identity.caller_email,
                borrower_id=identity.caller_id,
                borrower_name=(
                    (borrower_name or "").strip()
                    or identity.display_name
                    or identity.caller_email
                ),
                amount=amount,
                description=description,
                status=LoanStatus.ACCEPTED,
                is_personal=True,
            )
        else:
            loan = Loan(
                lender_id=identity.caller_id,
                borrower_email=require_email(borrower_email),
                borrower_name=require_text(borrower_name, "borrower_name"),
                amount=amount,
                description=description,
            )

        try:
            await self._loans.save_loan(loan)
        except DuplicateError as e:
            raise ConflictError(str(e))

        await self._audit.log_loan_created(
            loan_id=loan.id,
            lender_id=identity.caller_id,
            amount=str(amount),
            is_personal=is_personal,
            correlation_id=correlation_id,
        )

        if not is_personal:
            await self._add_contact(
                loan,
                owner_id=identity.caller_id,
                email=loan.borrower_email,
                name=loan.borrower_name,
                correlation_id=correlation_id,
            )
            await self._send_invitation(loan, identity, correlation_id)

        return loan

    # ---------------------------------------------------------- side effects

    async def _add_contact(
        self,
        loan: Loan,
        owner_id: str,
        email: str,
        name: str,
        phone: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        if self._contacts is None:
            return
        try:
            await self._contacts.ensure_contact(owner_id, email, name, phone)
        except Exception as e:
            await self._audit.log_side_effect_failed(
                event_type=AuditEventType.CONTACT_SYNC_FAILED,
                loan_id=loan.id,
                target=f"contact {email} for {owner_id}",
                error_message=str(e),
                correlation_id=correlation_id,
            )

    async def _send_invitation(
        self,
        loan: Loan,
        identity: CallerIdentity,
        correlation_id: Optional[UUID],
    ) -> None:
        try:
            lender = await self._users.get_user(identity.caller_id)
            lender_name = (
                lender.username if lender
                else identity.display_name or identity.caller_email
            )
            result = await self._notifications.dispatch(
                NotificationKind.INVITATION,
                InvitationPayload(
                    loan_id=loan.id,
                    lender_name=lender_name,
                    borrower_email=loan.borrower_email,
                    borrower_name=loan.borrower_name,
                    amount=loan.amount,
                    description=loan.description,
                    invitation_url=self._settings.invitation_url(loan.invitation_token),
                ),
            )
            error = None if result.success else result.error
        except Exception as e:
            error = str(e)

        if error is not None:
            await self._audit.log_side_effect_failed(
                event_type=AuditEventType.NOTIFICATION_FAILED,
                loan_id=loan.id,
                target=NotificationKind.INVITATION.value,
                error_message=error,
                correlation_id=correlation_id,
            )

    # ----------------------------------------------------------- transitions

    async def _not_applied(
        self,
        loan_id: str,
        identity: CallerIdentity,
        action: str,
        correlation_id: Optional[UUID],
    ) -> bool:
        await self._audit.log_not_applied(
            entity_type="loan",
            entity_id=loan_id,
            actor_id=identity.caller_id,
            action=action,
            correlation_id=correlation_id,
        )
        return False

    async def accept_loan(
        self,
        identity: CallerIdentity,
        loan_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Invited borrower accepts a pending loan and becomes bound to it.

        Returns:
            False if the loan is no longer pending (already answered)
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_invited_borrower(loan, identity, "accept this loan")

        if loan.status != LoanStatus.PENDING:
            return await self._not_applied(loan_id, identity, "accept loan", correlation_id)
        if not await self._loans.accept_loan(loan_id, identity.caller_id, utcnow()):
            return await self._not_applied(loan_id, identity, "accept loan", correlation_id)

        await self._audit.log_loan_transition(
            event_type=AuditEventType.LOAN_ACCEPTED,
            loan_id=loan_id,
            actor_id=identity.caller_id,
            from_status=LoanStatus.PENDING.value,
            to_status=LoanStatus.ACCEPTED.value,
            correlation_id=correlation_id,
        )

        try:
            lender = await self._users.get_user(loan.lender_id)
        except Exception as e:
            self._logger.warning("lender_lookup_failed", loan_id=loan_id, error=str(e))
            lender = None
        if lender is not None:
            await self._add_contact(
                loan,
                owner_id=identity.caller_id,
                email=lender.email,
                name=lender.username,
                phone=lender.phone,
                correlation_id=correlation_id,
            )
        return True

    async def reject_loan(
        self,
        identity: CallerIdentity,
        loan_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Invited borrower declines a pending loan.

        Returns:
            False if the loan is no longer pending
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_invited_borrower(loan, identity, "reject this loan")

        if loan.status != LoanStatus.PENDING:
            return await self._not_applied(loan_id, identity, "reject loan", correlation_id)
        applied = await self._loans.update_loan_status(
            loan_id, LoanStatus.REJECTED, [LoanStatus.PENDING], utcnow(),
        )
        if not applied:
            return await self._not_applied(loan_id, identity, "reject loan", correlation_id)

        await self._audit.log_loan_transition(
            event_type=AuditEventType.LOAN_REJECTED,
            loan_id=loan_id,
            actor_id=identity.caller_id,
            from_status=LoanStatus.PENDING.value,
            to_status=LoanStatus.REJECTED.value,
            correlation_id=correlation_id,
        )
        return True

    async def mark_returned(
        self,
        identity: CallerIdentity,
        loan_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Lender declares an accepted loan repaid.

        Raises:
            InvalidStateError: Loan is not accepted

        Returns:
            False if the loan changed status between the check and the write
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_lender(loan, identity, "mark this loan as returned")

        if loan.status != LoanStatus.ACCEPTED:
            raise InvalidStateError(
                f"Only accepted loans can be marked as returned (loan is {loan.status.value})",
                current_status=loan.status.value,
            )
        applied = await self._loans.update_loan_status(
            loan_id, LoanStatus.RETURNED, [LoanStatus.ACCEPTED], utcnow(),
        )
        if not applied:
            return await self._not_applied(loan_id, identity, "mark returned", correlation_id)

        await self._audit.log_loan_transition(
            event_type=AuditEventType.LOAN_RETURNED,
            loan_id=loan_id,
            actor_id=identity.caller_id,
            from_status=LoanStatus.ACCEPTED.value,
            to_status=LoanStatus.RETURNED.value,
            correlation_id=correlation_id,
        )
        return True

    async def record_return_evidence(
        self,
        identity: CallerIdentity,
        loan_id: str,
        evidence: str,
        correlation_id: Optional[UUID] = None,
    ) -> Loan:
        """
        Lender stores proof of return. The loan becomes returned
        whatever its previous status.

        Raises:
            NotFoundError: Unknown loan
            ForbiddenError: Caller is not the lender
            LoanValidationError: Empty evidence
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_lender(loan, identity, "record return evidence")
        evidence = require_text(evidence, "evidence")

        if not await self._loans.set_loan_evidence(loan_id, evidence, utcnow()):
            # Deleted between the read and the write
            raise NotFoundError("loan", loan_id)

        await self._audit.log_loan_transition(
            event_type=AuditEventType.LOAN_EVIDENCE_RECORDED,
            loan_id=loan_id,
            actor_id=identity.caller_id,
            from_status=loan.status.value,
            to_status=LoanStatus.RETURNED.value,
            correlation_id=correlation_id,
        )
        return await self._load_loan(loan_id)

    async def delete_loan(
        self,
        identity: CallerIdentity,
        loan_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Lender removes a pending or rejected loan and its payments.

        Raises:
            InvalidStateError: Loan is accepted, returned or edit-pending

        Returns:
            False if the loan changed status between the check and the delete
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        require_lender(loan, identity, "delete this loan")

        if not loan.is_deletable:
            raise InvalidStateError(
                f"Only pending or rejected loans can be deleted (loan is {loan.status.value})",
                current_status=loan.status.value,
            )
        if not await self._loans.delete_loan(loan_id, DELETABLE_LOAN_STATUSES):
            return await self._not_applied(loan_id, identity, "delete loan", correlation_id)

        self._locks.discard(loan_id)
        await self._audit.log_loan_deleted(
            loan_id=loan_id,
            lender_id=identity.caller_id,
            status=loan.status.value,
            correlation_id=correlation_id,
        )
        return True

    # ----------------------------------------------------------- auto-return

    async def handle_payment_confirmed(self, event: PaymentConfirmed) -> bool:
        """
        Return the loan once confirmed payments cover its principal.

        Re-reads the loan and its confirmed sum under the loan lock
        instead of trusting the event. A loan that is already returned
        is left alone.

        Returns:
            True if this call moved the loan to returned
        """
        async with self._locks.for_loan(event.loan_id):
            loan = await self._loans.get_loan(event.loan_id)
            if loan is None or loan.status == LoanStatus.RETURNED:
                return False

            balance = await self._balances.get_loan_balance(loan.id)
            if not balance.is_settled:
                return False

            applied = await self._loans.update_loan_status(
                loan.id,
                LoanStatus.RETURNED,
                [status for status in LoanStatus if status != LoanStatus.RETURNED],
                utcnow(),
            )

        if applied:
            self._logger.info(
                "loan_settled",
                loan_id=loan.id,
                paid=str(balance.paid),
                payment_id=event.payment_id,
            )
            await self._audit.log_loan_transition(
                event_type=AuditEventType.LOAN_AUTO_RETURNED,
                loan_id=loan.id,
                actor_id=event.confirmed_by,
                from_status=loan.status.value,
                to_status=LoanStatus.RETURNED.value,
            )
        return applied

    # ----------------------------------------------------------------- reads

    async def get_loan(self, identity: CallerIdentity, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: Unknown loan
            ForbiddenError: Caller is not a party to the loan
        """
        identity = require_identity(identity)
        loan = await self._load_loan(loan_id)
        if not can_view(loan, identity):
            raise ForbiddenError("You are not a party to this loan")
        return loan

    async def get_loan_by_invitation(self, invitation_token: str) -> Loan:
        """Resolve an invitation link. Needs no identity: the invitee may not be registered yet."""
        loan = await self._loans.get_loan_by_token(invitation_token.strip())
        if loan is None:
            raise NotFoundError("invitation", invitation_token)
        return loan

    async def list_loans(self, identity: CallerIdentity) -> LoanOverview:
        """
        Everything the caller lends, borrows, or has been invited to.

        Personal loans are listed once, under as_lender.
        """
        identity = require_identity(identity)

        as_lender = []
        for loan in await self._loans.list_loans_by_lender(identity.caller_id):
            pending = await self._payments.count_payments(loan.id, PaymentStatus.PENDING)
            as_lender.append(LoanSummary(**loan.model_dump(), pending_payments_count=pending))

        as_borrower = [
            loan for loan in await self._loans.list_loans_by_borrower(identity.caller_id)
            if loan.lender_id != identity.caller_id
        ]

        return LoanOverview(
            as_lender=as_lender,
            as_borrower=as_borrower,
            pending_invitations=await self._loans.list_pending_loans_for_email(identity.caller_email),
        )

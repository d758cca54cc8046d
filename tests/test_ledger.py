"""Tests for payment submission and reconciliation."""

import asyncio

import pytest
from decimal import Decimal

from loanbook.errors import (
    ForbiddenError,
    InvalidStateError,
    LoanValidationError,
    NotFoundError,
)
from loanbook.models.audit import AuditEventType
from loanbook.models.loan import LoanBalance, LoanStatus, PaymentStatus, PaymentType
from loanbook.services.notifications import NotificationKind


EVIDENCE = "https://files.example.com/receipt.jpg"


async def _submit(ledger, identity, loan_id, amount, payment_type=PaymentType.PARTIAL):
    return await ledger.submit_payment(identity, loan_id, Decimal(amount), payment_type, EVIDENCE)


class TestSubmitPayment:

    async def test_creates_pending_payment(self, ledger, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "60000")
        assert payment.status == PaymentStatus.PENDING
        assert payment.created_by == borrower.caller_id
        assert payment.confirmed_at is None

    async def test_notifies_lender(self, core, ledger, borrower, accepted_loan):
        payment = await ledger.submit_payment(
            borrower, accepted_loan.id, Decimal("500"), "partial", EVIDENCE, notes="First half",
        )
        kind, payload = core.sink.sent[-1]
        assert kind == NotificationKind.PAYMENT_SUBMITTED
        assert payload.payment_id == payment.id
        assert payload.lender_email == "ana@example.com"
        assert payload.lender_name == "Ana"
        assert payload.borrower_name == "Bruno"
        assert payload.payment_amount == Decimal("500")
        assert payload.notes == "First half"

    async def test_pending_payments_do_not_reduce_balance(self, core, ledger, borrower, accepted_loan):
        await _submit(ledger, borrower, accepted_loan.id, "60000")
        balance = await core.balances.get_loan_balance(accepted_loan.id)
        assert balance == LoanBalance(
            total=Decimal("100000"),
            paid=Decimal("0"),
            pending=Decimal("60000"),
            balance=Decimal("100000"),
        )

    async def test_amount_above_balance_is_rejected(self, core, ledger, lender, borrower, accepted_loan):
        """Test that a 50,000 payment against a 40,000 balance creates nothing."""
        first = await _submit(ledger, borrower, accepted_loan.id, "60000")
        await ledger.confirm_loan_payment(lender, accepted_loan.id, first.id)

        with pytest.raises(LoanValidationError) as exc_info:
            await _submit(ledger, borrower, accepted_loan.id, "50000")
        assert exc_info.value.field == "amount"

        assert len(await core.storage.list_payments(accepted_loan.id)) == 1
        balance = await core.balances.get_loan_balance(accepted_loan.id)
        assert balance.balance == Decimal("40000")
        assert (await core.storage.get_loan(accepted_loan.id)).status == LoanStatus.ACCEPTED

    async def test_pending_payments_are_not_reserved(self, ledger, borrower, accepted_loan):
        """Test that the cap is the confirmed balance, not balance minus pending."""
        await _submit(ledger, borrower, accepted_loan.id, "100000")
        payment = await _submit(ledger, borrower, accepted_loan.id, "100000")
        assert payment.status == PaymentStatus.PENDING

    @pytest.mark.parametrize("amount", ["0", "-1", "0.001"])
    async def test_rejects_bad_amount(self, ledger, borrower, accepted_loan, amount):
        with pytest.raises(LoanValidationError):
            await _submit(ledger, borrower, accepted_loan.id, amount)

    async def test_trailing_zeros_are_whole_cents(self, ledger, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100.000")
        assert payment.amount == Decimal("100")

    async def test_requires_evidence(self, ledger, borrower, accepted_loan):
        with pytest.raises(LoanValidationError):
            await ledger.submit_payment(borrower, accepted_loan.id, Decimal("10"), PaymentType.FULL, "")

    async def test_rejects_unknown_payment_type(self, ledger, borrower, accepted_loan):
        with pytest.raises(LoanValidationError):
            await ledger.submit_payment(borrower, accepted_loan.id, Decimal("10"), "installment", EVIDENCE)

    async def test_only_bound_borrower_may_pay(self, ledger, lender, stranger, accepted_loan):
        with pytest.raises(ForbiddenError):
            await _submit(ledger, lender, accepted_loan.id, "10")
        with pytest.raises(ForbiddenError):
            await _submit(ledger, stranger, accepted_loan.id, "10")

    async def test_loan_must_be_accepted(self, ledger, borrower, lender, machine, pending_loan):
        """Test that an unbound loan refuses payments, and so does a returned one."""
        with pytest.raises(ForbiddenError):
            await _submit(ledger, borrower, pending_loan.id, "10")

        await machine.accept_loan(borrower, pending_loan.id)
        await machine.mark_returned(lender, pending_loan.id)
        with pytest.raises(InvalidStateError):
            await _submit(ledger, borrower, pending_loan.id, "10")

    async def test_unknown_loan(self, ledger, borrower):
        with pytest.raises(NotFoundError):
            await _submit(ledger, borrower, "missing", "10")

    async def test_concurrent_submissions_are_each_checked(self, core, ledger, lender, borrower, accepted_loan):
        """Test that each concurrent submission is checked against the confirmed balance."""
        first = await _submit(ledger, borrower, accepted_loan.id, "99990")
        await ledger.confirm_loan_payment(lender, accepted_loan.id, first.id)

        results = await asyncio.gather(
            _submit(ledger, borrower, accepted_loan.id, "10"),
            _submit(ledger, borrower, accepted_loan.id, "20"),
            return_exceptions=True,
        )
        assert results[0].status == PaymentStatus.PENDING
        assert isinstance(results[1], LoanValidationError)
        assert len(await core.storage.list_payments(accepted_loan.id)) == 2


class TestConfirmAndReject:

    async def test_partial_confirmation_keeps_loan_accepted(self, core, ledger, lender, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "60000")
        assert await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id)

        stored = await core.storage.get_payment(payment.id)
        assert stored.status == PaymentStatus.CONFIRMED
        assert stored.confirmed_by == lender.caller_id
        assert stored.confirmed_at is not None
        assert (await core.storage.get_loan(accepted_loan.id)).status == LoanStatus.ACCEPTED

    async def test_confirm_twice_is_not_applied(self, core, ledger, lender, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        assert await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id)
        assert await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id) is False

        balance = await core.balances.get_loan_balance(accepted_loan.id)
        assert balance.paid == Decimal("100")

    async def test_concurrent_confirms_apply_once(self, core, ledger, lender, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        results = await asyncio.gather(
            ledger.confirm_payment(payment.id, lender.caller_id),
            ledger.confirm_payment(payment.id, lender.caller_id),
        )
        assert sorted(results) == [False, True]

    async def test_failed_settlement_check_is_retried_on_confirm(
        self, core, ledger, lender, borrower, accepted_loan, monkeypatch,
    ):
        """Test that a confirmed payment survives a failing auto-return and a repeat confirm returns the loan."""
        payment = await _submit(ledger, borrower, accepted_loan.id, "100000")
        real_balance = core.balances.get_loan_balance

        async def unavailable(loan_id):
            raise ConnectionError("database is locked")

        monkeypatch.setattr(core.balances, "get_loan_balance", unavailable)
        assert await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id)

        assert (await core.storage.get_payment(payment.id)).status == PaymentStatus.CONFIRMED
        assert (await core.storage.get_loan(accepted_loan.id)).status == LoanStatus.ACCEPTED
        events = await core.storage.get_events_by_entity("loan", accepted_loan.id)
        failed = [e for e in events if e.event_type == AuditEventType.SETTLEMENT_CHECK_FAILED]
        assert failed[0].error_message == "database is locked"

        monkeypatch.setattr(core.balances, "get_loan_balance", real_balance)
        assert await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id) is False
        assert (await core.storage.get_loan(accepted_loan.id)).status == LoanStatus.RETURNED

    async def test_confirm_missing_payment(self, ledger, lender):
        assert await ledger.confirm_payment("missing", lender.caller_id) is False

    async def test_only_lender_may_confirm(self, ledger, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        with pytest.raises(ForbiddenError):
            await ledger.confirm_loan_payment(borrower, accepted_loan.id, payment.id)

    async def test_payment_must_belong_to_loan(self, machine, ledger, lender, borrower, accepted_loan):
        other = await machine.create_loan(
            lender, amount=Decimal("10"), description="Other",
            borrower_email=borrower.caller_email, borrower_name="Bruno",
        )
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        with pytest.raises(LoanValidationError):
            await ledger.confirm_loan_payment(lender, other.id, payment.id)

    async def test_unknown_payment(self, ledger, lender, accepted_loan):
        with pytest.raises(NotFoundError):
            await ledger.confirm_loan_payment(lender, accepted_loan.id, "missing")

    async def test_reject_never_touches_loan(self, core, ledger, lender, borrower, accepted_loan):
        """Test that rejecting even a full-amount payment leaves loan and balance alone."""
        payment = await _submit(ledger, borrower, accepted_loan.id, "100000", PaymentType.FULL)
        assert await ledger.reject_loan_payment(lender, accepted_loan.id, payment.id, "Receipt is blurry")

        stored = await core.storage.get_payment(payment.id)
        assert stored.status == PaymentStatus.REJECTED
        assert stored.rejection_reason == "Receipt is blurry"
        assert stored.confirmed_by == lender.caller_id

        assert (await core.storage.get_loan(accepted_loan.id)).status == LoanStatus.ACCEPTED
        balance = await core.balances.get_loan_balance(accepted_loan.id)
        assert balance.balance == Decimal("100000")
        assert balance.pending == Decimal("0")

    async def test_reject_requires_reason(self, ledger, lender, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        with pytest.raises(LoanValidationError):
            await ledger.reject_loan_payment(lender, accepted_loan.id, payment.id, "  ")
        with pytest.raises(LoanValidationError):
            await ledger.reject_payment(payment.id, "")

    async def test_confirmed_payment_cannot_be_rejected(self, ledger, lender, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id)
        assert await ledger.reject_loan_payment(lender, accepted_loan.id, payment.id, "Changed my mind") is False

    async def test_confirmation_is_audited(self, core, ledger, lender, borrower, accepted_loan):
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id)
        events = await core.storage.get_events_by_entity("payment", payment.id)
        assert [e.event_type for e in events] == [
            AuditEventType.PAYMENT_SUBMITTED,
            AuditEventType.PAYMENT_CONFIRMED,
        ]


class TestRepaymentScenario:

    async def test_full_repayment_returns_loan(self, core, machine, ledger, lender, borrower):
        """Test the lifecycle from invitation to automatic return."""
        loan = await machine.create_loan(
            lender,
            amount=Decimal("100000"),
            description="Car repair",
            borrower_email="bruno@example.com",
            borrower_name="Bruno",
        )
        assert loan.status == LoanStatus.PENDING

        assert await machine.accept_loan(borrower, loan.id)
        loan = await machine.get_loan(lender, loan.id)
        assert loan.status == LoanStatus.ACCEPTED
        assert loan.borrower_id == borrower.caller_id

        first = await _submit(ledger, borrower, loan.id, "60000")
        assert await core.balances.get_loan_balance(loan.id) == LoanBalance(
            total=Decimal("100000"), paid=Decimal("0"), pending=Decimal("60000"), balance=Decimal("100000"),
        )

        assert await ledger.confirm_loan_payment(lender, loan.id, first.id)
        assert await core.balances.get_loan_balance(loan.id) == LoanBalance(
            total=Decimal("100000"), paid=Decimal("60000"), pending=Decimal("0"), balance=Decimal("40000"),
        )
        assert (await machine.get_loan(lender, loan.id)).status == LoanStatus.ACCEPTED

        second = await _submit(ledger, borrower, loan.id, "40000", PaymentType.FULL)
        assert await ledger.confirm_loan_payment(lender, loan.id, second.id)
        assert await core.balances.get_loan_balance(loan.id) == LoanBalance(
            total=Decimal("100000"), paid=Decimal("100000"), pending=Decimal("0"), balance=Decimal("0"),
        )
        assert (await machine.get_loan(lender, loan.id)).status == LoanStatus.RETURNED

        events = await core.storage.get_events_by_entity("loan", loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_AUTO_RETURNED

    async def test_personal_loan_payment_auto_confirms(self, core, ledger, lender, personal_loan):
        """Test that a personal loan payment is born confirmed and settles the loan."""
        partial = await _submit(ledger, lender, personal_loan.id, "200")
        assert partial.status == PaymentStatus.CONFIRMED
        assert partial.confirmed_by == lender.caller_id
        assert partial.confirmed_at is not None
        assert (await core.storage.get_loan(personal_loan.id)).status == LoanStatus.ACCEPTED

        await _submit(ledger, lender, personal_loan.id, "300", PaymentType.FULL)
        assert (await core.storage.get_loan(personal_loan.id)).status == LoanStatus.RETURNED
        assert core.sink.sent == []

    async def test_event_subscribers_receive_confirmations(self, ledger, lender, borrower, accepted_loan):
        received = []

        async def record(event):
            received.append(event)

        ledger.subscribe(record)
        payment = await _submit(ledger, borrower, accepted_loan.id, "100")
        await ledger.confirm_loan_payment(lender, accepted_loan.id, payment.id)

        assert len(received) == 1
        assert received[0].payment_id == payment.id
        assert received[0].amount == Decimal("100")
        assert not received[0].auto_confirmed


class TestListPayments:

    async def test_parties_see_history(self, ledger, lender, borrower, accepted_loan):
        first = await _submit(ledger, borrower, accepted_loan.id, "100")
        second = await _submit(ledger, borrower, accepted_loan.id, "200")
        await ledger.confirm_loan_payment(lender, accepted_loan.id, first.id)

        for identity in (lender, borrower):
            history = await ledger.list_payments(identity, accepted_loan.id)
            assert [p.id for p in history.payments] == [second.id, first.id]
            assert history.balance.paid == Decimal("100")
            assert history.balance.pending == Decimal("200")

    async def test_stranger_cannot_see_history(self, ledger, stranger, accepted_loan):
        with pytest.raises(ForbiddenError):
            await ledger.list_payments(stranger, accepted_loan.id)

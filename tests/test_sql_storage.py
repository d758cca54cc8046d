"""Tests for the SQLAlchemy backend (in-memory SQLite)."""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from loanbook.models.audit import AuditEventBuilder, AuditEventType
from loanbook.models.loan import (
    Contact,
    Loan,
    LoanStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    UserProfile,
    utcnow,
)
from loanbook.services.storage import (
    DuplicateError,
    SqlDatabase,
    SqlStorage,
    StorageConnectionError,
    StorageError,
)


@pytest.fixture
async def sql():
    database = SqlDatabase(url="sqlite://")
    storage = SqlStorage(database)
    for user_id, name in (("u-lender", "Ana"), ("u-borrower", "Bruno")):
        await storage.save_user(UserProfile(id=user_id, username=name, email=f"{name.lower()}@example.com"))
    yield storage
    database.dispose()


def _loan(**overrides) -> Loan:
    data = dict(
        lender_id="u-lender",
        borrower_email="bruno@example.com",
        borrower_name="Bruno",
        amount=Decimal("100.00"),
        description="Books",
    )
    data.update(overrides)
    return Loan(**data)


def _payment(loan_id: str, amount: str = "10.00", **overrides) -> Payment:
    data = dict(
        loan_id=loan_id,
        amount=Decimal(amount),
        payment_type=PaymentType.PARTIAL,
        evidence_url="https://files.example.com/r.jpg",
        created_by="u-borrower",
    )
    data.update(overrides)
    return Payment(**data)


class TestLoans:

    async def test_round_trip(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        stored = await sql.get_loan(loan.id)
        assert stored.model_dump() == loan.model_dump()

    async def test_lookup_by_token(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        assert (await sql.get_loan_by_token(loan.invitation_token)).id == loan.id
        assert await sql.get_loan_by_token("nope") is None

    async def test_duplicate_token(self, sql):
        first = _loan()
        await sql.save_loan(first)
        with pytest.raises(DuplicateError):
            await sql.save_loan(_loan(invitation_token=first.invitation_token))

    async def test_unknown_lender_is_storage_error(self, sql):
        with pytest.raises(StorageError):
            await sql.save_loan(_loan(lender_id="ghost"))

    async def test_accept_is_compare_and_swap(self, sql):
        loan = _loan()
        await sql.save_loan(loan)

        assert await sql.accept_loan(loan.id, "u-borrower", utcnow())
        assert not await sql.accept_loan(loan.id, "u-borrower", utcnow())

        stored = await sql.get_loan(loan.id)
        assert stored.status == LoanStatus.ACCEPTED
        assert stored.borrower_id == "u-borrower"

    async def test_update_status_checks_expected(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        assert not await sql.update_loan_status(loan.id, LoanStatus.RETURNED, [LoanStatus.ACCEPTED], utcnow())
        assert await sql.update_loan_status(loan.id, LoanStatus.REJECTED, [LoanStatus.PENDING], utcnow())
        assert (await sql.get_loan(loan.id)).status == LoanStatus.REJECTED

    async def test_set_evidence_forces_returned(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        assert await sql.set_loan_evidence(loan.id, "https://files.example.com/p.jpg", utcnow())
        stored = await sql.get_loan(loan.id)
        assert stored.status == LoanStatus.RETURNED
        assert stored.evidence == "https://files.example.com/p.jpg"
        assert not await sql.set_loan_evidence("missing", "x", utcnow())

    async def test_delete_cascades_to_payments(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        payment = _payment(loan.id)
        await sql.save_payment(payment)

        assert await sql.delete_loan(loan.id, [LoanStatus.PENDING, LoanStatus.REJECTED])
        assert await sql.get_loan(loan.id) is None
        assert await sql.get_payment(payment.id) is None

    async def test_delete_respects_status(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        await sql.accept_loan(loan.id, "u-borrower", utcnow())
        assert not await sql.delete_loan(loan.id, [LoanStatus.PENDING, LoanStatus.REJECTED])
        assert await sql.get_loan(loan.id) is not None

    async def test_listings_newest_first(self, sql):
        base = datetime(2024, 5, 1, 12, 0)
        older = _loan(created_at=base)
        newer = _loan(created_at=base + timedelta(minutes=5))
        accepted = _loan(created_at=base + timedelta(minutes=1))
        for loan in (older, newer, accepted):
            await sql.save_loan(loan)
        await sql.accept_loan(accepted.id, "u-borrower", utcnow())

        by_lender = await sql.list_loans_by_lender("u-lender")
        assert [l.id for l in by_lender] == [newer.id, accepted.id, older.id]

        by_borrower = await sql.list_loans_by_borrower("u-borrower")
        assert [l.id for l in by_borrower] == [accepted.id]

        pending = await sql.list_pending_loans_for_email("BRUNO@example.com")
        assert [l.id for l in pending] == [newer.id, older.id]


class TestPayments:

    async def test_payment_requires_loan(self, sql):
        with pytest.raises(StorageError):
            await sql.save_payment(_payment("missing"))

    async def test_sums_and_counts(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        confirmed = _payment(loan.id, "30.50")
        pending = _payment(loan.id, "20.00")
        rejected = _payment(loan.id, "5.00")
        for payment in (confirmed, pending, rejected):
            await sql.save_payment(payment)

        await sql.confirm_payment(confirmed.id, "u-lender", utcnow())
        await sql.reject_payment(rejected.id, "Wrong amount", "u-lender", utcnow())

        assert await sql.sum_payments(loan.id, PaymentStatus.CONFIRMED) == Decimal("30.50")
        assert await sql.sum_payments(loan.id, PaymentStatus.PENDING) == Decimal("20.00")
        assert await sql.count_payments(loan.id, PaymentStatus.PENDING) == 1
        assert await sql.sum_payments("other", PaymentStatus.CONFIRMED) == Decimal("0")

    async def test_resolution_is_compare_and_swap(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        payment = _payment(loan.id)
        await sql.save_payment(payment)

        assert await sql.confirm_payment(payment.id, "u-lender", utcnow())
        assert not await sql.confirm_payment(payment.id, "u-lender", utcnow())
        assert not await sql.reject_payment(payment.id, "Too late", "u-lender", utcnow())

        stored = await sql.get_payment(payment.id)
        assert stored.status == PaymentStatus.CONFIRMED
        assert stored.confirmed_by == "u-lender"
        assert stored.rejection_reason is None

    async def test_list_newest_first(self, sql):
        loan = _loan()
        await sql.save_loan(loan)
        base = datetime(2024, 5, 1, 12, 0)
        first = _payment(loan.id, created_at=base)
        second = _payment(loan.id, created_at=base + timedelta(seconds=1))
        await sql.save_payment(first)
        await sql.save_payment(second)
        assert [p.id for p in await sql.list_payments(loan.id)] == [second.id, first.id]


class TestContactsAndUsers:

    async def test_contact_is_keyed_by_owner_and_email(self, sql):
        await sql.save_contact(Contact(owner_id="u-lender", email="Carla@Example.com", name="Carla"))
        assert (await sql.get_contact("u-lender", "carla@example.com")).name == "Carla"
        assert await sql.get_contact("u-borrower", "carla@example.com") is None

        with pytest.raises(DuplicateError):
            await sql.save_contact(Contact(owner_id="u-lender", email="carla@example.com", name="C"))

    async def test_list_contacts_sorted_by_name(self, sql):
        await sql.save_contact(Contact(owner_id="u-lender", email="z@example.com", name="Zoe"))
        await sql.save_contact(Contact(owner_id="u-lender", email="a@example.com", name="Alba"))
        assert [c.name for c in await sql.list_contacts("u-lender")] == ["Alba", "Zoe"]

    async def test_user_lookup(self, sql):
        assert (await sql.get_user("u-lender")).username == "Ana"
        assert (await sql.get_user_by_email("ANA@example.com")).id == "u-lender"
        assert await sql.get_user("ghost") is None

    async def test_duplicate_email(self, sql):
        with pytest.raises(DuplicateError):
            await sql.save_user(UserProfile(username="Ana 2", email="ana@example.com"))


class TestAuditEvents:

    async def test_events_round_trip(self, sql):
        correlation_id = uuid4()
        event = AuditEventBuilder.payment_confirmed(
            payment_id="p1",
            loan_id="l1",
            lender_id="u-lender",
            amount="10.00",
            correlation_id=correlation_id,
        )
        assert await sql.append_event(event)

        by_entity = await sql.get_events_by_entity("payment", "p1")
        assert len(by_entity) == 1
        assert by_entity[0].event_type == AuditEventType.PAYMENT_CONFIRMED
        assert by_entity[0].details == {"loan_id": "l1", "amount": "10.00"}

        by_correlation = await sql.get_events_by_correlation_id(correlation_id)
        assert [e.event_id for e in by_correlation] == [event.event_id]
        assert (await sql.get_recent_events(limit=1))[0].event_id == event.event_id


class TestConnection:

    def test_bad_url_raises_connection_error(self, monkeypatch):
        database = SqlDatabase(url="sqlite:////nonexistent-dir/loans.db")
        monkeypatch.setattr(database._settings, "connect_attempts", 1)
        with pytest.raises(StorageConnectionError):
            database.connect()

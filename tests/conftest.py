"""
Shared fixtures.

Service tests run against InMemoryStorage with a recording notification
sink. Three registered users: a lender, a borrower and a stranger.
"""

import pytest
from decimal import Decimal
from types import SimpleNamespace

from loanbook.audit import AuditLogger
from loanbook.config import AppSettings
from loanbook.lending import BalanceCalculator, LoanLocks, LoanStateMachine, PaymentLedger
from loanbook.models.loan import CallerIdentity, UserProfile
from loanbook.services.contacts import ContactBook
from loanbook.services.notifications import LoggingNotificationSink, NotificationDispatcher
from loanbook.services.storage import InMemoryStorage


@pytest.fixture
def lender():
    return CallerIdentity(caller_id="user-lender", caller_email="ana@example.com", display_name="Ana")


@pytest.fixture
def borrower():
    return CallerIdentity(caller_id="user-borrower", caller_email="Bruno@Example.com", display_name="Bruno")


@pytest.fixture
def stranger():
    return CallerIdentity(caller_id="user-stranger", caller_email="carla@example.com", display_name="Carla")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def sink():
    return LoggingNotificationSink()


@pytest.fixture
def app_settings():
    return AppSettings(app_url="https://loans.example.com/", invitation_path="invitation")


@pytest.fixture
async def registered(storage, lender, borrower, stranger):
    """Save a UserProfile for every test identity."""
    for identity, phone in ((lender, "+34600000001"), (borrower, None), (stranger, None)):
        await storage.save_user(UserProfile(
            id=identity.caller_id,
            username=identity.display_name,
            email=identity.caller_email,
            phone=phone,
        ))
    return storage


@pytest.fixture
def core(registered, sink, app_settings):
    """State machine and ledger wired the way create_app_components wires them."""
    storage = registered
    locks = LoanLocks()
    balances = BalanceCalculator(storage, storage)
    notifications = NotificationDispatcher(sink)
    audit = AuditLogger(storage)

    machine = LoanStateMachine(
        storage, storage, storage,
        contacts=ContactBook(storage),
        balances=balances,
        locks=locks,
        notifications=notifications,
        audit_logger=audit,
        settings=app_settings,
    )
    ledger = PaymentLedger(
        storage, storage, storage,
        balances=balances,
        locks=locks,
        notifications=notifications,
        audit_logger=audit,
    )
    ledger.subscribe(machine.handle_payment_confirmed)
    return SimpleNamespace(
        storage=storage,
        machine=machine,
        ledger=ledger,
        balances=balances,
        locks=locks,
        sink=sink,
    )


@pytest.fixture
def machine(core):
    return core.machine


@pytest.fixture
def ledger(core):
    return core.ledger


@pytest.fixture
async def pending_loan(machine, lender):
    return await machine.create_loan(
        lender,
        amount=Decimal("100000"),
        description="Car repair",
        borrower_email="bruno@example.com",
        borrower_name="Bruno",
    )


@pytest.fixture
async def accepted_loan(machine, borrower, pending_loan):
    assert await machine.accept_loan(borrower, pending_loan.id)
    return await machine.get_loan(borrower, pending_loan.id)


@pytest.fixture
async def personal_loan(machine, lender):
    return await machine.create_loan(
        lender,
        amount=Decimal("500"),
        description="Savings for rent",
        is_personal=True,
    )

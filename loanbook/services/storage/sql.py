"""
SQL Storage Implementation (SQLAlchemy)

Relational backend for loans, payments, contacts, users and audit
events. SQLite is the default engine; any SQLAlchemy URL works.

TRADEOFFS:
- Calls are synchronous inside async methods (queries are short and
  local, same as the rest of the storage layer)
- Every status transition is a single conditional UPDATE whose
  rowcount tells whether it applied, so concurrent duplicates resolve
  in the database rather than in Python
- Loans → payments and users → {contacts, loans, payments} cascade on
  delete at the database level
"""

import json
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import Retrying, stop_after_attempt, wait_exponential

from loanbook.config import get_settings
from loanbook.models.audit import AuditEvent, AuditEventType, AuditSeverity
from loanbook.models.loan import (
    Contact,
    Loan,
    LoanStatus,
    Payment,
    PaymentStatus,
    UserProfile,
)
from loanbook.services.storage.interface import (
    AuditStorageInterface,
    ContactStorageInterface,
    DuplicateError,
    LoanStorageInterface,
    PaymentStorageInterface,
    StorageConnectionError,
    StorageError,
    UserStorageInterface,
)


# =============================================================================
# SCHEMA
# =============================================================================

class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ContactRow(Base):
    __tablename__ = "contacts"

    email: Mapped[str] = mapped_column(String(254), primary_key=True)
    owner_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(30))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class LoanRow(Base):
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'returned', 'edit-pending')",
            name="ck_loans_status",
        ),
        CheckConstraint("amount > 0", name="ck_loans_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    lender_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    borrower_email: Mapped[str] = mapped_column(String(254), nullable=False, index=True)
    borrower_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )
    borrower_name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    evidence: Mapped[Optional[str]] = mapped_column(Text)
    invitation_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_personal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PaymentRow(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("payment_type IN ('partial', 'full')", name="ck_payments_type"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'rejected')",
            name="ck_payments_status",
        ),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    loan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_type: Mapped[str] = mapped_column(String(10), nullable=False)
    evidence_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    confirmed_by: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(20))
    entity_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    details_json: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores foreign keys (and cascades) unless asked per connection."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# =============================================================================
# CONNECTION
# =============================================================================

class SqlDatabase:
    """
    Engine and session factory wrapper.

    Handles engine creation and retries the initial connection.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self._settings = get_settings().database
        self._url = url or self._settings.url
        self._echo = self._settings.echo if echo is None else echo
        self._engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker] = None

    def _create_engine(self) -> Engine:
        if self._url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            return create_engine(
                self._url,
                echo=self._echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(self._url, echo=self._echo)

    def connect(self) -> Engine:
        """
        Open the database and create missing tables.

        Retries with exponential backoff before giving up.
        """
        if self._engine is None:
            try:
                for attempt in Retrying(
                    stop=stop_after_attempt(self._settings.connect_attempts),
                    wait=wait_exponential(multiplier=1, min=2, max=10),
                    reraise=True,
                ):
                    with attempt:
                        engine = self._create_engine()
                        with engine.connect() as conn:
                            conn.execute(text("SELECT 1"))
                        Base.metadata.create_all(engine)
            except SQLAlchemyError as e:
                raise StorageConnectionError(f"Failed to connect to database {self._url}: {e}")
            self._engine = engine
            self._sessions = sessionmaker(engine, expire_on_commit=False)
        return self._engine

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commits on success, rolls back on error."""
        self.connect()
        with self._sessions() as session:
            with session.begin():
                yield session

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessions = None


def _integrity_error(e: IntegrityError, what: str) -> StorageError:
    """Map a driver integrity error onto our storage exceptions."""
    if "UNIQUE" in str(e.orig).upper():
        return DuplicateError(f"Duplicate {what}: {e.orig}")
    return StorageError(f"Failed to save {what}: {e.orig}")


# =============================================================================
# STORAGE
# =============================================================================

class SqlStorage(
    LoanStorageInterface,
    PaymentStorageInterface,
    ContactStorageInterface,
    UserStorageInterface,
    AuditStorageInterface,
):
    """
    SQLAlchemy implementation of all storage interfaces.

    Loans and payments reference users, so users must be saved first.
    """

    def __init__(self, database: Optional[SqlDatabase] = None):
        self._db = database if database is not None else SqlDatabase()

    @staticmethod
    def _to_loan(row: LoanRow) -> Loan:
        return Loan.model_validate(row, from_attributes=True)

    @staticmethod
    def _to_payment(row: PaymentRow) -> Payment:
        return Payment.model_validate(row, from_attributes=True)

    def _insert(self, row: Base, what: str) -> bool:
        try:
            with self._db.session() as session:
                session.add(row)
            return True
        except IntegrityError as e:
            raise _integrity_error(e, what)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save {what}: {e}")

    def _list_loans(self, *criteria) -> list[Loan]:
        with self._db.session() as session:
            rows = session.scalars(
                select(LoanRow).where(*criteria).order_by(LoanRow.created_at.desc())
            ).all()
            return [self._to_loan(row) for row in rows]

    # ------------------------------------------------------------------ loans

    async def save_loan(self, loan: Loan) -> bool:
        row = LoanRow(
            id=loan.id,
            lender_id=loan.lender_id,
            borrower_email=loan.borrower_email,
            borrower_id=loan.borrower_id,
            borrower_name=loan.borrower_name,
            amount=loan.amount,
            description=loan.description,
            status=loan.status.value,
            evidence=loan.evidence,
            invitation_token=loan.invitation_token,
            is_personal=loan.is_personal,
            created_at=loan.created_at,
            updated_at=loan.updated_at,
        )
        return self._insert(row, "loan")

    async def get_loan(self, loan_id: str) -> Optional[Loan]:
        with self._db.session() as session:
            row = session.get(LoanRow, loan_id)
            return self._to_loan(row) if row else None

    async def get_loan_by_token(self, invitation_token: str) -> Optional[Loan]:
        with self._db.session() as session:
            row = session.scalars(
                select(LoanRow).where(LoanRow.invitation_token == invitation_token)
            ).first()
            return self._to_loan(row) if row else None

    async def list_loans_by_lender(self, lender_id: str) -> list[Loan]:
        return self._list_loans(LoanRow.lender_id == lender_id)

    async def list_loans_by_borrower(self, borrower_id: str) -> list[Loan]:
        return self._list_loans(LoanRow.borrower_id == borrower_id)

    async def list_pending_loans_for_email(self, email: str) -> list[Loan]:
        return self._list_loans(
            LoanRow.borrower_email == email.strip().lower(),
            LoanRow.status == LoanStatus.PENDING.value,
        )

    async def accept_loan(self, loan_id: str, borrower_id: str, at: datetime) -> bool:
        with self._db.session() as session:
            result = session.execute(
                update(LoanRow)
                .where(LoanRow.id == loan_id, LoanRow.status == LoanStatus.PENDING.value)
                .values(status=LoanStatus.ACCEPTED.value, borrower_id=borrower_id, updated_at=at)
            )
            return result.rowcount > 0

    async def update_loan_status(
        self,
        loan_id: str,
        new_status: LoanStatus,
        from_statuses: Iterable[LoanStatus],
        at: datetime,
    ) -> bool:
        expected = [s.value for s in from_statuses]
        with self._db.session() as session:
            result = session.execute(
                update(LoanRow)
                .where(LoanRow.id == loan_id, LoanRow.status.in_(expected))
                .values(status=new_status.value, updated_at=at)
            )
            return result.rowcount > 0

    async def set_loan_evidence(self, loan_id: str, evidence: str, at: datetime) -> bool:
        with self._db.session() as session:
            result = session.execute(
                update(LoanRow)
                .where(LoanRow.id == loan_id)
                .values(evidence=evidence, status=LoanStatus.RETURNED.value, updated_at=at)
            )
            return result.rowcount > 0

    async def delete_loan(self, loan_id: str, from_statuses: Iterable[LoanStatus]) -> bool:
        expected = [s.value for s in from_statuses]
        with self._db.session() as session:
            result = session.execute(
                delete(LoanRow).where(LoanRow.id == loan_id, LoanRow.status.in_(expected))
            )
            return result.rowcount > 0

    # --------------------------------------------------------------- payments

    async def save_payment(self, payment: Payment) -> bool:
        row = PaymentRow(
            id=payment.id,
            loan_id=payment.loan_id,
            amount=payment.amount,
            payment_type=payment.payment_type.value,
            evidence_url=payment.evidence_url,
            status=payment.status.value,
            notes=payment.notes,
            rejection_reason=payment.rejection_reason,
            created_by=payment.created_by,
            confirmed_by=payment.confirmed_by,
            created_at=payment.created_at,
            confirmed_at=payment.confirmed_at,
        )
        return self._insert(row, "payment")

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._db.session() as session:
            row = session.get(PaymentRow, payment_id)
            return self._to_payment(row) if row else None

    async def list_payments(self, loan_id: str) -> list[Payment]:
        with self._db.session() as session:
            rows = session.scalars(
                select(PaymentRow)
                .where(PaymentRow.loan_id == loan_id)
                .order_by(PaymentRow.created_at.desc())
            ).all()
            return [self._to_payment(row) for row in rows]

    async def count_payments(self, loan_id: str, status: PaymentStatus) -> int:
        with self._db.session() as session:
            return session.scalar(
                select(func.count())
                .select_from(PaymentRow)
                .where(PaymentRow.loan_id == loan_id, PaymentRow.status == status.value)
            ) or 0

    async def sum_payments(self, loan_id: str, status: PaymentStatus) -> Decimal:
        with self._db.session() as session:
            total = session.scalar(
                select(func.coalesce(func.sum(PaymentRow.amount), 0))
                .where(PaymentRow.loan_id == loan_id, PaymentRow.status == status.value)
            )
            return Decimal(str(total or 0))

    async def confirm_payment(self, payment_id: str, confirmed_by: str, at: datetime) -> bool:
        with self._db.session() as session:
            result = session.execute(
                update(PaymentRow)
                .where(PaymentRow.id == payment_id, PaymentRow.status == PaymentStatus.PENDING.value)
                .values(
                    status=PaymentStatus.CONFIRMED.value,
                    confirmed_by=confirmed_by,
                    confirmed_at=at,
                )
            )
            return result.rowcount > 0

    async def reject_payment(
        self,
        payment_id: str,
        reason: str,
        rejected_by: Optional[str],
        at: datetime,
    ) -> bool:
        with self._db.session() as session:
            result = session.execute(
                update(PaymentRow)
                .where(PaymentRow.id == payment_id, PaymentRow.status == PaymentStatus.PENDING.value)
                .values(
                    status=PaymentStatus.REJECTED.value,
                    rejection_reason=reason,
                    confirmed_by=rejected_by,
                    confirmed_at=at,
                )
            )
            return result.rowcount > 0

    # --------------------------------------------------------------- contacts

    async def get_contact(self, owner_id: str, email: str) -> Optional[Contact]:
        with self._db.session() as session:
            row = session.get(ContactRow, (email.strip().lower(), owner_id))
            return Contact.model_validate(row, from_attributes=True) if row else None

    async def save_contact(self, contact: Contact) -> bool:
        row = ContactRow(
            email=contact.email,
            owner_id=contact.owner_id,
            name=contact.name,
            phone=contact.phone,
            notes=contact.notes,
            created_at=contact.created_at,
            updated_at=contact.updated_at,
        )
        return self._insert(row, "contact")

    async def list_contacts(self, owner_id: str) -> list[Contact]:
        with self._db.session() as session:
            rows = session.scalars(
                select(ContactRow).where(ContactRow.owner_id == owner_id).order_by(ContactRow.name)
            ).all()
            return [Contact.model_validate(row, from_attributes=True) for row in rows]

    # ------------------------------------------------------------------ users

    async def save_user(self, user: UserProfile) -> bool:
        row = UserRow(
            id=user.id,
            username=user.username,
            email=user.email,
            phone=user.phone,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )
        return self._insert(row, "user")

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._db.session() as session:
            row = session.get(UserRow, user_id)
            return UserProfile.model_validate(row, from_attributes=True) if row else None

    async def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        with self._db.session() as session:
            row = session.scalars(
                select(UserRow).where(UserRow.email == email.strip().lower())
            ).first()
            return UserProfile.model_validate(row, from_attributes=True) if row else None

    # ------------------------------------------------------------------ audit

    @staticmethod
    def _to_event(row: AuditEventRow) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row.event_id),
            timestamp=row.timestamp,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            actor_id=row.actor_id,
            correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
            description=row.description,
            details=json.loads(row.details_json) if row.details_json else {},
            error_message=row.error_message,
        )

    async def append_event(self, event: AuditEvent) -> bool:
        row = AuditEventRow(
            event_id=str(event.event_id),
            timestamp=event.timestamp,
            event_type=event.event_type.value,
            severity=event.severity.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            actor_id=event.actor_id,
            correlation_id=str(event.correlation_id) if event.correlation_id else None,
            description=event.description,
            details_json=event.details_json() or None,
            error_message=event.error_message,
        )
        return self._insert(row, "audit event")

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        with self._db.session() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .where(AuditEventRow.entity_type == entity_type, AuditEventRow.entity_id == entity_id)
                .order_by(AuditEventRow.timestamp)
            ).all()
            return [self._to_event(row) for row in rows]

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        with self._db.session() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .where(AuditEventRow.correlation_id == str(correlation_id))
                .order_by(AuditEventRow.timestamp)
            ).all()
            return [self._to_event(row) for row in rows]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        with self._db.session() as session:
            rows = session.scalars(
                select(AuditEventRow).order_by(AuditEventRow.timestamp.desc()).limit(limit)
            ).all()
            return [self._to_event(row) for row in rows]

"""
SQL Storage Implementation

DESIGN DECISION: A relational database is the production backend because:
1. Transactions make allocation commits all-or-nothing
2. Foreign keys give us cascade deletes for free
3. SQLite needs no setup for a single-user local install

TRADEOFFS:
- Calls are synchronous inside async methods (fine for one local user)
- Invariants are re-checked in Python before commit rather than with
  database triggers, so every backend enforces them identically

The implementation follows the abstract interface, so business logic never
imports SQLAlchemy.
"""

from contextlib import contextmanager
from datetime import date
from typing import Callable, Generator, Optional, Sequence, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from bookkeeping.config import get_settings
from bookkeeping.models.audit import AuditEvent, AuditEventType, AuditSeverity
from bookkeeping.models.records import (
    Allocation,
    DateRange,
    Invoice,
    InvoiceType,
    Payment,
    PaymentMethod,
    PaymentType,
)
from bookkeeping.services.storage.interface import (
    AuditStorageInterface,
    DeleteAllocation,
    DeleteAllocationsForPayment,
    DeleteInvoice,
    DeletePayment,
    DuplicateError,
    InsertAllocation,
    InsertInvoice,
    InsertPayment,
    NotFoundError,
    RecordStoreInterface,
    StorageError,
    StoreOperation,
    StoreUnavailableError,
    TransactionError,
    UpdateInvoice,
    UpdatePayment,
    check_allocation_invariants,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# =============================================================================
# TABLES
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all bookkeeping tables."""
    pass


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id = Column(Uuid, primary_key=True)
    code = Column(String(64), nullable=False, unique=True)
    contact_id = Column(Uuid, nullable=False)
    type = Column(
        Enum(InvoiceType, name="invoice_type", values_callable=_enum_values),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    entry_date = Column(Date, nullable=False, index=True)
    notes = Column(Text)
    media_ref = Column(String(500))
    created_at = Column(DateTime, nullable=False)


class PaymentRow(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True)
    contact_id = Column(Uuid, nullable=False)
    type = Column(
        Enum(PaymentType, name="payment_type", values_callable=_enum_values),
        nullable=False,
    )
    amount = Column(Integer, nullable=False)
    method = Column(
        Enum(PaymentMethod, name="payment_method", values_callable=_enum_values),
        nullable=False,
    )
    payment_date = Column(Date, nullable=False, index=True)
    notes = Column(Text)
    media_ref = Column(String(500))
    created_at = Column(DateTime, nullable=False)


class AllocationRow(Base):
    __tablename__ = "payment_allocations"

    id = Column(Uuid, primary_key=True)
    payment_id = Column(
        Uuid,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id = Column(
        Uuid,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    event_id = Column(Uuid, primary_key=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    entity_type = Column(String(32))
    entity_id = Column(Uuid, index=True)
    correlation_id = Column(Uuid, index=True)
    description = Column(String(500), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    error_code = Column(String(64))
    error_message = Column(Text)
    is_user_action = Column(Boolean, nullable=False, default=False)


Index("ix_invoices_contact_type", InvoiceRow.contact_id, InvoiceRow.type)
Index("ix_payments_contact_type", PaymentRow.contact_id, PaymentRow.type)


# =============================================================================
# CLIENT
# =============================================================================

class SqlClient:
    """
    Low-level database wrapper.

    Owns the engine and session factory and provides retry logic for
    establishing the connection.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        settings = get_settings().store
        self._url = url or settings.url
        self._echo = settings.echo if echo is None else echo
        self._connect_retries = settings.connect_retries
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        kwargs: dict = {"echo": self._echo}
        if self._url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self._url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each session sees an empty database
                kwargs["poolclass"] = StaticPool

        engine = create_engine(self._url, **kwargs)

        if engine.dialect.name == "sqlite":
            @event.listens_for(engine, "connect")
            def _enable_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        return engine

    def connect(self) -> Engine:
        """
        Verify the database is reachable.

        Retries with exponential backoff before giving up.
        """
        attempt = retry(
            stop=stop_after_attempt(self._connect_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(OperationalError),
            reraise=True,
        )(self._ping)
        try:
            attempt()
        except OperationalError as e:
            raise StoreUnavailableError(f"Failed to connect to database: {e}") from e
        return self.engine

    def _ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def create_schema(self) -> None:
        """
        Create all tables if they don't exist.

        For production, use migrations instead.
        """
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for a session that commits on success.

        Usage:
            with client.session_scope() as session:
                session.add(row)
        """
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type(StoreUnavailableError),
    reraise=True,
)


# =============================================================================
# RECORD STORE
# =============================================================================

class SqlRecordStore(RecordStoreInterface):
    """
    SQLAlchemy implementation of the record store.

    Reads are retried on transient connection failures.
    Writes are never retried automatically; a failed transaction is
    reported to the caller, who decides whether to try again.
    """

    def __init__(self, client: Optional[SqlClient] = None):
        self._client = client or SqlClient()

    def _query(self, fn: Callable[[Session], T]) -> T:
        try:
            with self._client.session_scope() as session:
                return fn(session)
        except OperationalError as e:
            raise StoreUnavailableError(f"Database unavailable: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Query failed: {e}") from e

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_invoice(row: InvoiceRow) -> Invoice:
        return Invoice.model_validate(row, from_attributes=True)

    @staticmethod
    def _to_payment(row: PaymentRow) -> Payment:
        return Payment.model_validate(row, from_attributes=True)

    @staticmethod
    def _to_allocation(row: AllocationRow) -> Allocation:
        return Allocation.model_validate(row, from_attributes=True)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @_read_retry
    async def find_invoices(
        self,
        contact_id: Optional[UUID] = None,
        type: Optional[InvoiceType] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[Invoice]:
        def run(session: Session) -> list[Invoice]:
            stmt = select(InvoiceRow)
            if contact_id is not None:
                stmt = stmt.where(InvoiceRow.contact_id == contact_id)
            if type is not None:
                stmt = stmt.where(InvoiceRow.type == type)
            if date_range and date_range.start:
                stmt = stmt.where(InvoiceRow.entry_date >= date_range.start)
            if date_range and date_range.end:
                stmt = stmt.where(InvoiceRow.entry_date <= date_range.end)
            rows = session.scalars(stmt).all()
            invoices = [self._to_invoice(row) for row in rows]
            invoices.sort(key=lambda inv: (inv.entry_date, inv.created_at, str(inv.id)))
            return invoices

        return self._query(run)

    @_read_retry
    async def find_payments(
        self,
        contact_id: UUID,
        type: PaymentType,
        date_range: Optional[DateRange] = None,
    ) -> list[Payment]:
        def run(session: Session) -> list[Payment]:
            stmt = select(PaymentRow).where(
                PaymentRow.contact_id == contact_id,
                PaymentRow.type == type,
            )
            if date_range and date_range.start:
                stmt = stmt.where(PaymentRow.payment_date >= date_range.start)
            if date_range and date_range.end:
                stmt = stmt.where(PaymentRow.payment_date <= date_range.end)
            rows = session.scalars(stmt).all()
            payments = [self._to_payment(row) for row in rows]
            payments.sort(key=lambda pay: (pay.payment_date, pay.created_at, str(pay.id)))
            return payments

        return self._query(run)

    @_read_retry
    async def find_invoice_by_id(self, invoice_id: UUID) -> Optional[Invoice]:
        def run(session: Session) -> Optional[Invoice]:
            row = session.get(InvoiceRow, invoice_id)
            return self._to_invoice(row) if row else None

        return self._query(run)

    @_read_retry
    async def find_invoice_by_code(self, code: str) -> Optional[Invoice]:
        def run(session: Session) -> Optional[Invoice]:
            row = session.scalars(
                select(InvoiceRow).where(InvoiceRow.code == code)
            ).first()
            return self._to_invoice(row) if row else None

        return self._query(run)

    @_read_retry
    async def find_payment_by_id(self, payment_id: UUID) -> Optional[Payment]:
        def run(session: Session) -> Optional[Payment]:
            row = session.get(PaymentRow, payment_id)
            return self._to_payment(row) if row else None

        return self._query(run)

    @_read_retry
    async def find_allocation_by_id(self, allocation_id: UUID) -> Optional[Allocation]:
        def run(session: Session) -> Optional[Allocation]:
            row = session.get(AllocationRow, allocation_id)
            return self._to_allocation(row) if row else None

        return self._query(run)

    @_read_retry
    async def find_allocations(
        self,
        payment_id: Optional[UUID] = None,
        invoice_id: Optional[UUID] = None,
    ) -> list[Allocation]:
        def run(session: Session) -> list[Allocation]:
            stmt = select(AllocationRow)
            if payment_id is not None:
                stmt = stmt.where(AllocationRow.payment_id == payment_id)
            if invoice_id is not None:
                stmt = stmt.where(AllocationRow.invoice_id == invoice_id)
            rows = session.scalars(stmt).all()
            allocations = [self._to_allocation(row) for row in rows]
            allocations.sort(key=lambda a: (a.created_at, str(a.id)))
            return allocations

        return self._query(run)

    @_read_retry
    async def count_invoices_on(self, entry_date: date) -> int:
        def run(session: Session) -> int:
            return session.scalar(
                select(func.count()).select_from(InvoiceRow).where(
                    InvoiceRow.entry_date == entry_date
                )
            ) or 0

        return self._query(run)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def run_transaction(self, operations: Sequence[StoreOperation]) -> None:
        touched_invoices: set[UUID] = set()
        touched_payments: set[UUID] = set()

        try:
            with self._client.session_scope() as session:
                for operation in operations:
                    self._apply_operation(
                        session, operation, touched_invoices, touched_payments
                    )
                    session.flush()
                self._check_invariants(session, touched_invoices, touched_payments)
        except StorageError:
            raise
        except IntegrityError as e:
            raise DuplicateError(f"Constraint violated: {e.orig}") from e
        except OperationalError as e:
            raise StoreUnavailableError(f"Database unavailable: {e}") from e
        except Exception as e:
            raise TransactionError(f"Transaction failed: {e}") from e

        logger.debug("transaction_committed", operations=len(operations))

    def _apply_operation(
        self,
        session: Session,
        operation: StoreOperation,
        touched_invoices: set[UUID],
        touched_payments: set[UUID],
    ) -> None:
        if isinstance(operation, InsertInvoice):
            invoice = operation.invoice
            if session.get(InvoiceRow, invoice.id) is not None:
                raise DuplicateError(f"Invoice already exists: {invoice.id}")
            existing_code = session.scalars(
                select(InvoiceRow.id).where(InvoiceRow.code == invoice.code)
            ).first()
            if existing_code is not None:
                raise DuplicateError(f"Invoice code already used: {invoice.code}")
            session.add(InvoiceRow(**invoice.model_dump()))

        elif isinstance(operation, UpdateInvoice):
            invoice = operation.invoice
            row = session.get(InvoiceRow, invoice.id)
            if row is None:
                raise NotFoundError("invoice", invoice.id)
            for key, value in invoice.model_dump().items():
                setattr(row, key, value)
            touched_invoices.add(invoice.id)

        elif isinstance(operation, DeleteInvoice):
            row = session.get(InvoiceRow, operation.invoice_id)
            if row is None:
                raise NotFoundError("invoice", operation.invoice_id)
            session.execute(
                delete(AllocationRow).where(AllocationRow.invoice_id == operation.invoice_id)
            )
            session.delete(row)

        elif isinstance(operation, InsertPayment):
            payment = operation.payment
            if session.get(PaymentRow, payment.id) is not None:
                raise DuplicateError(f"Payment already exists: {payment.id}")
            session.add(PaymentRow(**payment.model_dump()))

        elif isinstance(operation, UpdatePayment):
            payment = operation.payment
            row = session.get(PaymentRow, payment.id)
            if row is None:
                raise NotFoundError("payment", payment.id)
            for key, value in payment.model_dump().items():
                setattr(row, key, value)
            touched_payments.add(payment.id)

        elif isinstance(operation, DeletePayment):
            row = session.get(PaymentRow, operation.payment_id)
            if row is None:
                raise NotFoundError("payment", operation.payment_id)
            session.execute(
                delete(AllocationRow).where(AllocationRow.payment_id == operation.payment_id)
            )
            session.delete(row)

        elif isinstance(operation, InsertAllocation):
            allocation = operation.allocation
            if session.get(PaymentRow, allocation.payment_id) is None:
                raise NotFoundError("payment", allocation.payment_id)
            if session.get(InvoiceRow, allocation.invoice_id) is None:
                raise NotFoundError("invoice", allocation.invoice_id)
            session.add(AllocationRow(**allocation.model_dump()))
            touched_invoices.add(allocation.invoice_id)
            touched_payments.add(allocation.payment_id)

        elif isinstance(operation, DeleteAllocation):
            row = session.get(AllocationRow, operation.allocation_id)
            if row is None:
                raise NotFoundError("allocation", operation.allocation_id)
            session.delete(row)

        elif isinstance(operation, DeleteAllocationsForPayment):
            session.execute(
                delete(AllocationRow).where(AllocationRow.payment_id == operation.payment_id)
            )

        else:
            raise TransactionError(f"Unsupported operation: {type(operation).__name__}")

    def _check_invariants(
        self,
        session: Session,
        touched_invoices: set[UUID],
        touched_payments: set[UUID],
    ) -> None:
        if not touched_invoices and not touched_payments:
            return

        invoices = {
            row.id: self._to_invoice(row)
            for row in session.scalars(
                select(InvoiceRow).where(InvoiceRow.id.in_(list(touched_invoices)))
            )
        }
        payments = {
            row.id: self._to_payment(row)
            for row in session.scalars(
                select(PaymentRow).where(PaymentRow.id.in_(list(touched_payments)))
            )
        }
        allocations = [
            self._to_allocation(row)
            for row in session.scalars(
                select(AllocationRow).where(
                    or_(
                        AllocationRow.invoice_id.in_(list(touched_invoices)),
                        AllocationRow.payment_id.in_(list(touched_payments)),
                    )
                )
            )
        ]
        check_allocation_invariants(
            invoices=invoices,
            payments=payments,
            allocations=allocations,
            touched_invoices=touched_invoices,
            touched_payments=touched_payments,
        )


# =============================================================================
# AUDIT STORAGE
# =============================================================================

class SqlAuditStorage(AuditStorageInterface):
    """
    SQLAlchemy implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[SqlClient] = None):
        self._client = client or SqlClient()

    @staticmethod
    def _to_event(row: AuditEventRow) -> AuditEvent:
        return AuditEvent(
            event_id=row.event_id,
            timestamp=row.timestamp,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=row.correlation_id,
            description=row.description,
            details=row.details or {},
            error_code=row.error_code,
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _insert(self, event: AuditEvent) -> None:
        with self._client.session_scope() as session:
            session.add(AuditEventRow(
                event_id=event.event_id,
                timestamp=event.timestamp,
                event_type=event.event_type.value,
                severity=event.severity.value,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                correlation_id=event.correlation_id,
                description=event.description,
                details=event.model_dump(mode="json")["details"],
                error_code=event.error_code,
                error_message=event.error_message,
                is_user_action=event.is_user_action,
            ))

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            self._insert(event)
            return True
        except SQLAlchemyError as e:
            # Audit logging must not break the main flow
            logger.warning(
                "audit_event_write_failed",
                error=str(e),
                event_id=str(event.event_id),
            )
            return False

    def _select(self, stmt) -> list[AuditEvent]:
        try:
            with self._client.session_scope() as session:
                return [self._to_event(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get audit events: {e}") from e

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return self._select(
            select(AuditEventRow)
            .where(AuditEventRow.correlation_id == correlation_id)
            .order_by(AuditEventRow.timestamp)
        )

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        return self._select(
            select(AuditEventRow)
            .where(
                AuditEventRow.entity_type == entity_type,
                AuditEventRow.entity_id == entity_id,
            )
            .order_by(AuditEventRow.timestamp)
        )

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return self._select(
            select(AuditEventRow)
            .order_by(AuditEventRow.timestamp.desc())
            .limit(limit)
        )

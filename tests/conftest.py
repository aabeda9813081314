"""
Shared fixtures.

Every test gets a fresh in-memory store. Records are seeded straight
through run_transaction so tests don't depend on the lifecycle flows.
"""

from datetime import date, datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

import pytest

from bookkeeping.allocation import AllocationEngine
from bookkeeping.audit import AuditLogger
from bookkeeping.models import (
    Allocation,
    Invoice,
    InvoiceType,
    Payment,
    PaymentType,
)
from bookkeeping.orchestrator import BookkeepingService
from bookkeeping.services.storage import (
    InMemoryAuditStorage,
    InMemoryRecordStore,
    InsertAllocation,
    InsertInvoice,
    InsertPayment,
)


BASE_TIME = datetime(2024, 1, 1, 9, 0, 0)
_counter = {"n": 0}


def _next_created_at() -> datetime:
    # Strictly increasing, so creation order is the tie-break in every test
    _counter["n"] += 1
    return BASE_TIME + timedelta(seconds=_counter["n"])


@pytest.fixture
def contact_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_contact_id() -> UUID:
    return uuid4()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def engine(store, audit_logger) -> AllocationEngine:
    return AllocationEngine(store, audit_logger=audit_logger)


@pytest.fixture
def service(store, audit_logger) -> BookkeepingService:
    return BookkeepingService(store, audit_logger=audit_logger)


@pytest.fixture
def make_invoice(contact_id):
    def factory(
        amount: int,
        entry_date: date = date(2024, 2, 1),
        type: InvoiceType = InvoiceType.SALES,
        contact: Optional[UUID] = None,
    ) -> Invoice:
        return Invoice(
            code=f"TEST-{uuid4().hex[:10]}",
            contact_id=contact or contact_id,
            type=type,
            amount=amount,
            entry_date=entry_date,
            created_at=_next_created_at(),
        )
    return factory


@pytest.fixture
def make_payment(contact_id):
    def factory(
        amount: int,
        payment_date: date = date(2024, 2, 10),
        type: PaymentType = PaymentType.INCOME,
        contact: Optional[UUID] = None,
    ) -> Payment:
        return Payment(
            contact_id=contact or contact_id,
            type=type,
            amount=amount,
            payment_date=payment_date,
            created_at=_next_created_at(),
        )
    return factory


@pytest.fixture
def seed(store):
    """Insert records into the store in one transaction."""
    async def insert(*records):
        operations = []
        for record in records:
            if isinstance(record, Invoice):
                operations.append(InsertInvoice(invoice=record))
            elif isinstance(record, Payment):
                operations.append(InsertPayment(payment=record))
            elif isinstance(record, Allocation):
                operations.append(InsertAllocation(allocation=record))
            else:
                raise TypeError(f"Cannot seed {type(record).__name__}")
        await store.run_transaction(operations)
        return records
    return insert

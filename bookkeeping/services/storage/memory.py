"""
In-Memory Storage Implementation

Keeps records in dictionaries. Used by tests and by callers that want the
engine without a database.

Transactions are copy-on-write: a batch runs against a copy of the
current state, and the copy replaces the live state only after every
operation and the invariant check succeed. An exception anywhere leaves
the live state untouched.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence
from uuid import UUID

import structlog

from bookkeeping.models.audit import AuditEvent
from bookkeeping.models.records import (
    Allocation,
    DateRange,
    Invoice,
    InvoiceType,
    Payment,
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
    TransactionError,
    UpdateInvoice,
    UpdatePayment,
    check_allocation_invariants,
)


logger = structlog.get_logger(__name__)


@dataclass
class _State:
    invoices: dict[UUID, Invoice] = field(default_factory=dict)
    payments: dict[UUID, Payment] = field(default_factory=dict)
    allocations: dict[UUID, Allocation] = field(default_factory=dict)

    def copy(self) -> "_State":
        # Records are replaced, never mutated in place, so shallow copies suffice
        return _State(
            invoices=dict(self.invoices),
            payments=dict(self.payments),
            allocations=dict(self.allocations),
        )


@dataclass
class _Touched:
    invoices: set[UUID] = field(default_factory=set)
    payments: set[UUID] = field(default_factory=set)


class InMemoryRecordStore(RecordStoreInterface):
    """In-memory implementation of the record store."""

    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find_invoices(
        self,
        contact_id: Optional[UUID] = None,
        type: Optional[InvoiceType] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[Invoice]:
        invoices = [
            inv.model_copy()
            for inv in self._state.invoices.values()
            if (contact_id is None or inv.contact_id == contact_id)
            and (type is None or inv.type == type)
            and (date_range is None or date_range.contains(inv.entry_date))
        ]
        invoices.sort(key=lambda inv: (inv.entry_date, inv.created_at, str(inv.id)))
        return invoices

    async def find_payments(
        self,
        contact_id: UUID,
        type: PaymentType,
        date_range: Optional[DateRange] = None,
    ) -> list[Payment]:
        payments = [
            pay.model_copy()
            for pay in self._state.payments.values()
            if pay.contact_id == contact_id
            and pay.type == type
            and (date_range is None or date_range.contains(pay.payment_date))
        ]
        payments.sort(key=lambda pay: (pay.payment_date, pay.created_at, str(pay.id)))
        return payments

    async def find_invoice_by_id(self, invoice_id: UUID) -> Optional[Invoice]:
        invoice = self._state.invoices.get(invoice_id)
        return invoice.model_copy() if invoice else None

    async def find_invoice_by_code(self, code: str) -> Optional[Invoice]:
        for invoice in self._state.invoices.values():
            if invoice.code == code:
                return invoice.model_copy()
        return None

    async def find_payment_by_id(self, payment_id: UUID) -> Optional[Payment]:
        payment = self._state.payments.get(payment_id)
        return payment.model_copy() if payment else None

    async def find_allocation_by_id(self, allocation_id: UUID) -> Optional[Allocation]:
        allocation = self._state.allocations.get(allocation_id)
        return allocation.model_copy() if allocation else None

    async def find_allocations(
        self,
        payment_id: Optional[UUID] = None,
        invoice_id: Optional[UUID] = None,
    ) -> list[Allocation]:
        allocations = [
            a.model_copy()
            for a in self._state.allocations.values()
            if (payment_id is None or a.payment_id == payment_id)
            and (invoice_id is None or a.invoice_id == invoice_id)
        ]
        allocations.sort(key=lambda a: (a.created_at, str(a.id)))
        return allocations

    async def count_invoices_on(self, entry_date: date) -> int:
        return sum(
            1 for inv in self._state.invoices.values() if inv.entry_date == entry_date
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def run_transaction(self, operations: Sequence[StoreOperation]) -> None:
        async with self._lock:
            working = self._state.copy()
            touched = _Touched()

            try:
                for operation in operations:
                    self._apply_operation(working, operation, touched)

                check_allocation_invariants(
                    invoices=working.invoices,
                    payments=working.payments,
                    allocations=list(working.allocations.values()),
                    touched_invoices=touched.invoices,
                    touched_payments=touched.payments,
                )
            except StorageError:
                raise
            except Exception as e:
                raise TransactionError(f"Transaction failed: {e}") from e

            self._state = working
            logger.debug("transaction_committed", operations=len(operations))

    def _apply_operation(
        self,
        state: _State,
        operation: StoreOperation,
        touched: _Touched,
    ) -> None:
        """Apply one operation to a working copy of the state."""
        if isinstance(operation, InsertInvoice):
            invoice = operation.invoice
            if invoice.id in state.invoices:
                raise DuplicateError(f"Invoice already exists: {invoice.id}")
            if any(inv.code == invoice.code for inv in state.invoices.values()):
                raise DuplicateError(f"Invoice code already used: {invoice.code}")
            state.invoices[invoice.id] = invoice.model_copy()

        elif isinstance(operation, UpdateInvoice):
            invoice = operation.invoice
            if invoice.id not in state.invoices:
                raise NotFoundError("invoice", invoice.id)
            if any(
                inv.code == invoice.code and inv.id != invoice.id
                for inv in state.invoices.values()
            ):
                raise DuplicateError(f"Invoice code already used: {invoice.code}")
            state.invoices[invoice.id] = invoice.model_copy()
            touched.invoices.add(invoice.id)

        elif isinstance(operation, DeleteInvoice):
            if operation.invoice_id not in state.invoices:
                raise NotFoundError("invoice", operation.invoice_id)
            del state.invoices[operation.invoice_id]
            self._drop_allocations(
                state, lambda a: a.invoice_id == operation.invoice_id
            )

        elif isinstance(operation, InsertPayment):
            payment = operation.payment
            if payment.id in state.payments:
                raise DuplicateError(f"Payment already exists: {payment.id}")
            state.payments[payment.id] = payment.model_copy()

        elif isinstance(operation, UpdatePayment):
            payment = operation.payment
            if payment.id not in state.payments:
                raise NotFoundError("payment", payment.id)
            state.payments[payment.id] = payment.model_copy()
            touched.payments.add(payment.id)

        elif isinstance(operation, DeletePayment):
            if operation.payment_id not in state.payments:
                raise NotFoundError("payment", operation.payment_id)
            del state.payments[operation.payment_id]
            self._drop_allocations(
                state, lambda a: a.payment_id == operation.payment_id
            )

        elif isinstance(operation, InsertAllocation):
            allocation = operation.allocation
            if allocation.id in state.allocations:
                raise DuplicateError(f"Allocation already exists: {allocation.id}")
            if allocation.payment_id not in state.payments:
                raise NotFoundError("payment", allocation.payment_id)
            if allocation.invoice_id not in state.invoices:
                raise NotFoundError("invoice", allocation.invoice_id)
            state.allocations[allocation.id] = allocation.model_copy()
            touched.invoices.add(allocation.invoice_id)
            touched.payments.add(allocation.payment_id)

        elif isinstance(operation, DeleteAllocation):
            if operation.allocation_id not in state.allocations:
                raise NotFoundError("allocation", operation.allocation_id)
            del state.allocations[operation.allocation_id]

        elif isinstance(operation, DeleteAllocationsForPayment):
            self._drop_allocations(
                state, lambda a: a.payment_id == operation.payment_id
            )

        else:
            raise TransactionError(f"Unsupported operation: {type(operation).__name__}")

    @staticmethod
    def _drop_allocations(state: _State, predicate) -> None:
        for allocation_id in [
            a.id for a in state.allocations.values() if predicate(a)
        ]:
            del state.allocations[allocation_id]


class InMemoryAuditStorage(AuditStorageInterface):
    """
    In-memory audit log.

    Audit events are append-only.
    """

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

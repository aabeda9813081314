"""
Abstract Storage Interface

DESIGN DECISION: The engine talks to storage only through this interface.
This allows us to:
1. Use SQLite locally and swap the database later
2. Use in-memory storage for testing
3. Keep allocation logic decoupled from persistence mechanics

Reads are plain queries. Writes go through run_transaction() as a batch of
operation values, so every mutation is all-or-nothing.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional, Sequence, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from bookkeeping.models.audit import AuditEvent
from bookkeeping.models.records import (
    Allocation,
    DateRange,
    Invoice,
    InvoiceType,
    Payment,
    PaymentType,
)


# =============================================================================
# TRANSACTION OPERATIONS
# =============================================================================

class _Operation(BaseModel):
    model_config = ConfigDict(frozen=True)


class InsertInvoice(_Operation):
    invoice: Invoice


class UpdateInvoice(_Operation):
    """Replace the stored invoice with this version (matched by id)."""
    invoice: Invoice


class DeleteInvoice(_Operation):
    """Delete an invoice; its allocations go with it."""
    invoice_id: UUID


class InsertPayment(_Operation):
    payment: Payment


class UpdatePayment(_Operation):
    """Replace the stored payment with this version (matched by id)."""
    payment: Payment


class DeletePayment(_Operation):
    """Delete a payment; its allocations go with it."""
    payment_id: UUID


class InsertAllocation(_Operation):
    allocation: Allocation


class DeleteAllocation(_Operation):
    allocation_id: UUID


class DeleteAllocationsForPayment(_Operation):
    """Delete every allocation of a payment. Deleting none is not an error."""
    payment_id: UUID


StoreOperation = Union[
    InsertInvoice,
    UpdateInvoice,
    DeleteInvoice,
    InsertPayment,
    UpdatePayment,
    DeletePayment,
    InsertAllocation,
    DeleteAllocation,
    DeleteAllocationsForPayment,
]


# =============================================================================
# INTERFACES
# =============================================================================

class RecordStoreInterface(ABC):
    """
    Abstract interface for invoice, payment and allocation storage.

    Any storage implementation (SQLite, PostgreSQL, in-memory, etc.)
    must implement these methods.

    GUARANTEES required of implementations:
    - run_transaction() applies every operation or none
    - deleting an invoice or payment cascades to its allocations
    - at commit time, for every invoice and payment the batch touched,
      allocation sums do not exceed the record's amount
    """

    @abstractmethod
    async def find_invoices(
        self,
        contact_id: Optional[UUID] = None,
        type: Optional[InvoiceType] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[Invoice]:
        """
        List invoices, optionally narrowed to one contact and type.

        Args:
            contact_id: Contact owning the invoices; None for all contacts
            type: Invoice type to match; None for both types
            date_range: Optional inclusive window on entry_date

        Returns:
            Matching invoices ordered by (entry_date, created_at, id)
        """
        pass

    @abstractmethod
    async def find_payments(
        self,
        contact_id: UUID,
        type: PaymentType,
        date_range: Optional[DateRange] = None,
    ) -> list[Payment]:
        """
        List a contact's payments of one type.

        Returns:
            Matching payments ordered by (payment_date, created_at, id)
        """
        pass

    @abstractmethod
    async def find_invoice_by_id(self, invoice_id: UUID) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def find_invoice_by_code(self, code: str) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def find_payment_by_id(self, payment_id: UUID) -> Optional[Payment]:
        pass

    @abstractmethod
    async def find_allocation_by_id(self, allocation_id: UUID) -> Optional[Allocation]:
        pass

    @abstractmethod
    async def find_allocations(
        self,
        payment_id: Optional[UUID] = None,
        invoice_id: Optional[UUID] = None,
    ) -> list[Allocation]:
        """
        List allocations filtered by payment and/or invoice.

        With no filters, returns every allocation.
        Ordered by (created_at, id).
        """
        pass

    @abstractmethod
    async def count_invoices_on(self, entry_date: date) -> int:
        """Count invoices (of any type and contact) dated entry_date."""
        pass

    @abstractmethod
    async def run_transaction(self, operations: Sequence[StoreOperation]) -> None:
        """
        Execute a batch of operations atomically.

        Raises:
            NotFoundError: An operation references a missing record
            DuplicateError: An insert collides with an existing id or code
            InvariantViolationError: The batch would over-allocate a record
            TransactionError: Any other commit failure

        On any exception nothing from the batch is visible afterwards.
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for a correlation ID, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""

    def __init__(self, entity_type: str, entity_id: UUID):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class StoreUnavailableError(StorageError):
    """Could not connect to storage backend."""
    pass


class TransactionError(StorageError):
    """A transaction failed and was rolled back."""
    pass


class InvariantViolationError(TransactionError):
    """
    A batch would leave allocations exceeding an invoice or payment amount.

    entity_type is 'invoice' or 'payment'.
    """

    def __init__(self, entity_type: str, entity_id: UUID, allocated: int, amount: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.allocated = allocated
        self.amount = amount
        super().__init__(
            f"Allocations for {entity_type} {entity_id} would total "
            f"{allocated}, above its amount {amount}"
        )


def check_allocation_invariants(
    invoices: dict[UUID, Invoice],
    payments: dict[UUID, Payment],
    allocations: Sequence[Allocation],
    touched_invoices: set[UUID],
    touched_payments: set[UUID],
) -> None:
    """
    Verify allocation sums for the records a batch touched.

    Shared by store implementations so they enforce the same rule.

    Raises:
        InvariantViolationError: On the first over-allocated record
    """
    invoice_sums: dict[UUID, int] = {}
    payment_sums: dict[UUID, int] = {}
    for allocation in allocations:
        invoice_sums[allocation.invoice_id] = (
            invoice_sums.get(allocation.invoice_id, 0) + allocation.amount
        )
        payment_sums[allocation.payment_id] = (
            payment_sums.get(allocation.payment_id, 0) + allocation.amount
        )

    for invoice_id in sorted(touched_invoices, key=str):
        invoice = invoices.get(invoice_id)
        allocated = invoice_sums.get(invoice_id, 0)
        if invoice is not None and allocated > invoice.amount:
            raise InvariantViolationError("invoice", invoice_id, allocated, invoice.amount)

    for payment_id in sorted(touched_payments, key=str):
        payment = payments.get(payment_id)
        allocated = payment_sums.get(payment_id, 0)
        if payment is not None and allocated > payment.amount:
            raise InvariantViolationError("payment", payment_id, allocated, payment.amount)

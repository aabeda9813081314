"""
Main Orchestrator for Bookkeeping

This module ties together the store, the allocation engine and the
read-side queries, and defines the record lifecycle flows:
1. Invoices: create (with generated code) → edit details → delete
2. Payments: create (optionally with allocations) → edit → delete

DESIGN DECISION: The orchestrator enforces the boundaries:
- Every write goes through one store transaction
- Allocation rows are only ever produced by the allocation engine
- An allocated payment's amount cannot be edited
- Every step is audited

Deleting an invoice or payment cascades to its allocations in the same
transaction; the status projector picks up the change on the next read.
"""

from datetime import date
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog

from bookkeeping.allocation import (
    AllocationEngine,
    AmountLockedError,
    RecordNotFoundError,
)
from bookkeeping.audit import AuditLogger, create_correlation_id
from bookkeeping.codegen import generate_invoice_code
from bookkeeping.config import ConfigurationError, get_settings, validate_all_settings
from bookkeeping.models.records import (
    Allocation,
    AllocationDraft,
    Invoice,
    InvoiceType,
    Payment,
    PaymentMethod,
    PaymentType,
)
from bookkeeping.queries import DebtLedgerBuilder, StatusProjector
from bookkeeping.services.storage import (
    DeleteInvoice,
    DeletePayment,
    InMemoryAuditStorage,
    InMemoryRecordStore,
    InsertAllocation,
    InsertInvoice,
    InsertPayment,
    RecordStoreInterface,
    SqlAuditStorage,
    SqlClient,
    SqlRecordStore,
    StoreOperation,
    UpdateInvoice,
    UpdatePayment,
)


logger = structlog.get_logger(__name__)


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED: Any = _Unchanged()
"""Default for update arguments the caller does not want to touch."""


def _collect_changes(**fields: Any) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not UNCHANGED}


def _check_amount(amount: int) -> None:
    max_amount = get_settings().app.max_amount
    if amount > max_amount:
        raise ValueError(f"Amount {amount} exceeds the maximum of {max_amount}")


class BookkeepingService:
    """
    Record lifecycle flows on top of the allocation engine.

    Exposes the engine, projector and ledger builder so callers share
    one store and one in-flight guard.
    """

    def __init__(
        self,
        store: RecordStoreInterface,
        engine: Optional[AllocationEngine] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger
        self.engine = engine or AllocationEngine(store, audit_logger=audit_logger)
        self.projector = StatusProjector(store)
        self.ledger = DebtLedgerBuilder(store, audit_logger=audit_logger)

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    async def create_invoice(
        self,
        contact_id: UUID,
        contact_name: Optional[str],
        type: InvoiceType,
        amount: int,
        entry_date: date,
        notes: Optional[str] = None,
        media_ref: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Invoice:
        """
        Create an invoice with a generated code.

        Args:
            contact_name: Used only for the code's initials

        Returns:
            The stored invoice
        """
        correlation_id = correlation_id or create_correlation_id()
        _check_amount(amount)

        code = await generate_invoice_code(self._store, type, contact_name, entry_date)
        invoice = Invoice(
            code=code,
            contact_id=contact_id,
            type=type,
            amount=amount,
            entry_date=entry_date,
            notes=notes,
            media_ref=media_ref,
        )
        await self.engine.commit(
            "create_invoice", invoice.id, [InsertInvoice(invoice=invoice)], correlation_id
        )

        logger.info("invoice_created", invoice_id=str(invoice.id), code=code)
        if self._audit_logger:
            await self._audit_logger.log_invoice_created(
                invoice_id=invoice.id,
                code=code,
                amount=amount,
                correlation_id=correlation_id,
            )
        return invoice

    async def update_invoice(
        self,
        invoice_id: UUID,
        notes: Optional[str] = UNCHANGED,
        media_ref: Optional[str] = UNCHANGED,
        entry_date: date = UNCHANGED,
        correlation_id: Optional[UUID] = None,
    ) -> Invoice:
        """
        Edit an invoice's details.

        The amount, type, contact and code cannot be changed.
        Pass None to clear notes or media_ref.
        """
        correlation_id = correlation_id or create_correlation_id()
        if entry_date is None:
            raise ValueError("An invoice's entry date cannot be cleared")

        invoice = await self._store.find_invoice_by_id(invoice_id)
        if invoice is None:
            raise RecordNotFoundError("invoice", invoice_id)

        changes = _collect_changes(notes=notes, media_ref=media_ref, entry_date=entry_date)
        if not changes:
            return invoice

        updated = Invoice.model_validate({**invoice.model_dump(), **changes})
        await self.engine.commit(
            "update_invoice", invoice_id, [UpdateInvoice(invoice=updated)], correlation_id
        )

        if self._audit_logger:
            await self._audit_logger.log_invoice_updated(
                invoice_id=invoice_id,
                changes={key: str(value) for key, value in changes.items()},
                correlation_id=correlation_id,
            )
        return updated

    async def delete_invoice(
        self,
        invoice_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> int:
        """
        Delete an invoice and every allocation against it.

        Returns:
            Number of allocations removed
        """
        correlation_id = correlation_id or create_correlation_id()

        invoice = await self._store.find_invoice_by_id(invoice_id)
        if invoice is None:
            raise RecordNotFoundError("invoice", invoice_id)
        allocations = await self._store.find_allocations(invoice_id=invoice_id)

        await self.engine.commit(
            "delete_invoice", invoice_id, [DeleteInvoice(invoice_id=invoice_id)], correlation_id
        )

        if self._audit_logger:
            await self._audit_logger.log_invoice_deleted(
                invoice_id=invoice_id,
                removed_allocations=len(allocations),
                correlation_id=correlation_id,
            )
        return len(allocations)

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def propose_allocations(
        self,
        contact_id: UUID,
        payment_type: PaymentType,
        amount: int,
    ) -> list[AllocationDraft]:
        """Auto-allocate an amount over the contact's outstanding invoices."""
        candidates = await self.engine.candidate_invoices(contact_id, payment_type)
        return self.engine.auto_allocate(amount, candidates)

    async def create_payment(
        self,
        contact_id: UUID,
        type: PaymentType,
        amount: int,
        payment_date: date,
        method: PaymentMethod = PaymentMethod.CASH,
        notes: Optional[str] = None,
        media_ref: Optional[str] = None,
        allocations: Sequence[AllocationDraft] = (),
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Payment, list[Allocation]]:
        """
        Create a payment and its initial allocations in one transaction.

        Returns:
            (payment, allocations)

        Raises:
            RecordNotFoundError: A draft references a missing invoice
            AllocationRejectedError: Drafts break a rule
            AllocationCommitError: The store transaction failed
        """
        correlation_id = correlation_id or create_correlation_id()
        _check_amount(amount)

        payment = Payment(
            contact_id=contact_id,
            type=type,
            amount=amount,
            method=method,
            payment_date=payment_date,
            notes=notes,
            media_ref=media_ref,
        )
        rows = await self.engine.prepare_allocations(
            payment, allocations, correlation_id=correlation_id
        )

        operations: list[StoreOperation] = [InsertPayment(payment=payment)]
        operations.extend(InsertAllocation(allocation=row) for row in rows)
        await self.engine.commit("create_payment", payment.id, operations, correlation_id)

        logger.info(
            "payment_created",
            payment_id=str(payment.id),
            allocations=len(rows),
        )
        if self._audit_logger:
            await self._audit_logger.log_payment_created(
                payment_id=payment.id,
                amount=amount,
                allocation_count=len(rows),
                correlation_id=correlation_id,
            )
        return payment, rows

    async def update_payment(
        self,
        payment_id: UUID,
        amount: int = UNCHANGED,
        method: PaymentMethod = UNCHANGED,
        payment_date: date = UNCHANGED,
        notes: Optional[str] = UNCHANGED,
        media_ref: Optional[str] = UNCHANGED,
        correlation_id: Optional[UUID] = None,
    ) -> Payment:
        """
        Edit a payment.

        Raises:
            AmountLockedError: The amount changes while allocations exist
        """
        correlation_id = correlation_id or create_correlation_id()
        for name, value in (("amount", amount), ("method", method), ("payment_date", payment_date)):
            if value is None:
                raise ValueError(f"A payment's {name} cannot be cleared")

        payment = await self._store.find_payment_by_id(payment_id)
        if payment is None:
            raise RecordNotFoundError("payment", payment_id)

        changes = _collect_changes(
            amount=amount,
            method=method,
            payment_date=payment_date,
            notes=notes,
            media_ref=media_ref,
        )
        if "amount" in changes and changes["amount"] == payment.amount:
            del changes["amount"]
        if not changes:
            return payment

        if "amount" in changes:
            _check_amount(changes["amount"])
            allocations = await self._store.find_allocations(payment_id=payment_id)
            if allocations:
                raise AmountLockedError(payment_id, len(allocations))

        updated = Payment.model_validate({**payment.model_dump(), **changes})
        await self.engine.commit(
            "update_payment", payment_id, [UpdatePayment(payment=updated)], correlation_id
        )

        if self._audit_logger:
            await self._audit_logger.log_payment_updated(
                payment_id=payment_id,
                changes={key: str(value) for key, value in changes.items()},
                correlation_id=correlation_id,
            )
        return updated

    async def delete_payment(
        self,
        payment_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> int:
        """
        Delete a payment and all of its allocations.

        Returns:
            Number of allocations removed
        """
        correlation_id = correlation_id or create_correlation_id()

        payment = await self._store.find_payment_by_id(payment_id)
        if payment is None:
            raise RecordNotFoundError("payment", payment_id)
        allocations = await self._store.find_allocations(payment_id=payment_id)

        await self.engine.commit(
            "delete_payment", payment_id, [DeletePayment(payment_id=payment_id)], correlation_id
        )

        if self._audit_logger:
            await self._audit_logger.log_payment_deleted(
                payment_id=payment_id,
                removed_allocations=len(allocations),
                correlation_id=correlation_id,
            )
        return len(allocations)


def create_service(
    use_database: bool = True,
    database_url: Optional[str] = None,
) -> BookkeepingService:
    """
    Factory function to create the application service.

    Args:
        use_database: Whether to use the SQL store.
                      Set to False for an in-memory store (tests, demos).
        database_url: Overrides the configured database URL

    Raises:
        ConfigurationError: A settings section does not load
        StoreUnavailableError: The database cannot be reached
    """
    failed = {
        section: error
        for section, error in validate_all_settings().items()
        if error is not None
    }
    for section, error in failed.items():
        logger.error("settings_invalid", section=section, error=error)
    if failed:
        raise ConfigurationError(failed)

    if use_database:
        client = SqlClient(url=database_url)
        client.connect()
        client.create_schema()
        store: RecordStoreInterface = SqlRecordStore(client)
        audit_logger = AuditLogger(SqlAuditStorage(client))
    else:
        store = InMemoryRecordStore()
        audit_logger = AuditLogger(InMemoryAuditStorage())

    logger.info(
        "service_created",
        backend=type(store).__name__,
        environment=get_settings().app.app_environment,
    )
    return BookkeepingService(store, audit_logger=audit_logger)

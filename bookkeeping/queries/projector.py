"""
Status Projector

DESIGN DECISION: Invoice status and payment unallocated amount are
DERIVED, never stored. Every read recomputes them from allocation rows.

This removes a whole class of staleness bugs: there is no cached flag
that could drift from the actual allocations after an edit or delete.
"""

from collections import defaultdict
from typing import Optional, Sequence
from uuid import UUID

from bookkeeping.allocation.errors import RecordNotFoundError
from bookkeeping.models.projections import AllocationDetail, InvoiceBalance, PaymentBalance
from bookkeeping.models.records import Allocation, Invoice, InvoiceStatus, InvoiceType, Payment
from bookkeeping.services.storage import RecordStoreInterface


def project_invoice(invoice: Invoice, allocations: Sequence[Allocation]) -> InvoiceBalance:
    """Compute remaining balance and status from an invoice's allocations."""
    allocated = sum(a.amount for a in allocations)
    remaining = max(0, invoice.amount - allocated)
    return InvoiceBalance(
        invoice=invoice,
        allocations=list(allocations),
        allocated=allocated,
        remaining=remaining,
        status=InvoiceStatus.PAID if remaining == 0 else InvoiceStatus.PENDING,
    )


def project_payment(payment: Payment, allocations: Sequence[Allocation]) -> PaymentBalance:
    """Compute the unallocated amount from a payment's allocations."""
    allocated = sum(a.amount for a in allocations)
    return PaymentBalance(
        payment=payment,
        allocations=list(allocations),
        allocated=allocated,
        unallocated=max(0, payment.amount - allocated),
    )


class StatusProjector:
    """
    Reads records and projects their balances.

    GUARANTEES:
    - Never writes to storage
    - Always reflects the allocations stored at the time of the call
    """

    def __init__(self, store: RecordStoreInterface):
        self._store = store

    async def invoice_balance(self, invoice_id: UUID) -> InvoiceBalance:
        invoice = await self._store.find_invoice_by_id(invoice_id)
        if invoice is None:
            raise RecordNotFoundError("invoice", invoice_id)
        allocations = await self._store.find_allocations(invoice_id=invoice_id)
        return project_invoice(invoice, allocations)

    async def payment_balance(self, payment_id: UUID) -> PaymentBalance:
        payment = await self._store.find_payment_by_id(payment_id)
        if payment is None:
            raise RecordNotFoundError("payment", payment_id)
        allocations = await self._store.find_allocations(payment_id=payment_id)
        return project_payment(payment, allocations)

    async def invoice_status(self, invoice_id: UUID) -> InvoiceStatus:
        return (await self.invoice_balance(invoice_id)).status

    async def list_invoice_balances(
        self,
        contact_id: Optional[UUID] = None,
        type: Optional[InvoiceType] = None,
        status: Optional[InvoiceStatus] = None,
        newest_first: bool = True,
    ) -> list[InvoiceBalance]:
        """
        Project every matching invoice in one pass.

        Args:
            contact_id: Only this contact's invoices; None for all
            type: Only this invoice type; None for both
            status: Keep only PAID or only PENDING invoices
            newest_first: Order by entry date descending (invoice list view)

        Returns:
            Balances in (entry_date, created_at, id) order, reversed when
            newest_first is set
        """
        invoices = await self._store.find_invoices(contact_id, type)

        by_invoice: dict[UUID, list[Allocation]] = defaultdict(list)
        for allocation in await self._store.find_allocations():
            by_invoice[allocation.invoice_id].append(allocation)

        balances = [project_invoice(invoice, by_invoice[invoice.id]) for invoice in invoices]
        if status is not None:
            balances = [b for b in balances if b.status is status]
        if newest_first:
            balances.reverse()
        return balances

    async def payment_allocation_details(self, payment_id: UUID) -> list[AllocationDetail]:
        """
        A payment's allocations with their invoices, oldest invoice first.

        Raises:
            RecordNotFoundError: Unknown payment
        """
        payment = await self._store.find_payment_by_id(payment_id)
        if payment is None:
            raise RecordNotFoundError("payment", payment_id)

        details = []
        for allocation in await self._store.find_allocations(payment_id=payment_id):
            invoice = await self._store.find_invoice_by_id(allocation.invoice_id)
            if invoice is None:
                raise RecordNotFoundError("invoice", allocation.invoice_id)
            details.append(AllocationDetail(
                allocation=allocation,
                invoice_code=invoice.code,
                invoice_entry_date=invoice.entry_date,
                invoice_amount=invoice.amount,
            ))

        details.sort(key=lambda d: (d.invoice_entry_date, str(d.allocation.invoice_id)))
        return details

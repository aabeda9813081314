"""
Projection Models

Read models produced by the status projector. These are recomputed from
allocation rows on every read and are never persisted.
"""

from datetime import date

from pydantic import BaseModel, Field

from bookkeeping.models.records import Allocation, Invoice, InvoiceStatus, Payment


class InvoiceBalance(BaseModel):
    """An invoice together with how much of it is settled."""

    invoice: Invoice
    allocations: list[Allocation] = Field(default_factory=list)
    allocated: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)
    status: InvoiceStatus

    @property
    def is_paid(self) -> bool:
        return self.status is InvoiceStatus.PAID


class PaymentBalance(BaseModel):
    """A payment together with how much of it is matched to invoices."""

    payment: Payment
    allocations: list[Allocation] = Field(default_factory=list)
    allocated: int = Field(..., ge=0)
    unallocated: int = Field(..., ge=0)

    @property
    def amount_locked(self) -> bool:
        """An allocated payment's amount cannot be edited directly."""
        return len(self.allocations) > 0

    @property
    def is_fully_allocated(self) -> bool:
        return self.unallocated == 0


class AllocationDetail(BaseModel):
    """One allocation of a payment, with the invoice it settles."""

    allocation: Allocation
    invoice_code: str
    invoice_entry_date: date
    invoice_amount: int = Field(..., gt=0, description="Full amount of the invoice")

    @property
    def amount(self) -> int:
        return self.allocation.amount

"""
Core Record Models for Bookkeeping

These models define the strict schemas for invoices, payments and the
allocations linking them. They are designed to:
1. Enforce type safety at runtime
2. Reject impossible amounts before they reach storage
3. Be serializable for storage and logging

Amounts are integers in minor currency units. There is no multi-currency
support; every amount in the system is in the same currency.

DESIGN DECISION: No model carries a "paid" flag or an "unallocated"
column. Those are projections over allocations (see queries/projector.py).
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class InvoiceType(str, Enum):
    """Direction of an invoice."""
    SALES = "sales"
    PURCHASE = "purchase"

    @property
    def settled_by(self) -> "PaymentType":
        """The payment type that can settle this kind of invoice."""
        if self is InvoiceType.SALES:
            return PaymentType.INCOME
        return PaymentType.EXPENSE


class PaymentType(str, Enum):
    """Direction of a payment."""
    INCOME = "income"
    EXPENSE = "expense"

    @property
    def settles(self) -> InvoiceType:
        """The invoice type this kind of payment can settle."""
        if self is PaymentType.INCOME:
            return InvoiceType.SALES
        return InvoiceType.PURCHASE


class PaymentMethod(str, Enum):
    """How the money moved."""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    OTHERS = "others"


class InvoiceStatus(str, Enum):
    """
    Derived invoice status.

    CRITICAL: This is never stored. It is recomputed from allocation sums
    on every read.
    """
    PENDING = "pending"
    PAID = "paid"


class DebtDirection(str, Enum):
    """
    Settlement direction between the business and a contact.

    RECEIVABLE: sales invoices settled by income payments (contact owes us)
    PAYABLE:    purchase invoices settled by expense payments (we owe contact)
    """
    RECEIVABLE = "receivable"
    PAYABLE = "payable"

    @property
    def invoice_type(self) -> InvoiceType:
        if self is DebtDirection.RECEIVABLE:
            return InvoiceType.SALES
        return InvoiceType.PURCHASE

    @property
    def payment_type(self) -> PaymentType:
        return self.invoice_type.settled_by

    @classmethod
    def for_payment_type(cls, payment_type: PaymentType) -> "DebtDirection":
        if payment_type is PaymentType.INCOME:
            return cls.RECEIVABLE
        return cls.PAYABLE


# =============================================================================
# PERSISTED RECORDS
# =============================================================================

class Invoice(BaseModel):
    """
    A sales or purchase invoice.

    The amount is immutable after creation; edits only touch
    notes, media reference and entry date.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique invoice ID"
    )
    code: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Unique human-readable invoice code"
    )
    contact_id: UUID
    type: InvoiceType
    amount: int = Field(
        ...,
        gt=0,
        description="Invoice amount in minor currency units"
    )
    entry_date: date
    notes: Optional[str] = Field(default=None, max_length=1000)
    media_ref: Optional[str] = Field(
        default=None,
        description="Opaque reference to an attachment owned elsewhere"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Payment(BaseModel):
    """
    An income or expense payment.

    The amount may only change while the payment has no allocations.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique payment ID"
    )
    contact_id: UUID
    type: PaymentType
    amount: int = Field(
        ...,
        gt=0,
        description="Full payment amount in minor currency units"
    )
    method: PaymentMethod = PaymentMethod.CASH
    payment_date: date
    notes: Optional[str] = Field(default=None, max_length=1000)
    media_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def settles(self) -> InvoiceType:
        return self.type.settles


class Allocation(BaseModel):
    """This much of this payment settles this invoice."""

    id: UUID = Field(default_factory=uuid4)
    payment_id: UUID
    invoice_id: UUID
    amount: int = Field(
        ...,
        gt=0,
        description="Allocated amount in minor currency units"
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# IN-MEMORY DRAFTS AND READ MODELS
# =============================================================================

class AllocationDraft(BaseModel):
    """
    One row of an allocation set being edited before confirmation.

    CRITICAL: This is PROPOSED data. It may be incomplete (no invoice
    chosen yet) or invalid (zero amount); validate() decides.
    Drafts never reach storage until a commit accepts them.
    """

    row_id: UUID = Field(
        default_factory=uuid4,
        description="Identity of the row inside the editor"
    )
    invoice_id: Optional[UUID] = None
    amount: int = 0

    def to_allocation(self, payment_id: UUID) -> Allocation:
        """Materialize a validated draft as an allocation row."""
        if self.invoice_id is None:
            raise ValueError("Draft has no invoice selected")
        return Allocation(
            payment_id=payment_id,
            invoice_id=self.invoice_id,
            amount=self.amount,
        )


class InvoiceCandidate(BaseModel):
    """An invoice annotated with its current remaining balance."""

    invoice: Invoice
    remaining: int = Field(..., ge=0)

    @property
    def id(self) -> UUID:
        return self.invoice.id

    @property
    def code(self) -> str:
        return self.invoice.code

    @property
    def entry_date(self) -> date:
        return self.invoice.entry_date


class DateRange(BaseModel):
    """Inclusive date window. Either end may be open."""

    start: Optional[date] = None
    end: Optional[date] = None

    @model_validator(mode='after')
    def validate_bounds(self) -> 'DateRange':
        if self.start and self.end and self.end < self.start:
            raise ValueError("Date range end cannot be before start")
        return self

    def contains(self, day: date) -> bool:
        if self.start and day < self.start:
            return False
        if self.end and day > self.end:
            return False
        return True


def is_settlement_pair(payment: Payment, invoice: Invoice) -> bool:
    """
    Type-compatibility rule: same contact, income with sales,
    expense with purchase.
    """
    return (
        payment.contact_id == invoice.contact_id
        and payment.type.settles == invoice.type
    )

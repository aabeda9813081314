"""
Debt Ledger Models

A ledger is the chronological view of one contact's invoices and
payments in one settlement direction, with a running balance.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from bookkeeping.models.records import DateRange, DebtDirection


class LedgerEntryKind(str, Enum):
    """What produced a ledger line."""
    INVOICE = "invoice"
    PAYMENT = "payment"


class BalanceSide(str, Enum):
    """Who owes whom, after all entries in the ledger."""
    OWED_TO_BUSINESS = "owed_to_business"
    OWED_BY_BUSINESS = "owed_by_business"
    SETTLED = "settled"


class LedgerEntry(BaseModel):
    """
    One line of a debt ledger.

    Invoices are positive (they increase the debt in the ledger's
    direction), payments negative.
    """

    kind: LedgerEntryKind
    record_id: UUID
    entry_date: date
    amount: int = Field(..., gt=0)
    code: Optional[str] = Field(
        default=None,
        description="Invoice code (invoices only)"
    )
    running_balance: int = Field(
        default=0,
        description="Cumulative balance after this entry"
    )

    @property
    def signed_amount(self) -> int:
        if self.kind is LedgerEntryKind.INVOICE:
            return self.amount
        return -self.amount


class DebtLedger(BaseModel):
    """
    Result of building a ledger for one contact and direction.

    NOTE: When date_range truncates history the running total only
    covers the window. There is no opening balance carried forward.
    """

    contact_id: UUID
    direction: DebtDirection
    date_range: Optional[DateRange] = None
    built_at: datetime = Field(default_factory=datetime.utcnow)
    entries: list[LedgerEntry] = Field(default_factory=list)
    running_total: int = 0

    @property
    def remaining_debt(self) -> int:
        """Magnitude shown to the user; use balance_side for the label."""
        return abs(self.running_total)

    @property
    def balance_side(self) -> BalanceSide:
        if self.running_total == 0:
            return BalanceSide.SETTLED
        contact_owes = (
            (self.direction is DebtDirection.RECEIVABLE) == (self.running_total > 0)
        )
        if contact_owes:
            return BalanceSide.OWED_TO_BUSINESS
        return BalanceSide.OWED_BY_BUSINESS

    @property
    def invoice_total(self) -> int:
        return sum(e.amount for e in self.entries if e.kind is LedgerEntryKind.INVOICE)

    @property
    def payment_total(self) -> int:
        return sum(e.amount for e in self.entries if e.kind is LedgerEntryKind.PAYMENT)

    @property
    def is_truncated(self) -> bool:
        """True when the window has a lower bound, so earlier history is excluded."""
        return self.date_range is not None and self.date_range.start is not None

"""
Debt Ledger Builder

Builds the chronological view of one contact's invoices and payments in
one settlement direction, with a running balance.

DESIGN DECISION: The ledger is computed from records only, like the
status projector. It never reads allocations: a payment reduces the
debt whether or not it has been matched to specific invoices.

Ordering:
- Entries are sorted ascending by date.
- On the same date, invoices come before payments. Invoices are listed
  first and the sort is stable, so this falls out of the construction.
  It is a chosen convention; nothing depends on it beyond display.
- Within each kind, the store order (date, created_at, id) is kept.

NOTE: With a date range, the running total only covers the window.
No opening balance is carried forward from before the range start.
"""

from typing import Optional
from uuid import UUID

import structlog

from bookkeeping.audit import AuditLogger
from bookkeeping.models.ledger import DebtLedger, LedgerEntry, LedgerEntryKind
from bookkeeping.models.records import DateRange, DebtDirection
from bookkeeping.services.storage import RecordStoreInterface


logger = structlog.get_logger(__name__)


class DebtLedgerBuilder:
    """Builds receivable and payable ledgers for a contact."""

    def __init__(
        self,
        store: RecordStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger

    async def build_ledger(
        self,
        contact_id: UUID,
        direction: DebtDirection,
        date_range: Optional[DateRange] = None,
    ) -> DebtLedger:
        """
        Build the ledger for one contact and direction.

        Args:
            contact_id: Contact whose records are listed
            direction: RECEIVABLE (sales/income) or PAYABLE (purchase/expense)
            date_range: Optional inclusive window on record dates

        Returns:
            DebtLedger with entries in date order and the running total
            (invoice amounts minus payment amounts within the window)
        """
        invoices = await self._store.find_invoices(
            contact_id, direction.invoice_type, date_range
        )
        payments = await self._store.find_payments(
            contact_id, direction.payment_type, date_range
        )

        entries = [
            LedgerEntry(
                kind=LedgerEntryKind.INVOICE,
                record_id=invoice.id,
                entry_date=invoice.entry_date,
                amount=invoice.amount,
                code=invoice.code,
            )
            for invoice in invoices
        ]
        entries.extend(
            LedgerEntry(
                kind=LedgerEntryKind.PAYMENT,
                record_id=payment.id,
                entry_date=payment.payment_date,
                amount=payment.amount,
            )
            for payment in payments
        )
        entries.sort(key=lambda entry: entry.entry_date)

        running = 0
        for entry in entries:
            running += entry.signed_amount
            entry.running_balance = running

        ledger = DebtLedger(
            contact_id=contact_id,
            direction=direction,
            date_range=date_range,
            entries=entries,
            running_total=running,
        )

        logger.debug(
            "ledger_built",
            contact_id=str(contact_id),
            direction=direction.value,
            entries=len(entries),
            running_total=running,
        )
        if self._audit_logger:
            await self._audit_logger.log_ledger_built(
                contact_id=contact_id,
                direction=direction.value,
                entry_count=len(entries),
                running_total=running,
            )
        return ledger

"""Tests for the debt ledger builder."""

from datetime import date

from bookkeeping.models import (
    Allocation,
    AuditEventType,
    BalanceSide,
    DateRange,
    DebtDirection,
    InvoiceType,
    LedgerEntryKind,
    PaymentType,
)
from bookkeeping.queries import DebtLedgerBuilder


class TestBuildLedger:
    """Entries, ordering and totals."""

    async def test_receivable_running_total(self, store, seed, make_invoice, make_payment, contact_id):
        """Test invoices minus payments, in date order."""
        await seed(
            make_invoice(400_000, entry_date=date(2024, 1, 1)),
            make_payment(300_000, payment_date=date(2024, 1, 15)),
            make_invoice(700_000, entry_date=date(2024, 1, 10)),
        )

        ledger = await DebtLedgerBuilder(store).build_ledger(contact_id, DebtDirection.RECEIVABLE)

        assert [e.entry_date for e in ledger.entries] == [
            date(2024, 1, 1), date(2024, 1, 10), date(2024, 1, 15),
        ]
        assert [e.running_balance for e in ledger.entries] == [400_000, 1_100_000, 800_000]
        assert ledger.running_total == 800_000
        assert ledger.invoice_total - ledger.payment_total == ledger.running_total
        assert ledger.balance_side == BalanceSide.OWED_TO_BUSINESS

    async def test_direction_selects_pair(self, store, seed, make_invoice, make_payment, contact_id):
        """Test each direction only sees its own invoice and payment types."""
        await seed(
            make_invoice(100),
            make_invoice(250, type=InvoiceType.PURCHASE),
            make_payment(50),
            make_payment(80, type=PaymentType.EXPENSE),
        )
        builder = DebtLedgerBuilder(store)

        receivable = await builder.build_ledger(contact_id, DebtDirection.RECEIVABLE)
        payable = await builder.build_ledger(contact_id, DebtDirection.PAYABLE)

        assert receivable.running_total == 50
        assert payable.running_total == 170
        assert payable.balance_side == BalanceSide.OWED_BY_BUSINESS

    async def test_ignores_other_contacts(self, store, seed, make_invoice, contact_id, other_contact_id):
        """Test a ledger is per contact."""
        await seed(make_invoice(100), make_invoice(900, contact=other_contact_id))

        ledger = await DebtLedgerBuilder(store).build_ledger(contact_id, DebtDirection.RECEIVABLE)

        assert ledger.running_total == 100

    async def test_invoice_before_payment_on_same_day(self, store, seed, make_invoice, make_payment, contact_id):
        """Test same-day ties list the invoice first."""
        day = date(2024, 5, 5)
        payment = make_payment(100, payment_date=day)
        invoice = make_invoice(100, entry_date=day)
        await seed(payment, invoice)

        ledger = await DebtLedgerBuilder(store).build_ledger(contact_id, DebtDirection.RECEIVABLE)

        assert [e.kind for e in ledger.entries] == [LedgerEntryKind.INVOICE, LedgerEntryKind.PAYMENT]
        assert [e.running_balance for e in ledger.entries] == [100, 0]
        assert ledger.balance_side == BalanceSide.SETTLED

    async def test_overpayment_flips_side(self, store, seed, make_invoice, make_payment, contact_id):
        """Test a negative receivable means the business owes the contact."""
        await seed(make_invoice(100), make_payment(250))

        ledger = await DebtLedgerBuilder(store).build_ledger(contact_id, DebtDirection.RECEIVABLE)

        assert ledger.running_total == -150
        assert ledger.remaining_debt == 150
        assert ledger.balance_side == BalanceSide.OWED_BY_BUSINESS

    async def test_date_range_truncates(self, store, seed, make_invoice, make_payment, contact_id):
        """Test only entries inside the window count, with no opening balance."""
        await seed(
            make_invoice(1_000, entry_date=date(2024, 1, 1)),
            make_invoice(300, entry_date=date(2024, 2, 1)),
            make_payment(100, payment_date=date(2024, 2, 29)),
            make_payment(50, payment_date=date(2024, 3, 1)),
        )
        window = DateRange(start=date(2024, 2, 1), end=date(2024, 2, 29))

        ledger = await DebtLedgerBuilder(store).build_ledger(
            contact_id, DebtDirection.RECEIVABLE, window
        )

        assert len(ledger.entries) == 2
        assert ledger.running_total == 200
        assert ledger.is_truncated

    async def test_allocations_do_not_matter(self, store, seed, make_invoice, make_payment, contact_id):
        """Test unmatched payments still reduce the balance."""
        invoice, matched, unmatched = make_invoice(500), make_payment(200), make_payment(100)
        await seed(invoice, matched, unmatched,
                   Allocation(payment_id=matched.id, invoice_id=invoice.id, amount=200))

        ledger = await DebtLedgerBuilder(store).build_ledger(contact_id, DebtDirection.RECEIVABLE)

        assert ledger.running_total == 200

    async def test_empty_ledger(self, store, contact_id):
        """Test a contact with no records."""
        ledger = await DebtLedgerBuilder(store).build_ledger(contact_id, DebtDirection.PAYABLE)
        assert ledger.entries == []
        assert ledger.balance_side == BalanceSide.SETTLED

    async def test_ledger_built_audited(self, store, audit_logger, audit_storage, contact_id):
        """Test building a ledger is recorded."""
        await DebtLedgerBuilder(store, audit_logger).build_ledger(contact_id, DebtDirection.RECEIVABLE)

        events = await audit_storage.get_events_by_entity("contact", contact_id)
        assert events[0].event_type == AuditEventType.LEDGER_BUILT

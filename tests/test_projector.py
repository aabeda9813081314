"""Tests for derived invoice and payment status."""

from datetime import date
from uuid import uuid4

import pytest

from bookkeeping.allocation import RecordNotFoundError
from bookkeeping.models import Allocation, AllocationDraft, InvoiceStatus, InvoiceType
from bookkeeping.queries import StatusProjector, project_invoice, project_payment


class TestProjectionHelpers:
    """Pure projection functions."""

    def test_unallocated_invoice_is_pending(self, make_invoice):
        """Test the initial state."""
        balance = project_invoice(make_invoice(100), [])
        assert balance.status == InvoiceStatus.PENDING
        assert balance.remaining == 100
        assert not balance.is_paid

    def test_fully_allocated_invoice_is_paid(self, make_invoice):
        """Test remaining zero means paid."""
        invoice = make_invoice(100)
        allocations = [
            Allocation(payment_id=uuid4(), invoice_id=invoice.id, amount=60),
            Allocation(payment_id=uuid4(), invoice_id=invoice.id, amount=40),
        ]
        balance = project_invoice(invoice, allocations)
        assert balance.status == InvoiceStatus.PAID
        assert balance.allocated == 100
        assert balance.is_paid

    def test_payment_unallocated(self, make_payment):
        """Test unallocated amount and amount lock."""
        payment = make_payment(1_000)
        empty = project_payment(payment, [])
        partial = project_payment(payment, [
            Allocation(payment_id=payment.id, invoice_id=uuid4(), amount=250),
        ])

        assert empty.unallocated == 1_000
        assert not empty.amount_locked
        assert partial.unallocated == 750
        assert partial.amount_locked
        assert not partial.is_fully_allocated


class TestStatusTransitions:
    """pending ⇄ paid as allocations change."""

    async def test_status_follows_allocations(self, engine, store, seed, make_invoice, make_payment):
        """Test the invoice oscillates between pending and paid."""
        invoice, payment = make_invoice(500), make_payment(500)
        await seed(invoice, payment)
        projector = StatusProjector(store)

        assert await projector.invoice_status(invoice.id) == InvoiceStatus.PENDING

        await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=500)])
        assert await projector.invoice_status(invoice.id) == InvoiceStatus.PAID

        await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=499)])
        balance = await projector.invoice_balance(invoice.id)
        assert balance.status == InvoiceStatus.PENDING
        assert balance.remaining == 1

        await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=500)])
        assert await projector.invoice_status(invoice.id) == InvoiceStatus.PAID

    async def test_payment_balance(self, engine, store, seed, make_invoice, make_payment):
        """Test payment balance reflects stored allocations."""
        invoice, payment = make_invoice(300), make_payment(500)
        await seed(invoice, payment)
        await engine.append_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=300)])

        balance = await StatusProjector(store).payment_balance(payment.id)

        assert balance.allocated == 300
        assert balance.unallocated == 200
        assert len(balance.allocations) == 1

    async def test_unknown_records(self, store):
        """Test unknown ids raise."""
        projector = StatusProjector(store)
        with pytest.raises(RecordNotFoundError):
            await projector.invoice_balance(uuid4())
        with pytest.raises(RecordNotFoundError):
            await projector.payment_balance(uuid4())


class TestListProjections:
    """Status across whole lists."""

    async def test_list_invoice_balances(
        self, store, seed, make_invoice, make_payment, other_contact_id
    ):
        """Test every invoice of a type gets a derived status, newest first."""
        old = make_invoice(100, entry_date=date(2024, 1, 1))
        new = make_invoice(200, entry_date=date(2024, 3, 1))
        foreign = make_invoice(50, entry_date=date(2024, 2, 1), contact=other_contact_id)
        purchase = make_invoice(70, type=InvoiceType.PURCHASE)
        payment = make_payment(100)
        await seed(old, new, foreign, purchase, payment,
                   Allocation(payment_id=payment.id, invoice_id=old.id, amount=100))
        projector = StatusProjector(store)

        sales = await projector.list_invoice_balances(type=InvoiceType.SALES)

        assert [b.invoice.id for b in sales] == [new.id, foreign.id, old.id]
        assert [b.status for b in sales] == [
            InvoiceStatus.PENDING, InvoiceStatus.PENDING, InvoiceStatus.PAID,
        ]

    async def test_list_invoice_balances_filters(
        self, store, seed, make_invoice, make_payment, contact_id, other_contact_id
    ):
        """Test contact and status filters, and oldest-first order."""
        paid = make_invoice(100, entry_date=date(2024, 1, 1))
        open_a = make_invoice(100, entry_date=date(2024, 1, 2))
        open_b = make_invoice(100, entry_date=date(2024, 1, 3))
        foreign = make_invoice(100, contact=other_contact_id)
        payment = make_payment(150)
        await seed(paid, open_a, open_b, foreign, payment,
                   Allocation(payment_id=payment.id, invoice_id=paid.id, amount=100),
                   Allocation(payment_id=payment.id, invoice_id=open_a.id, amount=50))
        projector = StatusProjector(store)

        pending = await projector.list_invoice_balances(
            contact_id=contact_id, status=InvoiceStatus.PENDING, newest_first=False
        )

        assert [b.invoice.id for b in pending] == [open_a.id, open_b.id]
        assert pending[0].remaining == 50
        assert await projector.list_invoice_balances(contact_id=uuid4()) == []

    async def test_list_reflects_deleted_allocation(self, engine, store, seed, make_invoice, make_payment):
        """Test the list status is recomputed after an allocation is removed."""
        invoice, payment = make_invoice(100), make_payment(100)
        await seed(invoice, payment)
        [row] = await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=100)])
        projector = StatusProjector(store)
        assert (await projector.list_invoice_balances())[0].is_paid

        await engine.delete_allocation(row.id)

        assert not (await projector.list_invoice_balances())[0].is_paid

    async def test_payment_allocation_details(self, store, seed, make_invoice, make_payment):
        """Test each allocation carries its invoice's code and date, oldest invoice first."""
        later = make_invoice(300, entry_date=date(2024, 2, 5))
        earlier = make_invoice(400, entry_date=date(2024, 1, 20))
        payment = make_payment(500)
        await seed(later, earlier, payment,
                   Allocation(payment_id=payment.id, invoice_id=later.id, amount=100),
                   Allocation(payment_id=payment.id, invoice_id=earlier.id, amount=400))

        details = await StatusProjector(store).payment_allocation_details(payment.id)

        assert [(d.invoice_code, d.invoice_entry_date, d.amount) for d in details] == [
            (earlier.code, date(2024, 1, 20), 400),
            (later.code, date(2024, 2, 5), 100),
        ]
        assert details[1].invoice_amount == 300

    async def test_payment_allocation_details_unknown_payment(self, store):
        """Test an unknown payment raises."""
        with pytest.raises(RecordNotFoundError):
            await StatusProjector(store).payment_allocation_details(uuid4())

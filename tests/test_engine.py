"""Tests for the allocation engine."""

import asyncio
from datetime import date
from uuid import uuid4

import pytest

from bookkeeping.allocation import (
    AllocationCommitError,
    AllocationEngine,
    AllocationInProgressError,
    AllocationRejectedError,
    RecordNotFoundError,
    auto_allocate,
)
from bookkeeping.models import (
    Allocation,
    AllocationDraft,
    AuditEventType,
    Invoice,
    InvoiceCandidate,
    InvoiceStatus,
    InvoiceType,
    PaymentType,
)
from bookkeeping.queries import StatusProjector
from bookkeeping.services.storage import (
    DeleteInvoice,
    InMemoryRecordStore,
    InsertAllocation,
    InvariantViolationError,
)
from bookkeeping.validation import ViolationKind


def _candidate(amount, remaining=None, entry_date=date(2024, 1, 1)):
    invoice = Invoice(
        code=f"C-{uuid4().hex[:8]}",
        contact_id=uuid4(),
        type=InvoiceType.SALES,
        amount=amount,
        entry_date=entry_date,
    )
    return InvoiceCandidate(invoice=invoice, remaining=amount if remaining is None else remaining)


class TestAutoAllocate:
    """Greedy oldest-first allocation."""

    def test_fifo_example(self):
        """Test 1,000,000 over A=400,000 and B=700,000."""
        a = _candidate(400_000, entry_date=date(2024, 1, 1))
        b = _candidate(700_000, entry_date=date(2024, 1, 5))

        drafts = auto_allocate(1_000_000, [a, b])

        assert [(d.invoice_id, d.amount) for d in drafts] == [(a.id, 400_000), (b.id, 600_000)]
        assert 1_000_000 - sum(d.amount for d in drafts) == 0

    def test_payment_larger_than_all_invoices(self):
        """Test leftover payment stays unallocated."""
        drafts = auto_allocate(500, [_candidate(100), _candidate(200)])
        assert [d.amount for d in drafts] == [100, 200]

    def test_stops_when_payment_exhausted(self):
        """Test no zero rows after the payment runs out."""
        drafts = auto_allocate(100, [_candidate(100), _candidate(50)])
        assert len(drafts) == 1

    def test_uses_remaining_not_amount(self):
        """Test partially settled invoices only take what is left."""
        drafts = auto_allocate(1_000, [_candidate(800, remaining=300), _candidate(900)])
        assert [d.amount for d in drafts] == [300, 700]

    def test_skips_zero_remaining(self):
        """Test a settled candidate produces no row."""
        settled = _candidate(100, remaining=0)
        drafts = auto_allocate(50, [settled, _candidate(100)])
        assert settled.id not in [d.invoice_id for d in drafts]

    def test_no_candidates(self):
        """Test nothing to allocate against."""
        assert auto_allocate(1_000, []) == []

    def test_engine_exposes_same_algorithm(self):
        """Test the engine method matches the module function."""
        candidates = [_candidate(10), _candidate(20)]
        first = [(d.invoice_id, d.amount) for d in AllocationEngine.auto_allocate(25, candidates)]
        second = [(d.invoice_id, d.amount) for d in auto_allocate(25, candidates)]
        assert first == second


class TestReads:
    """remaining_balance and candidate_invoices."""

    async def test_remaining_balance(self, engine, seed, make_invoice, make_payment):
        """Test amount minus allocations."""
        invoice, payment = make_invoice(1_000), make_payment(400)
        await seed(invoice, payment,
                   Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=400))

        assert await engine.remaining_balance(invoice.id) == 600

    async def test_remaining_balance_unknown_invoice(self, engine):
        """Test an unknown invoice raises."""
        with pytest.raises(RecordNotFoundError):
            await engine.remaining_balance(uuid4())

    async def test_candidates_filtered_and_ordered(
        self, engine, seed, make_invoice, make_payment, other_contact_id
    ):
        """Test only open invoices of the right type and contact, oldest first."""
        late = make_invoice(100, entry_date=date(2024, 3, 1))
        early = make_invoice(100, entry_date=date(2024, 1, 1))
        settled = make_invoice(100, entry_date=date(2023, 12, 1))
        purchase = make_invoice(100, type=InvoiceType.PURCHASE)
        foreign = make_invoice(100, contact=other_contact_id)
        payment = make_payment(100)
        await seed(late, early, settled, purchase, foreign, payment,
                   Allocation(payment_id=payment.id, invoice_id=settled.id, amount=100))

        candidates = await engine.candidate_invoices(payment.contact_id, PaymentType.INCOME)

        assert [c.id for c in candidates] == [early.id, late.id]
        assert all(c.remaining == 100 for c in candidates)

    async def test_candidates_same_day_keep_creation_order(self, engine, seed, make_invoice, contact_id):
        """Test ties on entry date fall back to creation order."""
        first = make_invoice(100)
        second = make_invoice(100)
        await seed(second, first)

        candidates = await engine.candidate_invoices(contact_id, PaymentType.INCOME)

        assert [c.id for c in candidates] == [first.id, second.id]


class TestApplyAllocations:
    """Replace-all commits."""

    async def test_apply_replaces_existing(self, engine, store, seed, make_invoice, make_payment):
        """Test old rows are removed and new rows written."""
        a, b = make_invoice(500), make_invoice(500)
        payment = make_payment(600)
        old = Allocation(payment_id=payment.id, invoice_id=a.id, amount=500)
        await seed(a, b, payment, old)

        written = await engine.apply_allocations(payment.id, [
            AllocationDraft(invoice_id=a.id, amount=100),
            AllocationDraft(invoice_id=b.id, amount=500),
        ])

        stored = await store.find_allocations(payment_id=payment.id)
        assert {s.id for s in stored} == {w.id for w in written}
        assert old.id not in {s.id for s in stored}
        assert sum(s.amount for s in stored) == 600

    async def test_apply_can_reuse_own_allocation(self, engine, seed, make_invoice, make_payment):
        """Test an invoice settled by this payment can be re-saved as is."""
        invoice, payment = make_invoice(500), make_payment(500)
        await seed(invoice, payment,
                   Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=500))

        written = await engine.apply_allocations(
            payment.id, [AllocationDraft(invoice_id=invoice.id, amount=500)]
        )

        assert len(written) == 1

    async def test_apply_empty_clears(self, engine, store, seed, make_invoice, make_payment):
        """Test an empty set removes every allocation of the payment."""
        invoice, payment = make_invoice(500), make_payment(500)
        await seed(invoice, payment,
                   Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=200))

        assert await engine.apply_allocations(payment.id, []) == []
        assert await store.find_allocations(payment_id=payment.id) == []

    async def test_apply_rejects_duplicate(self, engine, store, seed, make_invoice, make_payment):
        """Test rule violations leave storage untouched."""
        invoice, payment = make_invoice(500), make_payment(500)
        await seed(invoice, payment)

        with pytest.raises(AllocationRejectedError) as exc_info:
            await engine.apply_allocations(payment.id, [
                AllocationDraft(invoice_id=invoice.id, amount=100),
                AllocationDraft(invoice_id=invoice.id, amount=100),
            ])

        assert exc_info.value.kind == ViolationKind.DUPLICATE_INVOICE
        assert await store.find_allocations() == []

    async def test_apply_rejects_other_payments_share(self, engine, seed, make_invoice, make_payment):
        """Test an invoice partly settled by another payment limits this one."""
        invoice = make_invoice(1_000)
        first, second = make_payment(700), make_payment(700)
        await seed(invoice, first, second,
                   Allocation(payment_id=first.id, invoice_id=invoice.id, amount=700))

        with pytest.raises(AllocationRejectedError) as exc_info:
            await engine.apply_allocations(
                second.id, [AllocationDraft(invoice_id=invoice.id, amount=400)]
            )

        assert exc_info.value.kind == ViolationKind.EXCEEDS_INVOICE_REMAINING

    async def test_apply_rejects_incompatible_invoice(
        self, engine, seed, make_invoice, make_payment, other_contact_id
    ):
        """Test invoices of another contact or direction are refused."""
        purchase = make_invoice(100, type=InvoiceType.PURCHASE)
        foreign = make_invoice(100, contact=other_contact_id)
        payment = make_payment(100)
        await seed(purchase, foreign, payment)

        for invoice in (purchase, foreign):
            with pytest.raises(AllocationRejectedError) as exc_info:
                await engine.apply_allocations(
                    payment.id, [AllocationDraft(invoice_id=invoice.id, amount=50)]
                )
            assert exc_info.value.kind == ViolationKind.INCOMPATIBLE_INVOICE

    async def test_apply_missing_payment(self, engine):
        """Test an unknown payment fails the whole operation."""
        with pytest.raises(RecordNotFoundError) as exc_info:
            await engine.apply_allocations(uuid4(), [])
        assert exc_info.value.entity_type == "payment"

    async def test_apply_missing_invoice(self, engine, seed, make_invoice, make_payment):
        """Test a deleted invoice is not silently dropped."""
        invoice, payment = make_invoice(100), make_payment(100)
        await seed(invoice, payment)

        with pytest.raises(RecordNotFoundError) as exc_info:
            await engine.apply_allocations(payment.id, [
                AllocationDraft(invoice_id=invoice.id, amount=50),
                AllocationDraft(invoice_id=uuid4(), amount=50),
            ])
        assert exc_info.value.entity_type == "invoice"

    async def test_apply_duplicate_reported_before_incompatible(
        self, engine, seed, make_invoice, make_payment, other_contact_id
    ):
        """Test a foreign invoice picked twice reports the duplicate first."""
        foreign = make_invoice(100, contact=other_contact_id)
        payment = make_payment(100)
        await seed(foreign, payment)

        with pytest.raises(AllocationRejectedError) as exc_info:
            await engine.apply_allocations(payment.id, [
                AllocationDraft(invoice_id=foreign.id, amount=10),
                AllocationDraft(invoice_id=foreign.id, amount=10),
            ])
        assert exc_info.value.kind == ViolationKind.DUPLICATE_INVOICE

    async def test_apply_unselected_row_reported_before_lookup(
        self, engine, seed, make_payment
    ):
        """Test an empty row is reported before a deleted invoice is looked up."""
        payment = make_payment(100)
        await seed(payment)
        empty = AllocationDraft(amount=10)

        with pytest.raises(AllocationRejectedError) as exc_info:
            await engine.apply_allocations(payment.id, [
                empty,
                AllocationDraft(invoice_id=uuid4(), amount=10),
            ])
        assert exc_info.value.kind == ViolationKind.INVOICE_MISSING
        assert exc_info.value.row_id == empty.row_id

    async def test_apply_audited(self, engine, audit_storage, seed, make_invoice, make_payment):
        """Test a successful commit writes one audit event."""
        invoice, payment = make_invoice(100), make_payment(100)
        await seed(invoice, payment)

        await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=100)])

        events = await audit_storage.get_events_by_entity("payment", payment.id)
        assert [e.event_type for e in events] == [AuditEventType.ALLOCATIONS_APPLIED]

    async def test_rejection_audited(self, engine, audit_storage, seed, make_invoice, make_payment):
        """Test a rejected commit is recorded as a warning."""
        invoice, payment = make_invoice(100), make_payment(100)
        await seed(invoice, payment)

        with pytest.raises(AllocationRejectedError):
            await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=0)])

        events = await audit_storage.get_events_by_entity("payment", payment.id)
        assert events[0].event_type == AuditEventType.ALLOCATION_REJECTED
        assert events[0].error_code == "non_positive_amount"


class _FailingInsertStore(InMemoryRecordStore):
    """Fails on the first allocation insert of a batch."""

    def _apply_operation(self, state, operation, touched):
        if isinstance(operation, InsertAllocation):
            raise RuntimeError("disk full")
        super()._apply_operation(state, operation, touched)


class TestAtomicity:
    """Failed commits leave no partial state."""

    async def test_failure_after_delete_keeps_old_rows(self, make_invoice, make_payment):
        """Test a failing insert does not persist the preceding delete."""
        store = _FailingInsertStore()
        engine = AllocationEngine(store)
        invoice, payment = make_invoice(500), make_payment(500)
        old = Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=300)

        # Seeded directly, since this store refuses allocation inserts
        store._state.invoices[invoice.id] = invoice
        store._state.payments[payment.id] = payment
        store._state.allocations[old.id] = old

        with pytest.raises(AllocationCommitError) as exc_info:
            await engine.apply_allocations(
                payment.id, [AllocationDraft(invoice_id=invoice.id, amount=500)]
            )

        assert exc_info.value.retryable
        stored = await store.find_allocations(payment_id=payment.id)
        assert [s.id for s in stored] == [old.id]

    async def test_store_invariant_blocks_stale_append(self, engine, store, seed, make_invoice, make_payment):
        """Test the store refuses a batch that would over-allocate an invoice."""
        invoice, payment = make_invoice(100), make_payment(500)
        await seed(invoice, payment)

        with pytest.raises(InvariantViolationError):
            await store.run_transaction([
                InsertAllocation(allocation=Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=80)),
                InsertAllocation(allocation=Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=80)),
            ])

        assert await store.find_allocations() == []

    async def test_backend_crash_is_reraised_and_audited(self, audit_logger, audit_storage):
        """Test a non-storage error from the backend surfaces unchanged and is audited."""

        class CrashingStore(InMemoryRecordStore):
            async def run_transaction(self, operations):
                raise KeyError("lost index")

        engine = AllocationEngine(CrashingStore(), audit_logger=audit_logger)
        entity_id, correlation_id = uuid4(), uuid4()

        with pytest.raises(KeyError):
            await engine.commit("apply_allocations", entity_id, [], correlation_id)

        events = await audit_storage.get_events_by_correlation_id(correlation_id)
        assert [e.event_type for e in events] == [AuditEventType.SYSTEM_ERROR]
        assert events[0].details["operation"] == "apply_allocations"
        assert events[0].details["entity_id"] == str(entity_id)


class TestAppendAllocations:
    """Incremental commits."""

    async def test_append_keeps_existing(self, engine, store, seed, make_invoice, make_payment):
        """Test new rows are added alongside old ones."""
        a, b = make_invoice(300), make_invoice(300)
        payment = make_payment(600)
        old = Allocation(payment_id=payment.id, invoice_id=a.id, amount=300)
        await seed(a, b, payment, old)

        added = await engine.append_allocations(payment.id, [AllocationDraft(invoice_id=b.id, amount=300)])

        stored = await store.find_allocations(payment_id=payment.id)
        assert len(added) == 1
        assert {s.id for s in stored} == {old.id, added[0].id}

    async def test_append_checks_payment_budget(self, engine, seed, make_invoice, make_payment):
        """Test existing rows count against the payment amount."""
        a, b = make_invoice(300), make_invoice(300)
        payment = make_payment(400)
        await seed(a, b, payment, Allocation(payment_id=payment.id, invoice_id=a.id, amount=300))

        with pytest.raises(AllocationRejectedError) as exc_info:
            await engine.append_allocations(payment.id, [AllocationDraft(invoice_id=b.id, amount=200)])
        assert exc_info.value.kind == ViolationKind.EXCEEDS_PAYMENT_AMOUNT

    async def test_append_revalidates_against_current_balance(
        self, engine, store, seed, make_invoice, make_payment
    ):
        """Test drafts proposed from a stale snapshot are rejected."""
        invoice = make_invoice(1_000)
        mine, other = make_payment(1_000), make_payment(1_000)
        await seed(invoice, mine, other)

        candidates = await engine.candidate_invoices(mine.contact_id, PaymentType.INCOME)
        drafts = engine.auto_allocate(mine.amount, candidates)

        # Another payment consumes part of the invoice meanwhile
        await engine.append_allocations(other.id, [AllocationDraft(invoice_id=invoice.id, amount=400)])

        with pytest.raises(AllocationRejectedError) as exc_info:
            await engine.append_allocations(mine.id, drafts)
        assert exc_info.value.kind == ViolationKind.EXCEEDS_INVOICE_REMAINING
        assert await store.find_allocations(payment_id=mine.id) == []

    async def test_append_empty_is_noop(self, engine):
        """Test appending nothing does not even look up the payment."""
        assert await engine.append_allocations(uuid4(), []) == []

    async def test_same_invoice_across_operations_allowed(self, engine, store, seed, make_invoice, make_payment):
        """Test two separate appends may target the same invoice."""
        invoice, payment = make_invoice(1_000), make_payment(1_000)
        await seed(invoice, payment)

        await engine.append_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=300)])
        await engine.append_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=200)])

        assert len(await store.find_allocations(invoice_id=invoice.id)) == 2


class TestDeleteAllocation:
    """Single-row deletes."""

    async def test_delete_reopens_invoice(self, engine, store, seed, make_invoice, make_payment):
        """Test removing the settling allocation makes the invoice pending again."""
        invoice, payment = make_invoice(500), make_payment(500)
        allocation = Allocation(payment_id=payment.id, invoice_id=invoice.id, amount=500)
        await seed(invoice, payment, allocation)
        projector = StatusProjector(store)
        assert await projector.invoice_status(invoice.id) == InvoiceStatus.PAID

        deleted = await engine.delete_allocation(allocation.id)

        assert deleted.id == allocation.id
        assert await engine.remaining_balance(invoice.id) == 500
        assert await projector.invoice_status(invoice.id) == InvoiceStatus.PENDING

    async def test_delete_unknown(self, engine):
        """Test deleting a missing allocation raises."""
        with pytest.raises(RecordNotFoundError):
            await engine.delete_allocation(uuid4())


class _GatedStore(InMemoryRecordStore):
    """Blocks payment lookups until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def find_payment_by_id(self, payment_id):
        self.entered.set()
        await self.release.wait()
        return await super().find_payment_by_id(payment_id)


class TestInFlightGuard:
    """Concurrent mutations of one payment."""

    async def test_second_mutation_rejected(self):
        """Test a second apply for the same payment fails while the first runs."""
        store = _GatedStore()
        engine = AllocationEngine(store)
        payment_id = uuid4()

        first = asyncio.create_task(engine.apply_allocations(payment_id, []))
        await store.entered.wait()

        with pytest.raises(AllocationInProgressError):
            await engine.append_allocations(payment_id, [AllocationDraft(invoice_id=uuid4(), amount=1)])

        store.release.set()
        with pytest.raises(RecordNotFoundError):
            await first

    async def test_guard_released_after_failure(self, engine):
        """Test a failed mutation does not leave the payment locked."""
        payment_id = uuid4()
        for _ in range(2):
            with pytest.raises(RecordNotFoundError):
                await engine.apply_allocations(payment_id, [])


class TestCommitRace:
    """Records deleted between the read and the commit."""

    async def test_invoice_deleted_before_commit(self, make_invoice, make_payment):
        """Test a vanished invoice surfaces as not found, not a partial write."""
        invoice, payment = make_invoice(100), make_payment(100)

        class RacingStore(InMemoryRecordStore):
            async def find_allocations(self, payment_id=None, invoice_id=None):
                result = await super().find_allocations(payment_id, invoice_id)
                if invoice_id == invoice.id:
                    await InMemoryRecordStore.run_transaction(
                        self, [DeleteInvoice(invoice_id=invoice.id)]
                    )
                return result

        store = RacingStore()
        store._state.invoices[invoice.id] = invoice
        store._state.payments[payment.id] = payment
        engine = AllocationEngine(store)

        with pytest.raises(RecordNotFoundError):
            await engine.apply_allocations(payment.id, [AllocationDraft(invoice_id=invoice.id, amount=50)])
        assert await store.find_allocations() == []

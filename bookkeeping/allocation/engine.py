"""
Payment Allocation Engine

Matches a payment's amount against the outstanding invoices it settles.

DESIGN DECISION: The engine owns every write of allocation rows.
- Reads (remaining_balance, candidate_invoices) never mutate anything
- auto_allocate and validate are pure functions over explicit values
- apply_allocations and append_allocations re-read balances, re-validate
  and commit as ONE store transaction

The two write modes are deliberately separate:
- apply_allocations:  delete every allocation of the payment, insert the drafts
- append_allocations: insert the drafts, leave existing rows alone

Status is never written anywhere. After any commit, the status projector
recomputes invoice and payment balances from allocation rows.
"""

from contextlib import contextmanager
from typing import Iterator, Mapping, Optional, Sequence
from uuid import UUID

import structlog

from bookkeeping.allocation.errors import (
    AllocationCommitError,
    AllocationInProgressError,
    AllocationRejectedError,
    RecordNotFoundError,
)
from bookkeeping.audit import AuditLogger, create_correlation_id
from bookkeeping.models.records import (
    Allocation,
    AllocationDraft,
    InvoiceCandidate,
    Payment,
    PaymentType,
    is_settlement_pair,
)
from bookkeeping.services.storage import (
    DeleteAllocation,
    DeleteAllocationsForPayment,
    InsertAllocation,
    NotFoundError,
    RecordStoreInterface,
    StorageError,
    StoreOperation,
    StoreUnavailableError,
    TransactionError,
)
from bookkeeping.validation import AllocationValidator, ViolationKind, validate


logger = structlog.get_logger(__name__)


def auto_allocate(
    payment_amount: int,
    candidates: Sequence[InvoiceCandidate],
) -> list[AllocationDraft]:
    """
    Propose how a payment settles outstanding invoices, oldest first.

    Candidates are consumed in the order given. Each takes as much of
    the payment as it has remaining, until the payment or the
    candidates run out. No zero-amount rows are produced.
    """
    balance = payment_amount
    drafts: list[AllocationDraft] = []

    for candidate in candidates:
        if balance <= 0:
            break
        amount = min(balance, candidate.remaining)
        if amount <= 0:
            continue
        drafts.append(AllocationDraft(invoice_id=candidate.id, amount=amount))
        balance -= amount

    return drafts


class AllocationEngine:
    """
    Computes balances, proposes allocations and commits them.

    One engine instance should be shared by everything that mutates
    allocations, since the in-flight guard lives on the instance.
    """

    def __init__(
        self,
        store: RecordStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        validator: Optional[AllocationValidator] = None,
    ):
        self._store = store
        self._audit_logger = audit_logger
        self._validator = validator or AllocationValidator()
        self._in_flight: set[UUID] = set()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def remaining_balance(self, invoice_id: UUID) -> int:
        """
        Invoice amount minus the sum of its allocations.

        Raises:
            RecordNotFoundError: Unknown invoice
        """
        invoice = await self._store.find_invoice_by_id(invoice_id)
        if invoice is None:
            raise RecordNotFoundError("invoice", invoice_id)
        allocations = await self._store.find_allocations(invoice_id=invoice_id)
        return max(0, invoice.amount - sum(a.amount for a in allocations))

    async def candidate_invoices(
        self,
        contact_id: UUID,
        payment_type: PaymentType,
    ) -> list[InvoiceCandidate]:
        """
        Invoices a payment of this type could settle, oldest first.

        Only invoices with something left to pay are returned.
        """
        invoices = await self._store.find_invoices(contact_id, payment_type.settles)

        candidates = []
        for invoice in invoices:
            allocations = await self._store.find_allocations(invoice_id=invoice.id)
            remaining = invoice.amount - sum(a.amount for a in allocations)
            if remaining > 0:
                candidates.append(InvoiceCandidate(invoice=invoice, remaining=remaining))

        # Ids are UUIDs, so created_at stands in for insertion order on same-day ties
        candidates.sort(
            key=lambda c: (c.entry_date, c.invoice.created_at, str(c.id))
        )
        return candidates

    @staticmethod
    def auto_allocate(
        payment_amount: int,
        candidates: Sequence[InvoiceCandidate],
    ) -> list[AllocationDraft]:
        return auto_allocate(payment_amount, candidates)

    @staticmethod
    def validate(
        drafts: Sequence[AllocationDraft],
        payment: Payment,
        remaining_map: Mapping[UUID, int],
        existing_allocations: Sequence[Allocation] = (),
        payment_allocated: int = 0,
    ) -> Optional[ViolationKind]:
        return validate(
            drafts,
            payment,
            remaining_map,
            existing_allocations=existing_allocations,
            payment_allocated=payment_allocated,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def apply_allocations(
        self,
        payment_id: UUID,
        drafts: Sequence[AllocationDraft],
        correlation_id: Optional[UUID] = None,
    ) -> list[Allocation]:
        """
        Replace every allocation of a payment with the drafts.

        An empty draft list clears the payment's allocations.

        Returns:
            The allocation rows now stored for the payment

        Raises:
            RecordNotFoundError: Payment or an invoice no longer exists
            AllocationRejectedError: Drafts break a rule
            AllocationCommitError: The store transaction failed
            AllocationInProgressError: Another mutation for the payment is running
        """
        correlation_id = correlation_id or create_correlation_id()

        with self._in_flight_guard(payment_id):
            payment = await self._load_payment(payment_id)
            existing = await self._store.find_allocations(payment_id=payment_id)

            allocations = await self.prepare_allocations(
                payment,
                drafts,
                existing_allocations=existing,
                payment_allocated=sum(a.amount for a in existing),
                correlation_id=correlation_id,
            )

            operations: list[StoreOperation] = [
                DeleteAllocationsForPayment(payment_id=payment_id)
            ]
            operations.extend(InsertAllocation(allocation=a) for a in allocations)
            await self.commit("apply_allocations", payment_id, operations, correlation_id)

        logger.info(
            "allocations_applied",
            payment_id=str(payment_id),
            replaced=len(existing),
            written=len(allocations),
        )
        if self._audit_logger:
            await self._audit_logger.log_allocations_applied(
                payment_id=payment_id,
                rows=[a.model_dump() for a in allocations],
                replaced_count=len(existing),
                correlation_id=correlation_id,
            )
        return allocations

    async def append_allocations(
        self,
        payment_id: UUID,
        drafts: Sequence[AllocationDraft],
        correlation_id: Optional[UUID] = None,
    ) -> list[Allocation]:
        """
        Add allocation rows to a payment without touching existing ones.

        Balances are re-read here, so drafts proposed against an older
        snapshot are checked against what the invoices have left now.

        Returns:
            Only the newly inserted rows

        Raises:
            Same as apply_allocations
        """
        if not drafts:
            return []

        correlation_id = correlation_id or create_correlation_id()

        with self._in_flight_guard(payment_id):
            payment = await self._load_payment(payment_id)
            existing = await self._store.find_allocations(payment_id=payment_id)

            allocations = await self.prepare_allocations(
                payment,
                drafts,
                payment_allocated=sum(a.amount for a in existing),
                correlation_id=correlation_id,
            )

            operations: list[StoreOperation] = [
                InsertAllocation(allocation=a) for a in allocations
            ]
            await self.commit("append_allocations", payment_id, operations, correlation_id)

        logger.info(
            "allocations_appended",
            payment_id=str(payment_id),
            written=len(allocations),
        )
        if self._audit_logger:
            await self._audit_logger.log_allocations_appended(
                payment_id=payment_id,
                rows=[a.model_dump() for a in allocations],
                correlation_id=correlation_id,
            )
        return allocations

    async def delete_allocation(
        self,
        allocation_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> Allocation:
        """
        Remove a single allocation row.

        Returns:
            The deleted allocation
        """
        correlation_id = correlation_id or create_correlation_id()

        allocation = await self._store.find_allocation_by_id(allocation_id)
        if allocation is None:
            raise RecordNotFoundError("allocation", allocation_id)

        await self.commit(
            "delete_allocation",
            allocation.payment_id,
            [DeleteAllocation(allocation_id=allocation_id)],
            correlation_id,
        )

        if self._audit_logger:
            await self._audit_logger.log_allocation_deleted(
                allocation_id=allocation.id,
                payment_id=allocation.payment_id,
                invoice_id=allocation.invoice_id,
                amount=allocation.amount,
                correlation_id=correlation_id,
            )
        return allocation

    # -------------------------------------------------------------------------
    # Commit-time checks
    # -------------------------------------------------------------------------

    async def prepare_allocations(
        self,
        payment: Payment,
        drafts: Sequence[AllocationDraft],
        existing_allocations: Sequence[Allocation] = (),
        payment_allocated: int = 0,
        correlation_id: Optional[UUID] = None,
    ) -> list[Allocation]:
        """
        Check drafts against freshly read records and build allocation rows.

        Checks run in order: duplicate and missing invoice selections,
        referenced invoices exist, each invoice can be settled by the
        payment, then validate() against current remaining balances.

        Raises:
            RecordNotFoundError: A referenced invoice does not exist
            AllocationRejectedError: Any rule is broken
        """
        selection = self._validator.check_selection(drafts)
        if not selection.is_valid:
            await self._reject(payment.id, selection.violation, selection.row_id, correlation_id)

        remaining_map: dict[UUID, int] = {}

        for draft in drafts:
            invoice = await self._store.find_invoice_by_id(draft.invoice_id)
            if invoice is None:
                raise RecordNotFoundError("invoice", draft.invoice_id)
            if not is_settlement_pair(payment, invoice):
                await self._reject(
                    payment.id,
                    ViolationKind.INCOMPATIBLE_INVOICE,
                    draft.row_id,
                    correlation_id,
                )
            allocations = await self._store.find_allocations(invoice_id=invoice.id)
            remaining_map[invoice.id] = invoice.amount - sum(a.amount for a in allocations)

        result = self._validator.check(
            drafts,
            payment,
            remaining_map,
            existing_allocations=existing_allocations,
            payment_allocated=payment_allocated,
        )
        if not result.is_valid:
            await self._reject(payment.id, result.violation, result.row_id, correlation_id)

        return [draft.to_allocation(payment.id) for draft in drafts]

    async def _reject(
        self,
        payment_id: UUID,
        kind: ViolationKind,
        row_id: Optional[UUID],
        correlation_id: Optional[UUID],
    ) -> None:
        logger.info("allocation_rejected", payment_id=str(payment_id), violation=kind.value)
        if self._audit_logger:
            await self._audit_logger.log_allocation_rejected(
                payment_id=payment_id,
                violation=kind.value,
                correlation_id=correlation_id or create_correlation_id(),
            )
        raise AllocationRejectedError(
            kind,
            message=self._validator.message_for(kind),
            row_id=row_id,
        )

    async def _load_payment(self, payment_id: UUID) -> Payment:
        payment = await self._store.find_payment_by_id(payment_id)
        if payment is None:
            raise RecordNotFoundError("payment", payment_id)
        return payment

    async def commit(
        self,
        operation: str,
        entity_id: UUID,
        operations: Sequence[StoreOperation],
        correlation_id: Optional[UUID],
    ) -> None:
        """Run a store transaction, translating storage failures."""
        try:
            await self._store.run_transaction(operations)
        except NotFoundError as e:
            # Deleted between our read and the commit
            await self._record_failure(operation, entity_id, e, correlation_id)
            raise RecordNotFoundError(e.entity_type, e.entity_id) from e
        except StorageError as e:
            await self._record_failure(operation, entity_id, e, correlation_id)
            raise AllocationCommitError(
                f"Could not save changes: {e}",
                retryable=isinstance(e, (TransactionError, StoreUnavailableError)),
            ) from e
        except Exception as e:
            # Not a storage failure: a bug in a backend, surfaced unchanged
            logger.exception("commit_crashed", operation=operation, entity_id=str(entity_id))
            if self._audit_logger:
                await self._audit_logger.log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    details={"operation": operation, "entity_id": str(entity_id)},
                    correlation_id=correlation_id,
                )
            raise

    async def _record_failure(
        self,
        operation: str,
        entity_id: UUID,
        error: Exception,
        correlation_id: Optional[UUID],
    ) -> None:
        logger.warning(
            "transaction_failed",
            operation=operation,
            entity_id=str(entity_id),
            error=str(error),
        )
        if self._audit_logger:
            await self._audit_logger.log_transaction_failed(
                operation=operation,
                entity_id=entity_id,
                error_message=str(error),
                correlation_id=correlation_id,
            )

    @contextmanager
    def _in_flight_guard(self, payment_id: UUID) -> Iterator[None]:
        if payment_id in self._in_flight:
            raise AllocationInProgressError(payment_id)
        self._in_flight.add(payment_id)
        try:
            yield
        finally:
            self._in_flight.discard(payment_id)

"""
Allocation Engine Errors

Three classes of failure reach callers:
- Rejections: the drafts broke a rule. Nothing was written; the caller
  keeps its drafts and may correct them.
- Missing records: a payment or invoice vanished under an in-progress edit.
  The whole operation fails rather than dropping the reference.
- Commit failures: the store could not commit. Nothing is visible;
  the user may retry.
"""

from typing import Optional
from uuid import UUID

from bookkeeping.validation import ViolationKind


class AllocationError(Exception):
    """Base exception for allocation and record lifecycle errors."""
    pass


class AllocationRejectedError(AllocationError):
    """The draft set violates an allocation rule."""

    def __init__(
        self,
        kind: ViolationKind,
        message: Optional[str] = None,
        row_id: Optional[UUID] = None,
    ):
        self.kind = kind
        self.row_id = row_id
        super().__init__(message or f"Allocation rejected: {kind.value}")


class RecordNotFoundError(AllocationError):
    """A referenced invoice, payment or allocation does not exist."""

    def __init__(self, entity_type: str, entity_id: UUID):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")


class AllocationCommitError(AllocationError):
    """The store failed to commit. No partial state is visible."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class AllocationInProgressError(AllocationError):
    """A mutation for this payment is already running."""

    def __init__(self, payment_id: UUID):
        self.payment_id = payment_id
        super().__init__(f"Allocation update already in progress for payment {payment_id}")


class AmountLockedError(AllocationError):
    """A payment with allocations cannot have its amount changed."""

    def __init__(self, payment_id: UUID, allocation_count: int):
        self.payment_id = payment_id
        self.allocation_count = allocation_count
        super().__init__(
            f"Payment {payment_id} has {allocation_count} allocation(s); "
            "remove them before changing the amount"
        )

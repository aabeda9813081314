"""
Allocation Set Validation

DESIGN DECISION: validate() is a pure function over explicit values.
The caller passes the draft rows, the payment and a snapshot of invoice
remaining balances; nothing is read from storage. This allows us to:
1. Run it on every keystroke while the user edits rows
2. Run it again at commit time against freshly read balances
3. Test every rule without a database

Rules are checked in a fixed order and the FIRST failure wins:
1. DUPLICATE_INVOICE          two rows reference the same invoice
2. INVOICE_MISSING            a row has no invoice selected
3. NON_POSITIVE_AMOUNT        a row's amount is <= 0
4. EXCEEDS_INVOICE_REMAINING  a row asks for more than the invoice has left
5. EXCEEDS_PAYMENT_AMOUNT     the rows together exceed what the payment has left

IMPORTANT: Validation NEVER fixes drafts. It reports the first problem and
the caller keeps the drafts for correction.
"""

from enum import Enum
from typing import Mapping, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, Field

from bookkeeping.models.records import Allocation, AllocationDraft, Payment


class ViolationKind(str, Enum):
    """Why an allocation set was rejected."""
    DUPLICATE_INVOICE = "duplicate_invoice"
    INVOICE_MISSING = "invoice_missing"
    NON_POSITIVE_AMOUNT = "non_positive_amount"
    EXCEEDS_INVOICE_REMAINING = "exceeds_invoice_remaining"
    EXCEEDS_PAYMENT_AMOUNT = "exceeds_payment_amount"

    # Only raised at commit time, when records are re-read
    INCOMPATIBLE_INVOICE = "incompatible_invoice"


def _find_selection_violation(
    drafts: Sequence[AllocationDraft],
) -> Optional[tuple[ViolationKind, Optional[UUID]]]:
    """Rules 1 and 2, which only look at which invoices the rows select."""

    # Unselected rows compare equal to each other here
    seen: set[Optional[UUID]] = set()
    for draft in drafts:
        if draft.invoice_id in seen:
            return ViolationKind.DUPLICATE_INVOICE, draft.row_id
        seen.add(draft.invoice_id)

    for draft in drafts:
        if draft.invoice_id is None:
            return ViolationKind.INVOICE_MISSING, draft.row_id

    return None


def _find_violation(
    drafts: Sequence[AllocationDraft],
    payment: Payment,
    remaining_map: Mapping[UUID, int],
    existing_allocations: Sequence[Allocation],
    payment_allocated: int,
) -> Optional[tuple[ViolationKind, Optional[UUID]]]:
    """Return the first violation and the row_id of the offending draft."""
    found = _find_selection_violation(drafts)
    if found:
        return found

    for draft in drafts:
        if draft.amount <= 0:
            return ViolationKind.NON_POSITIVE_AMOUNT, draft.row_id

    # Rows being replaced give their amounts back to their invoices
    released: dict[UUID, int] = {}
    for allocation in existing_allocations:
        released[allocation.invoice_id] = (
            released.get(allocation.invoice_id, 0) + allocation.amount
        )

    for draft in drafts:
        available = remaining_map.get(draft.invoice_id, 0) + released.get(draft.invoice_id, 0)
        if draft.amount > available:
            return ViolationKind.EXCEEDS_INVOICE_REMAINING, draft.row_id

    replaced_total = sum(a.amount for a in existing_allocations)
    budget = payment.amount - (payment_allocated - replaced_total)
    if sum(draft.amount for draft in drafts) > budget:
        return ViolationKind.EXCEEDS_PAYMENT_AMOUNT, None

    return None


def validate(
    drafts: Sequence[AllocationDraft],
    payment: Payment,
    remaining_map: Mapping[UUID, int],
    existing_allocations: Sequence[Allocation] = (),
    payment_allocated: int = 0,
) -> Optional[ViolationKind]:
    """
    Check a proposed allocation set for one payment.

    Args:
        drafts: Rows being committed for the payment
        payment: The payment the rows draw from
        remaining_map: Current remaining balance per invoice id.
                       Invoices not in the map have nothing left.
        existing_allocations: Stored allocations of this payment that the
                              drafts replace (empty when appending)
        payment_allocated: Sum of all stored allocations of the payment

    Returns:
        The first violated rule, or None if the set is valid
    """
    found = _find_violation(
        drafts, payment, remaining_map, existing_allocations, payment_allocated
    )
    return found[0] if found else None


# =============================================================================
# USER-FACING WRAPPER
# =============================================================================

_MESSAGES: dict[ViolationKind, tuple[str, str]] = {
    ViolationKind.DUPLICATE_INVOICE: (
        "The same invoice is selected more than once",
        "Merge the rows into one allocation for that invoice",
    ),
    ViolationKind.INVOICE_MISSING: (
        "A row has no invoice selected",
        "Pick an invoice or remove the empty row",
    ),
    ViolationKind.NON_POSITIVE_AMOUNT: (
        "Allocation amounts must be greater than zero",
        "Enter a positive amount or remove the row",
    ),
    ViolationKind.EXCEEDS_INVOICE_REMAINING: (
        "An amount is larger than what is left on its invoice",
        "Lower the amount to the invoice's remaining balance",
    ),
    ViolationKind.EXCEEDS_PAYMENT_AMOUNT: (
        "The allocations add up to more than the payment has available",
        "Reduce the amounts so they fit within the payment",
    ),
    ViolationKind.INCOMPATIBLE_INVOICE: (
        "An invoice does not belong to this payment's contact or direction",
        "Only choose invoices the payment can settle",
    ),
}


class AllocationCheck(BaseModel):
    """Result of checking a draft set, shaped for display."""

    violation: Optional[ViolationKind] = None
    row_id: Optional[UUID] = Field(
        default=None,
        description="Draft row that caused the violation, when one row is to blame"
    )
    total: int = Field(
        default=0,
        description="Sum of the draft amounts"
    )
    available: int = Field(
        default=0,
        description="What the payment can still allocate to this set"
    )

    @property
    def is_valid(self) -> bool:
        return self.violation is None


class AllocationValidator:
    """
    Wraps validate() for interactive editors.

    Adds the offending row and human-readable messages, so a form can
    highlight the problem without re-implementing the rules.
    """

    def check(
        self,
        drafts: Sequence[AllocationDraft],
        payment: Payment,
        remaining_map: Mapping[UUID, int],
        existing_allocations: Sequence[Allocation] = (),
        payment_allocated: int = 0,
    ) -> AllocationCheck:
        found = _find_violation(
            drafts, payment, remaining_map, existing_allocations, payment_allocated
        )
        replaced_total = sum(a.amount for a in existing_allocations)
        return AllocationCheck(
            violation=found[0] if found else None,
            row_id=found[1] if found else None,
            total=sum(draft.amount for draft in drafts),
            available=payment.amount - (payment_allocated - replaced_total),
        )

    def check_selection(self, drafts: Sequence[AllocationDraft]) -> AllocationCheck:
        """
        Check only the invoice selection rules (duplicate, missing).

        Needs no balances, so it can run before any record is read.
        """
        found = _find_selection_violation(drafts)
        return AllocationCheck(
            violation=found[0] if found else None,
            row_id=found[1] if found else None,
            total=sum(draft.amount for draft in drafts),
        )

    @staticmethod
    def message_for(kind: ViolationKind) -> str:
        return _MESSAGES[kind][0]

    def get_user_friendly_summary(self, result: AllocationCheck) -> str:
        """
        Generate a user-friendly summary of a check.

        This is what we show to non-technical users.
        """
        if result.is_valid:
            return f"✅ Ready to save: {result.total:,} of {result.available:,} allocated."

        message, fix = _MESSAGES[result.violation]
        lines = [
            f"❌ {message}",
            f"   💡 {fix}",
        ]
        if result.violation is ViolationKind.EXCEEDS_PAYMENT_AMOUNT:
            lines.append(
                f"   Allocated {result.total:,}, available {result.available:,}."
            )
        return "\n".join(lines)

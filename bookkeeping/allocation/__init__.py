"""Payment allocation package."""

from bookkeeping.allocation.engine import AllocationEngine, auto_allocate
from bookkeeping.allocation.errors import (
    AllocationCommitError,
    AllocationError,
    AllocationInProgressError,
    AllocationRejectedError,
    AmountLockedError,
    RecordNotFoundError,
)

__all__ = [
    "AllocationEngine",
    "auto_allocate",
    # Errors
    "AllocationCommitError",
    "AllocationError",
    "AllocationInProgressError",
    "AllocationRejectedError",
    "AmountLockedError",
    "RecordNotFoundError",
]

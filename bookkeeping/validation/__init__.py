"""Validation package."""

from bookkeeping.validation.validator import (
    AllocationCheck,
    AllocationValidator,
    ViolationKind,
    validate,
)

__all__ = [
    "AllocationCheck",
    "AllocationValidator",
    "ViolationKind",
    "validate",
]

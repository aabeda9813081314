"""
Data Models Package

This package contains all Pydantic models used by the bookkeeping engine.
All data flowing through the system must conform to these schemas.
"""

from bookkeeping.models.records import (
    Allocation,
    AllocationDraft,
    DateRange,
    DebtDirection,
    Invoice,
    InvoiceCandidate,
    InvoiceStatus,
    InvoiceType,
    Payment,
    PaymentMethod,
    PaymentType,
    is_settlement_pair,
)
from bookkeeping.models.ledger import (
    BalanceSide,
    DebtLedger,
    LedgerEntry,
    LedgerEntryKind,
)
from bookkeeping.models.projections import AllocationDetail, InvoiceBalance, PaymentBalance
from bookkeeping.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Records
    "Allocation",
    "AllocationDraft",
    "DateRange",
    "DebtDirection",
    "Invoice",
    "InvoiceCandidate",
    "InvoiceStatus",
    "InvoiceType",
    "Payment",
    "PaymentMethod",
    "PaymentType",
    "is_settlement_pair",
    # Ledger
    "BalanceSide",
    "DebtLedger",
    "LedgerEntry",
    "LedgerEntryKind",
    # Projections
    "AllocationDetail",
    "InvoiceBalance",
    "PaymentBalance",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

"""
Audit Models for Bookkeeping

Every mutation of invoices, payments and allocations is logged for
audit purposes. This provides:
1. Complete traceability of how a payment came to settle an invoice
2. Debugging information when a commit fails
3. Ability to reconstruct history after deletions

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Allocation engine
    ALLOCATIONS_APPLIED = "allocations_applied"
    ALLOCATIONS_APPENDED = "allocations_appended"
    ALLOCATION_DELETED = "allocation_deleted"
    ALLOCATION_REJECTED = "allocation_rejected"

    # Record lifecycle
    INVOICE_CREATED = "invoice_created"
    INVOICE_UPDATED = "invoice_updated"
    INVOICE_DELETED = "invoice_deleted"
    PAYMENT_CREATED = "payment_created"
    PAYMENT_UPDATED = "payment_updated"
    PAYMENT_DELETED = "payment_deleted"

    # Reports
    LEDGER_BUILT = "ledger_built"

    # System events
    TRANSACTION_FAILED = "transaction_failed"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'invoice', 'payment', 'allocation')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one allocation commit)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


def _allocation_rows(rows: list[dict]) -> list[dict]:
    return [
        {"invoice_id": str(row["invoice_id"]), "amount": row["amount"]}
        for row in rows
    ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.allocation_deleted(allocation_id, ...)
        event = AuditEventBuilder.invoice_created(invoice_id, code, ...)
    """

    @staticmethod
    def allocations_applied(
        payment_id: UUID,
        rows: list[dict],
        replaced_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        total = sum(row["amount"] for row in rows)
        return AuditEvent(
            event_type=AuditEventType.ALLOCATIONS_APPLIED,
            entity_type="payment",
            entity_id=payment_id,
            correlation_id=correlation_id,
            description=(
                f"Allocations replaced: {replaced_count} removed, "
                f"{len(rows)} written totalling {total}"
            ),
            details={
                "replaced_count": replaced_count,
                "rows": _allocation_rows(rows),
                "total": total,
            },
            is_user_action=True,
        )

    @staticmethod
    def allocations_appended(
        payment_id: UUID,
        rows: list[dict],
        correlation_id: UUID,
    ) -> AuditEvent:
        total = sum(row["amount"] for row in rows)
        return AuditEvent(
            event_type=AuditEventType.ALLOCATIONS_APPENDED,
            entity_type="payment",
            entity_id=payment_id,
            correlation_id=correlation_id,
            description=f"Allocations added: {len(rows)} rows totalling {total}",
            details={
                "rows": _allocation_rows(rows),
                "total": total,
            },
            is_user_action=True,
        )

    @staticmethod
    def allocation_deleted(
        allocation_id: UUID,
        payment_id: UUID,
        invoice_id: UUID,
        amount: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOCATION_DELETED,
            entity_type="allocation",
            entity_id=allocation_id,
            correlation_id=correlation_id,
            description=f"Allocation of {amount} removed",
            details={
                "payment_id": str(payment_id),
                "invoice_id": str(invoice_id),
                "amount": amount,
            },
            is_user_action=True,
        )

    @staticmethod
    def allocation_rejected(
        payment_id: UUID,
        violation: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ALLOCATION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="payment",
            entity_id=payment_id,
            correlation_id=correlation_id,
            description=f"Allocation set rejected: {violation}",
            error_code=violation,
            details={"violation": violation},
        )

    @staticmethod
    def transaction_failed(
        operation: str,
        entity_id: Optional[UUID],
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Transaction failed during {operation}",
            error_message=error_message,
            details={"operation": operation},
        )

    @staticmethod
    def invoice_created(
        invoice_id: UUID,
        code: str,
        amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVOICE_CREATED,
            entity_type="invoice",
            entity_id=invoice_id,
            correlation_id=correlation_id,
            description=f"Invoice {code} created for {amount}",
            details={"code": code, "amount": amount},
            is_user_action=True,
        )

    @staticmethod
    def invoice_updated(
        invoice_id: UUID,
        changes: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVOICE_UPDATED,
            entity_type="invoice",
            entity_id=invoice_id,
            correlation_id=correlation_id,
            description=f"Invoice updated: {', '.join(sorted(changes)) or 'no changes'}",
            details={"changes": changes},
            is_user_action=True,
        )

    @staticmethod
    def invoice_deleted(
        invoice_id: UUID,
        removed_allocations: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INVOICE_DELETED,
            entity_type="invoice",
            entity_id=invoice_id,
            correlation_id=correlation_id,
            description=f"Invoice deleted with {removed_allocations} allocations",
            details={"removed_allocations": removed_allocations},
            is_user_action=True,
        )

    @staticmethod
    def payment_created(
        payment_id: UUID,
        amount: int,
        allocation_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_CREATED,
            entity_type="payment",
            entity_id=payment_id,
            correlation_id=correlation_id,
            description=f"Payment of {amount} created with {allocation_count} allocations",
            details={"amount": amount, "allocation_count": allocation_count},
            is_user_action=True,
        )

    @staticmethod
    def payment_updated(
        payment_id: UUID,
        changes: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_UPDATED,
            entity_type="payment",
            entity_id=payment_id,
            correlation_id=correlation_id,
            description=f"Payment updated: {', '.join(sorted(changes)) or 'no changes'}",
            details={"changes": changes},
            is_user_action=True,
        )

    @staticmethod
    def payment_deleted(
        payment_id: UUID,
        removed_allocations: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_DELETED,
            entity_type="payment",
            entity_id=payment_id,
            correlation_id=correlation_id,
            description=f"Payment deleted with {removed_allocations} allocations",
            details={"removed_allocations": removed_allocations},
            is_user_action=True,
        )

    @staticmethod
    def ledger_built(
        contact_id: UUID,
        direction: str,
        entry_count: int,
        running_total: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_BUILT,
            severity=AuditSeverity.DEBUG,
            entity_type="contact",
            entity_id=contact_id,
            correlation_id=correlation_id,
            description=f"{direction.capitalize()} ledger built: {entry_count} entries",
            details={
                "direction": direction,
                "entry_count": entry_count,
                "running_total": running_total,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

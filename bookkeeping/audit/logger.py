"""
Audit Logger

DESIGN DECISION: Every mutation of invoices, payments and allocations is
logged. This provides:
1. Complete traceability of how a payment came to settle an invoice
2. Debugging capability when a commit fails
3. History that survives deletions

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

import logging
import sys
from typing import Optional
from uuid import UUID, uuid4

import structlog

from bookkeeping.config import get_settings
from bookkeeping.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from bookkeeping.services.storage import AuditStorageInterface


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure stdlib logging and structlog for JSON output.

    Called once on import; call again to change the level.
    """
    level = level or get_settings().app.log_level
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("bookkeeping.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity is AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity is AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Audit persistence must never break the flow being audited
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # -------------------------------------------------------------------------
    # Allocation engine
    # -------------------------------------------------------------------------

    async def log_allocations_applied(
        self,
        payment_id: UUID,
        rows: list[dict],
        replaced_count: int,
        correlation_id: UUID,
    ) -> None:
        """Log a replace-all allocation commit."""
        await self.log(AuditEventBuilder.allocations_applied(
            payment_id=payment_id,
            rows=rows,
            replaced_count=replaced_count,
            correlation_id=correlation_id,
        ))

    async def log_allocations_appended(
        self,
        payment_id: UUID,
        rows: list[dict],
        correlation_id: UUID,
    ) -> None:
        """Log an incremental allocation commit."""
        await self.log(AuditEventBuilder.allocations_appended(
            payment_id=payment_id,
            rows=rows,
            correlation_id=correlation_id,
        ))

    async def log_allocation_deleted(
        self,
        allocation_id: UUID,
        payment_id: UUID,
        invoice_id: UUID,
        amount: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.allocation_deleted(
            allocation_id=allocation_id,
            payment_id=payment_id,
            invoice_id=invoice_id,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_allocation_rejected(
        self,
        payment_id: UUID,
        violation: str,
        correlation_id: UUID,
    ) -> None:
        """Log a draft set refused at commit time."""
        await self.log(AuditEventBuilder.allocation_rejected(
            payment_id=payment_id,
            violation=violation,
            correlation_id=correlation_id,
        ))

    async def log_transaction_failed(
        self,
        operation: str,
        entity_id: Optional[UUID],
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_failed(
            operation=operation,
            entity_id=entity_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Record lifecycle
    # -------------------------------------------------------------------------

    async def log_invoice_created(
        self,
        invoice_id: UUID,
        code: str,
        amount: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.invoice_created(
            invoice_id=invoice_id,
            code=code,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_invoice_updated(
        self,
        invoice_id: UUID,
        changes: dict,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.invoice_updated(
            invoice_id=invoice_id,
            changes=changes,
            correlation_id=correlation_id,
        ))

    async def log_invoice_deleted(
        self,
        invoice_id: UUID,
        removed_allocations: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.invoice_deleted(
            invoice_id=invoice_id,
            removed_allocations=removed_allocations,
            correlation_id=correlation_id,
        ))

    async def log_payment_created(
        self,
        payment_id: UUID,
        amount: int,
        allocation_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.payment_created(
            payment_id=payment_id,
            amount=amount,
            allocation_count=allocation_count,
            correlation_id=correlation_id,
        ))

    async def log_payment_updated(
        self,
        payment_id: UUID,
        changes: dict,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.payment_updated(
            payment_id=payment_id,
            changes=changes,
            correlation_id=correlation_id,
        ))

    async def log_payment_deleted(
        self,
        payment_id: UUID,
        removed_allocations: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.payment_deleted(
            payment_id=payment_id,
            removed_allocations=removed_allocations,
            correlation_id=correlation_id,
        ))

    # -------------------------------------------------------------------------
    # Reports and errors
    # -------------------------------------------------------------------------

    async def log_ledger_built(
        self,
        contact_id: UUID,
        direction: str,
        entry_count: int,
        running_total: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.ledger_built(
            contact_id=contact_id,
            direction=direction,
            entry_count=entry_count,
            running_total=running_total,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., confirming an
    allocation edit). Pass it through all subsequent operations.
    """
    return uuid4()

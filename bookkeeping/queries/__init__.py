"""Read-side queries: status projection and debt ledgers."""

from bookkeeping.queries.ledger import DebtLedgerBuilder
from bookkeeping.queries.projector import (
    StatusProjector,
    project_invoice,
    project_payment,
)

__all__ = [
    "DebtLedgerBuilder",
    "StatusProjector",
    "project_invoice",
    "project_payment",
]

"""
Storage Services Package

Provides abstract interfaces and concrete implementations for record storage.
SQLAlchemy is the production backend; the in-memory store backs tests.
"""

from bookkeeping.services.storage.interface import (
    AuditStorageInterface,
    DeleteAllocation,
    DeleteAllocationsForPayment,
    DeleteInvoice,
    DeletePayment,
    DuplicateError,
    InsertAllocation,
    InsertInvoice,
    InsertPayment,
    InvariantViolationError,
    NotFoundError,
    RecordStoreInterface,
    StorageError,
    StoreOperation,
    StoreUnavailableError,
    TransactionError,
    UpdateInvoice,
    UpdatePayment,
)
from bookkeeping.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryRecordStore,
)
from bookkeeping.services.storage.sql import (
    SqlAuditStorage,
    SqlClient,
    SqlRecordStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "RecordStoreInterface",
    # Operations
    "DeleteAllocation",
    "DeleteAllocationsForPayment",
    "DeleteInvoice",
    "DeletePayment",
    "InsertAllocation",
    "InsertInvoice",
    "InsertPayment",
    "StoreOperation",
    "UpdateInvoice",
    "UpdatePayment",
    # Exceptions
    "DuplicateError",
    "InvariantViolationError",
    "NotFoundError",
    "StorageError",
    "StoreUnavailableError",
    "TransactionError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryRecordStore",
    # SQL implementation
    "SqlAuditStorage",
    "SqlClient",
    "SqlRecordStore",
]

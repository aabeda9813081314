"""Services package."""

from bookkeeping.services.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemoryRecordStore,
    NotFoundError,
    RecordStoreInterface,
    SqlAuditStorage,
    SqlClient,
    SqlRecordStore,
    StorageError,
    TransactionError,
)

"""Services package."""

from statement_import.services.storage import (
    AuditStorageInterface,
    ConcurrentUpdateError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedger,
    ImportStorageInterface,
    InMemoryAuditStorage,
    InMemoryImportStorage,
    InMemoryLedger,
    LedgerInterface,
    NotFoundError,
    StorageError,
)

__all__ = [
    "AuditStorageInterface",
    "ConcurrentUpdateError",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedger",
    "ImportStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryImportStorage",
    "InMemoryLedger",
    "LedgerInterface",
    "NotFoundError",
    "StorageError",
]

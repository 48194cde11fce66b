"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Import sessions live in memory; the ledger and audit log can live in
Google Sheets. Every backend is swappable behind its interface.
"""

from statement_import.services.storage.interface import (
    AuditStorageInterface,
    ConcurrentUpdateError,
    ConnectionError,
    DuplicateError,
    ImportStorageInterface,
    LedgerInterface,
    NotFoundError,
    StorageError,
)
from statement_import.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryImportStorage,
    InMemoryLedger,
)
from statement_import.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedger,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ImportStorageInterface",
    "LedgerInterface",
    # Exceptions
    "ConcurrentUpdateError",
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryImportStorage",
    "InMemoryLedger",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedger",
]

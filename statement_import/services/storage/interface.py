"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Keep import sessions in memory (or a real database) while the ledger
   lives in Google Sheets
2. Use in-memory storage for testing
3. Keep the orchestrator decoupled from storage implementation

Two operations carry the concurrency guarantees of the import:
- update_session() is a compare-and-set on the session version
- transition_row() is a compare-and-set on the row status

Any implementation MUST make both atomic.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from statement_import.models.audit import AuditEvent
from statement_import.models.statement import (
    ClassifiedBy,
    ImportRow,
    ImportSession,
    LedgerEntry,
    RowStatus,
    SessionStatus,
)


class ImportStorageInterface(ABC):
    """
    Abstract interface for import sessions and their rows.
    """

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_session(self, session: ImportSession) -> ImportSession:
        """
        Persist a new session.

        Raises:
            DuplicateError: If a session with this id exists
        """
        pass

    @abstractmethod
    async def get_session(self, session_id: UUID) -> Optional[ImportSession]:
        """
        Retrieve a session by its ID.

        Returns:
            The session if found, None otherwise
        """
        pass

    @abstractmethod
    async def update_session(
        self,
        session_id: UUID,
        expected_version: int,
        **changes,
    ) -> ImportSession:
        """
        Apply changes if the stored version still equals expected_version.

        The stored version is incremented and updated_at refreshed on
        every successful write.

        Returns:
            The session after the write

        Raises:
            NotFoundError: If the session doesn't exist
            ConcurrentUpdateError: If someone else wrote first
        """
        pass

    @abstractmethod
    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
    ) -> list[ImportSession]:
        """
        List sessions, optionally filtered by status.
        """
        pass

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_rows(self, rows: list[ImportRow]) -> None:
        """
        Persist a batch of rows, keeping their order.
        """
        pass

    @abstractmethod
    async def get_row(self, row_id: UUID) -> Optional[ImportRow]:
        pass

    @abstractmethod
    async def list_rows(
        self,
        session_id: UUID,
        status: Optional[RowStatus] = None,
        classified_by: Optional[ClassifiedBy] = None,
    ) -> list[ImportRow]:
        """
        Rows of a session ordered by position, optionally filtered.
        """
        pass

    @abstractmethod
    async def update_row(self, row_id: UUID, **changes) -> ImportRow:
        """
        Overwrite fields of a row (classification updates).

        Raises:
            NotFoundError: If the row doesn't exist
        """
        pass

    @abstractmethod
    async def transition_row(
        self,
        row_id: UUID,
        expected_status: RowStatus,
        **changes,
    ) -> ImportRow:
        """
        Apply changes only if the row is still in expected_status.

        This is the claim that makes confirmation exactly-once: of two
        concurrent PENDING -> CONFIRMED transitions, one fails.

        Raises:
            NotFoundError: If the row doesn't exist
            ConcurrentUpdateError: If the status already moved on
        """
        pass


class LedgerInterface(ABC):
    """
    Abstract interface for the expense ledger (collaborator).

    source_row_id is unique across the ledger: an import row can be
    materialized at most once.
    """

    @abstractmethod
    async def insert_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Raises:
            DuplicateError: If an entry for entry.source_row_id exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def insert_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        """
        Bulk insert. All entries are written or none are.

        Raises:
            DuplicateError: If any source_row_id already has an entry
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def get_entry_for_row(self, source_row_id: UUID) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    async def list_entries(self, user_id: Optional[str] = None) -> list[LedgerEntry]:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (one import session).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConcurrentUpdateError(StorageError):
    """A compare-and-set lost against another writer."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass

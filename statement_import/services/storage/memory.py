"""
In-Memory Storage

Default backend for import sessions and rows (they only live until the
user finishes reviewing), and the test double for the ledger and audit
log.

Every method that reads-then-writes holds the store's asyncio.Lock, which
is what makes the compare-and-set operations atomic. Records are copied
on the way in and out so callers never share state with the store.
"""

import asyncio
import datetime as dt
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
from statement_import.services.storage.interface import (
    AuditStorageInterface,
    ConcurrentUpdateError,
    DuplicateError,
    ImportStorageInterface,
    LedgerInterface,
    NotFoundError,
)


class InMemoryImportStorage(ImportStorageInterface):
    """Sessions and rows kept in process memory."""

    def __init__(self):
        self._sessions: dict[UUID, ImportSession] = {}
        self._rows: dict[UUID, ImportRow] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, session: ImportSession) -> ImportSession:
        async with self._lock:
            if session.id in self._sessions:
                raise DuplicateError(f"Session already exists: {session.id}")
            self._sessions[session.id] = session.model_copy(deep=True)
            return session.model_copy(deep=True)

    async def get_session(self, session_id: UUID) -> Optional[ImportSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def update_session(
        self,
        session_id: UUID,
        expected_version: int,
        **changes,
    ) -> ImportSession:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError(f"Session not found: {session_id}")
            if current.version != expected_version:
                raise ConcurrentUpdateError(
                    f"Session {session_id} is at version {current.version}, "
                    f"expected {expected_version}"
                )
            updated = current.model_copy(update={
                **changes,
                "version": current.version + 1,
                "updated_at": dt.datetime.utcnow(),
            })
            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
    ) -> list[ImportSession]:
        sessions = [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if status is None or s.status == status
        ]
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    async def insert_rows(self, rows: list[ImportRow]) -> None:
        async with self._lock:
            for row in rows:
                if row.id in self._rows:
                    raise DuplicateError(f"Row already exists: {row.id}")
            for row in rows:
                self._rows[row.id] = row.model_copy(deep=True)

    async def get_row(self, row_id: UUID) -> Optional[ImportRow]:
        row = self._rows.get(row_id)
        return row.model_copy(deep=True) if row else None

    async def list_rows(
        self,
        session_id: UUID,
        status: Optional[RowStatus] = None,
        classified_by: Optional[ClassifiedBy] = None,
    ) -> list[ImportRow]:
        rows = [
            r.model_copy(deep=True)
            for r in self._rows.values()
            if r.session_id == session_id
            and (status is None or r.status == status)
            and (classified_by is None or r.classified_by == classified_by)
        ]
        rows.sort(key=lambda r: r.position)
        return rows

    async def update_row(self, row_id: UUID, **changes) -> ImportRow:
        async with self._lock:
            current = self._rows.get(row_id)
            if current is None:
                raise NotFoundError(f"Row not found: {row_id}")
            updated = current.model_copy(update=changes)
            self._rows[row_id] = updated
            return updated.model_copy(deep=True)

    async def transition_row(
        self,
        row_id: UUID,
        expected_status: RowStatus,
        **changes,
    ) -> ImportRow:
        async with self._lock:
            current = self._rows.get(row_id)
            if current is None:
                raise NotFoundError(f"Row not found: {row_id}")
            if current.status != expected_status:
                raise ConcurrentUpdateError(
                    f"Row {row_id} is {current.status.value}, "
                    f"expected {expected_status.value}"
                )
            updated = current.model_copy(update=changes)
            self._rows[row_id] = updated
            return updated.model_copy(deep=True)


class InMemoryLedger(LedgerInterface):
    """Ledger entries kept in process memory, unique per source row."""

    def __init__(self):
        self._entries: dict[UUID, LedgerEntry] = {}
        self._by_source_row: dict[UUID, UUID] = {}
        self._lock = asyncio.Lock()

    async def insert_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return (await self.insert_entries([entry]))[0]

    async def insert_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        async with self._lock:
            seen = set()
            for entry in entries:
                if entry.source_row_id in self._by_source_row or entry.source_row_id in seen:
                    raise DuplicateError(
                        f"Ledger entry already exists for row {entry.source_row_id}"
                    )
                seen.add(entry.source_row_id)

            for entry in entries:
                self._entries[entry.id] = entry.model_copy(deep=True)
                self._by_source_row[entry.source_row_id] = entry.id
            return [entry.model_copy(deep=True) for entry in entries]

    async def get_entry_for_row(self, source_row_id: UUID) -> Optional[LedgerEntry]:
        entry_id = self._by_source_row.get(source_row_id)
        if entry_id is None:
            return None
        return self._entries[entry_id].model_copy(deep=True)

    async def list_entries(self, user_id: Optional[str] = None) -> list[LedgerEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._entries.values()
            if user_id is None or e.user_id == user_id
        ]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

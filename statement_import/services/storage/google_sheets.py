"""
Google Sheets Storage Implementation

DESIGN DECISION: The ledger and the audit log live in Google Sheets because:
1. Non-technical users can see their imported expenses directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- No transactions: the uniqueness of source_row_id is checked by reading
  the column before appending. The import row claim (a compare-and-set in
  the import store) is what actually keeps two writers apart; the check
  here catches a retry of an already-written entry.
- Limited query capabilities (we filter in Python)

Import sessions and rows are NOT stored here; they need compare-and-set
and stay in the import store.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from statement_import.config import GoogleSheetsSettings
from statement_import.models.audit import AuditEvent, AuditEventType, AuditSeverity
from statement_import.models.statement import EntrySource, LedgerEntry, TransactionType
from statement_import.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerInterface,
    StorageError,
)


logger = structlog.get_logger()

# Column mappings for the ledger sheet
LEDGER_COLUMNS = [
    "id",
    "created_at",
    "user_id",
    "datetime",
    "type",
    "amount",
    "category",
    "platform",
    "payment_method",
    "notes",
    "tags_json",
    "source",
    "source_row_id",
    "raw_text",
]
SOURCE_ROW_COLUMN = LEDGER_COLUMNS.index("source_row_id") + 1  # 1-based for gspread

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_code",
    "error_message",
    "is_user_action",
]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or GoogleSheetsSettings()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet

    def get_ledger_sheet(self) -> gspread.Worksheet:
        """Get or create the ledger worksheet."""
        return self._get_or_create_sheet(
            self._settings.ledger_sheet_name, LEDGER_COLUMNS, rows=1000
        )

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create_sheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )


class GoogleSheetsLedger(LedgerInterface):
    """
    Google Sheets implementation of the expense ledger.

    One entry per row; tags are JSON-serialized.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _entry_to_row(self, entry: LedgerEntry) -> list:
        """Convert a LedgerEntry to a spreadsheet row."""
        return [
            str(entry.id),
            entry.created_at.isoformat(),
            entry.user_id,
            entry.datetime or "",
            entry.type.value if entry.type else "",
            str(entry.amount) if entry.amount is not None else "",
            entry.category,
            entry.platform,
            entry.payment_method,
            entry.notes or "",
            json.dumps(entry.tags),
            entry.source.value,
            str(entry.source_row_id),
            entry.raw_text,
        ]

    def _row_to_entry(self, row: list) -> LedgerEntry:
        """Convert a spreadsheet row to a LedgerEntry."""
        # Handle missing columns gracefully
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return LedgerEntry(
            id=UUID(safe_get(0)),
            created_at=datetime.fromisoformat(safe_get(1)),
            user_id=safe_get(2),
            datetime=safe_get(3) or None,
            type=TransactionType(safe_get(4)) if safe_get(4) else None,
            amount=Decimal(safe_get(5)) if safe_get(5) else None,
            category=safe_get(6, "Other"),
            platform=safe_get(7, "Other"),
            payment_method=safe_get(8, "Other"),
            notes=safe_get(9) or None,
            tags=json.loads(safe_get(10)) if safe_get(10) else [],
            source=EntrySource(safe_get(11, EntrySource.IMPORT.value)),
            source_row_id=UUID(safe_get(12)),
            raw_text=safe_get(13),
        )

    def _all_rows(self) -> list[list]:
        try:
            sheet = self._client.get_ledger_sheet()
            return sheet.get_all_values()[1:]  # Skip header
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read ledger: {e}")

    def _written_row_ids(self) -> set[str]:
        try:
            sheet = self._client.get_ledger_sheet()
            return set(sheet.col_values(SOURCE_ROW_COLUMN)[1:])
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read ledger: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _append_missing(self, entries: list[LedgerEntry]) -> None:
        # An append can land and still raise; each attempt writes only what
        # the sheet doesn't hold yet.
        written = self._written_row_ids()
        rows = [
            self._entry_to_row(entry)
            for entry in entries
            if str(entry.source_row_id) not in written
        ]
        if not rows:
            return
        try:
            sheet = self._client.get_ledger_sheet()
            sheet.append_rows(rows, value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to write ledger entries: {e}")

    async def insert_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return (await self.insert_entries([entry]))[0]

    async def insert_entries(self, entries: list[LedgerEntry]) -> list[LedgerEntry]:
        """Append entries in one API call after checking source_row_id uniqueness."""
        if not entries:
            return []

        existing = self._written_row_ids()
        seen = set()
        for entry in entries:
            key = str(entry.source_row_id)
            if key in existing or key in seen:
                raise DuplicateError(f"Ledger entry already exists for row {key}")
            seen.add(key)

        await self._append_missing(entries)

        logger.info("ledger_entries_written", count=len(entries))
        return entries

    async def get_entry_for_row(self, source_row_id: UUID) -> Optional[LedgerEntry]:
        for row in self._all_rows():
            if len(row) > SOURCE_ROW_COLUMN - 1 and row[SOURCE_ROW_COLUMN - 1] == str(source_row_id):
                return self._row_to_entry(row)
        return None

    async def list_entries(self, user_id: Optional[str] = None) -> list[LedgerEntry]:
        entries = []
        for row in self._all_rows():
            if not row or not row[0]:  # Skip empty rows
                continue
            try:
                entry = self._row_to_entry(row)
            except (ValueError, IndexError) as e:
                logger.warning("ledger_row_malformed", entry_id=row[0], error=str(e))
                continue
            if user_id is None or entry.user_id == user_id:
                entries.append(entry)
        return entries


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=UUID(safe_get(5)) if safe_get(5) else None,
            correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
            description=safe_get(7),
            details=json.loads(safe_get(8)) if safe_get(8) else {},
            error_code=safe_get(9) or None,
            error_message=safe_get(10) or None,
            is_user_action=safe_get(11).lower() == "true",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _append(self, row: list) -> None:
        sheet = self._client.get_audit_sheet()
        sheet.append_row(row, value_input_option="RAW")

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            await self._append(event.to_sheets_row())
            return True
        except Exception as e:
            # Don't raise - audit logging should not break the main flow
            logger.warning(
                "audit_sheet_write_failed",
                event_id=str(event.event_id),
                error=str(e),
            )
            return False

    def _events(self, predicate) -> list[AuditEvent]:
        try:
            sheet = self._client.get_audit_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = []
        for row in all_rows:
            if not row or not row[0] or not predicate(row):
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, IndexError):
                continue
        return events

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        events = self._events(
            lambda row: len(row) > 6 and row[6] == str(correlation_id)
        )
        # Sort chronologically
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        events = self._events(lambda row: True)
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

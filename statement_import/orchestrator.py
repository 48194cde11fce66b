"""
Main Orchestrator for Statement Import

This module ties together all the components and defines the
end-to-end flows for:
1. Import (upload -> parse -> session -> rules -> AI fallback -> review)
2. Review (confirm / skip / confirm all -> ledger)

DESIGN DECISION: The orchestrator owns the session record. Every status
change goes through one compare-and-set transition, checked against the
lifecycle table below:

    PARSING -> REVIEWING -> COMPLETE
       |
       +-> FAILED

A pipeline that loses a compare-and-set (the watchdog failed the
session first) stops without writing anything else.

The orchestrator enforces the boundaries:
- Nothing reaches the ledger without a confirmation
- A row reaches the ledger at most once
- Every step is audited
"""

import asyncio
import datetime as dt
import json
from typing import Optional
from uuid import UUID, uuid4

import structlog

from statement_import.audit import AuditLogger, configure_logging
from statement_import.classification import (
    AIClassificationQueue,
    CannedClassificationProvider,
    ClassificationProvider,
    GeminiClassificationProvider,
    RuleClassifier,
)
from statement_import.config import ImportSettings, get_settings
from statement_import.errors import (
    AIClassificationError,
    EmptyFileError,
    FileRequiredError,
    FileTooLargeError,
    InvalidTransitionError,
    PasswordRequiredError,
    PipelineError,
    RowAlreadyResolvedError,
    RowExtractionError,
    RowNotFoundError,
    SessionFailedError,
    SessionNotFoundError,
    SessionNotReadyError,
    StatementImportError,
    UnreadableFileError,
    UnsupportedFileTypeError,
    WrongPasswordError,
)
from statement_import.models.statement import (
    ClassifiedBy,
    ConfirmScope,
    ImportRow,
    ImportSession,
    LedgerEntry,
    RawImportRow,
    RowAction,
    RowFieldOverrides,
    RowStatus,
    SessionStatus,
    StatementUpload,
)
from statement_import.parsing import (
    GeminiRowExtractor,
    LineRowExtractor,
    ParsedStatement,
    RowExtractor,
    StatementFileParser,
)
from statement_import.services.storage import (
    ConcurrentUpdateError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedger,
    ImportStorageInterface,
    InMemoryImportStorage,
    InMemoryLedger,
    LedgerInterface,
)
from statement_import.worker import PipelineWorker


logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PARSING: frozenset({SessionStatus.REVIEWING, SessionStatus.FAILED}),
    SessionStatus.REVIEWING: frozenset({SessionStatus.COMPLETE}),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.COMPLETE: frozenset(),
}

# Content types browsers and HTTP clients send for each accepted extension
ALLOWED_CONTENT_TYPES: dict[str, frozenset[str]] = {
    "csv": frozenset({
        "text/csv",
        "application/csv",
        "text/plain",
        "application/vnd.ms-excel",
        "application/octet-stream",
    }),
    "xlsx": frozenset({
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/octet-stream",
    }),
    "xls": frozenset({
        "application/vnd.ms-excel",
        "application/x-msexcel",
        "application/octet-stream",
    }),
    "pdf": frozenset({
        "application/pdf",
        "application/x-pdf",
        "application/octet-stream",
    }),
}


async def transition_session(
    storage: ImportStorageInterface,
    session: ImportSession,
    target: SessionStatus,
    **changes,
) -> ImportSession:
    """
    Move a session to a new status with a compare-and-set.

    Raises:
        InvalidTransitionError: The lifecycle does not allow the move
        ConcurrentUpdateError: The session changed since it was read
    """
    if target not in ALLOWED_TRANSITIONS[session.status]:
        raise InvalidTransitionError(
            f"Cannot move session {session.id} from {session.status.value} to {target.value}"
        )
    return await storage.update_session(
        session.id, session.version, status=target, **changes
    )


def build_ledger_entry(row: ImportRow, user_id: str, entry_id: UUID) -> LedgerEntry:
    """Materialize a confirmed row as a ledger entry."""
    return LedgerEntry(
        id=entry_id,
        user_id=user_id,
        amount=row.amount,
        datetime=row.datetime,
        type=row.type,
        category=row.category or "Other",
        platform=row.platform or "Other",
        payment_method=row.payment_method or "Other",
        notes=row.notes,
        tags=list(row.tags),
        raw_text=json.dumps(row.raw_data, ensure_ascii=False),
        source_row_id=row.id,
    )


class ImportSessionOrchestrator:
    """
    Orchestrates the import flow.

    Flow:
    1. Upload -> validate file type and size
    2. Parse -> detect bank format, map rows (PDF: read the text only)
    3. Create session (PARSING) and hand the statement to the pipeline worker
    4. Pipeline (background) -> PDF row extraction, rules, gate, persist,
       AI fallback
    5. REVIEWING -> user confirms or skips rows

    Steps 1-3 run in the caller's request; create_session returns as soon
    as the session exists.
    """

    def __init__(
        self,
        storage: ImportStorageInterface,
        ai_queue: AIClassificationQueue,
        classifier: Optional[RuleClassifier] = None,
        parser: Optional[StatementFileParser] = None,
        row_extractor: Optional[RowExtractor] = None,
        settings: Optional[ImportSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._ai_queue = ai_queue
        self._classifier = classifier or RuleClassifier()
        self._parser = parser or StatementFileParser()
        self._row_extractor = row_extractor or LineRowExtractor()
        self._settings = settings or ImportSettings()
        self._audit_logger = audit_logger or AuditLogger()
        self._dispatcher = None

    def bind_dispatcher(self, dispatcher) -> None:
        """
        Attach the background worker that runs pipelines.

        The dispatcher must provide `async submit(session_id, statement)`.
        """
        self._dispatcher = dispatcher

    @property
    def settings(self) -> ImportSettings:
        return self._settings

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    def validate_upload(self, upload: Optional[StatementUpload]) -> None:
        """
        Reject uploads before anything is parsed.

        Raises:
            FileRequiredError: No file, no filename or no content
            UnsupportedFileTypeError: Extension or content type not accepted
            FileTooLargeError: Over the configured upload limit
        """
        if upload is None or not (upload.filename or "").strip() or upload.content is None:
            raise FileRequiredError()

        extension = upload.extension
        if extension not in self._settings.supported_types_list:
            raise UnsupportedFileTypeError(
                f"Unsupported file type '.{extension}'. "
                f"Accepted: {', '.join(self._settings.supported_types_list)}"
            )

        content_type = (upload.content_type or "").split(";")[0].strip().lower()
        if content_type and content_type not in ALLOWED_CONTENT_TYPES.get(extension, frozenset()):
            raise UnsupportedFileTypeError(
                f"Content type '{content_type}' is not a .{extension} statement"
            )

        if upload.size_bytes > self._settings.max_upload_size_bytes:
            raise FileTooLargeError(
                f"File is {upload.size_bytes} bytes; "
                f"the limit is {self._settings.max_upload_size_mb} MB"
            )

    async def create_session(
        self,
        upload: Optional[StatementUpload],
        user_id: str,
    ) -> ImportSession:
        """
        Validate, parse, create the session and queue its pipeline.

        No session is created for a rejected upload.
        """
        filename = upload.filename if upload else None

        try:
            self.validate_upload(upload)
            parsed = self._parser.parse(upload.content, upload.filename, upload.password)
        except (
            FileRequiredError,
            UnsupportedFileTypeError,
            FileTooLargeError,
            EmptyFileError,
            UnreadableFileError,
            PasswordRequiredError,
            WrongPasswordError,
        ) as e:
            await self._audit_logger.log_upload_rejected(filename, e.code, e.detail)
            raise

        if self._dispatcher is None:
            raise PipelineError("No pipeline worker is attached")

        now = dt.datetime.utcnow()
        session = await self._storage.create_session(
            ImportSession(
                user_id=user_id,
                source_file=upload.filename,
                bank_format=parsed.format_id,
                row_count=parsed.row_count,
                progress_total=parsed.row_count,
                created_at=now,
                updated_at=now,
                expires_at=now + dt.timedelta(minutes=self._settings.parsing_timeout_minutes),
            )
        )

        await self._audit_logger.log_session_created(
            session.id, session.source_file, parsed.format_id, parsed.row_count
        )

        try:
            await self._dispatcher.submit(session.id, parsed)
        except Exception as e:
            # Nothing will ever run this session
            await self._fail(session.id, e)
            raise PipelineError("The import could not be queued") from e
        return session

    # -------------------------------------------------------------------------
    # Pipeline (runs on the worker)
    # -------------------------------------------------------------------------

    async def run_pipeline(self, session_id: UUID, statement: ParsedStatement) -> None:
        """
        Classify the statement's rows and bring the session to REVIEWING.

        A PDF statement's rows are extracted from its text first.

        Never raises: any failure ends in a FAILED session.
        """
        log = logger.bind(session_id=str(session_id))

        session = await self._storage.get_session(session_id)
        if session is None or session.status != SessionStatus.PARSING:
            log.warning(
                "pipeline_skipped",
                status=session.status.value if session else None,
            )
            return

        rows = statement.rows
        try:
            if statement.text is not None:
                rows = await self._extract_rows(statement.text, log)
                session = await self._storage.update_session(
                    session.id,
                    session.version,
                    row_count=len(rows),
                    progress_total=len(rows),
                )
            session = await self._classify_and_persist(session, rows, log)
        except ConcurrentUpdateError:
            log.warning("pipeline_superseded")
            return
        except Exception as e:
            log.error("pipeline_failed", error=str(e), error_type=type(e).__name__)
            await self._fail(session_id, e)
            return

        log.info("session_ready_for_review", row_count=session.row_count)
        await self._audit_logger.log_session_ready(session.id, session.row_count)

    async def _extract_rows(self, text: str, log) -> list[RawImportRow]:
        try:
            rows = await self._row_extractor.extract_rows(text)
        except Exception as e:
            raise RowExtractionError(f"Row extraction failed: {e}") from e
        if not rows:
            raise EmptyFileError("No transactions found in the PDF statement")
        log.info("pdf_rows_extracted", extractor=self._row_extractor.name, row_count=len(rows))
        return rows

    async def _classify_and_persist(
        self,
        session: ImportSession,
        rows: list[RawImportRow],
        log,
    ) -> ImportSession:
        threshold = self._settings.auto_accept_threshold

        classified = self._classifier.classify(rows)
        import_rows = [
            ImportRow(
                **row.model_dump(),
                session_id=session.id,
                position=position,
            )
            for position, row in enumerate(classified)
        ]
        fallback = [row for row in import_rows if not row.confidence.meets(threshold)]
        auto_count = len(import_rows) - len(fallback)

        await self._storage.insert_rows(import_rows)
        session = await self._storage.update_session(
            session.id,
            session.version,
            auto_count=auto_count,
            review_count=len(fallback),
            progress_done=auto_count,
        )
        await self._audit_logger.log_rules_completed(session.id, auto_count, len(fallback))

        if fallback:
            log.info(
                "ai_fallback_started",
                row_count=len(fallback),
                lowest_fields=sorted({row.confidence.lowest_field() for row in fallback}),
            )
            await self._audit_logger.log_ai_started(session.id, len(fallback))

            progress_lock = asyncio.Lock()
            progress = {"done": auto_count, "session": session}

            async def on_result(index: int, row: ImportRow) -> None:
                async with progress_lock:
                    # Session first: once the session is lost, no row is written
                    progress["done"] += 1
                    progress["session"] = await self._storage.update_session(
                        session.id,
                        progress["session"].version,
                        progress_done=progress["done"],
                    )
                    await self._storage.update_row(
                        fallback[index].id,
                        type=row.type,
                        category=row.category,
                        platform=row.platform,
                        payment_method=row.payment_method,
                        tags=row.tags,
                        confidence=row.confidence,
                        classified_by=ClassifiedBy.AI,
                    )

            await self._ai_queue.enqueue(fallback, on_result=on_result)
            session = progress["session"]

        return await transition_session(
            self._storage,
            session,
            SessionStatus.REVIEWING,
            progress_done=session.row_count,
        )

    async def _fail(self, session_id: UUID, error: Exception) -> None:
        """Mark a session FAILED unless something else already ended it."""
        session = await self._storage.get_session(session_id)
        if session is None or session.status != SessionStatus.PARSING:
            return

        try:
            await transition_session(self._storage, session, SessionStatus.FAILED)
        except ConcurrentUpdateError:
            logger.warning("session_fail_superseded", session_id=str(session_id))
            return

        if isinstance(error, AIClassificationError):
            await self._audit_logger.log_external_service_error(
                self._ai_queue.provider.name, str(error), correlation_id=session_id
            )
        elif isinstance(error, RowExtractionError):
            await self._audit_logger.log_external_service_error(
                self._row_extractor.name, str(error), correlation_id=session_id
            )
        elif not isinstance(error, StatementImportError):
            await self._audit_logger.log_error(
                type(error).__name__,
                str(error),
                details={"stage": "pipeline"},
                correlation_id=session_id,
            )

        error_type = error.code if isinstance(error, StatementImportError) else type(error).__name__
        await self._audit_logger.log_session_failed(
            session_id, error_type, str(error) or error_type
        )

    async def expire_stale_sessions(self, now: Optional[dt.datetime] = None) -> list[UUID]:
        """
        Fail sessions that stayed in PARSING past their deadline.

        Returns the ids of the sessions this call failed.
        """
        now = now or dt.datetime.utcnow()
        expired = []

        for session in await self._storage.list_sessions(status=SessionStatus.PARSING):
            if session.expires_at is None or session.expires_at > now:
                continue
            try:
                await transition_session(self._storage, session, SessionStatus.FAILED)
            except ConcurrentUpdateError:
                # The pipeline wrote in between; look again on the next tick
                continue

            expired.append(session.id)
            logger.warning("session_expired", session_id=str(session.id))
            await self._audit_logger.log_session_expired(
                session.id, self._settings.parsing_timeout_minutes
            )

        return expired

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_session(self, session_id: UUID, user_id: str) -> ImportSession:
        """
        Raises:
            SessionNotFoundError: Unknown session or owned by another user
        """
        session = await self._storage.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        return session

    async def get_rows(self, session_id: UUID, user_id: str) -> list[ImportRow]:
        """
        Rows in classification order.

        Raises:
            SessionNotFoundError: Unknown session
            SessionNotReadyError: Still PARSING
            SessionFailedError: The pipeline failed
        """
        session = await self.get_session(session_id, user_id)
        if session.status == SessionStatus.PARSING:
            raise SessionNotReadyError()
        if session.status == SessionStatus.FAILED:
            raise SessionFailedError()
        return await self._storage.list_rows(session_id)


class RowMaterializer:
    """
    Turns confirmed rows into ledger entries, exactly once.

    A confirmation first CLAIMS the row (compare-and-set PENDING ->
    CONFIRMED with a pre-allocated ledger id), then writes the entry.
    Only the claim winner writes. If the write fails, the claim is
    released so the user can try again.
    """

    def __init__(
        self,
        storage: ImportStorageInterface,
        ledger: LedgerInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._ledger = ledger
        self._audit_logger = audit_logger or AuditLogger()

    async def _reviewable_session(self, session_id: UUID, user_id: str) -> ImportSession:
        session = await self._storage.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError()
        if session.status == SessionStatus.PARSING:
            raise SessionNotReadyError()
        if session.status == SessionStatus.FAILED:
            raise SessionFailedError()
        return session

    async def confirm_row(
        self,
        session_id: UUID,
        row_id: UUID,
        action: RowAction,
        overrides: Optional[RowFieldOverrides],
        user_id: str,
    ) -> ImportRow:
        """
        Confirm or skip one PENDING row.

        Raises:
            RowNotFoundError: Row unknown or not part of this session
            RowAlreadyResolvedError: Row was already confirmed or skipped
        """
        await self._reviewable_session(session_id, user_id)

        row = await self._storage.get_row(row_id)
        if row is None or row.session_id != session_id:
            raise RowNotFoundError()
        if row.status != RowStatus.PENDING:
            raise RowAlreadyResolvedError()

        if action == RowAction.SKIP:
            try:
                skipped = await self._storage.transition_row(
                    row.id, RowStatus.PENDING, status=RowStatus.SKIPPED
                )
            except ConcurrentUpdateError:
                raise RowAlreadyResolvedError()
            await self._audit_logger.log_row_skipped(row.id, session_id)
            return skipped

        changes = overrides.provided() if overrides else {}
        if overrides is not None and overrides.touches_classification:
            changes["classified_by"] = ClassifiedBy.MANUAL

        entry_id = uuid4()
        try:
            claimed = await self._storage.transition_row(
                row.id,
                RowStatus.PENDING,
                status=RowStatus.CONFIRMED,
                posted_expense_id=entry_id,
                **changes,
            )
        except ConcurrentUpdateError:
            raise RowAlreadyResolvedError()

        try:
            await self._ledger.insert_entry(build_ledger_entry(claimed, user_id, entry_id))
        except DuplicateError:
            claimed = await self._adopt_existing_entry(claimed)
        except Exception as e:
            restore = {name: getattr(row, name) for name in changes}
            await self._release_claims([claimed], restore)
            await self._audit_logger.log_ledger_write_failed(session_id, 1, str(e))
            raise

        await self._audit_logger.log_row_confirmed(
            claimed.id,
            session_id,
            claimed.posted_expense_id,
            sorted(k for k in changes if k != "classified_by"),
        )
        return claimed

    async def confirm_all(
        self,
        session_id: UUID,
        scope: ConfirmScope,
        user_id: str,
    ) -> dict:
        """
        Confirm every PENDING row in scope with one ledger write.

        Scope AUTO only touches rule-classified rows. Scope ALL also
        completes the session.
        """
        session = await self._reviewable_session(session_id, user_id)

        classified_by = ClassifiedBy.RULE if scope == ConfirmScope.AUTO else None
        pending = await self._storage.list_rows(
            session_id, status=RowStatus.PENDING, classified_by=classified_by
        )

        claimed = []
        for row in pending:
            try:
                claimed.append(
                    await self._storage.transition_row(
                        row.id,
                        RowStatus.PENDING,
                        status=RowStatus.CONFIRMED,
                        posted_expense_id=uuid4(),
                    )
                )
            except ConcurrentUpdateError:
                # Confirmed or skipped by a concurrent request
                continue

        if claimed:
            entries = [
                build_ledger_entry(row, user_id, row.posted_expense_id)
                for row in claimed
            ]
            try:
                await self._ledger.insert_entries(entries)
            except DuplicateError:
                await self._post_missing_entries(session_id, claimed, user_id)
            except Exception as e:
                await self._release_claims(claimed, {})
                await self._audit_logger.log_ledger_write_failed(
                    session_id, len(claimed), str(e)
                )
                raise

        if scope == ConfirmScope.ALL and session.status == SessionStatus.REVIEWING:
            await self._complete(session)

        await self._audit_logger.log_bulk_confirmed(session_id, scope.value, len(claimed))
        return {"imported": len(claimed)}

    async def _complete(self, session: ImportSession) -> None:
        while session.status == SessionStatus.REVIEWING:
            try:
                await transition_session(self._storage, session, SessionStatus.COMPLETE)
            except ConcurrentUpdateError:
                session = await self._storage.get_session(session.id)
                continue
            await self._audit_logger.log_session_completed(session.id)
            return

    async def _release_claims(self, rows: list[ImportRow], restore: dict) -> None:
        """Put claimed rows back to PENDING after a failed ledger write."""
        for row in rows:
            try:
                await self._storage.transition_row(
                    row.id,
                    RowStatus.CONFIRMED,
                    status=RowStatus.PENDING,
                    posted_expense_id=None,
                    **restore,
                )
            except ConcurrentUpdateError:
                logger.error("claim_release_failed", row_id=str(row.id))

    async def _post_missing_entries(
        self,
        session_id: UUID,
        rows: list[ImportRow],
        user_id: str,
    ) -> None:
        """
        Recover a bulk write that hit rows already in the ledger.

        An earlier write can reach the ledger and still fail; those rows
        adopt their entry and only the rest are posted.
        """
        missing = []
        for row in rows:
            existing = await self._ledger.get_entry_for_row(row.id)
            if existing is None:
                missing.append(row)
                continue
            logger.warning(
                "ledger_entry_exists",
                row_id=str(row.id),
                expense_id=str(existing.id),
            )
            await self._storage.update_row(row.id, posted_expense_id=existing.id)

        if not missing:
            return

        try:
            await self._ledger.insert_entries(
                [build_ledger_entry(row, user_id, row.posted_expense_id) for row in missing]
            )
        except Exception as e:
            await self._release_claims(missing, {})
            await self._audit_logger.log_ledger_write_failed(session_id, len(missing), str(e))
            raise

    async def _adopt_existing_entry(self, row: ImportRow) -> ImportRow:
        """The ledger already holds this row: point the row at that entry."""
        existing = await self._ledger.get_entry_for_row(row.id)
        if existing is None:
            raise PipelineError(f"Ledger reported a duplicate for row {row.id} but has no entry")
        logger.warning(
            "ledger_entry_exists",
            row_id=str(row.id),
            expense_id=str(existing.id),
        )
        return await self._storage.update_row(row.id, posted_expense_id=existing.id)


def build_ai_provider(settings: ImportSettings) -> ClassificationProvider:
    """Canned answers when IMPORT_AI_MOCK is set, Gemini otherwise."""
    if settings.ai_mock:
        return CannedClassificationProvider()
    return GeminiClassificationProvider(get_settings().gemini)


def build_row_extractor(settings: ImportSettings) -> RowExtractor:
    """Line reader when IMPORT_AI_MOCK is set, Gemini otherwise."""
    if settings.ai_mock:
        return LineRowExtractor()
    return GeminiRowExtractor(get_settings().gemini)


def create_app_components(
    use_storage: bool = True,
    provider: Optional[ClassificationProvider] = None,
) -> tuple[ImportSessionOrchestrator, RowMaterializer, PipelineWorker, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets for the ledger and
                    audit log. Set to False to keep everything in memory.
        provider: AI classification provider; built from settings if None.

    Returns:
        (orchestrator, materializer, worker, sheets_client)

    The worker is not started; call `await worker.start()` inside the
    running event loop.
    """
    settings = get_settings()
    app_settings = settings.app
    import_settings = settings.imports
    configure_logging(app_settings.log_level, app_settings.json_logs)

    sheets_client = None
    ledger: LedgerInterface = InMemoryLedger()
    audit_logger = AuditLogger()  # Local-only logging

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient(settings.google_sheets)
            ledger = GoogleSheetsLedger(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None

    storage = InMemoryImportStorage()
    ai_queue = AIClassificationQueue.from_settings(
        provider or build_ai_provider(import_settings), import_settings
    )
    row_extractor = build_row_extractor(import_settings) if provider is None else LineRowExtractor()

    orchestrator = ImportSessionOrchestrator(
        storage=storage,
        ai_queue=ai_queue,
        row_extractor=row_extractor,
        settings=import_settings,
        audit_logger=audit_logger,
    )
    materializer = RowMaterializer(
        storage=storage,
        ledger=ledger,
        audit_logger=audit_logger,
    )
    worker = PipelineWorker(
        orchestrator,
        worker_count=import_settings.worker_count,
        queue_size=import_settings.queue_size,
        watchdog_interval_seconds=import_settings.watchdog_interval_seconds,
    )

    return orchestrator, materializer, worker, sheets_client

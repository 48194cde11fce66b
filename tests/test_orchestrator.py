"""Tests for the import session orchestrator."""

import datetime as dt
from uuid import uuid4

import pytest

from statement_import.classification import AIClassificationQueue
from statement_import.errors import (
    EmptyFileError,
    FileRequiredError,
    FileTooLargeError,
    InvalidTransitionError,
    PasswordRequiredError,
    PipelineError,
    SessionFailedError,
    SessionNotFoundError,
    SessionNotReadyError,
    UnsupportedFileTypeError,
)
from statement_import.models.audit import AuditEventType
from statement_import.models.statement import (
    ClassifiedBy,
    ImportSession,
    RowStatus,
    SessionStatus,
    StatementUpload,
)
from statement_import.orchestrator import (
    ImportSessionOrchestrator,
    transition_session,
)
from statement_import.parsing import LineRowExtractor, RowExtractor, file_parser
from statement_import.services.storage import ConcurrentUpdateError, InMemoryImportStorage
from statement_import.worker import PipelineWorker
from tests.fakes import AXIS_STATEMENT, ScriptedProvider


def axis_upload(content: bytes = AXIS_STATEMENT, **kwargs) -> StatementUpload:
    options = {"filename": "axis_feb.csv", "content_type": "text/csv", "content": content}
    options.update(kwargs)
    return StatementUpload(**options)


class RecordingStorage(InMemoryImportStorage):
    """Import storage that remembers every session write."""

    def __init__(self):
        super().__init__()
        self.session_writes = []

    async def update_session(self, session_id, expected_version, **changes):
        updated = await super().update_session(session_id, expected_version, **changes)
        self.session_writes.append(updated)
        return updated


async def create_and_run(orchestrator, dispatcher, user_id="u1"):
    session = await orchestrator.create_session(axis_upload(), user_id)
    session_id, statement = dispatcher.jobs[-1]
    await orchestrator.run_pipeline(session_id, statement)
    return session


async def event_types(audit_storage):
    return [event.event_type for event in await audit_storage.get_recent_events(1000)]


class TestUploadValidation:
    """Tests for rejecting uploads before a session exists."""

    @pytest.mark.parametrize("upload", [
        None,
        StatementUpload(filename="", content=b"x"),
        StatementUpload(filename="axis.csv"),
    ])
    async def test_missing_file(self, orchestrator, storage, upload):
        """Test a missing file or filename is rejected."""
        with pytest.raises(FileRequiredError):
            await orchestrator.create_session(upload, "u1")
        assert await storage.list_sessions() == []

    async def test_unsupported_extension(self, orchestrator, storage):
        """Test a non-statement file type is rejected."""
        with pytest.raises(UnsupportedFileTypeError):
            await orchestrator.create_session(axis_upload(filename="receipt.docx"), "u1")
        assert await storage.list_sessions() == []

    async def test_unsupported_content_type(self, orchestrator):
        """Test a statement extension with an image content type is rejected."""
        with pytest.raises(UnsupportedFileTypeError):
            await orchestrator.create_session(axis_upload(content_type="image/png"), "u1")

    async def test_content_type_parameters_ignored(self, orchestrator):
        """Test a charset parameter doesn't break content type checks."""
        session = await orchestrator.create_session(
            axis_upload(content_type="text/csv; charset=utf-8"), "u1"
        )
        assert session.status == SessionStatus.PARSING

    async def test_too_large(self, orchestrator, import_settings):
        """Test uploads over the size limit are rejected."""
        content = b"x" * (import_settings.max_upload_size_bytes + 1)
        with pytest.raises(FileTooLargeError):
            await orchestrator.create_session(axis_upload(content=content), "u1")

    async def test_empty_file(self, orchestrator, storage):
        """Test an empty statement is rejected."""
        with pytest.raises(EmptyFileError):
            await orchestrator.create_session(axis_upload(content=b"\n"), "u1")
        assert await storage.list_sessions() == []

    async def test_rejection_audited(self, orchestrator, audit_storage):
        """Test that rejected uploads leave an audit trail."""
        with pytest.raises(UnsupportedFileTypeError):
            await orchestrator.create_session(axis_upload(filename="receipt.docx"), "u1")
        (event,) = await audit_storage.get_recent_events()
        assert event.event_type == AuditEventType.UPLOAD_REJECTED
        assert event.error_code == "UNSUPPORTED_FILE_TYPE"


class TestCreateSession:
    """Tests for session creation and dispatch."""

    async def test_returns_parsing_session(self, orchestrator, dispatcher, import_settings):
        """Test the session comes back immediately, before classification."""
        session = await orchestrator.create_session(axis_upload(), "u1")

        assert session.status == SessionStatus.PARSING
        assert session.bank_format == "AXIS"
        assert session.row_count == 3
        assert session.progress_total == 3
        assert session.progress_done == 0
        assert session.expires_at - session.created_at == dt.timedelta(
            minutes=import_settings.parsing_timeout_minutes
        )

        (job,) = dispatcher.jobs
        assert job[0] == session.id
        assert job[1].row_count == 3

    async def test_requires_dispatcher(self, storage, provider, import_settings):
        """Test that a session is not created without a worker to run it."""
        orchestrator = ImportSessionOrchestrator(
            storage=storage,
            ai_queue=AIClassificationQueue.from_settings(provider, import_settings),
            settings=import_settings,
        )
        with pytest.raises(PipelineError):
            await orchestrator.create_session(axis_upload(), "u1")
        assert await storage.list_sessions() == []

    async def test_unqueued_session_fails(self, orchestrator, storage, audit_storage):
        """Test a session the worker refuses is failed instead of left parsing."""
        PipelineWorker(orchestrator)  # bound but never started

        with pytest.raises(PipelineError):
            await orchestrator.create_session(axis_upload(), "u1")

        (session,) = await storage.list_sessions()
        assert session.status == SessionStatus.FAILED
        assert AuditEventType.SESSION_FAILED in await event_types(audit_storage)


class TestPipeline:
    """Tests for the background classification pipeline."""

    async def test_reaches_reviewing(self, orchestrator, dispatcher, storage):
        """Test a successful run ends in REVIEWING with full progress."""
        session = await create_and_run(orchestrator, dispatcher)

        session = await storage.get_session(session.id)
        assert session.status == SessionStatus.REVIEWING
        assert session.progress_done == session.row_count == 3
        assert session.auto_count == 2
        assert session.review_count == 1

    async def test_rows_persisted_in_order(self, orchestrator, dispatcher, storage):
        """Test rows are stored PENDING in statement order."""
        session = await create_and_run(orchestrator, dispatcher)

        rows = await orchestrator.get_rows(session.id, "u1")
        assert [row.position for row in rows] == [0, 1, 2]
        assert [row.narration for row in rows] == [
            "UPI/NETFLIX SUBSCRIPTION",
            "ZOMATO ORDER 450",
            "SALARY FEB NEFT",
        ]
        assert all(row.status == RowStatus.PENDING for row in rows)

    async def test_only_gate_failures_reach_ai(self, orchestrator, dispatcher, provider, import_settings):
        """Test AI classification is applied only to rows that failed the gate."""
        session = await create_and_run(orchestrator, dispatcher)

        rows = await orchestrator.get_rows(session.id, "u1")
        assert provider.calls == [["ZOMATO ORDER 450"]]
        for row in rows:
            if row.classified_by == ClassifiedBy.AI:
                assert row.narration == "ZOMATO ORDER 450"
                assert row.confidence.category <= import_settings.ai_confidence_ceiling
                assert not row.confidence.meets(import_settings.auto_accept_threshold)
            else:
                assert row.confidence.meets(import_settings.auto_accept_threshold)

    async def test_ai_answers_persisted(self, orchestrator, dispatcher):
        """Test AI fields are written back to the row."""
        session = await create_and_run(orchestrator, dispatcher)

        rows = await orchestrator.get_rows(session.id, "u1")
        zomato = rows[1]
        assert zomato.classified_by == ClassifiedBy.AI
        assert zomato.payment_method == "UPI"
        assert zomato.tags == ["delivery"]
        assert zomato.confidence.payment_method == 0.75

    async def test_progress_monotonic(self, provider, import_settings, dispatcher):
        """Test progress never goes backwards and is complete on REVIEWING."""
        storage = RecordingStorage()
        orchestrator = ImportSessionOrchestrator(
            storage=storage,
            ai_queue=AIClassificationQueue.from_settings(provider, import_settings),
            settings=import_settings,
        )
        orchestrator.bind_dispatcher(dispatcher)

        await create_and_run(orchestrator, dispatcher)

        progress = [write.progress_done for write in storage.session_writes]
        assert progress == sorted(progress)
        reviewing = [w for w in storage.session_writes if w.status == SessionStatus.REVIEWING]
        assert len(reviewing) == 1
        assert reviewing[0].progress_done == reviewing[0].row_count
        assert storage.session_writes[-1] is reviewing[0]

    async def test_ai_failure_fails_session(self, storage, import_settings, audit_logger, audit_storage, dispatcher):
        """Test an AI batch that keeps failing ends the session FAILED."""
        orchestrator = ImportSessionOrchestrator(
            storage=storage,
            ai_queue=AIClassificationQueue.from_settings(ScriptedProvider(failures=10), import_settings),
            settings=import_settings,
            audit_logger=audit_logger,
        )
        orchestrator.bind_dispatcher(dispatcher)

        session = await create_and_run(orchestrator, dispatcher)

        session = await storage.get_session(session.id)
        assert session.status == SessionStatus.FAILED
        types = await event_types(audit_storage)
        assert AuditEventType.SESSION_FAILED in types
        assert AuditEventType.EXTERNAL_SERVICE_ERROR in types
        with pytest.raises(SessionFailedError):
            await orchestrator.get_rows(session.id, "u1")

    async def test_all_rules_no_ai(self, orchestrator, dispatcher, provider, storage):
        """Test a statement the rules settle never calls the AI."""
        upload = axis_upload(
            content=b"Tran Date,Particulars,Debit,Credit\n03/02/2026,SALARY FEB NEFT,,85000.00\n"
        )
        session = await orchestrator.create_session(upload, "u1")
        await orchestrator.run_pipeline(*dispatcher.jobs[-1])

        assert provider.calls == []
        session = await storage.get_session(session.id)
        assert session.status == SessionStatus.REVIEWING
        assert session.auto_count == 1

    async def test_rerun_is_noop(self, orchestrator, dispatcher, storage, provider):
        """Test a pipeline is not run again for a session that left PARSING."""
        session = await create_and_run(orchestrator, dispatcher)
        await orchestrator.run_pipeline(*dispatcher.jobs[-1])

        assert len(await storage.list_rows(session.id)) == 3
        assert len(provider.calls) == 1

    async def test_audit_trail(self, orchestrator, dispatcher, audit_storage):
        """Test the pipeline logs each stage under the session id."""
        session = await create_and_run(orchestrator, dispatcher)

        events = await audit_storage.get_events_by_correlation_id(session.id)
        assert [e.event_type for e in events] == [
            AuditEventType.SESSION_CREATED,
            AuditEventType.RULE_CLASSIFICATION_COMPLETED,
            AuditEventType.AI_CLASSIFICATION_STARTED,
            AuditEventType.SESSION_READY_FOR_REVIEW,
        ]


class TestWatchdog:
    """Tests for failing sessions stuck in PARSING."""

    async def test_expires_stale_session(self, orchestrator, storage, audit_storage):
        """Test a session past its deadline is failed."""
        session = await orchestrator.create_session(axis_upload(), "u1")

        expired = await orchestrator.expire_stale_sessions(
            now=session.expires_at + dt.timedelta(seconds=1)
        )

        assert expired == [session.id]
        assert (await storage.get_session(session.id)).status == SessionStatus.FAILED
        assert AuditEventType.SESSION_EXPIRED in await event_types(audit_storage)

    async def test_fresh_session_untouched(self, orchestrator, storage):
        """Test a session within its deadline is left alone."""
        session = await orchestrator.create_session(axis_upload(), "u1")
        assert await orchestrator.expire_stale_sessions() == []
        assert (await storage.get_session(session.id)).status == SessionStatus.PARSING

    async def test_late_pipeline_does_not_revive(self, orchestrator, dispatcher, storage):
        """Test a pipeline that starts after expiry leaves the session FAILED."""
        session = await orchestrator.create_session(axis_upload(), "u1")
        await orchestrator.expire_stale_sessions(now=session.expires_at)

        await orchestrator.run_pipeline(*dispatcher.jobs[-1])

        assert (await storage.get_session(session.id)).status == SessionStatus.FAILED
        assert await storage.list_rows(session.id) == []

    async def test_expiry_during_ai_stops_pipeline(self, storage, import_settings, dispatcher):
        """Test a pipeline that loses the race to the watchdog writes nothing more."""
        holder = {}

        async def expire_now():
            await holder["orchestrator"].expire_stale_sessions(
                now=dt.datetime.utcnow() + dt.timedelta(days=1)
            )

        provider = ScriptedProvider(before_answer=expire_now)
        orchestrator = ImportSessionOrchestrator(
            storage=storage,
            ai_queue=AIClassificationQueue.from_settings(provider, import_settings),
            settings=import_settings,
        )
        orchestrator.bind_dispatcher(dispatcher)
        holder["orchestrator"] = orchestrator

        session = await create_and_run(orchestrator, dispatcher)

        session = await storage.get_session(session.id)
        assert session.status == SessionStatus.FAILED
        rows = await storage.list_rows(session.id)
        assert all(row.classified_by == ClassifiedBy.RULE for row in rows)


class TestReads:
    """Tests for session and row reads."""

    async def test_other_user_cannot_read(self, orchestrator):
        """Test sessions are private to their owner."""
        session = await orchestrator.create_session(axis_upload(), "u1")
        with pytest.raises(SessionNotFoundError):
            await orchestrator.get_session(session.id, "u2")

    async def test_unknown_session(self, orchestrator):
        """Test an unknown id is not found."""
        with pytest.raises(SessionNotFoundError):
            await orchestrator.get_session(uuid4(), "u1")

    async def test_rows_not_ready_while_parsing(self, orchestrator):
        """Test rows can't be read before the pipeline finishes."""
        session = await orchestrator.create_session(axis_upload(), "u1")
        with pytest.raises(SessionNotReadyError):
            await orchestrator.get_rows(session.id, "u1")


class TestTransitions:
    """Tests for the session lifecycle table."""

    async def test_disallowed_transition(self, storage):
        """Test REVIEWING cannot go to FAILED."""
        session = await storage.create_session(
            ImportSession(user_id="u1", source_file="a.csv", status=SessionStatus.REVIEWING)
        )
        with pytest.raises(InvalidTransitionError):
            await transition_session(storage, session, SessionStatus.FAILED)

    async def test_terminal_states(self, storage):
        """Test FAILED and COMPLETE have no way out."""
        for status in (SessionStatus.FAILED, SessionStatus.COMPLETE):
            session = await storage.create_session(
                ImportSession(user_id="u1", source_file="a.csv", status=status)
            )
            with pytest.raises(InvalidTransitionError):
                await transition_session(storage, session, SessionStatus.REVIEWING)

    async def test_stale_version_rejected(self, storage):
        """Test a transition from an outdated read loses."""
        session = await storage.create_session(ImportSession(user_id="u1", source_file="a.csv"))
        await storage.update_session(session.id, session.version, progress_done=1)

        with pytest.raises(ConcurrentUpdateError):
            await transition_session(storage, session, SessionStatus.REVIEWING)


PDF_TEXT = """Date Narration Amount Balance
03/02/2026 UPI/NETFLIX SUBSCRIPTION 499.00 11,501.00
04/02/2026 ZOMATO ORDER 450.00 11,051.00
05/02/2026 SALARY FEB NEFT 85,000.00 Cr 96,051.00"""


class BrokenExtractor(RowExtractor):
    name = "gemini"

    async def extract_rows(self, text):
        raise TimeoutError("deadline exceeded")


class EmptyExtractor(RowExtractor):
    name = "lines"

    async def extract_rows(self, text):
        return []


def pdf_upload(**kwargs) -> StatementUpload:
    options = {"filename": "feb.pdf", "content_type": "application/pdf", "content": b"%PDF-1.7"}
    options.update(kwargs)
    return StatementUpload(**options)


@pytest.fixture
def pdf_text(monkeypatch):
    monkeypatch.setattr(file_parser, "extract_pdf_text", lambda data, password: PDF_TEXT)


def pdf_orchestrator(storage, import_settings, audit_logger, dispatcher, extractor):
    orchestrator = ImportSessionOrchestrator(
        storage=storage,
        ai_queue=AIClassificationQueue.from_settings(ScriptedProvider(), import_settings),
        row_extractor=extractor,
        settings=import_settings,
        audit_logger=audit_logger,
    )
    orchestrator.bind_dispatcher(dispatcher)
    return orchestrator


class TestPdfPipeline:
    """Tests for statements whose rows come out of PDF text."""

    async def test_rows_extracted_in_pipeline(
        self, pdf_text, storage, import_settings, audit_logger, dispatcher
    ):
        """Test the row count is only known once the pipeline extracts rows."""
        orchestrator = pdf_orchestrator(
            storage, import_settings, audit_logger, dispatcher, LineRowExtractor()
        )
        session = await orchestrator.create_session(pdf_upload(), "u1")
        assert session.bank_format == "PDF"
        assert session.row_count == 0

        await orchestrator.run_pipeline(*dispatcher.jobs[-1])

        session = await storage.get_session(session.id)
        assert session.status == SessionStatus.REVIEWING
        assert session.row_count == 3
        assert session.progress_done == session.progress_total == 3
        rows = await orchestrator.get_rows(session.id, "u1")
        assert [row.narration for row in rows] == [
            "UPI/NETFLIX SUBSCRIPTION",
            "ZOMATO ORDER",
            "SALARY FEB NEFT",
        ]

    async def test_extraction_failure_fails_session(
        self, pdf_text, storage, import_settings, audit_logger, audit_storage, dispatcher
    ):
        """Test an extractor error fails the session and names the service."""
        orchestrator = pdf_orchestrator(
            storage, import_settings, audit_logger, dispatcher, BrokenExtractor()
        )
        session = await orchestrator.create_session(pdf_upload(), "u1")
        await orchestrator.run_pipeline(*dispatcher.jobs[-1])

        assert (await storage.get_session(session.id)).status == SessionStatus.FAILED
        events = await audit_storage.get_events_by_correlation_id(session.id)
        service_errors = [
            e for e in events if e.event_type == AuditEventType.EXTERNAL_SERVICE_ERROR
        ]
        assert len(service_errors) == 1
        assert AuditEventType.SESSION_FAILED in [e.event_type for e in events]

    async def test_no_transactions_fails_session(
        self, pdf_text, storage, import_settings, audit_logger, dispatcher
    ):
        """Test a PDF with no transactions in it never reaches review."""
        orchestrator = pdf_orchestrator(
            storage, import_settings, audit_logger, dispatcher, EmptyExtractor()
        )
        session = await orchestrator.create_session(pdf_upload(), "u1")
        await orchestrator.run_pipeline(*dispatcher.jobs[-1])

        assert (await storage.get_session(session.id)).status == SessionStatus.FAILED
        assert await storage.list_rows(session.id) == []

    async def test_password_required_rejected(self, orchestrator, storage, audit_storage, monkeypatch):
        """Test a locked PDF is rejected at upload and audited."""
        def locked(data, password):
            raise PasswordRequiredError()

        monkeypatch.setattr(file_parser, "extract_pdf_text", locked)

        with pytest.raises(PasswordRequiredError):
            await orchestrator.create_session(pdf_upload(), "u1")

        assert await storage.list_sessions() == []
        (event,) = await audit_storage.get_recent_events()
        assert event.event_type == AuditEventType.UPLOAD_REJECTED
        assert event.error_code == "PASSWORD_REQUIRED"

    async def test_password_forwarded(self, orchestrator, dispatcher, monkeypatch):
        """Test the upload's password reaches the PDF reader."""
        seen = {}

        def reader(data, password):
            seen["password"] = password
            return PDF_TEXT

        monkeypatch.setattr(file_parser, "extract_pdf_text", reader)
        await orchestrator.create_session(pdf_upload(password="0412"), "u1")
        assert seen["password"] == "0412"

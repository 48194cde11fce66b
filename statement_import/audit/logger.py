"""
Audit Logger

DESIGN DECISION: Every significant step of an import is logged.
This provides:
1. Complete traceability of each statement upload
2. Debugging capability when a session ends up FAILED
3. A record of which rows the user confirmed, skipped or edited

The audit logger:
- Is async to not block the pipeline
- Gracefully handles failures (a broken audit sheet never fails an import)
- Uses the session id as correlation id for all pipeline events
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from statement_import.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from statement_import.services.storage import AuditStorageInterface


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog on top of the standard library logger.

    Called once at import with defaults; create_app_components calls it
    again with the configured level and renderer.
    """
    logging.basicConfig(format="%(message)s", level=level.upper())
    logging.getLogger().setLevel(level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Configure structlog for local logging
configure_logging()


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage, when configured (Google Sheets in production)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("statement_import.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # -------------------------------------------------------------------------
    # Upload / pipeline
    # -------------------------------------------------------------------------

    async def log_upload_rejected(
        self,
        filename: Optional[str],
        error_code: str,
        reason: str,
    ) -> None:
        """Log an upload refused before a session existed."""
        await self.log(AuditEventBuilder.upload_rejected(filename, error_code, reason))

    async def log_session_created(
        self,
        session_id: UUID,
        filename: str,
        bank_format: str,
        row_count: int,
    ) -> None:
        await self.log(
            AuditEventBuilder.session_created(session_id, filename, bank_format, row_count)
        )

    async def log_rules_completed(
        self,
        session_id: UUID,
        auto_count: int,
        review_count: int,
    ) -> None:
        await self.log(
            AuditEventBuilder.rule_classification_completed(
                session_id, auto_count, review_count
            )
        )

    async def log_ai_started(self, session_id: UUID, row_count: int) -> None:
        await self.log(AuditEventBuilder.ai_classification_started(session_id, row_count))

    async def log_session_ready(self, session_id: UUID, row_count: int) -> None:
        await self.log(AuditEventBuilder.session_ready(session_id, row_count))

    async def log_session_failed(
        self,
        session_id: UUID,
        error_type: str,
        error_message: str,
    ) -> None:
        """Log a pipeline failure."""
        await self.log(
            AuditEventBuilder.session_failed(session_id, error_type, error_message)
        )

    async def log_session_expired(self, session_id: UUID, minutes: int) -> None:
        await self.log(AuditEventBuilder.session_expired(session_id, minutes))

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    async def log_row_confirmed(
        self,
        row_id: UUID,
        session_id: UUID,
        expense_id: UUID,
        overridden: list[str],
    ) -> None:
        """Log user confirmation of one row."""
        await self.log(
            AuditEventBuilder.row_confirmed(row_id, session_id, expense_id, overridden)
        )

    async def log_row_skipped(self, row_id: UUID, session_id: UUID) -> None:
        await self.log(AuditEventBuilder.row_skipped(row_id, session_id))

    async def log_bulk_confirmed(
        self,
        session_id: UUID,
        scope: str,
        imported: int,
    ) -> None:
        await self.log(AuditEventBuilder.bulk_confirmed(session_id, scope, imported))

    async def log_session_completed(self, session_id: UUID) -> None:
        await self.log(AuditEventBuilder.session_completed(session_id))

    async def log_ledger_write_failed(
        self,
        session_id: UUID,
        row_count: int,
        error_message: str,
    ) -> None:
        await self.log(
            AuditEventBuilder.ledger_write_failed(session_id, row_count, error_message)
        )

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Pipeline events use the session id instead; use this for work that
    happens before a session exists.
    """
    return uuid4()

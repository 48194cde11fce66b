"""
Audit Models for Statement Import

Every significant step of an import is logged for audit purposes:
which file came in, how rows were routed, which rows the user confirmed
or skipped, and why a session failed.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every step in the import pipeline has its own event type.
    """
    # Upload
    UPLOAD_REJECTED = "upload_rejected"
    SESSION_CREATED = "session_created"

    # Classification
    RULE_CLASSIFICATION_COMPLETED = "rule_classification_completed"
    AI_CLASSIFICATION_STARTED = "ai_classification_started"
    SESSION_READY_FOR_REVIEW = "session_ready_for_review"
    SESSION_FAILED = "session_failed"
    SESSION_EXPIRED = "session_expired"

    # Review
    ROW_CONFIRMED = "row_confirmed"
    ROW_SKIPPED = "row_skipped"
    BULK_CONFIRMED = "bulk_confirmed"
    SESSION_COMPLETED = "session_completed"

    # Persistence
    LEDGER_WRITE_FAILED = "ledger_write_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'session', 'row')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - all events of one import share the session id
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_code,
         error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_code or "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.session_created(session_id, "hdfc.csv", "HDFC", 42)
        event = AuditEventBuilder.row_confirmed(row_id, session_id, expense_id, [])
    """

    @staticmethod
    def upload_rejected(
        filename: Optional[str],
        error_code: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UPLOAD_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="upload",
            description=f"Upload rejected: {filename or '<missing file>'}",
            details={"filename": filename},
            error_code=error_code,
            error_message=reason,
            is_user_action=True,
        )

    @staticmethod
    def session_created(
        session_id: UUID,
        filename: str,
        bank_format: str,
        row_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SESSION_CREATED,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"Import session created for {filename}",
            details={
                "filename": filename,
                "bank_format": bank_format,
                "row_count": row_count,
            },
            is_user_action=True,
        )

    @staticmethod
    def rule_classification_completed(
        session_id: UUID,
        auto_count: int,
        review_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_CLASSIFICATION_COMPLETED,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=(
                f"Rules classified {auto_count + review_count} rows: "
                f"{auto_count} auto, {review_count} to AI"
            ),
            details={
                "auto_count": auto_count,
                "review_count": review_count,
            },
        )

    @staticmethod
    def ai_classification_started(
        session_id: UUID,
        row_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.AI_CLASSIFICATION_STARTED,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"AI fallback started for {row_count} rows",
            details={"row_count": row_count},
        )

    @staticmethod
    def session_ready(
        session_id: UUID,
        row_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SESSION_READY_FOR_REVIEW,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"Session ready for review ({row_count} rows)",
            details={"row_count": row_count},
        )

    @staticmethod
    def session_failed(
        session_id: UUID,
        error_type: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SESSION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"Import pipeline failed: {error_type}",
            error_code=error_type,
            error_message=error_message,
        )

    @staticmethod
    def session_expired(
        session_id: UUID,
        minutes: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SESSION_EXPIRED,
            severity=AuditSeverity.WARNING,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"Session stuck in PARSING for over {minutes} minutes",
            details={"timeout_minutes": minutes},
        )

    @staticmethod
    def row_confirmed(
        row_id: UUID,
        session_id: UUID,
        expense_id: UUID,
        overridden: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROW_CONFIRMED,
            entity_type="row",
            entity_id=row_id,
            correlation_id=session_id,
            description="User confirmed import row",
            details={
                "posted_expense_id": str(expense_id),
                "overridden_fields": overridden,
            },
            is_user_action=True,
        )

    @staticmethod
    def row_skipped(
        row_id: UUID,
        session_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROW_SKIPPED,
            entity_type="row",
            entity_id=row_id,
            correlation_id=session_id,
            description="User skipped import row",
            is_user_action=True,
        )

    @staticmethod
    def bulk_confirmed(
        session_id: UUID,
        scope: str,
        imported: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BULK_CONFIRMED,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"Bulk confirm ({scope}) imported {imported} rows",
            details={"scope": scope, "imported": imported},
            is_user_action=True,
        )

    @staticmethod
    def session_completed(session_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SESSION_COMPLETED,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description="Import session complete",
        )

    @staticmethod
    def ledger_write_failed(
        session_id: UUID,
        row_count: int,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LEDGER_WRITE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="session",
            entity_id=session_id,
            correlation_id=session_id,
            description=f"Ledger write failed for {row_count} rows",
            details={"row_count": row_count},
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
            correlation_id=correlation_id,
        )

"""
Data Models Package

This package contains all Pydantic models used by the statement import
pipeline. All data flowing through the system must conform to these schemas.
"""

from statement_import.models.statement import (
    CLASSIFICATION_FIELDS,
    CONFIDENCE_FIELDS,
    ClassifiedBy,
    ClassifiedRow,
    ConfidenceScores,
    ConfirmAllRequest,
    ConfirmRowRequest,
    ConfirmScope,
    EntrySource,
    ImportRow,
    ImportSession,
    LedgerEntry,
    RawImportRow,
    RowAction,
    RowFieldOverrides,
    RowStatus,
    SessionStatus,
    StatementUpload,
    TransactionType,
)
from statement_import.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Statement models
    "CLASSIFICATION_FIELDS",
    "CONFIDENCE_FIELDS",
    "ClassifiedBy",
    "ClassifiedRow",
    "ConfidenceScores",
    "ConfirmAllRequest",
    "ConfirmRowRequest",
    "ConfirmScope",
    "EntrySource",
    "ImportRow",
    "ImportSession",
    "LedgerEntry",
    "RawImportRow",
    "RowAction",
    "RowFieldOverrides",
    "RowStatus",
    "SessionStatus",
    "StatementUpload",
    "TransactionType",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

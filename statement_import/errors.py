"""
Error taxonomy for the import pipeline.

Each error carries a stable `code` (what the review UI switches on) and
the HTTP status an outer layer should answer with. The classes group into:

- input rejection: raised before a session exists, never retried
- not found / not ready: distinct codes so the UI can tell "try again
  later" from "this session doesn't exist"
- conflict: a row that was already confirmed or skipped
- validation: malformed action/scope/payload, raised before any row
  state is touched
- pipeline failure: only ever seen by the orchestrator, which turns it
  into a FAILED session

Per-row data problems are NOT errors. They become None fields with zero
confidence.
"""

from typing import Optional


class StatementImportError(Exception):
    """Base exception for everything the import API can surface."""

    code = "IMPORT_ERROR"
    status_code = 500

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


# -----------------------------------------------------------------------------
# Input rejection
# -----------------------------------------------------------------------------

class FileRequiredError(StatementImportError):
    """A statement file is required."""

    code = "FILE_REQUIRED"
    status_code = 400


class UnsupportedFileTypeError(StatementImportError):
    """Only bank statement files are accepted."""

    code = "UNSUPPORTED_FILE_TYPE"
    status_code = 422


class FileTooLargeError(StatementImportError):
    """The statement file is larger than the upload limit."""

    code = "FILE_TOO_LARGE"
    status_code = 413


class EmptyFileError(StatementImportError):
    """The statement file has no data rows."""

    code = "EMPTY_FILE"
    status_code = 422


class UnreadableFileError(StatementImportError):
    """The statement file could not be decoded."""

    code = "UNREADABLE_FILE"
    status_code = 422


class PasswordRequiredError(StatementImportError):
    """The PDF statement is password protected."""

    code = "PASSWORD_REQUIRED"
    status_code = 422


class WrongPasswordError(StatementImportError):
    """The password does not open the PDF statement."""

    code = "WRONG_PASSWORD"
    status_code = 422


# -----------------------------------------------------------------------------
# Not found / not ready
# -----------------------------------------------------------------------------

class SessionNotFoundError(StatementImportError):
    """Import session not found."""

    code = "SESSION_NOT_FOUND"
    status_code = 404


class RowNotFoundError(StatementImportError):
    """Import row not found."""

    code = "ROW_NOT_FOUND"
    status_code = 404


class SessionNotReadyError(StatementImportError):
    """The session is still being processed."""

    code = "SESSION_NOT_READY"
    status_code = 409


class SessionFailedError(StatementImportError):
    """The import failed; upload the statement again."""

    code = "SESSION_FAILED"
    status_code = 409


# -----------------------------------------------------------------------------
# Conflict / validation
# -----------------------------------------------------------------------------

class RowAlreadyResolvedError(StatementImportError):
    """The row was already confirmed or skipped."""

    code = "ROW_ALREADY_RESOLVED"
    status_code = 409


class RequestValidationError(StatementImportError):
    """The request payload is invalid."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, detail: Optional[str] = None, errors: Optional[list] = None):
        super().__init__(detail)
        self.errors = errors or []


# -----------------------------------------------------------------------------
# Pipeline failure
# -----------------------------------------------------------------------------

class PipelineError(StatementImportError):
    """The background import pipeline failed."""

    code = "PIPELINE_FAILED"
    status_code = 500


class AIClassificationError(PipelineError):
    """The AI classifier failed for a whole batch."""

    code = "AI_CLASSIFICATION_FAILED"
    status_code = 502

    def __init__(self, detail: Optional[str] = None, batch_index: Optional[int] = None):
        super().__init__(detail)
        self.batch_index = batch_index


class RowExtractionError(PipelineError):
    """Transactions could not be extracted from the statement text."""

    code = "ROW_EXTRACTION_FAILED"
    status_code = 502


class InvalidTransitionError(PipelineError):
    """A session status change that the lifecycle does not allow."""

    code = "INVALID_TRANSITION"
    status_code = 409

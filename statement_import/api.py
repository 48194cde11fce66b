"""
Import API Handlers

Framework-agnostic handlers for the review UI. Each takes plain values
(ids as strings, payloads as dicts), returns JSON-ready dicts and raises
StatementImportError subclasses. An HTTP adapter only has to map the
exception to `problem_details(error)` with `error.status_code`.

Endpoints:
    POST   /imports                          -> create_session
    GET    /imports/{id}                     -> get_session
    GET    /imports/{id}/rows                -> get_rows
    PATCH  /imports/{id}/rows/{row_id}       -> patch_row
    POST   /imports/{id}/confirm-all         -> confirm_all
"""

from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ValidationError

from statement_import.errors import (
    RequestValidationError,
    RowNotFoundError,
    SessionNotFoundError,
    StatementImportError,
)
from statement_import.models.statement import (
    ConfirmAllRequest,
    ConfirmRowRequest,
    ImportRow,
    ImportSession,
    StatementUpload,
)
from statement_import.orchestrator import ImportSessionOrchestrator, RowMaterializer


PROBLEM_TYPE_BASE = "https://errors.statement-import/"


def _uuid(value: Union[str, UUID], not_found: type[StatementImportError]) -> UUID:
    """An id that does not parse cannot exist."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise not_found()


def _validate(model: type[BaseModel], payload: Any) -> BaseModel:
    try:
        return model.model_validate(payload if payload is not None else {})
    except ValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        raise RequestValidationError(
            "; ".join(f"{err['field']}: {err['message']}" for err in errors),
            errors=errors,
        )


def session_view(session: ImportSession) -> dict:
    """Session record as the review UI reads it."""
    return {
        "id": str(session.id),
        "status": session.status.value,
        "source_file": session.source_file,
        "bank_format": session.bank_format,
        "row_count": session.row_count,
        "auto_count": session.auto_count,
        "review_count": session.review_count,
        "progress": {
            "done": session.progress_done,
            "total": session.progress_total,
        },
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
    }


def row_view(row: ImportRow) -> dict:
    return row.model_dump(mode="json", exclude={"session_id", "created_at"})


def problem_details(error: StatementImportError) -> dict:
    """Render an error as an RFC 7807 problem body."""
    body = {
        "type": PROBLEM_TYPE_BASE + error.code.lower().replace("_", "-"),
        "title": (error.__class__.__doc__ or error.code).strip(),
        "status": error.status_code,
        "detail": error.detail,
        "code": error.code,
    }
    if isinstance(error, RequestValidationError) and error.errors:
        body["errors"] = error.errors
    return body


class ImportAPI:
    """
    Handlers for the import review flow.

    Usage:
        orchestrator, materializer, worker, _ = create_app_components()
        api = ImportAPI(orchestrator, materializer)
        await worker.start()
        body = await api.create_session(upload, user_id="u1")
    """

    def __init__(
        self,
        orchestrator: ImportSessionOrchestrator,
        materializer: RowMaterializer,
    ):
        self._orchestrator = orchestrator
        self._materializer = materializer

    async def create_session(
        self,
        upload: Optional[StatementUpload],
        user_id: str,
    ) -> dict:
        session = await self._orchestrator.create_session(upload, user_id)
        return session_view(session)

    async def get_session(self, session_id: Union[str, UUID], user_id: str) -> dict:
        session = await self._orchestrator.get_session(
            _uuid(session_id, SessionNotFoundError), user_id
        )
        return session_view(session)

    async def get_rows(self, session_id: Union[str, UUID], user_id: str) -> dict:
        rows = await self._orchestrator.get_rows(
            _uuid(session_id, SessionNotFoundError), user_id
        )
        return {"rows": [row_view(row) for row in rows]}

    async def patch_row(
        self,
        session_id: Union[str, UUID],
        row_id: Union[str, UUID],
        payload: Optional[dict],
        user_id: str,
    ) -> dict:
        """Confirm or skip one row. Payload: {action: CONFIRM|SKIP, fields?}."""
        request = _validate(ConfirmRowRequest, payload)
        row = await self._materializer.confirm_row(
            _uuid(session_id, SessionNotFoundError),
            _uuid(row_id, RowNotFoundError),
            request.action,
            request.fields,
            user_id,
        )
        return row_view(row)

    async def confirm_all(
        self,
        session_id: Union[str, UUID],
        payload: Optional[dict],
        user_id: str,
    ) -> dict:
        """Payload: {scope: AUTO|ALL}."""
        request = _validate(ConfirmAllRequest, payload)
        return await self._materializer.confirm_all(
            _uuid(session_id, SessionNotFoundError),
            request.scope,
            user_id,
        )

"""Tests for the framework-agnostic API handlers."""

import pytest

from statement_import.api import ImportAPI, problem_details
from statement_import.errors import (
    AIClassificationError,
    FileRequiredError,
    RequestValidationError,
    RowNotFoundError,
    SessionNotFoundError,
    SessionNotReadyError,
)
from statement_import.models.statement import StatementUpload
from tests.fakes import AXIS_STATEMENT


@pytest.fixture
def api(orchestrator, materializer):
    return ImportAPI(orchestrator, materializer)


async def reviewing_session(api, orchestrator, dispatcher) -> dict:
    created = await api.create_session(
        StatementUpload(filename="axis.csv", content_type="text/csv", content=AXIS_STATEMENT),
        "u1",
    )
    await orchestrator.run_pipeline(*dispatcher.jobs[-1])
    return created


class TestProblemDetails:
    """Tests for RFC 7807 error bodies."""

    def test_problem_body(self):
        """Test the standard members are present."""
        body = problem_details(SessionNotReadyError())
        assert body == {
            "type": "https://errors.statement-import/session-not-ready",
            "title": "The session is still being processed.",
            "status": 409,
            "detail": "The session is still being processed.",
            "code": "SESSION_NOT_READY",
        }

    def test_custom_detail(self):
        """Test an explicit detail overrides the default."""
        body = problem_details(AIClassificationError("batch 2 timed out", batch_index=2))
        assert body["status"] == 502
        assert body["detail"] == "batch 2 timed out"

    def test_validation_errors_listed(self):
        """Test field errors are included for validation failures."""
        error = RequestValidationError("bad", errors=[{"field": "action", "message": "x"}])
        body = problem_details(error)
        assert body["status"] == 422
        assert body["errors"] == [{"field": "action", "message": "x"}]


class TestHandlers:
    """Tests for request handling."""

    async def test_create_and_read(self, api, orchestrator, dispatcher):
        """Test the session view while parsing and after review is ready."""
        created = await api.create_session(
            StatementUpload(filename="axis.csv", content_type="text/csv", content=AXIS_STATEMENT),
            "u1",
        )
        assert created["status"] == "PARSING"
        assert created["progress"] == {"done": 0, "total": 3}

        with pytest.raises(SessionNotReadyError):
            await api.get_rows(created["id"], "u1")

        await orchestrator.run_pipeline(*dispatcher.jobs[-1])
        body = await api.get_rows(created["id"], "u1")
        assert [row["position"] for row in body["rows"]] == [0, 1, 2]
        assert body["rows"][0]["status"] == "PENDING"
        assert body["rows"][0]["amount"] == "499.00"

    async def test_missing_file(self, api):
        """Test a missing upload maps to FILE_REQUIRED."""
        with pytest.raises(FileRequiredError) as exc_info:
            await api.create_session(None, "u1")
        assert exc_info.value.status_code == 400

    async def test_bad_session_id(self, api):
        """Test a malformed id is a 404, not a crash."""
        with pytest.raises(SessionNotFoundError):
            await api.get_session("not-a-uuid", "u1")

    async def test_patch_row(self, api, orchestrator, dispatcher):
        """Test confirming a row with field overrides."""
        created = await reviewing_session(api, orchestrator, dispatcher)
        row_id = (await api.get_rows(created["id"], "u1"))["rows"][1]["id"]

        body = await api.patch_row(
            created["id"], row_id,
            {"action": "CONFIRM", "fields": {"category": "Food", "notes": "lunch"}},
            "u1",
        )

        assert body["status"] == "CONFIRMED"
        assert body["classified_by"] == "MANUAL"
        assert body["posted_expense_id"] is not None

    async def test_patch_unknown_action(self, api, orchestrator, dispatcher):
        """Test an unrecognized action is a validation error."""
        created = await reviewing_session(api, orchestrator, dispatcher)
        row_id = (await api.get_rows(created["id"], "u1"))["rows"][0]["id"]

        with pytest.raises(RequestValidationError) as exc_info:
            await api.patch_row(created["id"], row_id, {"action": "UNDO"}, "u1")

        assert exc_info.value.status_code == 422
        assert exc_info.value.errors[0]["field"] == "action"
        rows = (await api.get_rows(created["id"], "u1"))["rows"]
        assert rows[0]["status"] == "PENDING"

    async def test_patch_bad_fields(self, api, orchestrator, dispatcher):
        """Test invalid override values are rejected."""
        created = await reviewing_session(api, orchestrator, dispatcher)
        row_id = (await api.get_rows(created["id"], "u1"))["rows"][0]["id"]

        with pytest.raises(RequestValidationError):
            await api.patch_row(
                created["id"], row_id, {"action": "CONFIRM", "fields": {"amount": "-5"}}, "u1"
            )

    async def test_patch_bad_row_id(self, api, orchestrator, dispatcher):
        """Test a malformed row id is ROW_NOT_FOUND."""
        created = await reviewing_session(api, orchestrator, dispatcher)
        with pytest.raises(RowNotFoundError):
            await api.patch_row(created["id"], "nope", {"action": "SKIP"}, "u1")

    async def test_confirm_all_unknown_scope(self, api, orchestrator, dispatcher):
        """Test an unrecognized scope is a validation error."""
        created = await reviewing_session(api, orchestrator, dispatcher)
        with pytest.raises(RequestValidationError):
            await api.confirm_all(created["id"], {"scope": "SOME"}, "u1")

    async def test_confirm_all_auto(self, api, orchestrator, dispatcher):
        """Test bulk confirm through the handler."""
        created = await reviewing_session(api, orchestrator, dispatcher)
        assert await api.confirm_all(created["id"], {"scope": "AUTO"}, "u1") == {"imported": 2}

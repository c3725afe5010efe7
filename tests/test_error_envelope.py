"""Tests for the error envelope format and error handling.

Error responses share one envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from nosqlgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from nosqlgate.api.schemas import Envelope, ErrorBody
from nosqlgate.service.errors import BackendUnavailableError, BatchError, ConfigurationError, NotFoundError
from nosqlgate.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="not_found", message="Record with id '1' not found.")
        assert error.code == "not_found"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="batch_error",
            message="Batch Error: Not all records could be deleted.",
            details=[{"id": "1"}, {"error": {"code": "not_found"}}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="slow down")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"record": []})
        assert envelope.data == {"record": []}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="conflict", message="Table 'people' already exists.", details={"table": "people"}),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["status"] == "error"
        assert dumped["error"]["code"] == "conflict"
        assert dumped["error"]["details"] == {"table": "people"}
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code, code",
        [
            (400, "validation_error"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
            (503, "backend_unavailable"),
        ],
    )
    def test_status_maps_to_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(999) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(404, "Table 'orders' not found.")
        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "Table 'orders' not found.", "details": None}
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(409, "Batch Error", code="batch_error")
        assert json.loads(response.body.decode())["error"]["code"] == "batch_error"


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error_renders_code_and_detail(self):
        client = _app_raising(NotFoundError("Record with id '7' not found.", detail={"id": "7"}))
        response = client.get("/boom")
        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == "not_found"
        assert body["error"]["details"] == {"id": "7"}

    def test_batch_error_keeps_per_record_results(self):
        detail = {"error": [1], "record": [{"id": "1"}, {"error": {"index": 1, "code": "not_found"}}]}
        client = _app_raising(BatchError("Batch Error: Not all records could be deleted.", detail=detail))
        response = client.get("/boom")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "batch_error"
        assert response.json()["error"]["details"] == detail

    def test_configuration_and_backend_errors(self):
        response = _app_raising(ConfigurationError("Invalid server-side filter configuration detected.")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "configuration_error"

        response = _app_raising(BackendUnavailableError("down", table="people", operation="get")).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"]["details"] == {"table": "people", "operation": "get"}

    def test_constraint_violation_is_conflict(self):
        response = _app_raising(ConstraintViolation("duplicate", {"table": "people"})).get("/boom")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_http_exception_with_plain_detail(self):
        response = _app_raising(HTTPException(status_code=403, detail="no access")).get("/boom")
        assert response.status_code == 403
        assert response.json()["error"] == {"code": "forbidden", "message": "no access", "details": None}

    def test_unhandled_exception_is_server_error(self):
        response = _app_raising(RuntimeError("secret internals")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

"""Error envelope format and status/code mapping.

Every failure leaves the API as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from buyerportal import app as app_module
from buyerportal.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from buyerportal.api.schemas import Envelope, ErrorBody


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_accept_dict_and_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"field": "email"}).details == {
            "field": "email"
        }
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2

    def test_missing_fields_raise(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize("code", ["upstream_unavailable", "reauth_required"])
    def test_upstream_codes_accepted(self, code):
        assert ErrorBody(code=code, message="upstream").code == code


class TestEnvelope:
    def test_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.error.code == "forbidden"
        assert envelope.data is None

    def test_ok_status(self):
        envelope = Envelope(status="ok", data={"userId": "123"})
        assert envelope.data == {"userId": "123"}
        assert envelope.error is None

    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_request_id_custom(self):
        assert Envelope(status="ok", request_id="req-1").request_id == "req-1"

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (502, "upstream_unavailable"),
            (503, "reauth_required"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(504) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body)
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_custom_code_and_details(self):
        response = _error_response(400, "bad", details=[{"field": "a"}], code="conflict")
        data = json.loads(response.body)
        assert data["error"]["code"] == "conflict"
        assert data["error"]["details"] == [{"field": "a"}]


class TestEnvelopeOverHttp:
    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/api/no-such-thing")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_router_http_errors_carry_plain_detail(self, client):
        response = client.delete("/api/auth/login")
        assert response.status_code == 405
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Method Not Allowed"
        assert error["details"] == {"detail": "Method Not Allowed"}

    def test_missing_token_reports_reason(self, client):
        response = client.get("/api/orders")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"]["reason"] == "missing_token"

    def test_request_validation_is_400(self, client):
        response = client.post("/api/auth/login", json={"email": "not-an-email"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"]

    def test_request_id_echoes_correlation_header(self, client):
        response = client.get("/api/orders", headers={"X-Request-ID": "corr-123"})
        assert response.json()["request_id"] == "corr-123"
        assert response.headers["X-Request-ID"] == "corr-123"

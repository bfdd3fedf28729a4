"""Tests for the error envelope format and login failure mapping.

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
from pydantic import ValidationError

from clientportal.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from clientportal.api.schemas import Envelope, ErrorBody
from clientportal.service.auth import AuthFailure
from clientportal.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    error_for_failure,
)


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_service_unavailable_is_a_stable_code(self):
        assert ErrorBody(code="service_unavailable", message="later").code == "service_unavailable"


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="too many login attempts"),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_known_statuses(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert "request_id" in data

    def test_error_response_carries_headers(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "60"})
        assert response.headers["Retry-After"] == "60"

    def test_empty_details_serialize_as_null(self):
        response = _error_response(404, "not found", details={})
        assert json.loads(response.body.decode())["error"]["details"] is None


class TestLoginFailureMapping:
    """Client-facing errors for each login failure kind."""

    def test_credential_failures_share_one_message(self):
        for failure in (AuthFailure.INVALID_CREDENTIALS, AuthFailure.TENANT_MISMATCH):
            error = error_for_failure(failure)
            assert isinstance(error, AuthenticationError)
            assert error.message == "invalid credentials"
            assert error.headers == {}

    def test_lockout_names_minutes_rounded_up(self):
        error = error_for_failure(AuthFailure.TEMPORARILY_LOCKED, 61)
        assert error.status_code == 401
        assert error.message == "account temporarily locked; try again in 2 minute(s)"
        assert error.detail == {"retry_after_seconds": 61}
        assert error.headers == {"Retry-After": "61"}

    def test_rate_limited(self):
        error = error_for_failure(AuthFailure.RATE_LIMITED, 900)
        assert isinstance(error, RateLimitedError)
        assert error.status_code == 429
        assert error.headers["Retry-After"] == "900"

    def test_disabled_access(self):
        error = error_for_failure(AuthFailure.ACCESS_DISABLED)
        assert isinstance(error, ForbiddenError)
        assert error.message == "portal access disabled"

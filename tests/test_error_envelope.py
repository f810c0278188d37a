"""Tests for the error envelope and the OAuth error shape.

Envelope errors look like::

    {"status": "error", "error": {"code", "message", "details"}, "request_id"}

while ``/oauth2/*`` errors follow RFC 6749: ``{"error", "error_description"}``.
"""

import json

import pytest
from pydantic import ValidationError

from adminauth.api.error_handling import _error_code_for_status, _error_response
from adminauth.api.schemas import Envelope, ErrorBody
from adminauth.service.errors import AuthenticationError, DeliveryError, OAuthError


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_valid_codes(self):
        for code in ("unauthorized", "forbidden", "not_found", "validation_error", "conflict", "server_error"):
            assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponse:
    """Tests for rendered responses."""

    def test_status_to_code(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(404, "No user found with that ID", {"id": "x"})

        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "No user found with that ID",
            "details": {"id": "x"},
        }
        assert body["request_id"]


class TestServiceErrors:
    """Tests for error class defaults."""

    def test_authentication_error(self):
        error = AuthenticationError("nope", detail={"stage": "token_extracted"})

        assert error.status_code == 401
        assert error.error_code == "unauthorized"
        assert error.detail == {"stage": "token_extracted"}

    def test_delivery_error_is_server_error(self):
        assert DeliveryError("smtp down").status_code == 500

    def test_oauth_error_shape(self):
        error = OAuthError("invalid_grant", "Invalid or expired refresh token", status_code=401)

        assert error.status_code == 401
        assert error.error == "invalid_grant"
        assert error.to_dict() == {
            "error": "invalid_grant",
            "error_description": "Invalid or expired refresh token",
        }

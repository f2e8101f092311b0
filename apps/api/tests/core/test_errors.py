"""
Tests for the JSON error envelope and the exception handlers.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError

from shule.core.errors import (
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    RateLimitError,
    SchoolInactiveError,
    register_exception_handlers,
)


class Payload(BaseModel):
    name: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("Email taken.", "EMAIL_TAKEN")

    @app.get("/unauthenticated")
    async def unauthenticated():
        raise AuthenticationError()

    @app.get("/rate-limited")
    async def rate_limited():
        raise RateLimitError(retry_after_seconds=120)

    @app.post("/validate")
    async def validate(payload: Payload):
        return payload

    @app.get("/database-down")
    async def database_down():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestErrorEnvelope:
    """Every error renders as {status, error, message}."""

    def test_service_error(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        assert response.json() == {
            "status": "error",
            "error": "EMAIL_TAKEN",
            "message": "Email taken.",
        }

    def test_authentication_error_has_bearer_challenge(self, client):
        response = client.get("/unauthenticated")

        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_CREDENTIALS"
        assert response.headers["www-authenticate"] == "Bearer"

    def test_rate_limit_sets_retry_after(self, client):
        response = client.get("/rate-limited")

        assert response.status_code == 429
        assert response.json()["error"] == "RATE_LIMIT_EXCEEDED"
        assert response.headers["retry-after"] == "120"

    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["message"].startswith("name:")

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["status"] == "error"
        assert response.json()["error"] == "NOT_FOUND"

    def test_database_outage_is_503(self, client):
        response = client.get("/database-down")

        assert response.status_code == 503
        assert response.json()["error"] == "SERVICE_UNAVAILABLE"
        assert "connection refused" not in response.text

    def test_unhandled_error_hides_details(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"] == "INTERNAL_ERROR"
        assert "secret internals" not in response.text


class TestErrorTaxonomy:
    """Status codes and default codes of the error classes."""

    def test_email_not_verified_is_forbidden(self):
        error = EmailNotVerifiedError()

        assert isinstance(error, AuthenticationError)
        assert error.status_code == 403
        assert error.error_code == "EMAIL_NOT_VERIFIED"
        assert error.headers is None

    def test_school_inactive(self):
        error = SchoolInactiveError()

        assert error.status_code == 403
        assert error.error_code == "SCHOOL_INACTIVE"

"""HTTP-level tests for CSRF token issuance and enforcement."""

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from tribeguard.app import app
from tribeguard.service import tokens
from tribeguard.service.runtime import get_runtime, reset_runtime_for_tests
from tribeguard.storage.errors import StoreUnavailable


@pytest.fixture
def client():
    return TestClient(app)


def _issue_token(client: TestClient) -> str:
    resp = client.get("/api/v1/csrf-token")
    assert resp.status_code == 200
    return resp.json()["csrfToken"]


class TestTokenEndpoint:
    def test_issues_token_and_session_cookie(self, client):
        resp = client.get("/api/v1/csrf-token")
        assert resp.status_code == 200
        body = resp.json()
        assert set(body) == {"csrfToken", "timestamp"}
        assert resp.headers["X-CSRF-Token"] == body["csrfToken"]
        assert "session_id" in resp.cookies

        session_id = resp.cookies["session_id"]
        runtime = get_runtime()
        cached_secret = runtime.cache.keys(f"csrf:secret:{session_id}")
        assert cached_secret

    def test_same_session_reuses_secret(self, client):
        first = _issue_token(client)
        second = _issue_token(client)
        assert first != second
        session_id = client.cookies["session_id"]
        secret = get_runtime().cache._data[f"csrf:secret:{session_id}"][0]
        assert tokens.verify(first, secret)
        assert tokens.verify(second, secret)

    def test_store_failure_returns_generation_error(self, client):
        get_runtime().cache.get_or_create_csrf_secret = AsyncMock(
            side_effect=StoreUnavailable("shared store unavailable")
        )
        resp = client.get("/api/v1/csrf-token")
        assert resp.status_code == 500
        assert resp.json() == {
            "error": "Failed to generate CSRF token",
            "code": "CSRF_GENERATION_ERROR",
        }


class TestStandardProtection:
    def test_valid_header_token_accepted(self, client):
        token = _issue_token(client)
        resp = client.post(
            "/api/v1/forms/submit",
            json={"title": "hello"},
            headers={"x-csrf-token": token},
        )
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "received": {"title": "hello"}}

    def test_token_accepted_from_json_body(self, client):
        token = _issue_token(client)
        resp = client.post("/api/v1/forms/submit", json={"_csrf": token, "title": "x"})
        assert resp.status_code == 200
        assert resp.json()["received"] == {"title": "x"}

    def test_token_accepted_from_form_body(self, client):
        token = _issue_token(client)
        resp = client.post("/api/v1/forms/submit", data={"_csrf": token, "title": "x"})
        assert resp.status_code == 200

    def test_missing_token(self, client):
        _issue_token(client)
        resp = client.post("/api/v1/forms/submit", json={"title": "x"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "CSRF token missing", "code": "CSRF_TOKEN_MISSING"}

    def test_malformed_token(self, client):
        _issue_token(client)
        resp = client.post(
            "/api/v1/forms/submit",
            json={},
            headers={"x-csrf-token": "abc123.deadbeef"},
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid CSRF token", "code": "CSRF_TOKEN_INVALID"}

    def test_token_from_another_session_rejected(self, client):
        token = _issue_token(TestClient(app))
        _issue_token(client)
        resp = client.post(
            "/api/v1/forms/submit", json={}, headers={"x-csrf-token": token}
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "CSRF_TOKEN_INVALID"

    def test_first_post_without_session_gets_cookie(self, client):
        resp = client.post(
            "/api/v1/forms/submit", json={}, headers={"x-csrf-token": "abc123.deadbeef"}
        )
        assert resp.status_code == 401
        assert "session_id" in resp.cookies

    def test_bearer_api_request_bypasses(self, client):
        resp = client.post(
            "/api/v1/forms/submit",
            json={"title": "x"},
            headers={"Authorization": "Bearer api-token"},
        )
        assert resp.status_code == 200

    def test_bearer_with_session_cookie_still_checked(self, client):
        _issue_token(client)
        resp = client.post(
            "/api/v1/forms/submit",
            json={"title": "x"},
            headers={"Authorization": "Bearer api-token"},
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "CSRF_TOKEN_MISSING"

    def test_store_failure_is_internal_error(self, client):
        get_runtime().cache.get_or_create_csrf_secret = AsyncMock(
            side_effect=StoreUnavailable("shared store unavailable")
        )
        resp = client.post(
            "/api/v1/forms/submit", json={}, headers={"x-csrf-token": "abc123.deadbeef"}
        )
        assert resp.status_code == 500
        assert resp.json()["error"] == "shared store unavailable"


class TestEnhancedProtection:
    def test_double_submit_accepted(self, client):
        token = _issue_token(client)
        resp = client.post(
            "/api/v1/account/sensitive",
            json={"_csrf": token, "action": "delete"},
            headers={"x-csrf-token": token},
        )
        assert resp.status_code == 200

    def test_header_only_fails_double_submit(self, client):
        token = _issue_token(client)
        resp = client.post(
            "/api/v1/account/sensitive",
            json={"action": "delete"},
            headers={"x-csrf-token": token},
        )
        assert resp.status_code == 401
        assert resp.json() == {
            "error": "Double-submit CSRF validation failed",
            "code": "CSRF_TOKEN_INVALID",
        }

    def test_mismatched_tokens_fail(self, client):
        first = _issue_token(client)
        second = _issue_token(client)
        resp = client.post(
            "/api/v1/account/sensitive",
            json={"_csrf": second},
            headers={"x-csrf-token": first},
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "Double-submit CSRF validation failed"

    def test_old_timestamp_expires(self, client):
        token = _issue_token(client)
        issued_ms = int(time.time() * 1000) - 31 * 60 * 1000
        resp = client.post(
            "/api/v1/account/sensitive",
            json={"_csrf": token},
            headers={"x-csrf-token": token, "x-csrf-timestamp": str(issued_ms)},
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "CSRF token expired", "code": "CSRF_TOKEN_INVALID"}

    def test_fresh_timestamp_accepted(self, client):
        token = _issue_token(client)
        issued_ms = int(time.time() * 1000) - 60 * 1000
        resp = client.post(
            "/api/v1/account/sensitive",
            json={"_csrf": token},
            headers={"x-csrf-token": token, "x-csrf-timestamp": str(issued_ms)},
        )
        assert resp.status_code == 200

    def test_unparseable_timestamp_rejected(self, client):
        token = _issue_token(client)
        resp = client.post(
            "/api/v1/account/sensitive",
            json={"_csrf": token},
            headers={"x-csrf-token": token, "x-csrf-timestamp": "yesterday"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "CSRF token expired"


class TestMaxAgeSetting:
    @pytest.fixture
    def short_max_age(self, monkeypatch):
        monkeypatch.setenv("CSRF_MAX_AGE_MS", "1000")
        reset_runtime_for_tests()

    @pytest.mark.parametrize("path", ["/api/v1/forms/submit", "/api/v1/account/sensitive"])
    def test_short_max_age_expires_both_profiles(self, client, short_max_age, path):
        token = _issue_token(client)
        issued_ms = int(time.time() * 1000) - 10 * 60 * 1000
        resp = client.post(
            path,
            json={"_csrf": token},
            headers={"x-csrf-token": token, "x-csrf-timestamp": str(issued_ms)},
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "CSRF token expired"

    def test_default_max_age_keeps_standard_token(self, client):
        token = _issue_token(client)
        issued_ms = int(time.time() * 1000) - 10 * 60 * 1000
        resp = client.post(
            "/api/v1/forms/submit",
            json={"_csrf": token},
            headers={"x-csrf-token": token, "x-csrf-timestamp": str(issued_ms)},
        )
        assert resp.status_code == 200

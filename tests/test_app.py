"""End-to-end tests for the application and its middleware stack."""
import logging

from fastapi import status
from fastapi.testclient import TestClient

from gatekeeper.main import create_app
from gatekeeper.settings import Settings


def open_session(client, user_id="42"):
    response = client.post("/sessions", json={"user_id": user_id})
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


class TestHealthChecks:
    """Test health check endpoint."""

    def test_health_endpoint_returns_200(self, client):
        """Test /health returns 200."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_security_headers_on_every_response(self, client):
        """Test responses carry the security headers."""
        response = client.get("/health")
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "Strict-Transport-Security" not in response.headers

    def test_hsts_when_ssl_enabled(self):
        """Test HSTS is sent when the endpoint serves TLS."""
        with TestClient(create_app(Settings(SSL_ENABLED=True))) as client:
            response = client.get("/health")
        assert response.headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains"

    def test_request_logging_adds_request_id(self, client):
        """Test requests get unique request IDs."""
        first = client.get("/health").headers["X-Request-ID"]
        second = client.get("/health").headers["X-Request-ID"]
        assert first != second


class TestLifespan:
    """Test background workers follow the application lifespan."""

    def test_workers_started_and_stopped(self, app):
        """Test the sweeper and session cleanup run only while the app is up."""
        with TestClient(app):
            assert app.state.pipeline.rate_limiter.sweeper_running
        assert not app.state.pipeline.rate_limiter.sweeper_running


class TestRateLimiting:
    """Test rate limiting over HTTP (max 3, burst 4, 1 minute block)."""

    def test_rate_limit_triggers(self, client):
        """Test the request past the burst limit gets 429."""
        for _ in range(4):
            assert client.get("/health").status_code == 200

        response = client.get("/health")
        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.json() == {
            "success": False,
            "error": "Rate limit exceeded. Please try again later.",
        }
        assert response.headers["Retry-After"] == "60"
        assert response.headers["content-type"].startswith("application/json")

    def test_denied_response_keeps_security_headers(self, client):
        """Test 429 responses still carry headers and a request ID."""
        for _ in range(4):
            client.get("/health")
        response = client.get("/health")
        assert response.status_code == 429
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert "X-Request-ID" in response.headers

    def test_denial_logs_match_response_request_id(self, client, caplog):
        """Test the 429 warnings carry the X-Request-ID sent back to the client."""
        for _ in range(4):
            client.get("/health")

        with caplog.at_level(logging.WARNING, logger="gatekeeper"):
            response = client.get("/health")

        assert response.status_code == 429
        request_id = response.headers["X-Request-ID"]
        denials = [
            r for r in caplog.records
            if r.levelno == logging.WARNING
            and r.name in ("gatekeeper.ratelimit", "gatekeeper.security", "gatekeeper.requests")
        ]
        assert {r.name for r in denials} == {
            "gatekeeper.ratelimit", "gatekeeper.security", "gatekeeper.requests"
        }
        assert all(r.request_id == request_id for r in denials)

    def test_block_cleared_by_reset(self, client, app):
        """Test a reset lets a blocked client back in."""
        for _ in range(5):
            client.get("/health")
        assert client.get("/health").status_code == 429

        app.state.pipeline.rate_limiter.reset("testclient")
        assert client.get("/health").status_code == 200

    def test_rate_limit_can_be_disabled(self):
        """Test RATE_LIMIT_ENABLED=false lets every request through."""
        app = create_app(Settings(RATE_LIMIT_ENABLED=False, RATE_LIMIT_MAX_REQUESTS=1))
        with TestClient(app) as client:
            for _ in range(5):
                assert client.get("/health").status_code == 200


class TestAdminReset:
    """Test the rate limit reset endpoint."""

    def test_reset_with_admin_key(self, client, app):
        """Test a valid admin key clears tracking for a client."""
        client.get("/health")
        response = client.delete(
            "/admin/rate-limits/testclient",
            headers={"X-Admin-Key": "admin-secret"}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "client_id": "testclient"}
        assert app.state.pipeline.rate_limiter.get_state("testclient") is None

    def test_reset_wrong_key(self, client):
        """Test a wrong admin key is rejected."""
        response = client.delete("/admin/rate-limits/1.2.3.4", headers={"X-Admin-Key": "nope"})
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_reset_non_ascii_key(self, client):
        """Test a non-ASCII admin key is rejected instead of erroring."""
        response = client.delete(
            "/admin/rate-limits/1.2.3.4",
            headers={"X-Admin-Key": "caf\xe9".encode("latin-1")}
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_reset_missing_key(self, client):
        """Test a missing admin key is rejected."""
        assert client.delete("/admin/rate-limits/1.2.3.4").status_code == 403

    def test_reset_disabled_without_configured_key(self):
        """Test the endpoint is hidden when no admin key is configured."""
        with TestClient(create_app(Settings())) as client:
            response = client.delete("/admin/rate-limits/1.2.3.4", headers={"X-Admin-Key": "x"})
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestSessions:
    """Test session issuing."""

    def test_create_session_issues_token(self, client, app):
        """Test a new session comes with a stored CSRF token."""
        response = client.post("/sessions", json={"user_id": "42"})
        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["user_id"] == "42"
        assert len(data["csrf_token"]) == 64
        assert response.headers["X-CSRF-Token"] == data["csrf_token"]

        session = app.state.session_store.get_session_by_id(data["session_id"])
        assert session.get_value("csrf_token") == data["csrf_token"]

    def test_create_session_requires_user(self, client):
        """Test the user ID is required."""
        response = client.post("/sessions", json={})
        assert response.status_code == 422


class TestCSRFProtection:
    """Test CSRF validation over HTTP."""

    def test_valid_token_in_header(self, client):
        """Test an authenticated POST with the right header token passes."""
        data = open_session(client)
        response = client.post(
            "/csrf/refresh",
            params={"session_id": data["session_id"], "user_id": "42"},
            headers={"X-CSRF-Token": data["csrf_token"]},
        )
        assert response.status_code == 200
        new_token = response.json()["csrf_token"]
        assert new_token != data["csrf_token"]
        assert response.headers["X-CSRF-Token"] == new_token
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"

    def test_missing_token(self, client):
        """Test an authenticated POST without a token is rejected."""
        data = open_session(client)
        response = client.post(
            "/csrf/refresh",
            params={"session_id": data["session_id"], "user_id": "42"},
            json={},
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json() == {"success": False, "error": "Invalid or missing CSRF token."}
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"

    def test_unknown_session(self, client):
        """Test an unknown session ID is rejected."""
        response = client.post(
            "/csrf/refresh",
            params={"session_id": "unknown", "user_id": "42"},
            headers={"X-CSRF-Token": "whatever"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Invalid or expired session for CSRF validation."

    def test_rotated_token_replaces_old_one(self, client):
        """Test the previous token stops working after rotation."""
        data = open_session(client)
        params = {"session_id": data["session_id"], "user_id": "42"}
        client.post("/csrf/refresh", params=params, headers={"X-CSRF-Token": data["csrf_token"]})

        response = client.post("/csrf/refresh", params=params, headers={"X-CSRF-Token": data["csrf_token"]})
        assert response.status_code == 403

    def test_form_field_token(self, client):
        """Test the token is accepted from a url-encoded form body."""
        data = open_session(client)
        response = client.post(
            "/csrf/refresh",
            data={
                "session_id": data["session_id"],
                "user_id": "42",
                "__CSRFToken__": data["csrf_token"],
            },
        )
        assert response.status_code == 200

    def test_refresh_requires_authentication(self, client):
        """Test refresh refuses requests without user and session identifiers."""
        data = open_session(client)
        response = client.post("/csrf/refresh", params={"session_id": data["session_id"]})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_get_requests_not_checked(self, client):
        """Test safe methods pass without a token."""
        response = client.get("/health", params={"session_id": "s", "user_id": "42"})
        assert response.status_code == 200


class TestTokenRotation:
    """Test rotation of CSRF tokens after successful mutations."""

    def test_token_rotated_after_protected_request(self):
        """Test a successful protected request returns a fresh token."""
        app = create_app(Settings(CSRF_ROTATE_ON_USE=True))

        @app.post("/orders")
        async def create_order():
            return {"ok": True}

        with TestClient(app) as client:
            data = open_session(client)
            params = {"session_id": data["session_id"], "user_id": "42"}
            response = client.post("/orders", params=params, headers={"X-CSRF-Token": data["csrf_token"]})

            assert response.status_code == 200
            rotated = response.headers["X-CSRF-Token"]
            assert rotated != data["csrf_token"]

            session = app.state.session_store.get_session_by_id(data["session_id"])
            assert session.get_value("csrf_token") == rotated

            # Old token no longer valid, new one is
            stale = client.post("/orders", params=params, headers={"X-CSRF-Token": data["csrf_token"]})
            assert stale.status_code == 403
            fresh = client.post("/orders", params=params, headers={"X-CSRF-Token": rotated})
            assert fresh.status_code == 200

    def test_no_rotation_by_default(self, app):
        """Test tokens are left alone unless rotation is enabled."""
        @app.post("/orders")
        async def create_order():
            return {"ok": True}

        with TestClient(app) as client:
            data = open_session(client)
            response = client.post(
                "/orders",
                params={"session_id": data["session_id"], "user_id": "42"},
                headers={"X-CSRF-Token": data["csrf_token"]},
            )
        assert response.status_code == 200
        assert "X-CSRF-Token" not in response.headers

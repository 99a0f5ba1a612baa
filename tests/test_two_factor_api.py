"""
Tests for the /account/two-factor endpoints.

Runs the real flow against a SQLite database; only the mailer is mocked.
"""
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from stepguard.api.main import app
from stepguard.api.deps import (
    TwoFactorRateLimiter,
    get_db,
    get_key_provider,
    get_two_factor_flow,
    get_two_factor_rate_limiter,
)
from stepguard.auth.errors import TicketConfigurationError
from stepguard.auth.passkey_proof import PasskeyProofVerifier
from stepguard.auth.totp import generate_code
from stepguard.database.two_factor_store import TwoFactorStorageUnavailable


def _valid_totps(secret: str) -> set:
    now = int(time.time() * 1000)
    return {generate_code(secret, at_ms=now + step * 30_000) for step in (-1, 0, 1)}


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def limiter():
    return TwoFactorRateLimiter(redis_client=None)


@pytest.fixture
def client(auth_db, flow, key_provider, limiter):
    """Test client wired to the SQLite database and the test flow."""
    app.dependency_overrides[get_db] = lambda: auth_db
    app.dependency_overrides[get_key_provider] = lambda: key_provider
    app.dependency_overrides[get_two_factor_flow] = lambda: flow
    app.dependency_overrides[get_two_factor_rate_limiter] = lambda: limiter

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(auth_db, user):
    token = auth_db.create_session(user.user_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def enabled_headers(auth_db, enabled_user):
    identity, _, _ = enabled_user
    token = auth_db.create_session(identity.user_id)
    return {"Authorization": f"Bearer {token}"}


def _email_step(client, headers, emailed_code) -> str:
    """Run POST /disable and PUT /disable/email; returns the app-step ticket."""
    started = client.post("/account/two-factor/disable", headers=headers)
    assert started.status_code == 200
    verified = client.put(
        "/account/two-factor/disable/email",
        headers=headers,
        json={"ticket": started.json()["ticket"], "email_code": emailed_code()},
    )
    assert verified.status_code == 200
    return verified.json()["ticket"]


# ============================================
# Authentication Tests
# ============================================

class TestAuthentication:
    """Test every endpoint requires a valid session."""

    @pytest.mark.parametrize("method,path", [
        ("get", "/account/two-factor"),
        ("post", "/account/two-factor/enable"),
        ("post", "/account/two-factor/disable"),
        ("post", "/account/two-factor/verify"),
    ])
    def test_missing_token(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    def test_invalid_token(self, client):
        response = client.get("/account/two-factor", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    def test_invalidated_session(self, client, auth_db, user):
        token = auth_db.create_session(user.user_id)
        auth_db.invalidate_session(token)
        response = client.get("/account/two-factor", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


# ============================================
# Status Tests
# ============================================

class TestStatus:

    def test_disabled(self, client, auth_headers):
        response = client.get("/account/two-factor", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["enabled"] is False

    def test_enabled(self, client, enabled_headers):
        response = client.get("/account/two-factor", headers=enabled_headers)
        assert response.json()["enabled"] is True
        assert response.json()["enabled_at"] is not None

    def test_enabled_without_primary_table(self, client, auth_headers, auth_db, user):
        """Test state written to the legacy columns is what status reports."""
        with auth_db.get_session() as session:
            session.execute(text("DROP TABLE two_factor_auth"))

        body = client.post("/account/two-factor/enable", headers=auth_headers).json()
        confirmed = client.put(
            "/account/two-factor/enable",
            headers=auth_headers,
            json={"ticket": body["ticket"], "code": generate_code(body["manual_code"])},
        )
        assert confirmed.status_code == 200

        response = client.get("/account/two-factor", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["enabled"] is True

        with auth_db.get_session() as session:
            row = session.execute(
                text("SELECT totp_secret FROM users WHERE user_id = :id"), {"id": user.user_id}
            ).fetchone()
        assert row[0] == body["manual_code"]

    def test_no_store_headers(self, client, auth_headers):
        response = client.get("/account/two-factor", headers=auth_headers)
        assert response.headers["Cache-Control"] == "no-store, max-age=0"
        assert response.headers["Pragma"] == "no-cache"


# ============================================
# Enable Tests
# ============================================

class TestEnableEndpoints:
    """Test POST/PUT /account/two-factor/enable."""

    def test_enable_flow(self, client, auth_headers):
        started = client.post("/account/two-factor/enable", headers=auth_headers)
        assert started.status_code == 200
        body = started.json()
        assert body["phase"] == "enable-verify-app"
        assert body["qr_code_data_url"].startswith("data:image/png;base64,")

        confirmed = client.put(
            "/account/two-factor/enable",
            headers=auth_headers,
            json={"ticket": body["ticket"], "code": generate_code(body["manual_code"])},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["enabled"] is True
        assert len(confirmed.json()["recovery_codes"]) == 9

        status_response = client.get("/account/two-factor", headers=auth_headers)
        assert status_response.json()["enabled"] is True

    def test_wrong_code(self, client, auth_headers):
        body = client.post("/account/two-factor/enable", headers=auth_headers).json()
        wrong = next(c for c in ("000000", "111111") if c not in _valid_totps(body["manual_code"]))

        response = client.put(
            "/account/two-factor/enable",
            headers=auth_headers,
            json={"ticket": body["ticket"], "code": wrong},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "CODE_INVALID"

    def test_bad_ticket(self, client, auth_headers):
        response = client.put(
            "/account/two-factor/enable",
            headers=auth_headers,
            json={"ticket": "garbage", "code": "123456"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "TICKET_INVALID"
        assert response.headers["Cache-Control"] == "no-store, max-age=0"

    def test_already_enabled(self, client, enabled_headers):
        response = client.post("/account/two-factor/enable", headers=enabled_headers)
        assert response.status_code == 409
        assert response.json()["code"] == "TWO_FACTOR_STATE_CONFLICT"

    def test_missing_fields(self, client, auth_headers):
        response = client.put("/account/two-factor/enable", headers=auth_headers, json={})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


# ============================================
# Disable Tests
# ============================================

class TestDisableEndpoints:
    """Test the three-step disable flow."""

    def test_disable_with_authenticator(self, client, enabled_headers, enabled_user, emailed_code):
        _, secret, _ = enabled_user
        started = client.post("/account/two-factor/disable", headers=enabled_headers)
        assert started.status_code == 200
        assert started.json()["phase"] == "disable-verify-email"
        assert started.json()["email_mask"] == "te***t@ex***e.com"

        verified = client.put(
            "/account/two-factor/disable/email",
            headers=enabled_headers,
            json={"ticket": started.json()["ticket"], "email_code": emailed_code()},
        )
        assert verified.status_code == 200
        assert verified.json()["phase"] == "disable-verify-app"
        assert verified.json()["auth_methods"] == {"totp": True, "passkey": False}

        confirmed = client.put(
            "/account/two-factor/disable/confirm",
            headers=enabled_headers,
            json={"ticket": verified.json()["ticket"], "code": generate_code(secret)},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["enabled"] is False
        assert confirmed.json()["disabled_at"] is not None

    def test_disable_with_recovery_code(self, client, enabled_headers, enabled_user, emailed_code):
        _, _, codes = enabled_user
        ticket = _email_step(client, enabled_headers, emailed_code)

        response = client.put(
            "/account/two-factor/disable/confirm",
            headers=enabled_headers,
            json={"ticket": ticket, "recovery_code": codes[0]},
        )
        assert response.status_code == 200

    def test_disable_with_passkey(self, client, enabled_headers, enabled_user, emailed_code, key_provider):
        identity, _, _ = enabled_user
        ticket = _email_step(client, enabled_headers, emailed_code)
        proof = PasskeyProofVerifier(key_provider).mint(identity.user_id, identity.email)

        response = client.put(
            "/account/two-factor/disable/confirm",
            headers=enabled_headers,
            json={"ticket": ticket, "passkey_proof": proof},
        )
        assert response.status_code == 200

    def test_disable_with_first_step_code(self, client, enabled_headers, enabled_user):
        _, secret, _ = enabled_user
        response = client.post(
            "/account/two-factor/disable",
            headers=enabled_headers,
            json={"code": generate_code(secret)},
        )
        assert response.status_code == 200

    def test_resend(self, client, enabled_headers, emailed_code):
        started = client.post("/account/two-factor/disable", headers=enabled_headers).json()
        response = client.patch(
            "/account/two-factor/disable",
            headers=enabled_headers,
            json={"ticket": started["ticket"]},
        )
        assert response.status_code == 200
        assert response.json()["phase"] == "disable-verify-email"

        verified = client.put(
            "/account/two-factor/disable/email",
            headers=enabled_headers,
            json={"ticket": response.json()["ticket"], "email_code": emailed_code()},
        )
        assert verified.status_code == 200

    def test_wrong_email_code(self, client, enabled_headers, emailed_code):
        started = client.post("/account/two-factor/disable", headers=enabled_headers).json()
        wrong = "1000000" if emailed_code() != "1000000" else "1000001"

        response = client.put(
            "/account/two-factor/disable/email",
            headers=enabled_headers,
            json={"ticket": started["ticket"], "email_code": wrong},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "EMAIL_CODE_INVALID"
        assert response.json()["attempts_left"] == 6

    def test_email_code_exhausted(self, client, enabled_headers, emailed_code):
        started = client.post("/account/two-factor/disable", headers=enabled_headers).json()
        wrong = "1000000" if emailed_code() != "1000000" else "1000001"
        body = {"ticket": started["ticket"], "email_code": wrong}

        for _ in range(6):
            client.put("/account/two-factor/disable/email", headers=enabled_headers, json=body)
        response = client.put("/account/two-factor/disable/email", headers=enabled_headers, json=body)
        assert response.status_code == 429
        assert response.json()["code"] == "EMAIL_CODE_RATE_LIMITED"

        response = client.put("/account/two-factor/disable/email", headers=enabled_headers, json=body)
        assert response.status_code == 400
        assert response.json()["code"] == "EMAIL_CODE_EXPIRED"

    def test_factor_required(self, client, enabled_headers, emailed_code):
        ticket = _email_step(client, enabled_headers, emailed_code)

        response = client.put(
            "/account/two-factor/disable/confirm",
            headers=enabled_headers,
            json={"ticket": ticket},
        )
        assert response.status_code == 428
        assert response.json()["code"] == "FACTOR_REQUIRED"
        assert response.json()["auth_methods"] == {"totp": True, "passkey": False}

    def test_factor_invalid(self, client, enabled_headers, enabled_user, emailed_code):
        _, secret, codes = enabled_user
        wrong = next(c for c in ("000000", "111111", "222222") if c not in _valid_totps(secret) and c not in codes)
        ticket = _email_step(client, enabled_headers, emailed_code)

        response = client.put(
            "/account/two-factor/disable/confirm",
            headers=enabled_headers,
            json={"ticket": ticket, "code": wrong},
        )
        assert response.status_code == 401
        assert response.json()["code"] == "FACTOR_INVALID"
        assert "auth_methods" in response.json()

    def test_skipping_email_step(self, client, enabled_headers, enabled_user):
        _, secret, _ = enabled_user
        started = client.post("/account/two-factor/disable", headers=enabled_headers).json()

        response = client.put(
            "/account/two-factor/disable/confirm",
            headers=enabled_headers,
            json={"ticket": started["ticket"], "code": generate_code(secret)},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "TICKET_WRONG_PHASE"

    def test_ticket_from_another_session_user(self, client, auth_db, enabled_headers, other_user):
        started = client.post("/account/two-factor/disable", headers=enabled_headers).json()
        other_headers = {"Authorization": f"Bearer {auth_db.create_session(other_user.user_id)}"}

        response = client.patch(
            "/account/two-factor/disable",
            headers=other_headers,
            json={"ticket": started["ticket"]},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "TICKET_IDENTITY_MISMATCH"

    def test_disable_when_disabled(self, client, auth_headers):
        response = client.post("/account/two-factor/disable", headers=auth_headers)
        assert response.status_code == 409


# ============================================
# Verify Tests
# ============================================

class TestVerifyEndpoint:

    def test_valid_code(self, client, enabled_headers, enabled_user):
        _, secret, _ = enabled_user
        response = client.post(
            "/account/two-factor/verify",
            headers=enabled_headers,
            json={"code": generate_code(secret)},
        )
        assert response.status_code == 200
        assert response.json() == {"verified": True, "method": "totp"}

    def test_wrong_code(self, client, enabled_headers, enabled_user):
        _, secret, codes = enabled_user
        wrong = next(c for c in ("000000", "111111", "222222") if c not in _valid_totps(secret) and c not in codes)
        response = client.post("/account/two-factor/verify", headers=enabled_headers, json={"code": wrong})
        assert response.status_code == 400
        assert response.json()["code"] == "CODE_INVALID"


# ============================================
# Server Error Tests
# ============================================

class TestServerErrors:
    """Test 5xx responses hide internal details."""

    def test_storage_unavailable(self, client, auth_headers, flow):
        with patch.object(flow.state_store, "read", side_effect=TwoFactorStorageUnavailable()):
            response = client.get("/account/two-factor", headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["code"] == "TWO_FACTOR_STORAGE_UNAVAILABLE"
        assert response.json()["detail"] == "Two-step verification is temporarily unavailable."
        assert "two_factor_auth" not in response.text

    def test_signing_key_missing(self, client, auth_headers, flow):
        with patch.object(flow.tickets.key_provider, "signing_key", side_effect=TicketConfigurationError("no key")):
            response = client.post("/account/two-factor/enable", headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["code"] == "TICKET_KEY_MISSING"


# ============================================
# Rate Limit Tests
# ============================================

class TestRateLimits:
    """Test per-user limits on emails and code submissions."""

    def test_email_limit(self, client, enabled_headers, limiter):
        limiter.limits["email"] = 2
        for _ in range(2):
            assert client.post("/account/two-factor/disable", headers=enabled_headers).status_code == 200

        response = client.post("/account/two-factor/disable", headers=enabled_headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"

    def test_code_limit(self, client, enabled_headers, limiter):
        limiter.limits["code"] = 1
        client.post("/account/two-factor/verify", headers=enabled_headers, json={"code": "000000"})
        response = client.post("/account/two-factor/verify", headers=enabled_headers, json={"code": "000000"})
        assert response.status_code == 429

    def test_limit_can_be_disabled(self, client, enabled_headers, limiter, monkeypatch):
        monkeypatch.setenv("TWO_FACTOR_RATE_LIMIT_ENABLED", "false")
        limiter.limits["code"] = 0
        response = client.post("/account/two-factor/verify", headers=enabled_headers, json={"code": "000000"})
        assert response.status_code != 429


# ============================================
# Dependency Wiring Tests
# ============================================

class TestFlowWiring:
    """Test the flow built by the real dependency from environment settings."""

    def test_enable_start_with_env_configuration(self, auth_db, auth_headers, monkeypatch, limiter):
        monkeypatch.setenv("TICKET_SIGNING_KEY", "wiring-test-key")
        monkeypatch.setenv("MAIL_BACKEND", "log")
        monkeypatch.setenv("TOTP_ISSUER", "Wiring Issuer")

        app.dependency_overrides[get_db] = lambda: auth_db
        app.dependency_overrides[get_two_factor_rate_limiter] = lambda: limiter
        try:
            client = TestClient(app)
            response = client.post("/account/two-factor/enable", headers=auth_headers)
            assert response.status_code == 200
            assert response.json()["issuer"] == "Wiring Issuer"
        finally:
            app.dependency_overrides.clear()

"""
Pytest configuration and shared fixtures for StepGuard tests.

This module provides common test fixtures for:
- A throwaway SQLite database with the full schema
- Users and session identities
- Ticket keys, a mocked mailer and a wired two-factor flow
"""
import pytest
from unittest.mock import MagicMock

from stepguard.auth.base32 import random_secret
from stepguard.auth.passkey_proof import PasskeyProofVerifier
from stepguard.auth.tickets import StaticKeyProvider, TicketSigner
from stepguard.database.auth_db import AuthDB
from stepguard.database.challenge_store import ChallengeStore
from stepguard.database.passkey_registry import PasskeyRegistry
from stepguard.database.recovery_vault import RecoveryCodeVault, generate_codes
from stepguard.database.two_factor_store import TwoFactorStateStore
from stepguard.services.two_factor_flow import SessionIdentity, TwoFactorFlow
from stepguard.utils.secrets import get_secret


TEST_TICKET_KEY = "test-ticket-signing-key"


# ============================================
# Database Fixtures
# ============================================

@pytest.fixture
def auth_db(tmp_path):
    """
    SQLite database with every table (including the legacy mfa_* columns).
    Automatically removed after the test completes.
    """
    db = AuthDB(f"sqlite:///{tmp_path / 'stepguard.db'}")
    db.init_schema()
    yield db
    db.engine.dispose()


@pytest.fixture
def user(auth_db):
    """A registered user, as the session layer would resolve it."""
    user_id = auth_db.create_user("test@example.com", user_id="user-1")
    return SessionIdentity(user_id=user_id, email="test@example.com")


@pytest.fixture
def other_user(auth_db):
    user_id = auth_db.create_user("other@example.com", user_id="user-2")
    return SessionIdentity(user_id=user_id, email="other@example.com")


# ============================================
# Component Fixtures
# ============================================

@pytest.fixture
def key_provider():
    return StaticKeyProvider([TEST_TICKET_KEY])


@pytest.fixture
def state_store(auth_db):
    return TwoFactorStateStore(auth_db)


@pytest.fixture
def vault(auth_db):
    """Recovery vault with cheap bcrypt rounds."""
    return RecoveryCodeVault(auth_db, bcrypt_rounds=4)


@pytest.fixture
def mock_mailer():
    """Mailer that records calls instead of sending email."""
    return MagicMock()


@pytest.fixture
def flow(auth_db, state_store, vault, key_provider, mock_mailer):
    return TwoFactorFlow(
        state_store=state_store,
        challenges=ChallengeStore(auth_db),
        recovery=vault,
        tickets=TicketSigner(key_provider),
        mailer=mock_mailer,
        passkeys=PasskeyRegistry(auth_db),
        passkey_proofs=PasskeyProofVerifier(key_provider),
        issuer="StepGuard Test",
    )


@pytest.fixture
def enabled_user(user, state_store, vault):
    """
    User with two-step verification already on.

    Returns:
        Tuple of (identity, totp_secret, recovery_codes)
    """
    secret = random_secret()
    codes = generate_codes()
    vault.replace_all(user.user_id, codes)
    state_store.enable(user.user_id, secret)
    return user, secret, codes


@pytest.fixture
def emailed_code(mock_mailer):
    """Read back the last code handed to the mocked mailer."""
    def _last_code():
        args, kwargs = mock_mailer.send_two_factor_code.call_args
        return kwargs.get("code", args[1] if len(args) > 1 else None)
    return _last_code


@pytest.fixture(autouse=True)
def clear_secret_cache():
    """get_secret is cached; tests that change the environment need a clean slate."""
    get_secret.cache_clear()
    yield
    get_secret.cache_clear()

"""
Pytest configuration and shared fixtures for SecureAuth tests.

This module provides common test fixtures for:
- In-memory SQLite database with the full schema
- Credential store and passkey ceremony wired to that database
- Redis disabled, so ephemeral state uses the in-memory fallback
- Codes a TOTP secret does not produce near the current time
- API test client with the database dependency overridden
"""
import time

import pyotp
import pytest
from fastapi.testclient import TestClient

from secureauth.api import deps
from secureauth.api.routes import health
from secureauth.api.main import app
from secureauth.auth.flow import VerificationFlow
from secureauth.auth.passkeys import PasskeyCeremony
from secureauth.database.auth_db import AuthDB, hash_password
from secureauth.database.credential_store import CredentialStore


TEST_PASSWORD = "secure_test_password_123!"


# ============================================
# Database Fixtures
# ============================================

@pytest.fixture
def auth_db():
    """
    Fresh in-memory database per test.
    Discarded automatically when the engine goes away.
    """
    db = AuthDB("sqlite://")
    db.init_schema()
    yield db
    db.engine.dispose()


@pytest.fixture
def store(auth_db):
    return CredentialStore(auth_db)


@pytest.fixture
def ceremony(store):
    """Passkey ceremony for a relying party on localhost."""
    return PasskeyCeremony(
        store,
        rp_id="localhost",
        rp_name="Secure Auth App",
        origin="http://localhost:8080",
    )


@pytest.fixture
def flow(auth_db, store, ceremony):
    return VerificationFlow(auth_db, store, ceremony)


@pytest.fixture
def sample_user(auth_db):
    """
    Registered account without 2FA.
    """
    user_id = auth_db.create_user(
        email="ada@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        full_name="Ada Lovelace",
    )
    return {
        "user_id": user_id,
        "email": "ada@example.com",
        "password": TEST_PASSWORD,
    }


# ============================================
# TOTP Fixtures
# ============================================

@pytest.fixture
def code_outside_window():
    """
    Build a well-formed code the secret does not produce around now.

    Three periods either side are excluded, so the code stays wrong even
    if the clock crosses a period boundary during the test.
    """
    def build(secret: str, preferred: str = "000000") -> str:
        totp = pyotp.TOTP(secret)
        now = time.time()
        nearby = {totp.at(now, counter_offset=offset) for offset in range(-3, 4)}
        candidates = [preferred] + [str(digit) * 6 for digit in range(1, 10)]
        return next(code for code in candidates if code not in nearby)

    return build


# ============================================
# Ephemeral Storage Fixtures
# ============================================

@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    """
    Run without Redis: flows, pending registrations and rate limits
    use the in-memory fallback, reset for every test.
    """
    monkeypatch.setattr(deps, "get_redis_client", lambda: None)
    monkeypatch.setattr(health, "get_redis_client", lambda: None)
    monkeypatch.setattr(deps, "_auth_rate_limiter", deps.AuthRateLimiter(redis_client=None))
    deps._ephemeral_memory.clear()
    yield
    deps._ephemeral_memory.clear()


# ============================================
# API Fixtures
# ============================================

@pytest.fixture
def client(auth_db):
    """Test client backed by the in-memory database."""
    app.dependency_overrides[deps.get_db] = lambda: auth_db

    yield TestClient(app)

    # Clean up overrides
    app.dependency_overrides.clear()

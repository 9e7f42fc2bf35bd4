"""
tests/conftest.py -- Shared test fixtures for SecureBox tests.

This module provides:
  - make_settings(): Settings pointing at a temporary DB and files directory
  - account_store / throttle / accounts / issuer: unit-level fixtures over a
    fresh SQLite file per test
  - _patch_lifespan(): wires real stores (built from test settings) into
    app.state, with MagicMock CAPTCHA and mailer so no network call is made
  - api_client: module-scoped TestClient over the real app
  - register_and_login(): helper returning (user_id, token) for a new account

Design: each test gets a SQLite *file* under tmp_path rather than :memory:.
TestClient runs sync route handlers in a thread pool and the engine pools
connections; a file DB is shared by all of them, a plain :memory: DB is not.

DEBUG, ALLOWED_HOSTS and RATE_LIMIT_ENABLED must be set before any api/core
import: get_settings() is cached on first call, and api.main / api.limiter
read it at import time.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import MagicMock

# CRITICAL: Set env before any core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.accounts import AccountDirectory
from auth.store import AccountStore
from auth.throttle import LoginThrottle
from auth.tokens import TokenConfig, TokenIssuer
from core.config import Settings
from vault.files import CredentialFileStore
from vault.store import CredentialRecordStore

TEST_SECRET = "x" * 48
STRONG_PASSWORD = "Str0ng!Passw0rd"

# ---------------------------------------------------------------------------
# Settings / store helpers
# ---------------------------------------------------------------------------


def make_settings(base: Path, **overrides) -> Settings:
    """Settings for an isolated run: own DB file, own files dir, cheap bcrypt."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": f"sqlite:///{base / 'securebox.db'}",
        "files_dir": str(base / "files"),
        "bcrypt_rounds": 4,
        "rate_limit_enabled": False,
        "reset_link_base": "http://localhost:5173/reset-password",
    }
    values.update(overrides)
    return Settings(**values)


def unique_login() -> str:
    return f"user-{uuid.uuid4().hex[:12]}@example.com"


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def account_store(db_url: str) -> Generator[AccountStore, None, None]:
    store = AccountStore(db_url)
    yield store
    store.close()


@pytest.fixture
def throttle(account_store: AccountStore) -> LoginThrottle:
    return LoginThrottle(account_store)


@pytest.fixture
def accounts(account_store: AccountStore, throttle: LoginThrottle) -> AccountDirectory:
    return AccountDirectory(account_store, throttle, bcrypt_rounds=4)


@pytest.fixture
def issuer(account_store: AccountStore) -> TokenIssuer:
    return TokenIssuer(TokenConfig(secret_key=TEST_SECRET), account_store)


@pytest.fixture
def file_store(tmp_path: Path) -> CredentialFileStore:
    return CredentialFileStore(tmp_path / "files")


@pytest.fixture
def credential_store(
    file_store: CredentialFileStore, db_url: str, account_store: AccountStore
) -> Generator[CredentialRecordStore, None, None]:
    # account_store first: it creates the users table the FK points at.
    store = CredentialRecordStore(file_store, db_url)
    yield store
    store.close()


@pytest.fixture
def user_id(accounts: AccountDirectory) -> str:
    return accounts.create("Ada", "Lovelace", "ada@example.com", STRONG_PASSWORD)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Builds the real stores from test settings, then swaps the CAPTCHA
    verifier and mailer for MagicMocks (CAPTCHA passes, mail "sent").
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, settings)
        app.state.captcha = MagicMock()
        app.state.captcha.validate.return_value = True
        app.state.mailer = MagicMock()
        app.state.mailer.send_reset_email.return_value = True
        yield
        app.state.credential_store.close()
        app.state.account_store.close()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with isolated stores.

    Module-scoped for speed: tests in one module share the database, so each
    test registers its own account with unique_login().
    """
    settings = make_settings(tmp_path_factory.mktemp("api"))
    app.router.lifespan_context = _patch_lifespan(settings)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


def register(client: TestClient, login: str | None = None, password: str = STRONG_PASSWORD) -> str:
    """Register a new account through the API and return its id."""
    resp = client.post(
        "/api/v1/users",
        json={
            "first_name": "Test",
            "last_name": "User",
            "login": login or unique_login(),
            "password": password,
            "captcha_token": "ok",
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def register_and_login(client: TestClient) -> tuple[str, str, dict]:
    """Register a fresh account and log in. Returns (user_id, login, auth headers)."""
    login = unique_login()
    user_id = register(client, login)
    resp = client.post(
        "/api/v1/auth/login",
        json={"login": login, "password": STRONG_PASSWORD, "captcha_token": "ok"},
    )
    assert resp.status_code == 200, resp.text
    # Cookie auth is exercised separately; clear it so headers alone decide.
    client.cookies.clear()
    return user_id, login, {"Authorization": f"Bearer {resp.json()['access_token']}"}

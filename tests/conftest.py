"""
tests/conftest.py -- Shared test fixtures for Folio integration tests.

This module provides:
  - RecordingTransport: captures outbound mail so tests can read OTP codes
    and reset links instead of talking to an SMTP server
  - _make_test_stores(): isolated in-memory auth DB + expiring store
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_env: module-scoped TestClient plus the stores behind it
  - client: the api_env client with an empty cookie jar for each test
  - set_cookies() / cookie_header(): explicit cookie handling helpers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared) shares one
in-memory instance across all connections in the same process.

The client talks to https://localhost: TrustedHostMiddleware accepts the
host and the cookie jar keeps Secure cookies. Tests that assert on cookies
still read Set-Cookie headers directly and send Cookie headers explicitly,
so no assertion depends on jar path matching.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from http.cookies import Morsel, SimpleCookie

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_auth_state
from auth.email import Mailer
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import hash_password
from cache.store import ExpiringStore

BASE_URL = "https://localhost"
STRONG_PASSWORD = "Correct-Horse-42"

# ---------------------------------------------------------------------------
# Mail capture
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    to: str
    subject: str
    body: str


@dataclass
class RecordingTransport:
    """MailTransport that keeps every message in memory."""

    sent: list[SentMail] = field(default_factory=list)

    def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append(SentMail(to, subject, body))

    def to(self, address: str) -> list[SentMail]:
        return [m for m in self.sent if m.to == address]

    def last_otp(self, address: str) -> str:
        for mail in reversed(self.to(address)):
            match = re.search(r"verification code is (\d+)", mail.body)
            if match:
                return match.group(1)
        raise AssertionError(f"no OTP mail sent to {address}")

    def last_reset_token(self, address: str) -> str:
        for mail in reversed(self.to(address)):
            match = re.search(r"reset-password\?token=([\w-]+)", mail.body)
            if match:
                return match.group(1)
        raise AssertionError(f"no reset mail sent to {address}")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, ExpiringStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'auth', 'mfa').
    """
    user_store = UserStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")
    kv_store = ExpiringStore(f"file:test_kv_{db_suffix}?mode=memory&cache=shared")
    return user_store, kv_store


def create_user(
    store: UserStore,
    email: str,
    password: str = STRONG_PASSWORD,
    role: Role = Role.VIEWER,
    name: str = "Test User",
    is_active: bool = True,
) -> int:
    return store.create_user(
        User(email=email, name=name, role=role, hashed_password=hash_password(password), is_active=is_active)
    )


def _patch_lifespan(user_store: UserStore, kv_store: ExpiringStore, mailer: Mailer):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and a recording mailer into app.state so
    TestClient routes see isolated test DBs and never send real mail.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_auth_state(app, user_store, kv_store, mailer)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_cookies(resp) -> dict[str, Morsel]:
    """Parse every Set-Cookie header of a response into name -> Morsel."""
    parsed: dict[str, Morsel] = {}
    for header in resp.headers.get_list("set-cookie"):
        jar = SimpleCookie()
        jar.load(header)
        parsed.update(jar)
    return parsed


def cookie_header(**cookies: str) -> dict[str, str]:
    return {"Cookie": "; ".join(f"{name}={value}" for name, value in cookies.items())}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    user_store: UserStore
    kv_store: ExpiringStore
    outbox: RecordingTransport
    admin_email: str
    admin_id: int


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. An
    admin account is created before the client starts. Per-IP rate limits
    are switched off; the per-account lockout stays active.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, kv_store = _make_test_stores(suffix)
    outbox = RecordingTransport()
    mailer = Mailer(outbox, "https://folio.test")

    admin_email = f"admin@{suffix.replace('_', '-')}.test"
    admin_id = create_user(user_store, admin_email, role=Role.ADMIN, name="Admin")

    app.router.lifespan_context = _patch_lifespan(user_store, kv_store, mailer)
    limiter.enabled = False

    with TestClient(app, base_url=BASE_URL, raise_server_exceptions=True) as client:
        yield ApiEnv(client, user_store, kv_store, outbox, admin_email, admin_id)

    limiter.enabled = True
    kv_store.close()
    user_store.close()


@pytest.fixture
def client(api_env: ApiEnv) -> TestClient:
    api_env.client.cookies.clear()
    return api_env.client

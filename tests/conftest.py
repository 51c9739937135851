"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import replace

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of kudos.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from kudos.config import IdentityMaps, KudosConfig, RewardConfig, Secrets  # noqa: E402
from kudos.database.models import Base  # noqa: E402

MEMBERS = {
    "alice@example.com": "Alice Sato",
    "bob@example.com": "Bob Tanaka",
}

TEST_SECRETS = Secrets(
    crm_webhook_secret="crm-secret",
    telephony_webhook_secret="tel-secret",
    telephony_verification_token="tel-vtoken",
    telephony_bearer_token="tel-bearer",
    auth_token="auth-token",
    import_tokens=("upload-token",),
    gamification_webhook_secret="gam-secret",
)


def run_async(coro):
    """Run *coro* on a fresh event loop (the suite avoids pytest-asyncio)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Kudos tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Fake gamification API
# ---------------------------------------------------------------------------
class FakeGamification:
    """Records every request made through an ``httpx.MockTransport``."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.fail_for = fail_for or set()
        self._next_id = 0
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("x-api-user") in self.fail_for:
            return httpx.Response(500, json={"error": "boom"})
        if request.url.path.endswith("/tasks/user"):
            self._next_id += 1
            return httpx.Response(201, json={"data": {"id": f"task-{self._next_id}"}})
        return httpx.Response(200, json={"data": {"delta": 1}})

    @property
    def created_tasks(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("/tasks/user")]

    @property
    def scores(self) -> list[str]:
        return [r.url.path for r in self.requests if "/score/" in r.url.path]


@pytest.fixture
def fake_api() -> FakeGamification:
    return FakeGamification()


# ---------------------------------------------------------------------------
# Configuration & services
# ---------------------------------------------------------------------------
def make_config(tmp_path, **overrides) -> KudosConfig:
    rewards = overrides.pop("rewards", RewardConfig())
    return replace(
        KudosConfig(
            data_dir=tmp_path,
            dispatch_min_interval_ms=0,
            gamification_base_url="https://gamification.test/api/v3",
            rewards=rewards,
        ),
        **overrides,
    )


def make_maps() -> IdentityMaps:
    return IdentityMaps(
        owners={"101": {"name": "Alice Sato", "email": "alice@example.com"}},
        names={name: email for email, name in MEMBERS.items()},
        telephony_users={"zu-1": "alice@example.com"},
        credentials={
            "alice@example.com": {"userId": "hab-alice", "apiToken": "tok-alice"},
            "bob@example.com": {"userId": "hab-bob", "apiToken": "tok-bob"},
        },
    )


@pytest.fixture
def services_factory(tmp_path, db_engine, fake_api):
    """Build a :class:`Services` container wired to the fake API."""
    from kudos.services.bootstrap import build_services

    def factory(**overrides):
        return build_services(
            make_config(tmp_path, **overrides),
            TEST_SECRETS,
            make_maps(),
            db_engine,
            transport=fake_api.transport,
        )

    return factory


@pytest.fixture
def services(services_factory):
    return services_factory()


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------
@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from kudos.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(services):
    """Create a FastAPI TestClient with raise_server_exceptions=False."""
    from fastapi.testclient import TestClient

    from kudos.api.main import create_app

    return TestClient(create_app(services), raise_server_exceptions=False)

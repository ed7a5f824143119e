"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# JWT_SECRET must be set before lumina.api.deps is imported; the module
# validates it at load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, date, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from lumina.config import LuminaConfig  # noqa: E402
from lumina.database.models import Base, User  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Render PG JSONB as TEXT and BigInteger as INTEGER on SQLite (idempotent).

    INTEGER keeps autoincrement working for BigInteger primary keys.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with every Lumina table.

    StaticPool shares one connection across threads, which the rate
    limiter needs because it runs on ``asyncio.to_thread``.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


def make_user(
    engine: Engine,
    username: str,
    *,
    age_days: int = 10,
    email: str | None = None,
    email_verified: bool = True,
    wallet_address: str | None = None,
    xp: int = 50,
    referral_code: str | None = None,
) -> str:
    """Insert a user and return its id."""
    with Session(engine) as session:
        user = User(
            username=username,
            email=email or f"{username}@example.com",
            display_name=username.title(),
            email_verified=email_verified,
            wallet_address=wallet_address,
            xp=xp,
            referral_code=referral_code,
            created_at=datetime.now(UTC) - timedelta(days=age_days),
        )
        session.add(user)
        session.commit()
        return user.id


def make_admin_token(sub: str = "admin-1", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from lumina.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_user_token(sub: str) -> str:
    import jwt

    from lumina.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": sub, "is_admin": False}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token():
    return make_admin_token()


@pytest.fixture
def test_config() -> LuminaConfig:
    """Program started today, so rewards are not decayed."""
    return LuminaConfig(
        platform_name="Lumina",
        api_port=8000,
        program_start_date=date.today(),
    )


@pytest.fixture
def api(db_engine, test_config, monkeypatch):
    """TestClient bound to the SQLite engine, with seeded defaults and
    fresh rate limiters.

    The TestClient peer is trusted as a proxy so tests can pick the client
    address with ``X-Forwarded-For``.
    """
    from fastapi.testclient import TestClient

    from lumina.api.main import app
    from lumina.api.rate_limit import configure_rate_limiters
    from lumina.api.routes import referrals as routes
    from lumina.database.seed import seed_program_defaults

    seed_program_defaults(db_engine)
    configure_rate_limiters(engine=db_engine)
    monkeypatch.setenv("TRUSTED_PROXIES", "testclient")

    def _session():
        with Session(db_engine) as session:
            yield session

    # test_jwt_startup reloads lumina.api.deps; override the dependency
    # objects the routers were built with, not the reloaded ones.
    app.dependency_overrides[routes.get_engine] = lambda: db_engine
    app.dependency_overrides[routes.get_session] = _session
    app.dependency_overrides[routes.get_config] = lambda: test_config

    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()

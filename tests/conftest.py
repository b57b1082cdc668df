"""Shared test fixtures: SQLite ledger database, signing helpers, event builders."""

import hashlib
import hmac
import json
import os
import time

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Set before any nexora_billing import so the cached Settings pick them up
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("CLOUDWATCH_METRICS_ENABLED", "false")

from nexora_billing.core.config import get_settings  # noqa: E402
from nexora_billing.db.base import Base  # noqa: E402


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """File-backed SQLite engine (aiosqlite) wired into the global session factory.

    A file rather than :memory: so concurrent sessions see the same database
    and contend on real locks.
    """
    import nexora_billing.db.base as db_mod
    import nexora_billing.db.models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
async def db_session(engine: AsyncEngine) -> AsyncSession:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def webhook_secret() -> str:
    return get_settings().stripe_webhook_secret


@pytest.fixture
def sign(webhook_secret):
    """Return a function producing a valid Stripe-Signature header for a body."""

    def _sign(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
        digest = hmac.new((secret or webhook_secret).encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture
def make_event():
    """Build a Stripe-style event body as bytes."""

    def _make(event_type: str, obj: dict, event_id: str = "evt_test_1", created: int | None = None) -> bytes:
        return json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "created": int(time.time()) if created is None else created,
                "livemode": False,
                "api_version": "2024-06-20",
                "data": {"object": obj},
            }
        ).encode("utf-8")

    return _make

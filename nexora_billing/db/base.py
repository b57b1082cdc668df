"""Declarative base plus the process-wide async engine for billing state.

Repositories, the idempotency ledger and the sinks all open short-lived
sessions from the one factory configured here.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from nexora_billing.core.config import Settings, get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(db_url: str, settings: Settings) -> dict:
    options = {"echo": settings.debug, "pool_pre_ping": True}
    if make_url(db_url).get_backend_name() != "sqlite":
        # SQLite (local runs, tests) has no server-side pool to size
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    return options


async def init_db(url: str | None = None) -> None:
    """Create the engine and session factory once per process.

    Tables are created from metadata unless the schema is migration-managed
    (production by default, or DATABASE_CREATE_TABLES=false).
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    db_url = url or settings.database_url

    _engine = create_async_engine(db_url, **_engine_options(db_url, settings))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    create_tables = settings.database_create_tables
    if create_tables is None:
        create_tables = not settings.is_production

    if create_tables:
        import nexora_billing.db.models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory; RuntimeError before init_db()."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory

"""Dialect-aware INSERT ... ON CONFLICT helper shared by the repositories."""

from datetime import UTC, datetime

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_statement(session: AsyncSession, model, values: dict, index_elements: list[str], update_columns: list[str]):
    """Build an upsert keyed by a unique column set.

    Postgres in production, SQLite in tests; both support ON CONFLICT DO UPDATE
    with the same `excluded` pseudo-table.
    """
    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert

    stmt = insert(model).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: stmt.excluded[col] for col in update_columns},
    )


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)

"""Async SQLAlchemy engine and session factory.

Usage:
    engine = create_engine(settings.database_url)
    await init_schema(engine)
    async with get_session(engine) as session:
        ...

SQLite notes: the driver opens a write transaction lazily at the first
INSERT/UPDATE/DELETE, so plain SELECTs never hold locks and the guarded
writes in ``Repository`` take the write lock with their first statement.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quipslop.db.models import Base

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 15_000


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    For SQLite, enables WAL and a busy timeout so the runner, the scheduler
    ticks and web requests queue for the write lock instead of failing with
    "database is locked".
    """
    is_sqlite = database_url.startswith("sqlite")
    connect_args: dict[str, object] = {"timeout": _BUSY_TIMEOUT_MS / 1000} if is_sqlite else {}
    engine = create_async_engine(database_url, echo=False, connect_args=connect_args)

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn: object, connection_record: object) -> None:
            cursor = dbapi_conn.cursor()  # type: ignore[union-attr]
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
            cursor.close()

    return engine


# One session factory per engine instance, so test engines stay isolated.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a cached session factory bound to *engine*."""
    key = id(engine.sync_engine)
    if key not in _session_factories:
        _session_factories[key] = async_sessionmaker(engine, expire_on_commit=False)
    return _session_factories[key]


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session that auto-commits on success, rolls back on error."""
    factory = create_session_factory(engine)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Re-raise pattern: must catch all to ensure rollback on any error
            await session.rollback()
            raise


async def init_schema(engine: AsyncEngine) -> None:
    """Create missing tables, then add columns missing from existing ones."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if engine.dialect.name == "sqlite":
            added = await auto_migrate_schema(conn)
            if added:
                logger.info("auto_migrate: added %d column(s)", added)


# ---------------------------------------------------------------------------
# Auto-migration: add nullable/defaulted columns missing from SQLite tables
# ---------------------------------------------------------------------------

_SQLITE_TYPE_MAP: dict[str, str] = {
    "String": "VARCHAR",
    "Text": "TEXT",
    "Integer": "INTEGER",
    "BigInteger": "BIGINT",
    "Float": "FLOAT",
    "Boolean": "BOOLEAN",
    "DateTime": "DATETIME",
    "JSON": "JSON",
}


def _scalar_default_sql(column: object) -> str | None:
    """SQL DEFAULT literal for a scalar Python-side default, else None."""
    default = column.default  # type: ignore[union-attr]
    if default is None or not default.is_scalar:
        return None
    value = default.arg
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    return None


async def auto_migrate_schema(conn: AsyncConnection) -> int:
    """Compare ORM tables with the live SQLite schema and add missing columns.

    NOT NULL columns without an SQL-expressible default are skipped with a
    warning (existing rows would violate the constraint). Returns the number
    of columns added.
    """
    added = 0
    for table_name, table in Base.metadata.tables.items():
        result = await conn.execute(text(f"PRAGMA table_info({table_name})"))
        existing = {row[1] for row in result.fetchall()}
        if not existing:
            continue

        for column in table.columns:
            if column.name in existing:
                continue
            col_type = _SQLITE_TYPE_MAP.get(type(column.type).__name__, "TEXT")
            default_sql = _scalar_default_sql(column)
            if default_sql is not None:
                col_def = f"{column.name} {col_type} DEFAULT {default_sql}"
            elif column.nullable:
                col_def = f"{column.name} {col_type}"
            else:
                logger.warning(
                    "auto_migrate: skipping %s.%s (NOT NULL, no SQL default)",
                    table_name,
                    column.name,
                )
                continue
            await conn.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {col_def}"))
            logger.info("auto_migrate: added %s.%s", table_name, column.name)
            added += 1
    return added

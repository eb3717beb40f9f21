"""Database connection and session management."""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tenant_cas.config import settings
from tenant_cas.models import Base


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the metadata store.

    SQLite connections get WAL journaling and a generous busy timeout so
    that concurrent single-statement transactions queue instead of failing.
    """
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 30

    new_engine = create_async_engine(database_url, echo=echo, connect_args=connect_args)

    if new_engine.dialect.name == "sqlite":

        @event.listens_for(new_engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.database_echo)

async_session_factory = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Initialize database tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def dialect_insert(bind: AsyncEngine, model: Any) -> Any:
    """Return an INSERT supporting ON CONFLICT for the engine's dialect."""
    if bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        return pg_insert(model)
    if bind.dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on {bind.dialect.name}")

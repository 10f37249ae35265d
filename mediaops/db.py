from __future__ import annotations

import os
import pathlib
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy import event
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from mediaops.config import settings

logger = logging.getLogger("uvicorn.error")

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so everything is stored naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _resolve_dsn(dsn: str | None = None) -> str:
    """
    Prefer an explicit dsn, then settings.DATABASE_URL, then env var DATABASE_URL,
    else default to a local SQLite database under ./data/.
    """
    dsn = (
        dsn
        or getattr(settings, "DATABASE_URL", None)
        or os.getenv("DATABASE_URL")
        or "sqlite+aiosqlite:///./data/mediaops.db"
    )

    # If using SQLite, make sure the folder exists so SQLAlchemy can create the file.
    if dsn.startswith("sqlite") and ":memory:" not in dsn:
        try:
            sep = "///" if "///" in dsn else "//"
            path_part = dsn.split(sep, 1)[1] if sep in dsn else ""
            if path_part:
                path = pathlib.Path(path_part).resolve()
                path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("[DB] Could not ensure SQLite directory exists: %s", e)

    return dsn


def create_engine_for(dsn: str | None = None) -> AsyncEngine:
    dsn = _resolve_dsn(dsn)
    if dsn.startswith("sqlite"):
        # one connection per session
        engine = create_async_engine(dsn, echo=False, poolclass=NullPool)
        _serialize_sqlite_writers(engine)
        return engine
    return create_async_engine(dsn, echo=False, pool_pre_ping=True)


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """
    pysqlite defers BEGIN until the first write, so two read-then-write
    transactions can deadlock on the lock upgrade. Take the write lock up
    front instead; concurrent units of work then queue on the busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def configure_engine(dsn: str | None = None) -> AsyncEngine:
    """
    Replace the global engine (tests point this at a temporary database).
    """
    global _engine, _sessionmaker
    _engine = create_engine_for(dsn)
    _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("[DB] engine initialized for %s", _engine.url)
    return _engine


def get_engine() -> AsyncEngine:
    """
    Lazily create a global AsyncEngine and sessionmaker.
    """
    if _engine is None:
        configure_engine()
    return _engine  # type: ignore[return-value]


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Get the global async session factory.
    """
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def init_db() -> None:
    """
    Ensure the engine is created and all tables exist.
    """
    # register every mapped class on Base.metadata
    from mediaops.models import orders, processing, editing, events, notifications  # noqa: F401

    eng = get_engine()
    try:
        async with eng.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error("[DB] initial connect failed: %s", e)
        raise


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None

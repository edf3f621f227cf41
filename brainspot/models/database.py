"""Shared async engine and session factory.

Production runs on PostgreSQL through asyncpg; tests and local experiments
point ``DATABASE_URL`` at ``sqlite+aiosqlite://``. Module globals hold the
engine so the CLI, the fixtures and the coach all reuse one pool.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote_plus

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from brainspot.config import settings
from brainspot.models.base import Base
from brainspot.util.logger import log_db, logger

engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None

_PROBE = text("SELECT 1")


def _engine_options() -> dict[str, Any]:
    if settings.uses_sqlite:
        # In-memory SQLite lives on a single connection; share it.
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
            "echo": settings.sqlalchemy_echo,
        }
    return {
        "pool_size": settings.postgres_pool_size,
        "max_overflow": settings.postgres_max_overflow,
        "pool_pre_ping": True,
        "echo": settings.sqlalchemy_echo,
    }


def _register_models() -> None:
    """Populate ``Base.metadata`` with every table."""
    from brainspot.models import phase, phase_transition_event, session  # noqa: F401


def _bind() -> AsyncEngine:
    global engine, AsyncSessionLocal
    if engine is None:
        engine = create_async_engine(settings.database_url, **_engine_options())
        log_db("engine", settings.database_url.split("@")[-1])
    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return engine


async def _create_postgres_database_if_missing() -> None:
    user = quote_plus(settings.postgres_user)
    password = quote_plus(settings.postgres_password)
    maintenance_url = (
        f"postgresql+asyncpg://{user}:{password}@"
        f"{settings.postgres_host}:{settings.postgres_port}/postgres"
    )
    maintenance = create_async_engine(maintenance_url, isolation_level="AUTOCOMMIT")
    try:
        async with maintenance.connect() as connection:
            exists = await connection.scalar(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": settings.postgres_db},
            )
            if exists is None:
                quoted = '"' + settings.postgres_db.replace('"', '""') + '"'
                await connection.execute(text(f"CREATE DATABASE {quoted}"))
                logger.info("Created PostgreSQL database %s", settings.postgres_db)
    finally:
        await maintenance.dispose()


async def init_database(*, ensure_schema: bool = True) -> None:
    """Open the shared pool and, by default, create any missing tables.

    Only applies to PostgreSQL: when ``DATABASE_URL`` is not overridden the
    target database itself is created first if the server lacks it.
    """
    if not settings.uses_sqlite and not (settings.database_url_override or "").strip():
        await _create_postgres_database_if_missing()
    _register_models()
    bound = _bind()

    async with bound.begin() as connection:
        await connection.execute(_PROBE)
        if ensure_schema:
            await connection.run_sync(Base.metadata.create_all)
    logger.info("Database ready (schema %s).", "ensured" if ensure_schema else "untouched")


async def close_database() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
        logger.info("Database pool closed.")
    engine = None
    AsyncSessionLocal = None


async def init_db(drop_existing: bool = False) -> None:
    """Create all tables, dropping the current ones first when asked."""
    await init_database(ensure_schema=False)
    assert engine is not None
    async with engine.begin() as connection:
        if drop_existing:
            await connection.run_sync(Base.metadata.drop_all)
            log_db("drop_all")
        await connection.run_sync(Base.metadata.create_all)
        log_db("create_all")


async def get_db_session() -> AsyncIterator[AsyncSession]:
    if AsyncSessionLocal is None:
        await init_database()
    assert AsyncSessionLocal is not None
    async with AsyncSessionLocal() as session:
        yield session


async def database_healthcheck() -> bool:
    """``SELECT 1`` against the pool; False when it is closed or unreachable."""
    if engine is None:
        return False
    try:
        async with engine.connect() as connection:
            await connection.execute(_PROBE)
    except Exception:
        logger.exception("Database health check failed.")
        return False
    return True

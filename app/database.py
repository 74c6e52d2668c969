"""
Nearmatch: Async Database Handle & Session Dependency

The ``Database`` object owns the async engine and session factory.  It is
constructed explicitly (``Database.from_settings`` in production, directly
with a test URL in the test-suite), stored on ``app.state`` and disposed by
the application lifespan.  Nothing here opens a connection at import time.

Two connection strategies are supported by ``from_settings``:

1. **Cloud Run (production)**: ``cloud-sql-python-connector`` with
   automatic IAM authentication.  Activated when
   ``CLOUD_SQL_USE_UNIX_SOCKET`` is *True* **and** a valid
   ``CLOUD_SQL_INSTANCE_CONNECTION`` is provided.

2. **Local development**: a plain ``DATABASE_URL``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator

import structlog
from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import Settings

logger = structlog.get_logger("nearmatch.database")


# ------------------------------------------------------------------ #
# Declarative base for all ORM models
# ------------------------------------------------------------------ #

class Base(DeclarativeBase):
    """Shared declarative base.

    Every SQLAlchemy model in the project should inherit from this class::

        from app.database import Base

        class User(Base):
            __tablename__ = "users"
            ...
    """
    pass


# ------------------------------------------------------------------ #
# Pool configuration (server databases only)
# ------------------------------------------------------------------ #

_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


class Database:
    """Explicit storage handle: engine, session factory, lifecycle."""

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Select the appropriate engine strategy based on configuration."""
        echo = settings.LOG_LEVEL == "DEBUG"

        if settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION:
            return cls._from_cloud_sql(settings, echo)

        url = settings.DATABASE_URL

        # Transparently upgrade a plain ``postgresql://`` scheme so that
        # developers do not need to remember the asyncpg dialect prefix.
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        kwargs: dict[str, Any] = {"echo": echo}
        if not url.startswith("sqlite"):
            kwargs.update(_POOL_KWARGS)

        database = cls(url, **kwargs)
        logger.info("database_engine_created", strategy="url", dialect=database.engine.dialect.name)
        return database

    @classmethod
    def _from_cloud_sql(cls, settings: Settings, echo: bool) -> "Database":
        """Create an engine that connects through the Cloud SQL Python
        Connector.  The connector manages the SSL tunnel so only the
        instance connection name (``project:region:instance``) is needed.
        """
        from google.cloud.sql.connector import Connector

        connector = Connector()

        async def _get_connection():
            return await connector.connect_async(
                settings.CLOUD_SQL_INSTANCE_CONNECTION,
                "asyncpg",
                user=settings.DB_USER,
                password=settings.DB_PASSWORD,
                db=settings.DB_NAME,
                enable_iam_auth=True,
            )

        database = cls(
            "postgresql+asyncpg://",
            async_creator=_get_connection,
            echo=echo,
            **_POOL_KWARGS,
        )
        logger.info(
            "database_engine_created",
            strategy="cloud_sql",
            instance=settings.CLOUD_SQL_INSTANCE_CONNECTION,
        )
        return database

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def ping(self) -> None:
        """Issue ``SELECT 1``; raises if the database is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_all(self) -> None:
        """Create every table registered on ``Base.metadata``."""
        import app.models  # noqa: F401  (registers tables)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("database_pool_closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Transactional session scope: commit on success, roll back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


# ------------------------------------------------------------------ #
# FastAPI dependency
# ------------------------------------------------------------------ #

async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped ``AsyncSession`` from the app's ``Database``.

    Usage in a FastAPI route::

        from fastapi import Depends
        from app.database import get_db

        @router.get("/items")
        async def list_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session

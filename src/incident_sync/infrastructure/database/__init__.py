"""
Database Infrastructure
=======================

Manages database connections, session lifecycle, and engine configuration
for the canonical store.

Uses SQLAlchemy 2.0 with asyncpg for async PostgreSQL operations
(aiosqlite is accepted for local runs and tests).
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import DateTime, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from incident_sync.config import Settings
from incident_sync.shared.infrastructure.clock import ensure_utc
from incident_sync.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    SQLAlchemy 2.0 style using DeclarativeBase.
    All models inherit from this class.
    """
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime, also on backends that drop tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Database:
    """
    Owns the async engine and session maker of the canonical store.

    One instance is built by the runtime and shared by every service.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10
    ):
        self._engine = self._create_engine(url, echo, pool_size, max_overflow)
        self._session_maker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Prevent lazy loading after commit
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            echo=settings.debug,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )

    @staticmethod
    def _create_engine(url: str, echo: bool, pool_size: int, max_overflow: int) -> AsyncEngine:
        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
                # Every session must see the same in-memory database
                kwargs["poolclass"] = StaticPool
            return create_async_engine(url, echo=echo, **kwargs)

        # Fix asyncpg SSL: replace sslmode with ssl for asyncpg compatibility
        url = url.replace("sslmode=", "ssl=")
        return create_async_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,  # Verify connections before using
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Async context manager for one unit of work.

        Commits when the block exits cleanly, rolls back on any error.

        Usage:
            async with database.session() as session:
                repo = SQLAlchemyTicketRepository(session)
                await repo.upsert(ticket)

        Yields:
            AsyncSession: SQLAlchemy async session
        """
        async with self._session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """
        Create all database tables.

        Production deployments should prefer migrations.
        """
        _import_models()
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    async def check_health(self) -> dict:
        """Run a trivial query against the canonical store."""
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"healthy": True}
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return {"healthy": False, "error": str(e)}

    async def close(self) -> None:
        """Dispose of pooled connections."""
        await self._engine.dispose()


def _import_models() -> None:
    """Register every model on ``Base.metadata``."""
    from incident_sync.infrastructure.checkpoints import SyncCheckpointModel  # noqa: F401
    from incident_sync.ingestion.infrastructure.models import TicketModel  # noqa: F401
    from incident_sync.resolution.infrastructure.models import (  # noqa: F401
        PendingUpdateModel,
        ResolutionModel,
    )


__all__ = ["Base", "UTCDateTime", "Database"]

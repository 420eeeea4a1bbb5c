"""
Database session management with SQLAlchemy async
"""

from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite connections get a generous busy timeout."""
    url = database_url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["timeout"] = settings.OPERATION_TIMEOUT_SECONDS
    return create_async_engine(url, echo=echo, connect_args=connect_args, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory used by every pipeline component"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Created lazily so importing the package never opens a connection
_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine(echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL == "DEBUG")
    return _engine


def get_session_maker() -> async_sessionmaker:
    global _session_maker
    if _session_maker is None:
        _session_maker = create_session_factory(get_engine())
    return _session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session"""
    async with get_session_maker()() as session:
        yield session


async def init_models(engine: AsyncEngine) -> None:
    """Create all warehouse tables (bootstrap only, not schema management)"""
    from models.base import Base
    import models  # noqa: F401  registers every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Warehouse tables created")


def dialect_insert(session: AsyncSession, table):
    """
    INSERT construct for the session's dialect, so callers can use
    ``on_conflict_do_nothing`` / ``on_conflict_do_update``.
    """
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Unsupported warehouse dialect: {dialect}")
    return insert(table)

"""
Async SQLAlchemy engine, session factory and declarative base.

Production runs on PostgreSQL through ``asyncpg``.  Every compare-and-swap
in the core is a single conditional ``UPDATE``, so the default READ
COMMITTED isolation level is sufficient.  ``sqlite+aiosqlite`` URLs are
accepted for the test-suite and local demos; an in-memory SQLite database
has to share one connection or each session would see an empty schema.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from dispatch_engine.config import settings


class Base(DeclarativeBase):
    """Declarative base for the zone, driver, dispatch and escrow tables."""


def make_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if parsed.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_async_engine(url, echo=echo, **kwargs)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are read after commit when building API responses.
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def create_schema(bind: AsyncEngine) -> None:
    """Create all tables directly; Alembic owns the schema on PostgreSQL."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = make_engine(settings.database_url, echo=settings.db_echo)
async_session_factory = make_session_factory(engine)

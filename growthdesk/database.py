import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from growthdesk.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by every growthdesk table."""
    pass


def normalize_database_url(url: str) -> str:
    """Route plain and asyncpg PostgreSQL URLs through the psycopg async driver."""
    for prefix in ("postgresql+asyncpg://", "postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(url)

    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
        return create_async_engine(url, echo=echo, **options)

    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        # pgbouncer in transaction mode cannot hold prepared statements
        connect_args={"prepare_threshold": None, "connect_timeout": 30},
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # Services commit explicitly; objects stay readable after commit
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_factory = make_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session():
    """Session for code running outside a request (jobs, scripts)."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine = None) -> None:
    """Create missing tables straight from the models. Production schemas go through alembic."""
    from growthdesk import models  # noqa: F401  registers mappers on Base.metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Ensured {len(Base.metadata.tables)} tables exist")

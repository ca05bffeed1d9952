"""
Store Health Database Session Management

The API shares one pooled engine for the process. Celery jobs run each
body under its own ``asyncio.run`` loop, so they build a short-lived engine
with ``build_engine`` and dispose it when the job ends.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
) -> AsyncEngine:
    options: dict = {"echo": echo, "pool_pre_ping": True}
    # SQLite engines reject queue pool sizing
    if pool_size is not None and not database_url.startswith("sqlite"):
        options["pool_size"] = pool_size
        options["max_overflow"] = max_overflow or 0
    return create_async_engine(database_url, **options)


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded rows readable after commit; services return them to callers."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()

engine = build_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
)

AsyncSessionLocal = session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for all store health tables."""

    pass

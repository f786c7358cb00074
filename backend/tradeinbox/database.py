"""
TradeInbox Backend — Database Session Management
==================================================

What:  Async SQLAlchemy engine factory, session factory, declarative base.
Why:   Centralizes all database connection logic in one place.
How:   Creates an async engine with connection pooling. Pipeline services
       receive the session factory at construction and open one short
       transaction per state transition, so every status change is committed
       (and fanned out) on its own.
Who:   main.py (app engine), build_services() (session factory), tests.

Connection Pooling Strategy:
    pool_size=20:     Persistent connections for normal load
    max_overflow=10:  Temporary connections for traffic spikes (total max = 30)
    pool_pre_ping:    Validates connections before use (catches stale connections)
    pool_recycle=3600: Recycles connections every hour

    SQLite (used by the test-suite) manages its own pool, so sizing options are
    only passed for server databases.
"""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tradeinbox.config import settings


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    What:  Applies pool sizing from settings for server databases only.
    Why:   SQLite pools reject max_overflow/pool_size arguments.
    """
    options: Dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(database_url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory shared by every pipeline service.

    expire_on_commit=False: rows loaded in a transaction stay readable after
    commit, which the services rely on when they publish realtime events.
    """
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares a single metadata object, which Alembic reads for migrations and the
    test-suite uses for create_all().
    """
    pass


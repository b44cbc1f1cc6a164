# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines against the same PostgreSQL schema:
#
#   async (asyncpg)   — built by the application container at startup and
#                       handed to WorkflowRepository as a session factory.
#                       Workflow pipelines run as asyncio tasks in the API
#                       process, so every pipeline write goes through here.
#   sync (psycopg2)   — lazily created for Celery workers (retention sweep,
#                       knowledge indexing), which are synchronous.
#
# DESIGN DECISION: The async engine is created by a factory, not at import.
# The orchestrator and store receive their session factory explicitly, so
# tests can hand in a mock factory without touching a database.
#
# COMMIT POLICY:
# WorkflowRepository opens one session per operation and commits before
# returning. The cache is invalidated only after that commit.
# =============================================================================

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings, settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# - pool_size=5 / max_overflow=10: a handful of concurrent workflows each
#   hold a connection only for the duration of one repository call.
# - expire_on_commit=False: rows are read after commit outside the session,
#   which would otherwise trigger a lazy refresh (fails in async context).
# ---------------------------------------------------------------------------


def create_async_db_engine(config: Settings | None = None) -> AsyncEngine:
    """Create the asyncpg-backed engine from settings."""
    config = config or settings
    return create_async_engine(
        config.database_url,
        echo=config.debug,
        pool_size=5,
        max_overflow=10,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables (idempotent; run at application startup)."""
    from app.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def create_session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Build the session factory injected into WorkflowRepository."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# psycopg2 is only needed inside workers; lazy init keeps the API process
# from opening a second pool it never uses.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for Celery workers.

    Usage in Celery tasks:
        with get_sync_session() as session:
            session.execute(delete(Workflow).where(...))
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

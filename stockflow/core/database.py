"""
Database configuration and session management

Every ledger mutation runs inside a transaction that row-locks the affected
inventory records, so the engine must point at a store with real row locks
(PostgreSQL in production). SQLite engines get BEGIN IMMEDIATE so concurrent
writers serialize instead of failing with "database is locked".
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from stockflow.core.config import settings

Base = declarative_base()


def _enable_sqlite_write_locks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_from_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend."""
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, future=True)
        _enable_sqlite_write_locks(engine)
        return engine

    if settings.ENVIRONMENT == "production":
        pool_config = {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,  # Verify connections before use
        }
    else:
        pool_config = {
            "pool_size": 2,
            "max_overflow": 5,
            "pool_pre_ping": True,
        }

    return create_async_engine(url, echo=echo, future=True, **pool_config)


def create_engine_from_settings() -> AsyncEngine:
    return create_engine_from_url(settings.DATABASE_URL, echo=settings.DEBUG)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine_from_settings()

AsyncSessionLocal = create_session_factory(engine)


async def init_models(target_engine: AsyncEngine) -> None:
    """Create all tables. Used for local setup and tests; production uses migrations."""
    # Register model modules on Base.metadata
    import stockflow.models  # noqa: F401

    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


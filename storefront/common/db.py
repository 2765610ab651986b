"""
Common — database engine / session factory

Every service owns its own database (Database per Service pattern) and builds
its engine through make_engine(). PostgreSQL (asyncpg) is the deployment target;
SQLite (aiosqlite) is accepted for local runs and tests.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool


def make_engine(database_url: str) -> AsyncEngine:
    """
    Create the async engine for a service.

    SQLite has no row-level locks, so write serialisation is emulated by opening
    every transaction with BEGIN IMMEDIATE (the database-wide write lock).
    """
    if not database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False, pool_pre_ping=True)

    engine = create_async_engine(
        database_url,
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

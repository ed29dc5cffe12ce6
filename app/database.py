"""Database utilities for the Malytics service."""

from __future__ import annotations

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        if "mal_credentials" not in inspector.get_table_names():
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("mal_credentials")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        _ensure_column(
            "user_id",
            "ALTER TABLE mal_credentials ADD COLUMN user_id VARCHAR(32) DEFAULT ''",
            "UPDATE mal_credentials SET user_id = '' WHERE user_id IS NULL",
        )
        _ensure_column(
            "token_expiry",
            "ALTER TABLE mal_credentials ADD COLUMN token_expiry FLOAT DEFAULT 0",
            "UPDATE mal_credentials SET token_expiry = 0 WHERE token_expiry IS NULL",
        )
        _ensure_column(
            "updated_at",
            "ALTER TABLE mal_credentials ADD COLUMN updated_at DATETIME",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

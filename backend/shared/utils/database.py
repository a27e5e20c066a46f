"""
PostgreSQL access for the SQL-backed store.

One AsyncEngine per worker process. `connect()` does a round trip so that
`connect_with_retry` backs off on an unreachable database instead of failing
on the first store write. Sessions come in two flavours: `read_session` for
lookups and `write_session`, which commits on clean exit and rolls back on
any exception.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.models.orm import Base
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        s = self._settings
        engine = create_async_engine(
            s.database_url_str,
            pool_size=s.db_pool_min,
            max_overflow=max(s.db_pool_max - s.db_pool_min, 0),
            pool_pre_ping=True,
            pool_recycle=300,
            echo=s.debug,
            connect_args={
                "timeout": s.db_command_timeout,
                "command_timeout": s.db_command_timeout,
                # Shows up in pg_stat_activity, one name per worker role.
                "server_settings": {"application_name": f"oddsfeed-{s.service_role.value}"},
            },
        )
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            await engine.dispose()
            raise

        self._engine = engine
        self._sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database_connected", url=s.database_url_safe_log, role=s.service_role.value)

    async def create_schema(self) -> None:
        """Create the events/markets/selections/settlement tables if missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready", tables=sorted(Base.metadata.tables))

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("database_disconnected")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager.connect() has not been awaited")
        return self._engine

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            raise RuntimeError("DatabaseManager.connect() has not been awaited")
        return self._sessions

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        async with self._factory()() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        async with self._factory()() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

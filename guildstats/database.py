"""
Database module for the Stats Engine
Async engine, session management and dialect-aware upsert helpers
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from structlog import get_logger

from .models import Base

logger = get_logger()


def to_async_url(database_url: str) -> str:
    """Select an async driver for plain database URLs"""
    if database_url.startswith('postgresql://'):
        return database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    if database_url.startswith('sqlite://'):
        return database_url.replace('sqlite://', 'sqlite+aiosqlite://', 1)
    return database_url


class DatabaseManager:
    """Database connection and session manager"""

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10, echo: bool = False):
        self.database_url = to_async_url(database_url)
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker] = None

        # Connection pool options
        if self.is_sqlite:
            self.pool_options: Dict[str, Any] = {
                'poolclass': NullPool,
                'connect_args': {'timeout': 30},
            }
        else:
            self.pool_options = {
                'pool_pre_ping': True,
                'pool_recycle': 300,  # 5 minutes
                'pool_size': pool_size,
                'max_overflow': max_overflow,
                'pool_timeout': 30,
                'pool_reset_on_return': 'rollback',
            }

    @classmethod
    def from_settings(cls, config) -> 'DatabaseManager':
        return cls(
            database_url=config.DATABASE_URL,
            pool_size=config.DATABASE_POOL_SIZE,
            max_overflow=config.DATABASE_MAX_OVERFLOW,
            echo=False
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def engine(self) -> AsyncEngine:
        """Create the asynchronous engine on first use"""
        if self._engine is None:
            self._engine = create_async_engine(
                self.database_url,
                echo=self.echo,
                **self.pool_options
            )
            logger.info("Asynchronous database engine created", dialect=self._engine.dialect.name)
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def session_maker(self) -> async_sessionmaker:
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(
                bind=self.engine,
                expire_on_commit=False,
                autoflush=True,
                class_=AsyncSession
            )
        return self._session_maker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Transactional session scope: commit on success, rollback on error"""
        session = self.session_maker()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_tables(self):
        """Create database tables if they don't exist"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")

    async def drop_tables(self):
        """Drop all database tables (for testing)"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    async def is_database_healthy(self) -> bool:
        """Check database health"""
        try:
            async with self.session_maker() as session:
                await session.execute(text("SELECT 1"))
                return True
        except (SQLAlchemyError, OSError) as e:
            logger.error("Database health check failed", error=str(e))
            return False

    async def dispose(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            logger.info("Database engine disposed")


def dialect_insert(session: AsyncSession, model):
    """INSERT construct supporting ON CONFLICT for the session's dialect"""
    name = session.bind.dialect.name
    if name == 'postgresql':
        return postgresql.insert(model)
    if name == 'sqlite':
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {name}")

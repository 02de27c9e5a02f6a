"""Database service for managing connections and sessions."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger, log_error
from ..models.database import Base

logger = get_logger(__name__)


class DatabaseService:
    """Service for database operations."""

    def __init__(self, config: Optional[Settings] = None, engine: Optional[AsyncEngine] = None):
        """Initialize database service."""
        self.config = config or default_settings
        self.engine = engine
        self.session_factory = None
        self._is_healthy = False
        if engine is not None:
            self.session_factory = self._make_session_factory(engine)

    async def initialize(self) -> None:
        """Initialize database connection."""
        try:
            if self.engine is None:
                engine_options = {"pool_pre_ping": True, "echo": self.config.debug}
                if not self.config.database_url.startswith("sqlite"):
                    engine_options.update(pool_size=10, max_overflow=20)
                self.engine = create_async_engine(self.config.database_url, **engine_options)
                self.session_factory = self._make_session_factory(self.engine)

            # Test connection
            await self.health_check()

            logger.info("Database service initialized", service=self.config.service_name)

        except Exception as e:
            log_error(logger, e, {"operation": "database_init"})
            raise

    async def create_tables(self) -> None:
        """Create tables for every registered model."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed", service=self.config.service_name)

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(1))
                result.scalar()
                self._is_healthy = True
                return True
        except Exception as e:
            self._is_healthy = False
            log_error(logger, e, {"operation": "health_check"})
            return False

    @property
    def is_healthy(self) -> bool:
        """Get current health status."""
        return self._is_healthy

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Get database session; commits on success, rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    def _make_session_factory(engine: AsyncEngine):
        return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

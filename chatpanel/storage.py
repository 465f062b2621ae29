import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from chatpanel.errors import PersistenceError

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


class Database:
    """
    Explicitly constructed store handle.

    Lifecycle: create one on application startup, call ``create_all()``,
    pass it to the pipeline/coordinator/cache, and ``dispose()`` it on
    shutdown. Every unit of work acquires a session through ``session()``,
    which guarantees release on every exit path.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, pool_pre_ping=True)
        self._sessionmaker = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        """
        Create all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.engine.url.render_as_string(hide_password=True)}")
        try:
            # Import models to register them with Base.metadata
            from chatpanel import models  # noqa: F401

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise PersistenceError(f"Failed to initialize database: {e}") from e

    async def dispose(self) -> None:
        """Release every pooled connection."""
        await self.engine.dispose()
        logger.info("Database connections released")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Scoped unit of work.

        Commits when the block exits cleanly, rolls back on any error and
        always returns the connection to the pool. Storage failures surface
        as PersistenceError; nothing from a failed block is kept.
        """
        session = self._sessionmaker()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database operation failed, rolled back: {e}")
            raise PersistenceError(f"Database operation failed: {e}") from e
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                logger.debug("Database connectivity OK")
                has_tables = await conn.run_sync(
                    lambda sync_conn: all(
                        inspect(sync_conn).has_table(name) for name in ("chats", "messages")
                    )
                )
            if not has_tables:
                logger.error("Database schema not applied: 'chats'/'messages' tables not found")
                return False
            logger.debug("Database health check passed")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

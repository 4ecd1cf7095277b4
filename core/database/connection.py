# PostgreSQL connection management
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from core.logging import get_database_logger_safe, get_error_logger_safe

db_logger = get_database_logger_safe("core.database.connection")
error_logger = get_error_logger_safe("core.database.connection")

# The base class for all SQLAlchemy models
Base = declarative_base()


class DatabaseManager:
    """Manages the connection to the PostgreSQL database"""

    def __init__(self, db_url: str, schema_management: str = "auto", **engine_kwargs):
        engine_options = {
            "echo": False,
            "pool_pre_ping": True,  # Test connections before use
        }
        engine_options.update(engine_kwargs)
        self._engine = create_async_engine(db_url, **engine_options)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession
        )
        self._schema_management = schema_management

    async def init(self, schema_management: str = None):
        """Create tables for every imported model unless schema management is skipped"""
        schema_mgmt = schema_management or self._schema_management

        if schema_mgmt == "skip":
            db_logger.info("Schema management skipped")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        db_logger.info("Database initialized with create_all", schema_management=schema_mgmt)

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            db_logger.error("Database connection verification failed", error=str(e))
            return False

    async def wait_for_ready(self, timeout: int = 30, check_interval: float = 1.0):
        """Wait for database to be ready with timeout"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while (loop.time() - start_time) < timeout:
            if await self.verify_connection():
                db_logger.info("Database connection verified")
                return True

            db_logger.info("Database not ready, waiting...")
            await asyncio.sleep(check_interval)

        raise RuntimeError(f"Database not ready after {timeout} seconds")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provides a new database session context manager WITHOUT auto-commit.

        Callers own the transaction boundary; the session is rolled back if
        the block raises.
        """
        session_start_time = time.time()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                error_logger.error("Database session error with rollback",
                                   error=str(session_error),
                                   session_duration_ms=(time.time() - session_start_time) * 1000,
                                   exc_info=True)
                raise
            finally:
                db_logger.debug("Database session closed",
                                session_duration_ms=(time.time() - session_start_time) * 1000)

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        db_logger.info("Database connection pool closed.")

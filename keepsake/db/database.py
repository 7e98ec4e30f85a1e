"""
Database connection management for Keepsake.

Uses SQLAlchemy 2.0 async API with aiosqlite. The database file lives inside
the data root, so a restore replaces it on disk; the shared handle must be
closed before that happens and reopened afterwards.
"""

import logging
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import HTTPException
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from keepsake.config import settings

logger = logging.getLogger(__name__)

# Directories the app writes into; created on startup
DATA_SUBDIRS = ("cards", "uploads")


class DatabaseUnavailable(RuntimeError):
    """The shared handle is closed (restore in progress or awaiting restart)."""


def _apply_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    # WAL for concurrent readers, busy_timeout so lock contention waits instead of failing
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_engine(url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(url, echo=echo, pool_pre_ping=True)
    event.listen(engine.sync_engine, "connect", _apply_sqlite_pragmas)
    return engine


class DatabaseHandle:
    """Single owned database handle with explicit close/reopen.

    Only the restore orchestrator closes and reopens it.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise DatabaseUnavailable("Database connection is closed")
        return self._engine

    async def connect(self) -> None:
        """Open the engine and check that the database answers."""
        if self._engine is not None:
            return
        engine = _create_engine(self.url, echo=self.echo)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            await engine.dispose()
            raise
        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
        logger.info(f"Database connected: {self.url}")

    async def close(self) -> None:
        """Dispose the engine so no file handle stays open on the database."""
        engine = self._engine
        self._engine = None
        self._sessionmaker = None
        if engine is not None:
            await engine.dispose()
            logger.info("Database connection closed")

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise DatabaseUnavailable("Database connection is closed")
        return self._sessionmaker()


async def probe(url: str) -> None:
    """Open a throwaway connection to check that the database is readable.

    The connection is disposed before returning; raises on failure.
    """
    engine = _create_engine(url)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT count(*) FROM sqlite_master"))
    finally:
        await engine.dispose()


# Shared handle for the process
db_handle = DatabaseHandle(settings.database_url, echo=settings.database_echo)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage in FastAPI:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    try:
        session = db_handle.session()
    except DatabaseUnavailable as e:
        raise HTTPException(status_code=503, detail=f"{e}, restart may be required")
    async with session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def ensure_data_root(data_root: Path) -> None:
    """Create the data root and its working subdirectories."""
    if not data_root.exists():
        data_root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created data directory: {data_root}")
    for subdir in DATA_SUBDIRS:
        (data_root / subdir).mkdir(parents=True, exist_ok=True)


async def init_db(handle: Optional[DatabaseHandle] = None):
    """
    Initialize the data root and connect the shared handle.

    Should be called on application startup.
    """
    ensure_data_root(settings.data_path)
    await (handle or db_handle).connect()

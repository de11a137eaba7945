"""Engine and session handling for the local watch progress store."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import MetaData, event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Database:
    """Owns the async engine and hands out sessions to the progress store.

    SQLite files are created on demand; the parent directory is made if
    missing so a fresh checkout can start without manual setup.
    """

    def __init__(self, database_url: str, *, busy_timeout_ms: int = 5_000):
        url = make_url(database_url)
        self._is_sqlite = url.get_backend_name() == "sqlite"
        if self._is_sqlite and url.database not in (None, "", ":memory:"):
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

        self._engine: AsyncEngine = create_async_engine(database_url)
        if self._is_sqlite:
            # Progress writes and stream re-reads overlap; wait on the lock.
            @event.listens_for(self._engine.sync_engine, "connect")
            def _set_pragmas(dbapi_connection, _record) -> None:
                cursor = dbapi_connection.cursor()
                cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
                cursor.close()

        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    async def create_all(self) -> None:
        """Create the progress tables if they do not yet exist."""

        from . import db_models  # noqa: F401  (registers the ORM tables)

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("Local progress store ready at %s", self._engine.url.render_as_string())

    async def dispose(self) -> None:
        await self._engine.dispose()

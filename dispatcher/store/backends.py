import logging
from typing import Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine

from dispatcher.db.models import ProgressEntry
from dispatcher.db.session import Base, create_engine, create_session_factory

logger = logging.getLogger(__name__)

class KeyValueBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

class InMemoryBackend:
    """Process-local backend. Progress is lost when the process exits."""

    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

class SqlAlchemyBackend:
    """
    Stores entries in the `progress_entries` table.
    Each write runs in its own transaction, so writes are atomic per key.
    """

    def __init__(self, database_uri: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        if engine is None:
            if not database_uri:
                raise ValueError("database_uri or engine is required")
            engine = create_engine(database_uri)
        self.engine = engine
        self._sessions = create_session_factory(engine)

    async def init(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Progress store tables ready.")

    async def get(self, key: str) -> Optional[str]:
        async with self._sessions() as session:
            stmt = select(ProgressEntry.value).where(ProgressEntry.key == key)
            return await session.scalar(stmt)

    async def set(self, key: str, value: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.merge(ProgressEntry(key=key, value=value))

    async def remove(self, key: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(delete(ProgressEntry).where(ProgressEntry.key == key))

    async def close(self):
        await self.engine.dispose()

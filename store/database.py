"""Shared async engine for the record stores."""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from store.schema import metadata


class Database:
    """Owns the AsyncEngine every store writes through."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///engine.db"):
        self.url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Creates the async engine.

    URL should be sqlite+aiosqlite://... or postgresql+asyncpg://...
    """
    return create_async_engine(url, echo=echo, future=True)


def build_session_maker(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_db(engine: AsyncEngine):
    """
    Initializes the database (creates tables).
    Intended to be run on startup or via alembic.
    """
    from sqlmodel import SQLModel
    # Import schemas so they are registered with SQLModel
    from copybot.db import schemas

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from copybot.config.settings import settings


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Builds an async engine for `url`.

    In-memory SQLite needs a single shared connection, otherwise every
    session would see its own empty database.
    """
    if url.startswith("sqlite") and ":memory:" in url:
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=echo)


def make_session_maker(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Note: DATABASE_URL defaults to sqlite+aiosqlite; postgresql+asyncpg:// works too
engine = create_engine(settings.DATABASE_URL)

async_session_maker = make_session_maker(engine)


async def init_db(bind: AsyncEngine = engine):
    """
    Initializes the database (creates tables).
    Intended to be run on startup.
    """
    from sqlmodel import SQLModel
    # Import schemas so they are registered with SQLModel
    from copybot.db import schemas  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

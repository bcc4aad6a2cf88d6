from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from prreview.common.config import DATABASE_URL
from prreview.common.models import Base

engine = create_async_engine(
    DATABASE_URL,
    future=True,
    echo=False,
    pool_pre_ping=True
)

SessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession
)


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

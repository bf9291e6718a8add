from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gigescrow.core.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def transactional(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """One unit of work: commit everything on success, roll back on any error.

    Ledger and dispute services only add/flush; this is the single place a
    commit happens, so no partial writes ever become visible.
    """
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise

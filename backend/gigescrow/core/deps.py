from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.db.session import async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is automatically closed when the request finishes.
    """
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_orchestrator():
    """FastAPI dependency returning the escrow/dispute orchestrator.

    Built per request from settings so tests can override it wholesale.
    """
    from gigescrow.services.orchestrator import build_orchestrator

    return build_orchestrator()

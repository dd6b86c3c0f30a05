"""FastAPI dependency injection helpers."""

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.services.core import DispatchCore


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """One transaction per HTTP request: commit on success, rollback on error.

    Outcomes such as PARKED or CONFLICT are returned, not raised, so the
    attempt counters and history they wrote are committed with them.
    """
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_core(request: Request) -> DispatchCore:
    """The process-wide ``DispatchCore`` built by the app factory."""
    return request.app.state.core

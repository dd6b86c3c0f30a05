"""
Background sweep bodies.

Each sweep opens its own unit of work, does one pass and commits.  None of
them is on the dispatch path: an offer that expires while a sweep is
running is simply picked up on the next pass.

Every function takes the ``DispatchCore`` and a session factory so tests
can run a pass against an in-memory database.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.domain.enums import DispatchResult
from dispatch_engine.infrastructure.models import utcnow
from dispatch_engine.services.core import DispatchCore

logger = logging.getLogger(__name__)


async def expire_offers(
    core: DispatchCore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> int:
    """Expire offers past their TTL; each expiry redispatches at once."""
    async with session_factory() as session:
        expired = await core.dispatcher(session).expire_due_offers(now or utcnow())
        await session.commit()
    if expired:
        logger.info("Offer sweep: %d offers expired", expired)
    return expired


async def redispatch_parked(
    core: DispatchCore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> int:
    """Retry parked requests whose backoff has elapsed.  Returns offers made."""
    async with session_factory() as session:
        outcomes = await core.dispatcher(session).redispatch_due(now or utcnow())
        await session.commit()
    offered = sum(1 for o in outcomes if o.result == DispatchResult.OFFERED)
    if outcomes:
        logger.info(
            "Redispatch sweep: %d requests retried, %d offered", len(outcomes), offered
        )
    return offered


async def auto_release_escrow(
    core: DispatchCore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> int:
    """Release due escrow, committing each transaction before the next one."""
    now = now or utcnow()
    async with session_factory() as session:
        due = await core.escrow(session).due_for_release(now)

    released = 0
    for escrow_id in due:
        async with session_factory() as session:
            try:
                if await core.escrow(session).release_due(escrow_id, now):
                    released += 1
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception("Escrow sweep: transaction %s skipped", escrow_id)
    if released:
        logger.info("Escrow sweep: %d of %d due transactions released", released, len(due))
    return released


async def recompute_demand(
    core: DispatchCore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> int:
    async with session_factory() as session:
        snapshots = await core.demand(session).recompute(now or utcnow())
        await session.commit()
    return len(snapshots)


async def refresh_zone_catalog(
    core: DispatchCore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> int:
    async with session_factory() as session:
        return await core.refresh_zones(session, now or utcnow())


async def evict_stale_locations(
    core: DispatchCore,
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
) -> int:
    return core.locations.evict_stale(now or utcnow())

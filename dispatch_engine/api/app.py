"""
FastAPI application factory.

* Registers routes for requests, quotes, drivers, offers, escrow and admin.
* Loads the zone catalogue and starts / stops the background sweeps via
  lifespan events.
* Maps every ``DispatchError`` to ``{detail, code, retry_suggested}``.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.api.errors import dispatch_error_handler
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.routes import admin, drivers, escrow, offers, quotes, requests
from dispatch_engine.config import settings
from dispatch_engine.domain.errors import DispatchError
from dispatch_engine.infrastructure.database import async_session_factory, engine
from dispatch_engine.infrastructure.event_bus import RedisEventPublisher
from dispatch_engine.infrastructure.redis_client import close_redis
from dispatch_engine.services.core import DispatchCore
from dispatch_engine.workers import scheduler

logging.basicConfig(level=settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load zones and start the sweeps on startup; stop them on shutdown."""
    core: DispatchCore = app.state.core
    session_factory = app.state.session_factory
    async with session_factory() as session:
        await core.refresh_zones(session)
    await scheduler.start_workers(core, session_factory)
    yield
    await scheduler.stop_workers()
    if isinstance(core.events, RedisEventPublisher):
        await core.events.drain()
    await core.gateway.aclose()
    await close_redis()
    if session_factory is async_session_factory:
        await engine.dispose()


def create_app(
    core: Optional[DispatchCore] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FastAPI:
    app = FastAPI(
        title="Dispatch & Settlement Engine",
        description=(
            "Matches ride and delivery requests to nearby drivers, prices "
            "them by zone and demand, enforces driver ride quotas and "
            "settles payments through escrow."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.core = core or DispatchCore.from_settings(settings)
    app.state.session_factory = session_factory or async_session_factory

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Error taxonomy
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Routers
    for module in (requests, quotes, drivers, offers, escrow, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app

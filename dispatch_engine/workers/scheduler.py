"""
Background Sweep Scheduler
==========================

Each sweep runs in its own asyncio task on a fixed interval:

====================  ==========================================  ===========
job                   does                                        lock
====================  ==========================================  ===========
offer-expiry          expire offers past their TTL, redispatch    distributed
redispatch            retry parked requests after backoff         distributed
escrow-auto-release   release HELD escrow after 48 h              distributed
demand-recompute      refresh demand snapshots                    distributed
zone-refresh          reload the zone catalogue                   local
location-eviction     drop stale driver locations                 local
====================  ==========================================  ===========

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance runs a database
  sweep per tick across multiple API processes.
* Process-local jobs (in-memory catalogue / location store) run in every
  process and never take the lock.
* A failing pass is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.infrastructure.locks import DistributedLock
from dispatch_engine.infrastructure.redis_client import get_redis
from dispatch_engine.services.core import DispatchCore
from dispatch_engine.workers import sweeps

logger = logging.getLogger(__name__)

_jobs: list["PeriodicJob"] = []


class PeriodicJob:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        run: Callable[[], Awaitable[int]],
        *,
        distributed: bool = True,
        lock_ttl_seconds: int = 60,
    ):
        self.name = name
        self.interval = interval_seconds
        self.run = run
        self.distributed = distributed
        self.lock_ttl = lock_ttl_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")
        logger.info("Worker %s started (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Worker %s stopped", self.name)

    async def run_once(self) -> int:
        """One pass; returns 0 without running when another process holds the lock."""
        if not self.distributed:
            return await self.run()

        redis = await get_redis()
        lock = DistributedLock(redis, f"sweep:{self.name}", ttl_seconds=self.lock_ttl)
        if not await lock.acquire():
            logger.debug("Lock for %s held by another worker; skipping", self.name)
            return 0
        try:
            return await self.run()
        finally:
            if not await lock.release():
                logger.warning(
                    "Lock for %s expired before the sweep finished (ttl=%ss)",
                    self.name,
                    self.lock_ttl,
                )

    async def _loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Unhandled error in %s sweep", self.name)
            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass


def build_jobs(
    core: DispatchCore, session_factory: async_sessionmaker[AsyncSession]
) -> list[PeriodicJob]:
    s = core.settings

    def bind(sweep):
        return lambda: sweep(core, session_factory)

    return [
        PeriodicJob("offer-expiry", s.offer_sweep_interval_seconds, bind(sweeps.expire_offers)),
        PeriodicJob("redispatch", s.redispatch_interval_seconds, bind(sweeps.redispatch_parked)),
        PeriodicJob(
            "escrow-auto-release",
            s.escrow_sweep_interval_seconds,
            bind(sweeps.auto_release_escrow),
        ),
        PeriodicJob(
            "demand-recompute", s.demand_interval_seconds, bind(sweeps.recompute_demand)
        ),
        PeriodicJob(
            "zone-refresh",
            s.zone_refresh_interval_seconds,
            bind(sweeps.refresh_zone_catalog),
            distributed=False,
        ),
        PeriodicJob(
            "location-eviction",
            s.location_eviction_interval_seconds,
            bind(sweeps.evict_stale_locations),
            distributed=False,
        ),
    ]


# ── Public API ────────────────────────────────────────────────────────


async def start_workers(
    core: DispatchCore, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    _jobs[:] = build_jobs(core, session_factory)
    for job in _jobs:
        await job.start()


async def stop_workers() -> None:
    for job in _jobs:
        await job.stop()
    _jobs.clear()

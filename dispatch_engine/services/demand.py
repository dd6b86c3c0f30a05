"""
Demand Estimator
================

Scheduled recomputation of the per-(zone, vehicle class) demand ratio.

Each run counts pending requests from the database and available drivers
from the location store, publishes the snapshots to the in-memory
``DemandBoard`` (read by quoting), and appends them to ``zone_demand`` with
the surge each ratio would produce, for later analysis.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.domain.demand import DemandBoard, build_snapshot, count_available
from dispatch_engine.domain.entities import DemandSnapshot
from dispatch_engine.domain.pricing import PricingEngine
from dispatch_engine.domain.zones import ZoneCatalog
from dispatch_engine.infrastructure.location_store import LocationStore
from dispatch_engine.infrastructure.models import utcnow
from dispatch_engine.infrastructure.repositories import (
    DemandRepository,
    RequestRepository,
)

logger = logging.getLogger(__name__)


class DemandEstimator:
    def __init__(
        self,
        session: AsyncSession,
        board: DemandBoard,
        locations: LocationStore,
        pricing: PricingEngine,
        catalog: ZoneCatalog,
    ):
        self.requests = RequestRepository(session)
        self.history = DemandRepository(session)
        self.board = board
        self.locations = locations
        self.pricing = pricing
        self.catalog = catalog

    async def recompute(self, now: Optional[datetime] = None) -> list[DemandSnapshot]:
        now = now or utcnow()
        pending = await self.requests.count_pending()
        available = count_available(self.locations.fresh(now))

        snapshots = []
        for key in sorted(set(pending) | set(available), key=_sort_key):
            zone_id, vclass = key
            if self.catalog.get(zone_id) is None:
                continue
            snapshots.append(
                build_snapshot(
                    zone_id, vclass, pending.get(key, 0), available.get(key, 0), now
                )
            )
        self.board.publish(snapshots)

        surge = {}
        for s in snapshots:
            zone = self.catalog.get(s.zone_id)
            surge[(s.zone_id, s.vehicle_class)] = self.pricing.surge_for(
                s.demand_ratio, zone.surge_multiplier
            )
        await self.history.save(snapshots, surge, now + self.board.staleness_bound)

        busiest = max(snapshots, key=lambda s: s.demand_ratio, default=None)
        if busiest is not None:
            logger.info(
                "Demand recomputed: %d snapshots, peak ratio %.2f in zone %s (%s)",
                len(snapshots),
                busiest.demand_ratio,
                busiest.zone_id,
                busiest.vehicle_class.value,
            )
        return snapshots


def _sort_key(key):
    zone_id, vclass = key
    return zone_id, vclass.value

"""
Matchmaker
==========

Turns a dispatchable request into a ranked list of eligible drivers.
Pure read: nothing is reserved here.  The offer slot and the driver claim
are taken later by the dispatcher under compare-and-swap.

Eligibility
-----------
* location fresh, driver online and available, same vehicle class
* within the current cascade radius (never beyond ``max_distance_km``)
* optionally inside the request's zone
* not already offered this request, no other pending offer, no active
  assignment
* quota left, unless the service type allows pay-per-ride overage
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.domain.entities import Candidate, DriverLocation
from dispatch_engine.domain.enums import ServiceType, VehicleClass
from dispatch_engine.domain.matching import radius_cascade, rank_candidates
from dispatch_engine.infrastructure.location_store import LocationStore
from dispatch_engine.infrastructure.models import DispatchRequestModel
from dispatch_engine.infrastructure.repositories import (
    DriverRepository,
    OfferRepository,
)
from dispatch_engine.services.quota import QuotaLedger

logger = logging.getLogger(__name__)


class Matchmaker:
    def __init__(
        self,
        session: AsyncSession,
        locations: LocationStore,
        quota: QuotaLedger,
        *,
        search_radii_km: Sequence[float] = (2.0, 5.0),
        max_distance_km: float = 5.0,
        restrict_to_zone: bool = False,
    ):
        self.locations = locations
        self.quota = quota
        self.drivers = DriverRepository(session)
        self.offers = OfferRepository(session)
        self.radii = radius_cascade(search_radii_km, max_distance_km)
        self.restrict_to_zone = restrict_to_zone

    async def find_candidates(
        self, request: DispatchRequestModel, now: datetime
    ) -> list[Candidate]:
        """Ranked candidates from the first radius that yields any; else []."""
        already_offered = await self.offers.offered_driver_ids(request.id)
        zone_id = request.zone_id if self.restrict_to_zone else None

        for radius in self.radii:
            nearby = self._nearby(
                request.pickup_lat,
                request.pickup_lng,
                radius,
                VehicleClass(request.vehicle_class),
                zone_id,
                now,
            )
            nearby = {d: dist for d, dist in nearby.items() if d not in already_offered}
            if not nearby:
                continue

            candidates = await self._eligible(
                nearby, ServiceType(request.service_type), now
            )
            if candidates:
                ranked = rank_candidates(candidates)
                logger.debug(
                    "Request %s: %d candidates within %.1f km",
                    request.id,
                    len(ranked),
                    radius,
                )
                return ranked
        return []

    def _nearby(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        vehicle_class: VehicleClass,
        zone_id: Optional[int],
        now: datetime,
    ) -> dict[str, float]:
        found: dict[str, float] = {}
        for loc, distance in self.locations.within_radius(lat, lng, radius_km, now):
            if not _matches(loc, vehicle_class, zone_id):
                continue
            found[loc.driver_id] = distance
        return found

    async def _eligible(
        self, nearby: dict[str, float], service_type: ServiceType, now: datetime
    ) -> list[Candidate]:
        rows = await self.drivers.get_many(nearby)
        free = [d for d, row in rows.items() if row.active_request_id is None]
        busy_with_offer = await self.offers.drivers_with_pending_offers(free)
        free = [d for d in free if d not in busy_with_offer]
        if not free:
            return []

        remaining = await self.quota.remaining_for(free, now)
        fallback = self.quota.fallback_allowed(service_type)

        candidates = []
        for driver_id in free:
            left = remaining.get(driver_id, 0)
            if left <= 0 and not fallback:
                continue
            candidates.append(
                Candidate(
                    driver_id=driver_id,
                    distance_km=nearby[driver_id],
                    rating=rows[driver_id].rating_average,
                    rides_remaining=max(left, 0),
                    quota_exhausted=left <= 0,
                )
            )
        return candidates


def _matches(
    loc: DriverLocation, vehicle_class: VehicleClass, zone_id: Optional[int]
) -> bool:
    if not loc.is_dispatchable or loc.vehicle_class != vehicle_class:
        return False
    return zone_id is None or loc.zone_id == zone_id

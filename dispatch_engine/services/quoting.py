"""
Quote assembly: zone lookup, distance/duration estimate, demand ratio and
fare, in that order.  Used by the dispatcher's ``REQUESTED -> QUOTING``
step and by the quote-preview endpoint.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.domain.demand import DemandBoard
from dispatch_engine.domain.distance import estimate_duration_min, haversine_km
from dispatch_engine.domain.entities import Fare
from dispatch_engine.domain.enums import VehicleClass
from dispatch_engine.domain.pricing import PricingEngine, demand_ratio
from dispatch_engine.domain.zones import ZoneClassifier
from dispatch_engine.infrastructure.location_store import LocationStore
from dispatch_engine.infrastructure.repositories import RequestRepository


class QuoteService:
    def __init__(
        self,
        session: AsyncSession,
        classifier: ZoneClassifier,
        pricing: PricingEngine,
        demand_board: DemandBoard,
        locations: LocationStore,
        average_speed_kmh: float = 25.0,
    ):
        self.requests = RequestRepository(session)
        self.classifier = classifier
        self.pricing = pricing
        self.demand_board = demand_board
        self.locations = locations
        self.average_speed_kmh = average_speed_kmh

    async def demand_ratio(
        self, zone_id: int, vehicle_class: VehicleClass, now: datetime
    ) -> float:
        """Fresh snapshot if there is one, otherwise a live count."""
        snap = self.demand_board.get(zone_id, vehicle_class, now)
        if snap is not None:
            return snap.demand_ratio

        pending = await self.requests.count_pending_in(zone_id, vehicle_class)
        available = sum(
            1
            for loc in self.locations.fresh(now)
            if loc.zone_id == zone_id
            and loc.vehicle_class == vehicle_class
            and loc.is_dispatchable
        )
        return demand_ratio(pending, available)

    async def quote(
        self,
        pickup_lat: float,
        pickup_lng: float,
        destination_lat: float,
        destination_lng: float,
        vehicle_class: VehicleClass,
        now: datetime,
    ) -> Fare:
        """Raises ``InvalidZone`` when no operational zone covers the pickup."""
        zone = self.classifier.require_operational(pickup_lat, pickup_lng, now)
        distance = haversine_km(pickup_lat, pickup_lng, destination_lat, destination_lng)
        duration = estimate_duration_min(distance, self.average_speed_kmh)
        ratio = await self.demand_ratio(zone.id, vehicle_class, now)
        return self.pricing.quote(zone, vehicle_class, distance, duration, ratio)

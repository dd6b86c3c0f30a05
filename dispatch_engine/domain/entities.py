"""
Domain entities and value objects.

Patterns used
-------------
- **State Pattern** via ``ensure_transition``: every request status change
  is validated against ``REQUEST_TRANSITIONS`` before it is persisted.
- ``ServiceZone.contains`` encapsulates the point-in-polygon rule used by
  the zone classifier.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .enums import (
    DELIVERY_VEHICLE_CLASS,
    REQUEST_TRANSITIONS,
    DeliveryType,
    DemandLevel,
    RequestStatus,
    ServiceType,
    VehicleClass,
    ZoneStatus,
)
from .errors import InvalidStateTransition


def ensure_transition(current: RequestStatus, new: RequestStatus) -> None:
    """Raise unless *current* -> *new* is a legal request transition."""
    allowed = REQUEST_TRANSITIONS.get(RequestStatus(current), set())
    if new not in allowed:
        raise InvalidStateTransition(
            f"Cannot transition from {RequestStatus(current).value} to {new.value}"
        )


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class DriverLocation:
    driver_id: str
    latitude: float
    longitude: float
    vehicle_class: VehicleClass
    last_ping: datetime
    heading: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    is_online: bool = True
    is_available: bool = True
    zone_id: Optional[int] = None

    def is_stale(self, now: datetime, staleness_window: timedelta) -> bool:
        return now - self.last_ping > staleness_window

    @property
    def is_dispatchable(self) -> bool:
        return self.is_online and self.is_available


@dataclass(frozen=True)
class PricingRule:
    vehicle_class: VehicleClass
    base_price: float
    price_per_km: float
    price_per_minute: float
    minimum_fare: float
    maximum_fare: float

    def __post_init__(self):
        if self.minimum_fare > self.maximum_fare:
            raise ValueError("minimum_fare must not exceed maximum_fare")


@dataclass(frozen=True)
class ServiceZone:
    id: int
    name: str
    polygon: tuple[tuple[float, float], ...]  # (lat, lng) vertices
    city: str = ""
    base_price_multiplier: float = 1.0
    surge_multiplier: float = 1.0
    status: ZoneStatus = ZoneStatus.ACTIVE
    maintenance_start: Optional[datetime] = None
    maintenance_end: Optional[datetime] = None
    pricing_rules: dict[VehicleClass, PricingRule] = field(
        default_factory=dict, compare=False, hash=False
    )

    @property
    def bounding_box(self) -> tuple[float, float, float, float]:
        lats = [p[0] for p in self.polygon]
        lngs = [p[1] for p in self.polygon]
        return min(lats), min(lngs), max(lats), max(lngs)

    def contains(self, lat: float, lng: float) -> bool:
        """Ray-casting point-in-polygon test.  O(v) in vertex count."""
        if len(self.polygon) < 3:
            return False
        min_lat, min_lng, max_lat, max_lng = self.bounding_box
        if not (min_lat <= lat <= max_lat and min_lng <= lng <= max_lng):
            return False

        inside = False
        j = len(self.polygon) - 1
        for i in range(len(self.polygon)):
            lat_i, lng_i = self.polygon[i]
            lat_j, lng_j = self.polygon[j]
            if (lng_i > lng) != (lng_j > lng):
                crossing = (lat_j - lat_i) * (lng - lng_i) / (lng_j - lng_i) + lat_i
                if lat < crossing:
                    inside = not inside
            j = i
        return inside

    def in_maintenance(self, now: datetime) -> bool:
        if self.status == ZoneStatus.MAINTENANCE:
            return True
        if self.maintenance_start and self.maintenance_end:
            return self.maintenance_start <= now < self.maintenance_end
        return False

    def is_operational(self, now: datetime) -> bool:
        return self.status == ZoneStatus.ACTIVE and not self.in_maintenance(now)


@dataclass(frozen=True)
class Fare:
    zone_id: int
    vehicle_class: VehicleClass
    distance_km: float
    duration_min: float
    demand_ratio: float
    base_fare: float  # clamped, before surge
    surge_multiplier: float
    total: float  # after surge, re-clamped
    minimum_fare: float
    maximum_fare: float
    currency: str


@dataclass(frozen=True)
class Candidate:
    driver_id: str
    distance_km: float
    rating: float
    rides_remaining: int
    quota_exhausted: bool = False

    @property
    def rank_key(self) -> tuple[float, float, int]:
        # distance first: pickup latency dominates the rider's experience
        return (self.distance_km, -self.rating, -self.rides_remaining)


@dataclass(frozen=True)
class DemandSnapshot:
    zone_id: int
    vehicle_class: VehicleClass
    pending_requests: int
    available_drivers: int
    demand_ratio: float
    demand_level: DemandLevel
    calculated_at: datetime

    def is_fresh(self, now: datetime, staleness_bound: timedelta) -> bool:
        return now - self.calculated_at <= staleness_bound


@dataclass(frozen=True)
class QuotaReceipt:
    driver_id: str
    request_id: int
    rides_remaining: int
    replayed: bool = False


@dataclass(frozen=True)
class RequestDraft:
    """A validated ride or delivery request, before it is persisted."""

    requester_id: str
    pickup: Location
    destination: Location
    vehicle_class: VehicleClass
    service_type: ServiceType = ServiceType.TAXI
    delivery_type: Optional[DeliveryType] = None
    prepaid: bool = False
    idempotency_key: Optional[str] = None

    @classmethod
    def delivery(
        cls,
        requester_id: str,
        pickup: Location,
        destination: Location,
        delivery_type: DeliveryType,
        **kwargs,
    ) -> "RequestDraft":
        """Deliveries pick their vehicle class from the delivery type."""
        return cls(
            requester_id=requester_id,
            pickup=pickup,
            destination=destination,
            vehicle_class=DELIVERY_VEHICLE_CLASS[delivery_type],
            service_type=ServiceType.DELIVERY,
            delivery_type=delivery_type,
            **kwargs,
        )

"""
Zone classification.

``ZoneCatalog`` is an in-memory, read-only mirror of the configuration
store (zones + their pricing rules).  A refresh replaces the whole
catalogue atomically, so readers always see a consistent generation.

``ZoneClassifier`` maps a coordinate to the zone containing it.  Zones are
checked smallest-first so that a district carved out of a city-wide zone
wins over its parent.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from .entities import PricingRule, ServiceZone
from .enums import VehicleClass, ZoneStatus
from .errors import InvalidZone


def _bbox_area(zone: ServiceZone) -> float:
    min_lat, min_lng, max_lat, max_lng = zone.bounding_box
    return (max_lat - min_lat) * (max_lng - min_lng)


class ZoneCatalog:
    def __init__(self, zones: Iterable[ServiceZone] = ()):
        self._zones: tuple[ServiceZone, ...] = ()
        self._by_id: dict[int, ServiceZone] = {}
        self.loaded_at: Optional[datetime] = None
        self.replace(zones)

    def replace(self, zones: Iterable[ServiceZone], loaded_at: datetime | None = None) -> None:
        ordered = tuple(sorted(zones, key=_bbox_area))
        self._by_id = {z.id: z for z in ordered}
        self._zones = ordered
        self.loaded_at = loaded_at

    @property
    def zones(self) -> tuple[ServiceZone, ...]:
        return self._zones

    def get(self, zone_id: int) -> Optional[ServiceZone]:
        return self._by_id.get(zone_id)

    def __len__(self) -> int:
        return len(self._zones)


class ZoneClassifier:
    def __init__(self, catalog: ZoneCatalog):
        self.catalog = catalog

    def classify(self, lat: float, lng: float) -> Optional[ServiceZone]:
        """Return the smallest non-inactive zone containing the point."""
        for zone in self.catalog.zones:
            if zone.status == ZoneStatus.INACTIVE:
                continue
            if zone.contains(lat, lng):
                return zone
        return None

    def zone_id_for(self, lat: float, lng: float) -> Optional[int]:
        zone = self.classify(lat, lng)
        return zone.id if zone else None

    def require_operational(
        self, lat: float, lng: float, now: datetime
    ) -> ServiceZone:
        zone = self.classify(lat, lng)
        if zone is None:
            raise InvalidZone(
                f"No service zone covers ({lat:.5f}, {lng:.5f})",
                lat=lat,
                lng=lng,
            )
        if not zone.is_operational(now):
            raise InvalidZone(
                f"Zone {zone.name} is not accepting requests (status={zone.status.value})",
                zone_id=zone.id,
            )
        return zone


def pricing_rule_for(
    zone: ServiceZone, vehicle_class: VehicleClass, fallback: PricingRule
) -> PricingRule:
    """The zone's rule for the vehicle class, or the configured fallback."""
    return zone.pricing_rules.get(vehicle_class, fallback)

"""Unit tests for zone geometry, the catalogue and the classifier."""

from datetime import timedelta

import pytest

from dispatch_engine.domain.entities import PricingRule, ServiceZone
from dispatch_engine.domain.enums import VehicleClass, ZoneStatus
from dispatch_engine.domain.errors import InvalidZone
from dispatch_engine.domain.zones import ZoneCatalog, ZoneClassifier, pricing_rule_for
from tests.conftest import ECO_RULE, FAR_AWAY, GOMBE, NOW, point, square_zone


class TestServiceZone:
    def test_contains(self):
        zone = square_zone()
        assert zone.contains(*GOMBE)
        assert zone.contains(*point(4.0, -4.0))
        assert not zone.contains(*point(7.0, 0.0))
        assert not zone.contains(*FAR_AWAY)

    def test_concave_polygon(self):
        # an L-shape: the notch at the top-right is outside
        lat, lng = GOMBE
        zone = ServiceZone(
            id=9,
            name="L",
            polygon=(
                (lat, lng),
                (lat, lng + 0.2),
                (lat + 0.1, lng + 0.2),
                (lat + 0.1, lng + 0.1),
                (lat + 0.2, lng + 0.1),
                (lat + 0.2, lng),
            ),
        )
        assert zone.contains(lat + 0.05, lng + 0.15)
        assert zone.contains(lat + 0.15, lng + 0.05)
        assert not zone.contains(lat + 0.15, lng + 0.15)

    def test_degenerate_polygon_contains_nothing(self):
        zone = ServiceZone(id=2, name="line", polygon=(GOMBE, point(1.0)))
        assert not zone.contains(*GOMBE)

    def test_maintenance_window(self):
        zone = square_zone(
            maintenance_start=NOW - timedelta(hours=1),
            maintenance_end=NOW + timedelta(hours=1),
        )
        assert zone.in_maintenance(NOW)
        assert not zone.is_operational(NOW)
        assert zone.is_operational(NOW + timedelta(hours=2))

    def test_pricing_rule_bounds_validated(self):
        with pytest.raises(ValueError):
            PricingRule(VehicleClass.ECO, 1000, 500, 0, minimum_fare=5000, maximum_fare=100)


class TestZoneClassifier:
    def setup_method(self):
        self.city = square_zone(1, "Kinshasa", half_deg=0.2)
        self.gombe = square_zone(2, "Gombe", half_deg=0.02, base_price_multiplier=1.2)
        self.classifier = ZoneClassifier(ZoneCatalog([self.city, self.gombe]))

    def test_smallest_zone_wins(self):
        assert self.classifier.classify(*GOMBE).id == 2
        assert self.classifier.zone_id_for(*point(10.0, 0.0)) == 1

    def test_outside_every_zone(self):
        assert self.classifier.classify(*FAR_AWAY) is None
        with pytest.raises(InvalidZone) as exc:
            self.classifier.require_operational(*FAR_AWAY, NOW)
        assert exc.value.retry_suggested

    def test_inactive_zone_is_skipped(self):
        gombe = square_zone(2, "Gombe", half_deg=0.02, status=ZoneStatus.INACTIVE)
        classifier = ZoneClassifier(ZoneCatalog([self.city, gombe]))
        assert classifier.classify(*GOMBE).id == 1

    def test_zone_in_maintenance_rejects_requests(self):
        gombe = square_zone(2, "Gombe", half_deg=0.02, status=ZoneStatus.MAINTENANCE)
        classifier = ZoneClassifier(ZoneCatalog([self.city, gombe]))
        with pytest.raises(InvalidZone):
            classifier.require_operational(*GOMBE, NOW)

    def test_catalogue_replace_is_atomic(self):
        catalog = self.classifier.catalog
        assert len(catalog) == 2
        catalog.replace([self.city], loaded_at=NOW)
        assert len(catalog) == 1
        assert catalog.get(2) is None
        assert catalog.loaded_at == NOW
        assert self.classifier.classify(*GOMBE).id == 1


def test_pricing_rule_falls_back_when_zone_has_none():
    fallback = PricingRule(VehicleClass.STANDARD, 1500, 500, 50, 2000, 50000)
    zone = square_zone()
    assert pricing_rule_for(zone, VehicleClass.ECO, fallback) is ECO_RULE
    assert pricing_rule_for(zone, VehicleClass.TRUCK, fallback) is fallback

"""Unit tests for the in-memory driver location store and its H3 index."""

from datetime import timedelta

import pytest

from dispatch_engine.domain.entities import DriverLocation
from dispatch_engine.domain.enums import VehicleClass
from dispatch_engine.domain.errors import StaleLocation
from dispatch_engine.domain.matching import cells_within, driver_h3_cell
from dispatch_engine.infrastructure.location_store import LocationStore
from tests.conftest import GOMBE, NOW, point


def _loc(driver_id="d1", north_km=0.0, east_km=0.0, at=NOW, **kwargs):
    lat, lng = point(north_km, east_km)
    return DriverLocation(
        driver_id=driver_id,
        latitude=lat,
        longitude=lng,
        vehicle_class=kwargs.pop("vehicle_class", VehicleClass.ECO),
        last_ping=at,
        **kwargs,
    )


class TestUpsert:
    def setup_method(self):
        self.store = LocationStore(timedelta(seconds=60))

    def test_upsert_then_range_query(self):
        assert self.store.upsert(_loc("d1", north_km=1.0), NOW)
        found = self.store.within_radius(*GOMBE, 2.0, NOW)
        assert [loc.driver_id for loc, _ in found] == ["d1"]
        assert found[0][1] == pytest.approx(1.0, abs=0.01)

    def test_out_of_order_ping_is_ignored(self):
        self.store.upsert(_loc("d1", north_km=1.0, at=NOW), NOW)
        older = _loc("d1", north_km=3.0, at=NOW - timedelta(seconds=5))
        assert self.store.upsert(older, NOW) is False
        assert self.store.get("d1").latitude == pytest.approx(point(1.0)[0])

    def test_newer_ping_moves_driver_between_cells(self):
        self.store.upsert(_loc("d1"), NOW)
        self.store.upsert(_loc("d1", east_km=4.0, at=NOW + timedelta(seconds=1)), NOW)
        assert self.store.within_radius(*GOMBE, 1.0, NOW + timedelta(seconds=1)) == []
        assert len(self.store.within_radius(*point(0, 4.0), 1.0, NOW)) == 1

    def test_stale_ping_rejected(self):
        with pytest.raises(StaleLocation):
            self.store.upsert(_loc(at=NOW - timedelta(seconds=61)), NOW)

    def test_zone_resolver_tags_location(self):
        store = LocationStore(timedelta(seconds=60), zone_resolver=lambda lat, lng: 7)
        store.upsert(_loc(), NOW)
        assert store.get("d1").zone_id == 7


class TestStaleness:
    def setup_method(self):
        self.store = LocationStore(timedelta(seconds=60))
        self.store.upsert(_loc("d1"), NOW)
        self.store.upsert(_loc("d2", north_km=0.5, at=NOW + timedelta(seconds=30)), NOW + timedelta(seconds=30))

    def test_stale_locations_are_invisible(self):
        later = NOW + timedelta(seconds=61)
        ids = {loc.driver_id for loc, _ in self.store.within_radius(*GOMBE, 2.0, later)}
        assert ids == {"d2"}
        assert [l.driver_id for l in self.store.fresh(later)] == ["d2"]

    def test_evict_stale(self):
        assert self.store.evict_stale(NOW + timedelta(seconds=61)) == 1
        assert self.store.get("d1") is None
        assert len(self.store) == 1

    def test_require_fresh(self):
        assert self.store.require_fresh("d2", NOW + timedelta(seconds=61)).driver_id == "d2"
        with pytest.raises(StaleLocation):
            self.store.require_fresh("d1", NOW + timedelta(seconds=61))
        with pytest.raises(StaleLocation):
            self.store.require_fresh("unknown", NOW)


class TestAvailability:
    def test_set_availability_keeps_position(self):
        store = LocationStore(timedelta(seconds=60))
        store.upsert(_loc("d1", north_km=1.0), NOW)
        store.set_availability("d1", False)
        loc = store.get("d1")
        assert loc.is_available is False
        assert not loc.is_dispatchable
        assert loc.latitude == pytest.approx(point(1.0)[0])

    def test_remove(self):
        store = LocationStore(timedelta(seconds=60))
        store.upsert(_loc("d1"), NOW)
        store.remove("d1")
        assert store.within_radius(*GOMBE, 1.0, NOW) == []


class TestH3Coverage:
    @pytest.mark.parametrize("radius_km", [0.5, 2.0, 5.0])
    def test_ring_covers_the_search_circle(self, radius_km):
        cells = cells_within(*GOMBE, radius_km, 8)
        edge = radius_km * 0.98
        for north, east in [(edge, 0), (-edge, 0), (0, edge), (0, -edge),
                            (edge * 0.7, edge * 0.7), (-edge * 0.7, edge * 0.7)]:
            lat, lng = point(north, east)
            assert driver_h3_cell(lat, lng, 8) in cells

"""Unit tests for the zone-based dynamic pricing engine."""

import math

import pytest

from dispatch_engine.domain.entities import PricingRule
from dispatch_engine.domain.enums import VehicleClass
from dispatch_engine.domain.pricing import (
    FlatSurge,
    LinearSurgeCurve,
    PricingEngine,
    StepSurgeCurve,
    build_surge_curve,
    demand_ratio,
)
from dispatch_engine.config import Settings
from dispatch_engine.services.core import fallback_rule
from tests.conftest import square_zone

DEFAULT_TIERS = Settings(_env_file=None).surge_tiers


def _engine(curve=None) -> PricingEngine:
    return PricingEngine(
        curve or StepSurgeCurve(DEFAULT_TIERS, max_surge=3.0),
        fallback_rule(Settings(_env_file=None)),
        currency="CDF",
    )


class TestDemandRatio:
    def test_ratio(self):
        assert demand_ratio(12, 3) == 4.0

    def test_no_available_drivers_counts_as_one(self):
        assert demand_ratio(5, 0) == 5.0
        assert demand_ratio(0, 0) == 0.0


class TestSurgeCurves:
    def test_step_tiers(self):
        curve = StepSurgeCurve(DEFAULT_TIERS, max_surge=3.0)
        assert curve.multiplier(0.0) == 1.0
        assert curve.multiplier(0.99) == 1.0
        assert curve.multiplier(1.0) == 1.2
        assert curve.multiplier(4.0) == 1.8
        assert curve.multiplier(50.0) == 2.5

    def test_linear_is_capped(self):
        curve = LinearSurgeCurve(slope=0.25, max_surge=3.0)
        assert curve.multiplier(1.0) == 1.0
        assert curve.multiplier(3.0) == pytest.approx(1.5)
        assert curve.multiplier(100.0) == 3.0

    @pytest.mark.parametrize(
        "curve",
        [
            StepSurgeCurve([(1.0, 1.2), (2.0, 1.5), (4.0, 1.8), (6.0, 2.5)], max_surge=2.0),
            LinearSurgeCurve(slope=0.4, max_surge=2.5),
            FlatSurge(),
        ],
    )
    def test_monotone_and_bounded(self, curve):
        ratios = [i / 4 for i in range(0, 60)]
        values = [curve.multiplier(r) for r in ratios]
        assert all(b >= a for a, b in zip(values, values[1:]))
        assert all(1.0 <= v <= curve.max_surge for v in values)

    def test_garbage_ratio_means_no_surge(self):
        curve = StepSurgeCurve(DEFAULT_TIERS)
        assert curve.multiplier(-3.0) == 1.0
        assert curve.multiplier(math.nan) == 1.0

    def test_decreasing_tiers_rejected(self):
        with pytest.raises(ValueError):
            StepSurgeCurve([(1.0, 2.0), (2.0, 1.5)])

    def test_unknown_curve_rejected(self):
        with pytest.raises(ValueError):
            build_surge_curve("exponential")

    def test_max_surge_below_one_rejected(self):
        with pytest.raises(ValueError):
            FlatSurge(max_surge=0.5)


class TestPricingEngine:
    def setup_method(self):
        self.engine = _engine()
        self.zone = square_zone()

    def test_demand_ratio_four_surges_to_tier(self):
        # 12 pending, 3 available -> ratio 4 -> 1.8x
        ratio = demand_ratio(12, 3)
        fare = self.engine.quote(self.zone, VehicleClass.ECO, 6.0, 15.0, ratio)
        # clamp(1000 + 500 x 6, 1500, 20000) x 1.8
        assert fare.surge_multiplier == 1.8
        assert fare.base_fare == 4000.0
        assert fare.total == 7200.0
        assert fare.currency == "CDF"

    def test_total_is_reclamped_after_surge(self):
        fare = self.engine.quote(self.zone, VehicleClass.ECO, 25.0, 60.0, 4.0)
        assert fare.base_fare == 13500.0
        assert fare.total == 20000.0

    def test_short_trip_pays_minimum(self):
        fare = self.engine.quote(self.zone, VehicleClass.ECO, 0.5, 1.0, 0.0)
        assert fare.base_fare == 1500.0
        assert fare.total == 1500.0

    def test_zone_multiplier_and_surge_floor(self):
        zone = square_zone(base_price_multiplier=1.5, surge_multiplier=1.3)
        fare = self.engine.quote(zone, VehicleClass.ECO, 2.0, 5.0, 0.0)
        assert fare.base_fare == 3000.0  # (1000 + 1000) x 1.5
        assert fare.surge_multiplier == 1.3
        assert fare.total == 3900.0

    def test_surge_never_exceeds_maximum(self):
        zone = square_zone(surge_multiplier=9.0)
        assert self.engine.surge_for(100.0, zone.surge_multiplier) == 3.0

    def test_fallback_rule_for_unpriced_class(self):
        # fallback: 1500 + 500/km + 50/min, bounds 2000..50000
        fare = self.engine.quote(self.zone, VehicleClass.TRUCK, 10.0, 24.0, 0.0)
        assert fare.base_fare == 7700.0
        assert fare.minimum_fare == 2000.0

    def test_fare_never_decreases_with_demand(self):
        totals = [
            self.engine.quote(self.zone, VehicleClass.ECO, 5.0, 12.0, r / 2).total
            for r in range(0, 20)
        ]
        assert totals == sorted(totals)
        assert all(1500.0 <= t <= 20000.0 for t in totals)

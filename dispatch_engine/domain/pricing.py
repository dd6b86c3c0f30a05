"""
Zone-based Dynamic Pricing Engine  (Strategy Pattern)
=====================================================

Formula
-------
subtotal = (base_price + distance_km x price_per_km
            + duration_min x price_per_minute) x zone.base_price_multiplier
base     = clamp(subtotal, minimum_fare, maximum_fare)
total    = clamp(base x Surge, minimum_fare, maximum_fare)

* **Surge** = clamp(max(curve(demand_ratio), zone.surge_multiplier),
  1.0, max_surge).  The zone's configured multiplier acts as a floor that
  operators can raise for events; the curve is pluggable.
* **demand_ratio** = pending_requests / max(available_drivers, 1)

Every curve must be monotone non-decreasing in the demand ratio; this is
checked when the curve is built.

Complexity: O(1) per quote (O(t) in the number of surge tiers).
"""

from __future__ import annotations

import bisect
import math
from abc import ABC, abstractmethod
from typing import Sequence

from .entities import Fare, PricingRule, ServiceZone
from .enums import VehicleClass
from .zones import pricing_rule_for


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def demand_ratio(pending_requests: int, available_drivers: int) -> float:
    return pending_requests / max(available_drivers, 1)


# ── Surge curves ──────────────────────────────────────────────────────


class SurgeCurve(ABC):
    def __init__(self, max_surge: float = 3.0):
        if max_surge < 1.0:
            raise ValueError("max_surge must be >= 1.0")
        self.max_surge = max_surge

    @abstractmethod
    def raw(self, ratio: float) -> float: ...

    def multiplier(self, ratio: float) -> float:
        if math.isnan(ratio) or ratio < 0:
            ratio = 0.0
        return clamp(self.raw(ratio), 1.0, self.max_surge)


class FlatSurge(SurgeCurve):
    """No demand response at all."""

    def raw(self, ratio: float) -> float:
        return 1.0


class StepSurgeCurve(SurgeCurve):
    """
    Piecewise-constant curve: the multiplier of the highest tier whose
    threshold the ratio has reached (``ratio >= threshold``).
    """

    def __init__(
        self, tiers: Sequence[tuple[float, float]], max_surge: float = 3.0
    ):
        super().__init__(max_surge)
        ordered = sorted((float(t), float(m)) for t, m in tiers)
        multipliers = [m for _, m in ordered]
        if any(b < a for a, b in zip(multipliers, multipliers[1:])):
            raise ValueError("surge tiers must be non-decreasing")
        self.thresholds = [t for t, _ in ordered]
        self.multipliers = multipliers

    def raw(self, ratio: float) -> float:
        idx = bisect.bisect_right(self.thresholds, ratio)
        return self.multipliers[idx - 1] if idx else 1.0


class LinearSurgeCurve(SurgeCurve):
    """``1 + slope x (ratio - threshold)`` above the threshold."""

    def __init__(
        self, slope: float, threshold: float = 1.0, max_surge: float = 3.0
    ):
        super().__init__(max_surge)
        if slope < 0:
            raise ValueError("slope must be non-negative")
        self.slope = slope
        self.threshold = threshold

    def raw(self, ratio: float) -> float:
        return 1.0 + self.slope * max(0.0, ratio - self.threshold)


def build_surge_curve(
    kind: str,
    *,
    tiers: Sequence[tuple[float, float]] = (),
    slope: float = 0.0,
    max_surge: float = 3.0,
) -> SurgeCurve:
    if kind == "step":
        return StepSurgeCurve(tiers, max_surge=max_surge)
    if kind == "linear":
        return LinearSurgeCurve(slope, max_surge=max_surge)
    if kind == "flat":
        return FlatSurge(max_surge=max_surge)
    raise ValueError(f"Unknown surge curve: {kind!r}")


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """High-level API used by the quoting service and the API layer."""

    def __init__(
        self,
        surge_curve: SurgeCurve,
        fallback_rule: PricingRule,
        currency: str = "CDF",
    ):
        self.surge_curve = surge_curve
        self.fallback_rule = fallback_rule
        self.currency = currency

    def surge_for(self, ratio: float, zone_floor: float = 1.0) -> float:
        return clamp(
            max(self.surge_curve.multiplier(ratio), zone_floor),
            1.0,
            self.surge_curve.max_surge,
        )

    def quote(
        self,
        zone: ServiceZone,
        vehicle_class: VehicleClass,
        distance_km: float,
        duration_min: float,
        ratio: float,
    ) -> Fare:
        rule = pricing_rule_for(zone, vehicle_class, self.fallback_rule)
        subtotal = (
            rule.base_price
            + rule.price_per_km * distance_km
            + rule.price_per_minute * duration_min
        ) * zone.base_price_multiplier
        base = clamp(subtotal, rule.minimum_fare, rule.maximum_fare)
        surge = self.surge_for(ratio, zone.surge_multiplier)
        total = clamp(base * surge, rule.minimum_fare, rule.maximum_fare)

        return Fare(
            zone_id=zone.id,
            vehicle_class=vehicle_class,
            distance_km=round(distance_km, 3),
            duration_min=round(duration_min, 1),
            demand_ratio=ratio,
            base_fare=round(base, 2),
            surge_multiplier=surge,
            total=round(total, 2),
            minimum_fare=rule.minimum_fare,
            maximum_fare=rule.maximum_fare,
            currency=self.currency,
        )

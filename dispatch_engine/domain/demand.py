"""
Demand aggregation.

The demand ratio of a (zone, vehicle class) pair is
``pending_requests / max(available_drivers, 1)``.  Snapshots are produced
by a scheduled recomputation job and cached here; readers accept a
snapshot only while it is younger than the configured staleness bound and
otherwise fall back to a live count.
"""

from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .entities import DemandSnapshot, DriverLocation
from .enums import DemandLevel, VehicleClass
from .pricing import demand_ratio

# (upper bound exclusive, level)
_LEVELS: tuple[tuple[float, DemandLevel], ...] = (
    (0.7, DemandLevel.LOW),
    (1.5, DemandLevel.NORMAL),
    (3.0, DemandLevel.HIGH),
)


def demand_level(ratio: float) -> DemandLevel:
    for bound, level in _LEVELS:
        if ratio < bound:
            return level
    return DemandLevel.VERY_HIGH


def build_snapshot(
    zone_id: int,
    vehicle_class: VehicleClass,
    pending: int,
    available: int,
    now: datetime,
) -> DemandSnapshot:
    ratio = demand_ratio(pending, available)
    return DemandSnapshot(
        zone_id=zone_id,
        vehicle_class=vehicle_class,
        pending_requests=pending,
        available_drivers=available,
        demand_ratio=ratio,
        demand_level=demand_level(ratio),
        calculated_at=now,
    )


def count_available(
    drivers: Iterable[DriverLocation],
) -> Counter[tuple[int, VehicleClass]]:
    """Available drivers per (zone, vehicle class); unzoned drivers are skipped."""
    counts: Counter[tuple[int, VehicleClass]] = Counter()
    for loc in drivers:
        if loc.zone_id is None or not loc.is_dispatchable:
            continue
        counts[(loc.zone_id, loc.vehicle_class)] += 1
    return counts


class DemandBoard:
    """Thread-safe cache of the latest snapshot per (zone, vehicle class)."""

    def __init__(self, staleness_bound: timedelta):
        self.staleness_bound = staleness_bound
        self._snapshots: dict[tuple[int, VehicleClass], DemandSnapshot] = {}
        self._lock = threading.Lock()

    def publish(self, snapshots: Iterable[DemandSnapshot]) -> None:
        fresh = {(s.zone_id, s.vehicle_class): s for s in snapshots}
        with self._lock:
            self._snapshots = fresh

    def get(
        self, zone_id: int, vehicle_class: VehicleClass, now: datetime
    ) -> Optional[DemandSnapshot]:
        with self._lock:
            snap = self._snapshots.get((zone_id, vehicle_class))
        if snap and snap.is_fresh(now, self.staleness_bound):
            return snap
        return None

    def all(self) -> list[DemandSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

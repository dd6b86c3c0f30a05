"""
In-process driver location store with an H3 spatial index.

* Pings are pure upserts keyed by ``driver_id``; the greater ``last_ping``
  wins, so out-of-order delivery is harmless.
* Readers get bounded staleness: a location is visible to matching until
  it is older than the staleness window, after which it is skipped and
  eventually evicted by the background sweep.
* A single ``threading.Lock`` guards the maps; critical sections are
  O(1) except range queries, which copy the matching entries out first.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from dispatch_engine.domain.distance import haversine_km
from dispatch_engine.domain.entities import DriverLocation
from dispatch_engine.domain.errors import StaleLocation
from dispatch_engine.domain.matching import cells_within, driver_h3_cell

logger = logging.getLogger(__name__)


class LocationStore:
    def __init__(
        self,
        staleness_window: timedelta,
        resolution: int = 8,
        zone_resolver: Optional[Callable[[float, float], Optional[int]]] = None,
    ):
        self.staleness_window = staleness_window
        self.resolution = resolution
        self.zone_resolver = zone_resolver
        self._locations: dict[str, DriverLocation] = {}
        self._cells: dict[str, str] = {}  # driver_id -> cell
        self._index: dict[str, set[str]] = {}  # cell -> driver_ids
        self._lock = threading.Lock()

    # ── Writes ────────────────────────────────────────────────────

    def upsert(self, location: DriverLocation, now: datetime) -> bool:
        """
        Store *location* unless a newer ping is already held.

        Returns False for an out-of-order ping.  Raises ``StaleLocation``
        when the ping is already older than the staleness window.
        """
        if location.is_stale(now, self.staleness_window):
            raise StaleLocation(
                f"Ping for {location.driver_id} is older than "
                f"{int(self.staleness_window.total_seconds())}s",
                driver_id=location.driver_id,
            )
        if location.zone_id is None and self.zone_resolver is not None:
            location = _with_zone(
                location, self.zone_resolver(location.latitude, location.longitude)
            )

        cell = driver_h3_cell(location.latitude, location.longitude, self.resolution)
        with self._lock:
            current = self._locations.get(location.driver_id)
            if current is not None and current.last_ping > location.last_ping:
                return False
            self._locations[location.driver_id] = location
            previous_cell = self._cells.get(location.driver_id)
            if previous_cell != cell:
                if previous_cell is not None:
                    self._discard(previous_cell, location.driver_id)
                self._index.setdefault(cell, set()).add(location.driver_id)
                self._cells[location.driver_id] = cell
        return True

    def set_availability(self, driver_id: str, is_available: bool) -> None:
        """Flip availability without moving the driver (assignment / completion)."""
        with self._lock:
            current = self._locations.get(driver_id)
            if current is not None:
                self._locations[driver_id] = replace(current, is_available=is_available)

    def remove(self, driver_id: str) -> None:
        with self._lock:
            self._remove_locked(driver_id)

    def evict_stale(self, now: datetime) -> int:
        with self._lock:
            stale = [
                d
                for d, loc in self._locations.items()
                if loc.is_stale(now, self.staleness_window)
            ]
            for driver_id in stale:
                self._remove_locked(driver_id)
        if stale:
            logger.info("Evicted %d stale driver locations", len(stale))
        return len(stale)

    # ── Reads ─────────────────────────────────────────────────────

    def get(self, driver_id: str) -> Optional[DriverLocation]:
        with self._lock:
            return self._locations.get(driver_id)

    def require_fresh(self, driver_id: str, now: datetime) -> DriverLocation:
        loc = self.get(driver_id)
        if loc is None or loc.is_stale(now, self.staleness_window):
            raise StaleLocation(
                f"No fresh location for driver {driver_id}", driver_id=driver_id
            )
        return loc

    def within_radius(
        self, lat: float, lng: float, radius_km: float, now: datetime
    ) -> list[tuple[DriverLocation, float]]:
        """Fresh locations within *radius_km*, paired with their distance."""
        cells = cells_within(lat, lng, radius_km, self.resolution)
        with self._lock:
            entries = [
                self._locations[d]
                for cell in cells
                for d in self._index.get(cell, ())
            ]

        found = []
        for loc in entries:
            if loc.is_stale(now, self.staleness_window):
                continue
            distance = haversine_km(lat, lng, loc.latitude, loc.longitude)
            if distance <= radius_km:
                found.append((loc, distance))
        return found

    def fresh(self, now: datetime) -> list[DriverLocation]:
        with self._lock:
            entries = list(self._locations.values())
        return [l for l in entries if not l.is_stale(now, self.staleness_window)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._locations)

    # ── Internals ─────────────────────────────────────────────────

    def _remove_locked(self, driver_id: str) -> None:
        self._locations.pop(driver_id, None)
        cell = self._cells.pop(driver_id, None)
        if cell is not None:
            self._discard(cell, driver_id)

    def _discard(self, cell: str, driver_id: str) -> None:
        members = self._index.get(cell)
        if members is None:
            return
        members.discard(driver_id)
        if not members:
            del self._index[cell]


def _with_zone(location: DriverLocation, zone_id: Optional[int]) -> DriverLocation:
    return replace(location, zone_id=zone_id)

"""
Nearest-Eligible-Candidate Selection
====================================

1. **Spatial Binning**  -- driver positions are bucketed into H3 hexagons
   (default resolution 8, ~0.74 km²).
2. **Range Query**      -- a search of radius *r* around the pickup scans
   the ``k``-ring of hexagons that fully covers the circle, then filters
   by exact Haversine distance.
3. **Radius Cascade**   -- radii are tried smallest-first (capped at the
   configured maximum); the first radius yielding any eligible driver wins.
4. **Ranking**          -- ascending by (distance, -rating, -quota left).

Complexity
----------
Let D = drivers in the scanned ring, R = radii in the cascade.

* Ring enumeration: O(k²) cells, k = ceil(r / hex edge) + 1
* Filtering:        O(D) Haversine evaluations
* Ranking:          O(D log D)
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

import h3

from .entities import Candidate


def driver_h3_cell(lat: float, lng: float, resolution: int = 8) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(lat, lng, resolution)


def ring_size_for_radius(radius_km: float, resolution: int) -> int:
    """
    A ``k`` whose k-ring covers a circle of *radius_km*.

    The k-ring's inscribed radius is about ``1.5 x k x edge``; stepping by a
    single edge length leaves room for cells smaller than the average.
    """
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    return max(1, math.ceil(radius_km / edge_km) + 1)


def cells_within(lat: float, lng: float, radius_km: float, resolution: int) -> set[str]:
    origin = driver_h3_cell(lat, lng, resolution)
    return set(h3.grid_disk(origin, ring_size_for_radius(radius_km, resolution)))


def radius_cascade(radii: Sequence[float], max_distance_km: float) -> list[float]:
    """Ascending, de-duplicated radii capped at the maximum distance."""
    capped = sorted({min(r, max_distance_km) for r in radii if r > 0})
    if not capped or capped[-1] < max_distance_km:
        capped.append(max_distance_km)
    return capped


def rank_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda c: (c.rank_key, c.driver_id))

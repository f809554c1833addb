"""Point-in-polygon geofencing for task zones.

Containment uses the even-odd (ray casting) rule over the closed ring, with
longitude as x and latitude as y. Points lying exactly on an edge or vertex
count as inside. Degenerate rings (fewer than 3 distinct vertices) and rings
spanning the anti-meridian are unsupported: they fail closed and contain
nothing.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

BOUNDARY_EPSILON = 1e-9


class Polygon:
    """Closed ring of (lat, lon) vertices."""

    __slots__ = ("vertices", "is_degenerate", "crosses_antimeridian")

    def __init__(self, vertices: Sequence[Tuple[float, float]]):
        ring = [(float(lat), float(lon)) for lat, lon in vertices]
        if len(ring) > 1 and ring[0] == ring[-1]:
            ring = ring[:-1]
        self.vertices: Tuple[Tuple[float, float], ...] = tuple(ring)
        self.is_degenerate = len(set(ring)) < 3
        self.crosses_antimeridian = any(
            abs(ring[i][1] - ring[i - 1][1]) > 180.0 for i in range(len(ring))
        )

    @classmethod
    def from_coordinates(cls, coordinates: Optional[Iterable]) -> Optional["Polygon"]:
        """Build a zone from stored coordinates, logging when it is unusable."""
        if coordinates is None:
            return None
        polygon = cls([tuple(pair[:2]) for pair in coordinates])
        if polygon.is_degenerate:
            logger.warning("Zone has %d distinct vertices; treating every point as outside",
                           len(set(polygon.vertices)))
        elif polygon.crosses_antimeridian:
            logger.warning("Zone crosses the anti-meridian, which is unsupported; "
                           "treating every point as outside")
        return polygon

    @property
    def usable(self) -> bool:
        return not (self.is_degenerate or self.crosses_antimeridian)

    def __repr__(self) -> str:
        return f"Polygon({list(self.vertices)!r})"


def _on_segment(x: float, y: float, xi: float, yi: float, xj: float, yj: float) -> bool:
    if not (min(xi, xj) - BOUNDARY_EPSILON <= x <= max(xi, xj) + BOUNDARY_EPSILON):
        return False
    if not (min(yi, yj) - BOUNDARY_EPSILON <= y <= max(yi, yj) + BOUNDARY_EPSILON):
        return False
    cross = (xj - xi) * (y - yi) - (yj - yi) * (x - xi)
    length = max(abs(xj - xi), abs(yj - yi), 1.0)
    return abs(cross) <= BOUNDARY_EPSILON * length


def contains(point: Tuple[float, float], polygon: Optional[Polygon]) -> bool:
    """Return True when the (lat, lon) point lies inside or on the polygon."""
    if polygon is None or not polygon.usable:
        return False

    lat, lon = point
    x, y = lon, lat
    ring = polygon.vertices
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        yi, xi = ring[i]
        yj, xj = ring[j]
        if _on_segment(x, y, xi, yi, xj, yj):
            return True
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside

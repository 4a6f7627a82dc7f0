"""
Great-circle and point-to-polyline distance math.

All internal distances are kilometers (or meters where noted).  Miles are
produced exactly once, at the boundary, through km_to_miles().
"""

import math
from typing import List, Sequence, Tuple

from search_models import Bounds, Coordinate

EARTH_RADIUS_KM = 6371.0088
# Used only for the synthetic-route estimate, which historically worked in miles.
EARTH_RADIUS_MI = 3959.0
MILES_PER_KM = 0.621371


def km_to_miles(km: float) -> float:
    return km * MILES_PER_KM


def miles_to_km(miles: float) -> float:
    return miles / MILES_PER_KM


def _haversine(a: Coordinate, b: Coordinate, radius: float) -> float:
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlmb = math.radians(b.longitude - a.longitude)
    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * radius * math.asin(min(1.0, math.sqrt(s)))


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    return _haversine(a, b, EARTH_RADIUS_KM)


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a, b) * 1000.0


def haversine_miles(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance with the 3959 mi Earth radius."""
    return _haversine(a, b, EARTH_RADIUS_MI)


def polyline_length_km(points: Sequence[Coordinate]) -> float:
    total = 0.0
    for i in range(1, len(points)):
        total += haversine_km(points[i - 1], points[i])
    return total


def nearest_point_on_segment(p: Coordinate, a: Coordinate, b: Coordinate) -> Coordinate:
    """Project *p* onto segment a-b.

    Works in a local equirectangular frame centred on *p*, which is accurate
    to well under a meter at the segment lengths routing providers emit.
    """
    cos_lat = math.cos(math.radians(p.latitude))
    ax = (a.longitude - p.longitude) * cos_lat
    ay = a.latitude - p.latitude
    bx = (b.longitude - p.longitude) * cos_lat
    by = b.latitude - p.latitude

    dx = bx - ax
    dy = by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq == 0.0:
        return a
    # p is the origin of the frame, so the projection parameter is -a.(b-a)/|b-a|^2
    t = -(ax * dx + ay * dy) / seg_len_sq
    t = max(0.0, min(1.0, t))
    return Coordinate(
        a.latitude + t * (b.latitude - a.latitude),
        a.longitude + t * (b.longitude - a.longitude),
    )


def distance_to_segment_km(p: Coordinate, a: Coordinate, b: Coordinate) -> float:
    return haversine_km(p, nearest_point_on_segment(p, a, b))


def distance_to_polyline_km(p: Coordinate, polyline: Sequence[Coordinate]) -> float:
    """Minimum distance from *p* to any segment of *polyline*.

    A single-vertex polyline degrades to point distance.  An empty polyline
    raises ValueError.
    """
    if not polyline:
        raise ValueError("Cannot measure distance to an empty polyline")
    if len(polyline) == 1:
        return haversine_km(p, polyline[0])
    best = math.inf
    for i in range(1, len(polyline)):
        d = distance_to_segment_km(p, polyline[i - 1], polyline[i])
        if d < best:
            best = d
    return best


def bounds_for(points: Sequence[Coordinate]) -> Bounds:
    lats = [p.latitude for p in points]
    lngs = [p.longitude for p in points]
    return Bounds(
        northeast=Coordinate(max(lats), max(lngs)),
        southwest=Coordinate(min(lats), min(lngs)),
    )


def round_coordinate(p: Coordinate, precision: int) -> Tuple[float, float]:
    return (round(p.latitude, precision), round(p.longitude, precision))


def dedupe_consecutive(points: Sequence[Coordinate]) -> List[Coordinate]:
    """Drop consecutive duplicate vertices (zero-length segments)."""
    out: List[Coordinate] = []
    for p in points:
        if not out or p != out[-1]:
            out.append(p)
    return out

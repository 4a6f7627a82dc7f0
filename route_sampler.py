"""Route sampling: reduce a dense route polyline to sparse search points.

Index sampling alone under-samples long straight segments (few vertices)
and over-samples curves (many vertices).  Distance sampling normalizes the
physical spacing.  The union of both is then thinned so that no two search
points sit closer than a minimum separation, which bounds the number of
provider calls per route.
"""

import logging
from typing import List, Sequence

from geo_math import haversine_m
from search_config import SamplingConfig
from search_models import Coordinate

logger = logging.getLogger(__name__)


def sample_indices_by_interval(points: Sequence[Coordinate], interval: int) -> List[int]:
    """Every *interval*-th vertex index, plus the last vertex."""
    if not points:
        return []
    interval = max(1, int(interval))
    indices = list(range(0, len(points), interval))
    if indices[-1] != len(points) - 1:
        indices.append(len(points) - 1)
    return indices


def sample_indices_by_distance(points: Sequence[Coordinate], interval_m: float) -> List[int]:
    """Vertex indices where accumulated travel distance crosses *interval_m*.

    The first and last vertices are always included.
    """
    if not points:
        return []
    indices = [0]
    accumulated = 0.0
    for i in range(1, len(points)):
        accumulated += haversine_m(points[i - 1], points[i])
        if accumulated >= interval_m:
            indices.append(i)
            accumulated = 0.0
    if indices[-1] != len(points) - 1:
        indices.append(len(points) - 1)
    return indices


def drop_close_points(points: Sequence[Coordinate], min_separation_m: float) -> List[Coordinate]:
    """Discard any point within *min_separation_m* of an already accepted one.

    Points are processed in order, so earlier points win.
    """
    accepted: List[Coordinate] = []
    for p in points:
        if any(haversine_m(p, q) < min_separation_m for q in accepted):
            continue
        accepted.append(p)
    return accepted


def thin_evenly(points: Sequence[Coordinate], max_points: int) -> List[Coordinate]:
    """Keep at most *max_points*, evenly spread, first and last retained."""
    n = len(points)
    if max_points <= 0 or n <= max_points:
        return list(points)
    if max_points == 1:
        return [points[0]]
    step = (n - 1) / (max_points - 1)
    picked = sorted({int(round(i * step)) for i in range(max_points)})
    return [points[i] for i in picked]


def sample_route(points: Sequence[Coordinate], config: SamplingConfig) -> List[Coordinate]:
    """Select search points along a decoded route.

    A polyline with fewer than two points is returned unchanged.
    """
    if len(points) < 2:
        return list(points)

    by_index = sample_indices_by_interval(points, config.index_interval)
    by_distance = sample_indices_by_distance(points, config.distance_interval_m)
    merged = [points[i] for i in sorted(set(by_index) | set(by_distance))]

    separated = drop_close_points(merged, config.min_separation_m)
    samples = thin_evenly(separated, config.max_sample_points)

    logger.info(
        "Route sampler: %d vertices -> %d index + %d distance -> %d separated -> %d samples",
        len(points), len(by_index), len(by_distance), len(separated), len(samples),
    )
    return samples

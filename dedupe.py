"""
Candidate deduplication.

Two stages, both stable (first occurrence wins):

1. Place id: the same (provider, place_id) seen from several sample points
   or keyword queries collapses to one entry.
2. Spatial: candidates are hashed into cells by rounded coordinate.  A
   candidate is a duplicate of an entry already kept in its cell when
   either of them has no place id, or they come from different providers
   (the same building reported by Google and by OSM).  Two distinct ids
   from the same provider in one cell are both kept: a complex can hold
   several listed buildings.

Each decision only looks at entries already kept, so running dedupe() on
its own output changes nothing.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from geo_math import haversine_m, round_coordinate
from search_models import Candidate, Coordinate, RawPlaceResult

logger = logging.getLogger(__name__)


def geohash_key(coordinate: Coordinate, precision: int) -> str:
    """Rounded 'lat:lng' cell key (precision = decimal places)."""
    lat, lng = round_coordinate(coordinate, precision)
    return f"{lat:.{precision}f}:{lng:.{precision}f}"


def candidate_key(result: RawPlaceResult, precision: int) -> str:
    if result.place_id:
        return f"{result.provider}:{result.place_id}"
    return geohash_key(result.coordinate, precision)


def _is_duplicate(candidate: Candidate, kept: Candidate) -> bool:
    if not candidate.place_id or not kept.place_id:
        return True
    return candidate.provider != kept.provider


def dedupe_by_place_id(candidates: Iterable[Candidate]) -> List[Candidate]:
    seen = set()
    out = []
    for c in candidates:
        if c.place_id:
            key: Tuple[str, str] = (c.provider, c.place_id)
            if key in seen:
                continue
            seen.add(key)
        out.append(c)
    return out


def dedupe_spatial(candidates: Iterable[Candidate], precision: int) -> List[Candidate]:
    cells: Dict[str, List[Candidate]] = {}
    out = []
    for c in candidates:
        cell = geohash_key(c.coordinate, precision)
        kept_in_cell = cells.setdefault(cell, [])
        if any(_is_duplicate(c, kept) for kept in kept_in_cell):
            continue
        kept_in_cell.append(c)
        out.append(c)
    return out


def dedupe_nearby(batch: Sequence[Candidate], min_separation_m: float) -> List[Candidate]:
    """Pairwise variant for one sample point's batch (tens of items)."""
    out: List[Candidate] = []
    for c in batch:
        if any(
            _is_duplicate(c, kept) and haversine_m(c.coordinate, kept.coordinate) < min_separation_m
            for kept in out
        ):
            continue
        out.append(c)
    return out


def dedupe(candidates: Iterable[Candidate], precision: int = 4,
           label: Optional[str] = None) -> List[Candidate]:
    """Place-id stage, then spatial stage."""
    candidates = list(candidates)
    by_id = dedupe_by_place_id(candidates)
    result = dedupe_spatial(by_id, precision)
    if label:
        logger.info(
            "Dedupe %s: %d -> %d by place id -> %d spatial",
            label, len(candidates), len(by_id), len(result),
        )
    return result

"""Tests for route_sampler.py."""

from geo_math import haversine_m
from route_sampler import (
    drop_close_points,
    sample_indices_by_distance,
    sample_indices_by_interval,
    sample_route,
    thin_evenly,
)
from search_config import SamplingConfig
from search_models import Coordinate


def _line(n, step_deg=0.001, lat=29.7):
    """n vertices heading east, ~97 m apart at this latitude."""
    return [Coordinate(lat, -95.4 + i * step_deg) for i in range(n)]


class TestIndexSampling:
    def test_every_nth_plus_last(self):
        assert sample_indices_by_interval(_line(12), 5) == [0, 5, 10, 11]

    def test_last_not_duplicated(self):
        assert sample_indices_by_interval(_line(11), 5) == [0, 5, 10]

    def test_empty(self):
        assert sample_indices_by_interval([], 5) == []


class TestDistanceSampling:
    def test_emits_when_interval_crossed(self):
        points = _line(10)  # ~97 m per segment
        indices = sample_indices_by_distance(points, 300)
        assert indices[0] == 0
        assert indices[-1] == 9
        assert 4 in indices  # 4 segments is the first crossing of 300 m

    def test_sparse_long_segments_all_kept(self):
        points = _line(4, step_deg=0.01)  # ~970 m per segment
        assert sample_indices_by_distance(points, 300) == [0, 1, 2, 3]


class TestSeparation:
    def test_earlier_point_wins(self):
        a = Coordinate(29.7, -95.4)
        b = Coordinate(29.7, -95.3999)  # ~10 m east
        c = Coordinate(29.7, -95.39)
        assert drop_close_points([a, b, c], 200) == [a, c]

    def test_thin_keeps_ends(self):
        points = _line(10)
        thinned = thin_evenly(points, 3)
        assert len(thinned) == 3
        assert thinned[0] == points[0]
        assert thinned[-1] == points[9]
        assert len(thin_evenly(points, 20)) == 10


class TestSampleRoute:
    def test_short_route_unchanged(self):
        p = [Coordinate(1, 1)]
        assert sample_route(p, SamplingConfig()) == p
        assert sample_route([], SamplingConfig()) == []

    def test_respects_separation_and_cap(self):
        config = SamplingConfig(index_interval=5, distance_interval_m=300, min_separation_m=200,
                                max_sample_points=6)
        samples = sample_route(_line(200), config)
        assert 2 <= len(samples) <= 6
        for i, p in enumerate(samples):
            for q in samples[i + 1:]:
                assert haversine_m(p, q) >= 200

    def test_preserves_route_order(self):
        samples = sample_route(_line(60), SamplingConfig(max_sample_points=100))
        lngs = [p.longitude for p in samples]
        assert lngs == sorted(lngs)
        assert samples[0] == _line(60)[0]

"""
Property-Based Tests for the Geolocation Utility

Tests universal properties of distance and radius filtering.
"""

import math

import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.strategies import composite

from guardline.services.location.geo import (
    EARTH_RADIUS_M, distance_meters, nearest_first, within
)


latitudes = st.floats(min_value=-90.0, max_value=90.0, allow_nan=False, allow_infinity=False)
longitudes = st.floats(min_value=-180.0, max_value=180.0, allow_nan=False, allow_infinity=False)


@composite
def coordinate_strategy(draw):
    """Generate valid (lat, lng) pairs"""
    return (draw(latitudes), draw(longitudes))


class TestDistanceProperties:

    def test_one_degree_of_longitude_at_equator(self):
        assert distance_meters(0.0, 0.0, 0.0, 1.0) == pytest.approx(111195, abs=50)

    @settings(max_examples=200)
    @given(coordinate_strategy())
    def test_distance_to_self_is_zero(self, point):
        assert distance_meters(point[0], point[1], point[0], point[1]) == pytest.approx(0.0, abs=1e-6)

    @settings(max_examples=200)
    @given(coordinate_strategy(), coordinate_strategy())
    def test_symmetric_and_bounded(self, a, b):
        forward = distance_meters(a[0], a[1], b[0], b[1])
        backward = distance_meters(b[0], b[1], a[0], a[1])

        assert forward == pytest.approx(backward, rel=1e-9, abs=1e-6)
        assert 0.0 <= forward <= math.pi * EARTH_RADIUS_M + 1e-6

    @settings(max_examples=100)
    @given(coordinate_strategy(), coordinate_strategy(), coordinate_strategy())
    def test_triangle_inequality(self, a, b, c):
        ab = distance_meters(a[0], a[1], b[0], b[1])
        bc = distance_meters(b[0], b[1], c[0], c[1])
        ac = distance_meters(a[0], a[1], c[0], c[1])

        # asin loses precision near antipodal points
        assert ac <= ab + bc + 1.0


class TestRadiusProperties:

    @settings(max_examples=100)
    @given(coordinate_strategy(), st.lists(coordinate_strategy(), max_size=20),
           st.floats(min_value=0.0, max_value=2.1e7, allow_nan=False))
    def test_within_keeps_order_and_only_close_points(self, center, points, radius):
        kept = within(radius, center, points)

        expected = [p for p in points if distance_meters(center[0], center[1], p[0], p[1]) <= radius]
        assert kept == expected

    @settings(max_examples=100)
    @given(coordinate_strategy(), st.lists(coordinate_strategy(), max_size=20))
    def test_nearest_first_is_sorted_permutation(self, center, points):
        ordered = nearest_first(center, points)
        distances = [distance_meters(center[0], center[1], p[0], p[1]) for p in ordered]

        assert sorted(ordered) == sorted(points)
        assert distances == sorted(distances)

    def test_nearest_first_is_stable(self):
        center = (0.0, 0.0)
        east, west = (0.0, 0.5), (0.0, -0.5)

        assert nearest_first(center, [east, west]) == [east, west]
        assert nearest_first(center, [west, east]) == [west, east]

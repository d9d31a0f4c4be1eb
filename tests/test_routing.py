"""
Tests for crew routing helpers.

Run with: pytest tests/test_routing.py -v
"""

import pytest

from geo import haversine_distance
from routing import TravelLeg, calculate_route_time, estimate_travel, nearest_crews


def _fixed_legs(*legs):
    """travel_fn returning the given legs in order."""
    queue = list(legs)

    def travel(origin, destination):
        return queue.pop(0)

    return travel


def _by_latitude(origin, destination):
    """One mile per 0.01 degree of latitude difference, two minutes per mile."""
    miles = abs(origin[0] - destination[0]) * 100
    return TravelLeg(distance_miles=miles, minutes=miles * 2)


class TestEstimateTravel:
    """Tests for road distance and drive time estimates."""

    def test_applies_road_factor_and_speed(self):
        origin, destination = (30.0, -97.0), (31.0, -97.0)
        straight = haversine_distance(30.0, -97.0, 31.0, -97.0)

        leg = estimate_travel(origin, destination)

        assert leg.distance_miles == pytest.approx(straight * 1.3)
        assert leg.minutes == pytest.approx(straight * 1.3 / 35 * 60)

    def test_same_point(self):
        leg = estimate_travel((30.0, -97.0), (30.0, -97.0))
        assert leg.distance_miles == 0
        assert leg.minutes == 0


class TestCalculateRouteTime:
    """Tests for route totals."""

    def test_fewer_than_two_stops(self):
        route = calculate_route_time([(30.0, -97.0)])
        assert route.total_distance_miles == 0
        assert route.total_minutes == 0
        assert route.legs == []

    def test_sums_legs_and_rounds(self):
        route = calculate_route_time(
            [(0, 0), (1, 1), (2, 2)],
            travel_fn=_fixed_legs(TravelLeg(10.0, 12.25), TravelLeg(5.06, 8.25)),
        )
        assert route.total_distance_miles == pytest.approx(15.1)
        assert route.total_minutes == 21
        assert len(route.legs) == 2

    def test_half_minute_rounds_up(self):
        route = calculate_route_time(
            [(0, 0), (1, 1)],
            travel_fn=_fixed_legs(TravelLeg(1.0, 10.5)),
        )
        assert route.total_minutes == 11


class TestNearestCrews:
    """Tests for crew distance ordering."""

    CREWS = [
        {"id": "far", "home_latitude": 30.30, "home_longitude": -97.0},
        {"id": "near", "home_latitude": 30.05, "home_longitude": -97.0},
        {"id": "nowhere", "home_latitude": None, "home_longitude": None},
        {"id": "mid", "home_latitude": 30.10, "home_longitude": -97.0},
    ]

    def test_sorted_by_distance(self):
        results = nearest_crews(30.0, -97.0, self.CREWS, travel_fn=_by_latitude)
        assert [r.crew["id"] for r in results] == ["near", "mid", "far"]

    def test_skips_crews_without_home(self):
        results = nearest_crews(30.0, -97.0, self.CREWS, travel_fn=_by_latitude)
        assert "nowhere" not in [r.crew["id"] for r in results]

    def test_limit(self):
        results = nearest_crews(30.0, -97.0, self.CREWS, limit=2, travel_fn=_by_latitude)
        assert len(results) == 2

    def test_rounded_distance_and_minutes(self):
        results = nearest_crews(30.0, -97.0, self.CREWS, travel_fn=_by_latitude)
        near = results[0]
        assert near.distance_miles == pytest.approx(5.0)
        assert near.travel_minutes == 10

    def test_default_travel_estimate(self):
        results = nearest_crews(30.0, -97.0, self.CREWS[:2])
        assert results[0].crew["id"] == "near"
        assert results[0].travel_minutes > 0

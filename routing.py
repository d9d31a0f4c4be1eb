"""
Crew routing helpers: nearest crews to a job site and route time estimates.

Distances are straight-line (haversine) miles scaled by a road factor;
travel time assumes a flat average speed. Both come from config.
"""

from dataclasses import dataclass, field
from typing import Callable

from geo import coordinates_of, haversine_distance
from utils import get_routing_config, round_half_up

Point = tuple[float, float]


@dataclass
class TravelLeg:
    distance_miles: float
    minutes: float


@dataclass
class RouteTime:
    total_distance_miles: float = 0.0
    total_minutes: int = 0
    legs: list[TravelLeg] = field(default_factory=list)


@dataclass
class CrewDistance:
    crew: dict
    distance_miles: float
    travel_minutes: int


def estimate_travel(origin: Point, destination: Point) -> TravelLeg:
    """Estimated road distance and drive time between two points."""
    config = get_routing_config()
    road_factor = config.get("road_factor", 1.3)
    speed = config.get("average_speed_mph", 35)
    per_stop = config.get("minutes_per_stop", 0)

    distance = haversine_distance(origin[0], origin[1], destination[0], destination[1]) * road_factor
    minutes = distance / speed * 60 + per_stop if speed > 0 else 0.0
    return TravelLeg(distance_miles=distance, minutes=minutes)


def calculate_route_time(
    stops: list[Point],
    travel_fn: Callable[[Point, Point], TravelLeg] = estimate_travel,
) -> RouteTime:
    """
    Total distance and time for visiting stops in order.

    Totals are the sum of the legs between consecutive stops, with distance
    rounded to one decimal and minutes to the nearest whole minute. Fewer
    than two stops means no travel.
    """
    if len(stops) < 2:
        return RouteTime()

    legs = [travel_fn(a, b) for a, b in zip(stops, stops[1:])]
    distance = sum(leg.distance_miles for leg in legs)
    minutes = sum(leg.minutes for leg in legs)
    return RouteTime(
        total_distance_miles=round_half_up(distance, 1),
        total_minutes=int(round_half_up(minutes)),
        legs=legs,
    )


def nearest_crews(
    lat: float,
    lng: float,
    crews: list[dict],
    limit: int | None = 5,
    travel_fn: Callable[[Point, Point], TravelLeg] = estimate_travel,
) -> list[CrewDistance]:
    """
    Crews ordered by distance from a job site.

    Crews without home coordinates are left out. Each result carries the
    road-estimate distance (rounded to 0.1 mi) and drive minutes.
    """
    measured = []
    for crew in crews:
        home = coordinates_of(crew)
        if home is None:
            continue
        measured.append((travel_fn(home, (lat, lng)), crew))

    measured.sort(key=lambda pair: pair[0].distance_miles)
    if limit:
        measured = measured[:limit]

    return [
        CrewDistance(
            crew=crew,
            distance_miles=round_half_up(leg.distance_miles, 1),
            travel_minutes=int(round_half_up(leg.minutes)),
        )
        for leg, crew in measured
    ]

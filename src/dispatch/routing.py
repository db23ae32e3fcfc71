"""
Route optimization module.

This module provides heuristic route construction for a single driver:
- Nearest-neighbor ordering (greedy, O(n^2))
- Time-bucketed ordering (morning / afternoon / evening, nearest-neighbor inside each)
- Cheapest single-stop insertion into an existing route
- Stop removal, resequencing and sequence validation
- Route metrics derived from per-leg distances

Travel times are straight-line estimates: Haversine distance at an average
urban speed with a traffic multiplier. No road network is consulted.
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from .geo import distance
from .models import Algorithm, Coordinates, OptimizedRoute, RouteMetrics, RouteStop, SequenceValidation
from .utils import to_millis, utcnow

AVERAGE_SPEED_KMH = 40.0
TRAFFIC_FACTOR = 1.2
SERVICE_TIME = timedelta(minutes=10)

# Bucket boundaries (hour of the desired arrival)
MORNING_END_HOUR = 12
AFTERNOON_END_HOUR = 17


def calculate_travel_time(start_loc: Coordinates, end_loc: Coordinates) -> timedelta:
    """
    Estimated driving time between two points.

    Uses Haversine distance at 40 km/h, multiplied by a 1.2 traffic factor.
    """
    hours = distance(start_loc, end_loc) / AVERAGE_SPEED_KMH * TRAFFIC_FACTOR
    return timedelta(hours=hours)


def estimate_eta(current: Coordinates, destination: Coordinates, departure: datetime) -> datetime:
    return departure + calculate_travel_time(current, destination)


# --- Route Construction ---

def nearest_neighbor(stops: Sequence[RouteStop], start: Coordinates) -> List[RouteStop]:
    """
    Orders stops by repeatedly visiting the closest unvisited one.

    Ties go to the stop that appears first in the input. Returned stops are
    copies carrying sequence 1..n and the distance of the leg that reaches
    them.

    Args:
        stops: Stops to order. Not modified.
        start: Position the driver departs from.

    Returns:
        The ordered stops; empty for empty input.
    """
    remaining = list(range(len(stops)))
    ordered: List[RouteStop] = []
    current = start

    while remaining:
        nearest_index, nearest_distance = remaining[0], math.inf
        for index in remaining:
            d = distance(current, stops[index].coordinates)
            if d < nearest_distance:
                nearest_index, nearest_distance = index, d

        stop = stops[nearest_index]
        ordered.append(stop.model_copy(update={
            'sequence': len(ordered) + 1,
            'leg_distance_km': nearest_distance,
        }))
        current = stop.coordinates
        remaining.remove(nearest_index)

    return ordered


def _time_bucket(stop: RouteStop) -> int:
    """0 = morning, 1 = afternoon, 2 = evening. Unscheduled stops count as afternoon."""
    if stop.desired_arrival is None:
        return 1
    hour = stop.desired_arrival.hour
    if hour < MORNING_END_HOUR:
        return 0
    if hour < AFTERNOON_END_HOUR:
        return 1
    return 2


def _urgency_key(stop: RouteStop) -> Tuple[bool, int]:
    if stop.desired_arrival is None:
        return (True, 0)
    return (False, to_millis(stop.desired_arrival))


def time_window_optimization(
    stops: Sequence[RouteStop],
    start: Coordinates,
    now: datetime,
) -> List[RouteStop]:
    """
    Orders stops by time-of-day bucket, then by proximity inside each bucket.

    Buckets are processed morning, afternoon, evening. Inside a bucket the
    nearest-neighbor heuristic runs from wherever the previous bucket ended.
    Each stop's estimated arrival is the running clock plus travel time; the
    clock then advances by a flat 10-minute service time.

    Args:
        stops: Stops to order, optionally carrying desired_arrival.
        start: Position the driver departs from.
        now: Departure time.

    Returns:
        The ordered stops with sequence, leg_distance_km and estimated_arrival set.
    """
    buckets: List[List[RouteStop]] = [[], [], []]
    for stop in sorted(stops, key=_urgency_key):
        buckets[_time_bucket(stop)].append(stop)

    optimized: List[RouteStop] = []
    current = start
    clock = now

    for bucket in buckets:
        for stop in nearest_neighbor(bucket, current):
            leg = distance(current, stop.coordinates)
            arrival = clock + calculate_travel_time(current, stop.coordinates)
            optimized.append(stop.model_copy(update={
                'sequence': len(optimized) + 1,
                'leg_distance_km': leg,
                'estimated_arrival': arrival,
            }))
            current = stop.coordinates
            clock = arrival + SERVICE_TIME

    return optimized


def optimize_route(
    stops: Sequence[RouteStop],
    start: Coordinates,
    algorithm: Algorithm = Algorithm.NEAREST_NEIGHBOR,
    now: Optional[datetime] = None,
) -> OptimizedRoute:
    """Runs the chosen heuristic and attaches the resulting metrics."""
    if algorithm == Algorithm.NEAREST_NEIGHBOR:
        ordered = nearest_neighbor(stops, start)
    else:
        ordered = time_window_optimization(stops, start, now or utcnow())
    return OptimizedRoute(stops=ordered, metrics=calculate_route_metrics(ordered))


# --- Route Editing ---

def resequence_stops(stops: Sequence[RouteStop]) -> List[RouteStop]:
    """Renumbers stops 1..n in their current order."""
    return [stop.model_copy(update={'sequence': i + 1}) for i, stop in enumerate(stops)]


def relink_stops(stops: Sequence[RouteStop], start: Coordinates) -> List[RouteStop]:
    """Renumbers stops 1..n and recomputes every leg distance from start onward."""
    relinked = []
    previous = start
    for i, stop in enumerate(stops):
        relinked.append(stop.model_copy(update={
            'sequence': i + 1,
            'leg_distance_km': distance(previous, stop.coordinates),
        }))
        previous = stop.coordinates
    return relinked


def insertion_cost(
    existing: Sequence[RouteStop],
    new_stop: RouteStop,
    start: Coordinates,
    position: int,
) -> float:
    """
    Extra distance caused by placing new_stop before existing[position].

    Position 0 uses start as the previous point; position len(existing)
    appends, which displaces no leg.
    """
    previous = start if position == 0 else existing[position - 1].coordinates
    added = distance(previous, new_stop.coordinates)
    if position < len(existing):
        following = existing[position].coordinates
        added += distance(new_stop.coordinates, following) - distance(previous, following)
    return added


def insert_stop(
    existing: Sequence[RouteStop],
    new_stop: RouteStop,
    start: Coordinates,
) -> List[RouteStop]:
    """
    Inserts a stop where it adds the least distance.

    Every position 0..n is evaluated; the lowest index wins ties. The result
    is renumbered 1..n+1 and its leg distances are re-derived.
    """
    best_position, best_cost = 0, math.inf
    for position in range(len(existing) + 1):
        cost = insertion_cost(existing, new_stop, start, position)
        if cost < best_cost:
            best_position, best_cost = position, cost

    stops = list(existing)
    stops.insert(best_position, new_stop)
    return relink_stops(stops, start)


def remove_stop(
    stops: Sequence[RouteStop],
    stop_id: str,
    start: Optional[Coordinates] = None,
) -> List[RouteStop]:
    """
    Drops a stop and closes the gap in the sequence.

    When start is given, leg distances are re-derived as well so the stop
    after the removed one reflects its new predecessor.
    """
    remaining = [stop for stop in stops if stop.id != stop_id]
    if start is not None:
        return relink_stops(remaining, start)
    return resequence_stops(remaining)


# --- Metrics & Validation ---

def calculate_route_metrics(stops: Sequence[RouteStop]) -> RouteMetrics:
    """
    Aggregates distance and duration for an ordered route.

    Total distance sums the leg distances already attached to the stops.
    Duration is driving time at 40 km/h plus 10 minutes per stop, rounded up.
    """
    total_distance_km = sum(stop.leg_distance_km or 0.0 for stop in stops)
    driving_minutes = total_distance_km / AVERAGE_SPEED_KMH * 60
    service_minutes = len(stops) * SERVICE_TIME.total_seconds() / 60

    return RouteMetrics(
        total_distance_km=round(total_distance_km, 1),
        estimated_duration_min=math.ceil(driving_minutes + service_minutes),
        stops_total=len(stops),
    )


def validate_stop_sequence(stops: Sequence[RouteStop]) -> SequenceValidation:
    """A sequence is legal only when it is exactly a permutation of 1..n."""
    errors = []
    sequences = [stop.sequence for stop in stops]

    if len(sequences) != len(set(sequences)):
        errors.append("Duplicate sequence numbers found")

    present = set(sequences)
    for expected in range(1, len(stops) + 1):
        if expected not in present:
            errors.append(f"Missing sequence number: {expected}")

    return SequenceValidation(valid=not errors, errors=errors)

"""
Geospatial primitives for dispatch.

Provides:
- Great-circle (Haversine) distance between coordinates
- Geohash encoding, decoding, bounds and neighbor lookup
- Centroid, radius containment and nearest-point helpers

Distances are straight-line estimates on a spherical Earth; nothing here
knows about roads.
"""

import math
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .errors import GeoError
from .models import Coordinates, GeohashBounds, LocationCheck

EARTH_RADIUS_KM = 6371.0
DEFAULT_GEOFENCE_RADIUS_M = 100.0

BASE32 = '0123456789bcdefghjkmnpqrstuvwxyz'
_BASE32_INDEX = {char: i for i, char in enumerate(BASE32)}

# Approximate cell error (meters) per geohash length
_PRECISION_ERRORS_M = [
    (1, 5_000_000),
    (2, 625_000),
    (3, 78_000),
    (4, 20_000),
    (5, 2_400),
    (6, 610),
    (7, 76),
    (8, 19),
    (9, 2.4),
    (10, 0.6),
]

T = TypeVar('T')


class Direction(str, Enum):
    NORTH = 'north'
    EAST = 'east'
    SOUTH = 'south'
    WEST = 'west'


# Keyed by (direction, parity) where parity is len(hash) % 2 (0 = even).
_NEIGHBOR_TABLE: Dict[Tuple[Direction, int], str] = {
    (Direction.NORTH, 0): 'p0r21436x8zb9dcf5h7kjnmqesgutwvy',
    (Direction.EAST, 0): 'bc01fg45238967deuvhjyznpkmstqrwx',
    (Direction.SOUTH, 0): '14365h7k9dcfesgujnmqp0r2twvyx8zb',
    (Direction.WEST, 0): '238967debc01fg45kmstqrwxuvhjyznp',
    (Direction.NORTH, 1): 'bc01fg45238967deuvhjyznpkmstqrwx',
    (Direction.EAST, 1): 'p0r21436x8zb9dcf5h7kjnmqesgutwvy',
    (Direction.SOUTH, 1): '238967debc01fg45kmstqrwxuvhjyznp',
    (Direction.WEST, 1): '14365h7k9dcfesgujnmqp0r2twvyx8zb',
}

_BORDER_TABLE: Dict[Tuple[Direction, int], str] = {
    (Direction.NORTH, 0): 'prxz',
    (Direction.EAST, 0): 'bcfguvyz',
    (Direction.SOUTH, 0): '028b',
    (Direction.WEST, 0): '0145hjnp',
    (Direction.NORTH, 1): 'bcfguvyz',
    (Direction.EAST, 1): 'prxz',
    (Direction.SOUTH, 1): '0145hjnp',
    (Direction.WEST, 1): '028b',
}

assert set(_NEIGHBOR_TABLE) == set(_BORDER_TABLE) == {(d, p) for d in Direction for p in (0, 1)}


# --- Distance ---

def distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points in kilometers."""
    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def is_within_radius(point: Coordinates, center: Coordinates, radius_km: float) -> bool:
    return distance(point, center) <= radius_km


def route_distance(points: Sequence[Coordinates], include_return: bool = False) -> float:
    """Sum of consecutive leg distances, optionally closing the loop back to the first point."""
    if len(points) < 2:
        return 0.0
    total = sum(distance(points[i], points[i + 1]) for i in range(len(points) - 1))
    if include_return:
        total += distance(points[-1], points[0])
    return total


def centroid(points: Iterable[Coordinates]) -> Coordinates:
    """
    Arithmetic mean of latitudes and longitudes.

    Raises:
        GeoError: If no points are given.
    """
    points = list(points)
    if not points:
        raise GeoError("Cannot calculate centroid of an empty point set")
    return Coordinates(
        lat=sum(p.lat for p in points) / len(points),
        lng=sum(p.lng for p in points) / len(points),
    )


def _coordinates_of(item) -> Coordinates:
    return item.coordinates


def find_nearest(
    origin: Coordinates,
    candidates: Sequence[T],
    key: Callable[[T], Coordinates] = _coordinates_of,
) -> Optional[Tuple[T, float]]:
    """Returns (candidate, distance_km) closest to origin, the first one on ties, or None."""
    nearest = None
    for candidate in candidates:
        d = distance(origin, key(candidate))
        if nearest is None or d < nearest[1]:
            nearest = (candidate, d)
    return nearest


def sort_by_distance(
    origin: Coordinates,
    items: Sequence[T],
    key: Callable[[T], Coordinates] = _coordinates_of,
) -> List[Tuple[T, float]]:
    """Pairs each item with its distance from origin, closest first (stable on ties)."""
    return sorted(((item, distance(origin, key(item))) for item in items), key=lambda pair: pair[1])


def check_location(
    actual: Coordinates,
    expected: Coordinates,
    radius_m: float = DEFAULT_GEOFENCE_RADIUS_M,
) -> LocationCheck:
    """Compares a reported position against the expected one using a circular geofence."""
    distance_m = distance(actual, expected) * 1000
    if distance_m > radius_m:
        return LocationCheck(
            valid=False,
            distance_m=distance_m,
            error=f"Location is {round(distance_m)}m away from expected location (max: {radius_m:g}m)",
        )
    return LocationCheck(valid=True, distance_m=distance_m)


# --- Geohash ---

def encode_geohash(lat: float, lng: float, precision: int = 9) -> str:
    """
    Encodes a point as a geohash of the given length.

    Bits alternate longitude/latitude starting with longitude; every 5 bits
    become one base-32 character.

    Raises:
        GeoError: If the coordinates are out of range or precision < 1.
    """
    if not -90 <= lat <= 90:
        raise GeoError("Latitude must be between -90 and 90")
    if not -180 <= lng <= 180:
        raise GeoError("Longitude must be between -180 and 180")
    if precision < 1:
        raise GeoError("Geohash precision must be at least 1")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    index = 0
    bit = 0
    even_bit = True

    while len(chars) < precision:
        value, bounds = (lng, lng_range) if even_bit else (lat, lat_range)
        mid = (bounds[0] + bounds[1]) / 2
        if value > mid:
            index = (index << 1) + 1
            bounds[0] = mid
        else:
            index = index << 1
            bounds[1] = mid
        even_bit = not even_bit

        bit += 1
        if bit == 5:
            chars.append(BASE32[index])
            bit = 0
            index = 0

    return ''.join(chars)


def geohash_bounds(geohash: str) -> GeohashBounds:
    """
    Bounding box of a geohash cell.

    Raises:
        GeoError: If the hash is empty or contains characters outside the alphabet.
    """
    if not geohash:
        raise GeoError("Invalid geohash: empty string")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    even_bit = True

    for char in geohash:
        index = _BASE32_INDEX.get(char)
        if index is None:
            raise GeoError(f"Invalid character in geohash: {char!r}")
        for n in range(4, -1, -1):
            bounds = lng_range if even_bit else lat_range
            mid = (bounds[0] + bounds[1]) / 2
            if (index >> n) & 1:
                bounds[0] = mid
            else:
                bounds[1] = mid
            even_bit = not even_bit

    return GeohashBounds(
        min_lat=lat_range[0],
        max_lat=lat_range[1],
        min_lng=lng_range[0],
        max_lng=lng_range[1],
    )


def decode_geohash(geohash: str) -> Coordinates:
    """Center point of a geohash cell. Raises GeoError on malformed input."""
    bounds = geohash_bounds(geohash)
    return Coordinates(
        lat=(bounds.min_lat + bounds.max_lat) / 2,
        lng=(bounds.min_lng + bounds.max_lng) / 2,
    )


def is_valid_geohash(geohash: str) -> bool:
    return bool(geohash) and all(char in _BASE32_INDEX for char in geohash)


def precision_for_error(error_meters: float) -> int:
    """Shortest geohash length whose cell error does not exceed error_meters."""
    for length, error in _PRECISION_ERRORS_M:
        if error <= error_meters:
            return length
    return _PRECISION_ERRORS_M[-1][0]


class _NoNeighbor(Exception):
    """Raised internally when a step would cross a pole."""


def _adjacent(geohash: str, direction: Direction) -> str:
    last_char = geohash[-1]
    parent = geohash[:-1]
    parity = len(geohash) % 2

    if last_char in _BORDER_TABLE[(direction, parity)]:
        if parent:
            parent = _adjacent(parent, direction)
        elif direction in (Direction.NORTH, Direction.SOUTH):
            raise _NoNeighbor(geohash)
        # East/west at the top level wraps around the antimeridian

    neighbor_chars = _NEIGHBOR_TABLE[(direction, parity)]
    return parent + BASE32[neighbor_chars.index(last_char)]


def adjacent(geohash: str, direction: Direction) -> Optional[str]:
    """
    The same-size cell next to geohash in the given direction, or None past a pole.

    Raises:
        GeoError: If the hash is malformed.
    """
    if not is_valid_geohash(geohash):
        raise GeoError(f"Invalid geohash: {geohash!r}")
    try:
        return _adjacent(geohash, direction)
    except _NoNeighbor:
        return None


def get_neighbors(geohash: str) -> List[str]:
    """
    Up to 8 surrounding cells in the order N, E, S, W, NE, SE, SW, NW.

    Cells that don't exist (beyond a pole) are left out.
    """
    if not is_valid_geohash(geohash):
        raise GeoError(f"Invalid geohash: {geohash!r}")

    cardinal = {d: adjacent(geohash, d) for d in Direction}
    neighbors = [cardinal[d] for d in Direction if cardinal[d] is not None]

    diagonals = [
        (Direction.NORTH, Direction.EAST),
        (Direction.SOUTH, Direction.EAST),
        (Direction.SOUTH, Direction.WEST),
        (Direction.NORTH, Direction.WEST),
    ]
    for vertical, horizontal in diagonals:
        step = cardinal[vertical]
        if step is None:
            continue
        diagonal = adjacent(step, horizontal)
        if diagonal is not None:
            neighbors.append(diagonal)

    return neighbors

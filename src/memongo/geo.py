"""Geometry helpers for the geospatial query operators.

Coordinates are ``(x, y)`` pairs, ``x`` being the longitude when the data is
geographic. Planar distance is euclidean in coordinate units; spherical
distance is the great-circle angle in radians.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from memongo.errors import QueryCompilationError
from memongo.paths import get_embedded_values

EARTH_RADIUS = 6374892.5  # meters

GEOHASH_PRECISION = 5

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

PLANAR = "planar"
SPHERICAL = "spherical"
METERS = "meters"
DISTANCE_MODES = (PLANAR, SPHERICAL, METERS)


class Point(NamedTuple):
    x: float
    y: float


BBox = tuple[float, float, float, float]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_point(value: Any) -> Point | None:
    """Read a coordinate pair from a stored value.

    Accepts ``[x, y]``, a GeoJSON Point (a Polygon yields its first vertex),
    and documents keyed ``lng/lat``, ``x/y`` or ``longitude/latitude``.
    Returns None when the value holds no coordinates.
    """
    if isinstance(value, (list, tuple)):
        if len(value) == 2 and _is_number(value[0]) and _is_number(value[1]):
            return Point(float(value[0]), float(value[1]))
        return None
    if not isinstance(value, Mapping):
        return None
    if "type" in value:
        coords = value.get("coordinates")
        if value["type"] == "Point":
            return to_point(coords)
        if value["type"] == "Polygon" and coords and coords[0]:
            return to_point(coords[0][0])
        return None
    for x_key, y_key in (("lng", "lat"), ("x", "y"), ("longitude", "latitude")):
        if x_key in value and y_key in value:
            x, y = value[x_key], value[y_key]
            if _is_number(x) and _is_number(y):
                return Point(float(x), float(y))
    return None


def points_at(doc: Mapping[str, Any], path: str) -> list[Point]:
    """All coordinate pairs stored at a path, fanning out over arrays of points."""
    return points_in(get_embedded_values(doc, path))


def points_in(values: Iterable[Any]) -> list[Point]:
    points: list[Point] = []
    for value in values:
        point = to_point(value)
        if point is not None:
            points.append(point)
        elif isinstance(value, list):
            points.extend(p for p in map(to_point, value) if p is not None)
    return points


def planar_distance(p1: Point, p2: Point) -> float:
    dx = p1.x - p2.x
    dy = p1.y - p2.y
    if dx == 0:
        return abs(dy)
    if dy == 0:
        return abs(dx)
    return math.sqrt(dx * dx + dy * dy)


def spherical_distance(p1: Point, p2: Point) -> float:
    """Great-circle angle between two ``(lng, lat)`` points, in radians."""
    lat1, lng1 = math.radians(p1.y), math.radians(p1.x)
    lat2, lng2 = math.radians(p2.y), math.radians(p2.x)
    cross = (
        math.cos(lat1) * math.cos(lat2) * math.cos(lng1) * math.cos(lng2)
        + math.cos(lat1) * math.sin(lng1) * math.cos(lat2) * math.sin(lng2)
        + math.sin(lat1) * math.sin(lat2)
    )
    if cross >= 1.0 or cross <= -1.0:
        return 0.0 if cross > 0 else math.pi
    return math.acos(cross)


def distance(p1: Point, p2: Point, mode: str = PLANAR) -> float:
    if mode == PLANAR:
        return planar_distance(p1, p2)
    if mode == SPHERICAL:
        return spherical_distance(p1, p2)
    if mode == METERS:
        return spherical_distance(p1, p2) * EARTH_RADIUS
    raise ValueError(f"Unknown distance mode '{mode}', expected one of {DISTANCE_MODES}")


def _on_segment(p: Point, a: Point, b: Point, eps: float = 1e-12) -> bool:
    cross = (b.x - a.x) * (p.y - a.y) - (b.y - a.y) * (p.x - a.x)
    if abs(cross) > eps:
        return False
    return min(a.x, b.x) - eps <= p.x <= max(a.x, b.x) + eps and (
        min(a.y, b.y) - eps <= p.y <= max(a.y, b.y) + eps
    )


def _edges(ring: list[Point]) -> Iterable[tuple[Point, Point]]:
    for i, a in enumerate(ring):
        yield a, ring[(i + 1) % len(ring)]


def _ring_contains(ring: list[Point], p: Point) -> bool | None:
    """True inside, False outside, None on the boundary."""
    inside = False
    for a, b in _edges(ring):
        if _on_segment(p, a, b):
            return None
        if (a.y > p.y) != (b.y > p.y):
            x_cross = a.x + (p.y - a.y) * (b.x - a.x) / (b.y - a.y)
            if p.x < x_cross:
                inside = not inside
    return inside


class Shape:
    """A region for ``$geoWithin``. The boundary counts as inside."""

    spherical = False

    def contains(self, point: Point) -> bool:
        raise NotImplementedError

    def bbox(self) -> BBox | None:
        """Bounding box ``(min_x, min_y, max_x, max_y)``; None means unbounded."""
        raise NotImplementedError


@dataclass(frozen=True)
class Box(Shape):
    lower_left: Point
    upper_right: Point

    def contains(self, point: Point) -> bool:
        min_x, min_y, max_x, max_y = self.bbox()
        return min_x <= point.x <= max_x and min_y <= point.y <= max_y

    def bbox(self) -> BBox:
        a, b = self.lower_left, self.upper_right
        return (min(a.x, b.x), min(a.y, b.y), max(a.x, b.x), max(a.y, b.y))


@dataclass(frozen=True)
class Polygon(Shape):
    shell: list[Point]
    holes: list[list[Point]] = field(default_factory=list)

    def contains(self, point: Point) -> bool:
        in_shell = _ring_contains(self.shell, point)
        if in_shell is None:
            return True
        if not in_shell:
            return False
        for hole in self.holes:
            in_hole = _ring_contains(hole, point)
            if in_hole:
                return False
        return True

    def bbox(self) -> BBox:
        xs = [p.x for p in self.shell]
        ys = [p.y for p in self.shell]
        return (min(xs), min(ys), max(xs), max(ys))


@dataclass(frozen=True)
class Circle(Shape):
    center: Point
    radius: float
    spherical: bool = False

    def contains(self, point: Point) -> bool:
        mode = SPHERICAL if self.spherical else PLANAR
        return distance(point, self.center, mode) <= self.radius

    def bbox(self) -> BBox | None:
        return radius_bbox(self.center, self.radius, SPHERICAL if self.spherical else PLANAR)


def radius_bbox(center: Point, radius: float, mode: str) -> BBox | None:
    """Box enclosing every point within ``radius`` of ``center``."""
    if mode == PLANAR:
        return (center.x - radius, center.y - radius, center.x + radius, center.y + radius)
    angle = radius / EARTH_RADIUS if mode == METERS else radius
    if angle >= math.pi:
        return None
    delta_lat = math.degrees(angle)
    min_lat = center.y - delta_lat
    max_lat = center.y + delta_lat
    if min_lat <= -90 or max_lat >= 90:
        return (-180.0, max(min_lat, -90.0), 180.0, min(max_lat, 90.0))
    cos_lat = min(math.cos(math.radians(min_lat)), math.cos(math.radians(max_lat)))
    delta_lng = math.degrees(angle) / cos_lat
    if delta_lng >= 180:
        return (-180.0, min_lat, 180.0, max_lat)
    return (center.x - delta_lng, min_lat, center.x + delta_lng, max_lat)


def within(point: Point, shape: Shape) -> bool:
    return shape.contains(point)


def _require_point(value: Any, operator: str) -> Point:
    point = to_point(value)
    if point is None:
        raise QueryCompilationError(f"{operator} expects a coordinate pair, got {value!r}")
    return point


def _ring(coords: Any, operator: str) -> list[Point]:
    if not isinstance(coords, list) or len(coords) < 3:
        raise QueryCompilationError(f"{operator} needs at least 3 points")
    ring = [_require_point(c, operator) for c in coords]
    if len(ring) > 3 and ring[0] == ring[-1]:
        ring = ring[:-1]
    return ring


def _radius(spec: Any, operator: str) -> tuple[Point, float]:
    if not isinstance(spec, list) or len(spec) != 2 or not _is_number(spec[1]):
        raise QueryCompilationError(f"{operator} expects [center, radius], got {spec!r}")
    if spec[1] < 0:
        raise QueryCompilationError(f"{operator} radius must be non-negative")
    return _require_point(spec[0], operator), float(spec[1])


def parse_shape(spec: Any) -> Shape:
    """Build the shape of a ``$geoWithin`` operand."""
    if not isinstance(spec, Mapping):
        raise QueryCompilationError(f"$geoWithin expects a shape document, got {spec!r}")
    if "$box" in spec:
        corners = spec["$box"]
        if not isinstance(corners, list) or len(corners) != 2:
            raise QueryCompilationError("$box expects two corner points")
        return Box(_require_point(corners[0], "$box"), _require_point(corners[1], "$box"))
    if "$polygon" in spec:
        return Polygon(_ring(spec["$polygon"], "$polygon"))
    if "$center" in spec:
        center, radius = _radius(spec["$center"], "$center")
        return Circle(center, radius)
    if "$centerSphere" in spec:
        center, radius = _radius(spec["$centerSphere"], "$centerSphere")
        return Circle(center, radius, spherical=True)
    if "$geometry" in spec:
        geometry = spec["$geometry"]
        if not isinstance(geometry, Mapping) or geometry.get("type") != "Polygon":
            raise QueryCompilationError(f"$geometry in $geoWithin must be a GeoJSON Polygon: {geometry!r}")
        rings = geometry.get("coordinates")
        if not isinstance(rings, list) or not rings:
            raise QueryCompilationError("GeoJSON Polygon needs at least one ring")
        return Polygon(_ring(rings[0], "$geometry"), [_ring(r, "$geometry") for r in rings[1:]])
    raise QueryCompilationError(f"Unsupported $geoWithin shape: {sorted(spec)}")


# --- Geohash ---


def encode_geohash(point: Point, precision: int = GEOHASH_PRECISION) -> str:
    """Geohash of a ``(lng, lat)`` point. Points off the globe hash to ``""``."""
    if not (-180 <= point.x <= 180 and -90 <= point.y <= 90):
        return ""
    lng_range = [-180.0, 180.0]
    lat_range = [-90.0, 90.0]
    chars: list[str] = []
    bits = 0
    bit_count = 0
    even = True
    while len(chars) < precision:
        rng, value = (lng_range, point.x) if even else (lat_range, point.y)
        mid = (rng[0] + rng[1]) / 2
        bits <<= 1
        if value >= mid:
            bits |= 1
            rng[0] = mid
        else:
            rng[1] = mid
        even = not even
        bit_count += 1
        if bit_count == 5:
            chars.append(_BASE32[bits])
            bits = 0
            bit_count = 0
    return "".join(chars)


def geohash_bounds(geohash: str) -> BBox:
    """Cell of a geohash as ``(min_lng, min_lat, max_lng, max_lat)``."""
    lng_range = [-180.0, 180.0]
    lat_range = [-90.0, 90.0]
    even = True
    for char in geohash:
        idx = _BASE32.index(char)
        for shift in range(4, -1, -1):
            rng = lng_range if even else lat_range
            mid = (rng[0] + rng[1]) / 2
            if (idx >> shift) & 1:
                rng[0] = mid
            else:
                rng[1] = mid
            even = not even
    return (lng_range[0], lat_range[0], lng_range[1], lat_range[1])


def bboxes_intersect(a: BBox, b: BBox) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]

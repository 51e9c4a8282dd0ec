"""Tests for the geometry helpers."""

from __future__ import annotations

import math

import pytest

from memongo import geo
from memongo.errors import QueryCompilationError
from memongo.geo import Point


class TestPoints:
    @pytest.mark.parametrize(
        "value",
        [
            [1, 2],
            (1.0, 2.0),
            {"type": "Point", "coordinates": [1, 2]},
            {"lng": 1, "lat": 2},
            {"x": 1, "y": 2},
            {"longitude": 1, "latitude": 2},
        ],
    )
    def test_to_point(self, value):
        assert geo.to_point(value) == Point(1.0, 2.0)

    @pytest.mark.parametrize("value", [None, "1,2", [1], [1, 2, 3], [True, 1], {"a": 1}])
    def test_not_a_point(self, value):
        assert geo.to_point(value) is None

    def test_points_at_fans_out(self):
        doc = {"stops": [{"at": [0, 0]}, {"at": [1, 1]}], "many": [[2, 2], [3, 3]]}
        assert geo.points_at(doc, "stops.at") == [Point(0, 0), Point(1, 1)]
        assert geo.points_at(doc, "many") == [Point(2, 2), Point(3, 3)]


class TestDistance:
    def test_planar(self):
        assert geo.distance(Point(0, 0), Point(3, 4)) == 5.0

    def test_spherical_quarter_turn(self):
        assert geo.distance(Point(0, 0), Point(90, 0), geo.SPHERICAL) == pytest.approx(math.pi / 2)

    def test_meters(self):
        meters = geo.distance(Point(0, 0), Point(0, 1), geo.METERS)
        assert meters == pytest.approx(geo.EARTH_RADIUS * math.radians(1))

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            geo.distance(Point(0, 0), Point(1, 1), "furlongs")


class TestShapes:
    def test_box_boundary_inside(self):
        box = geo.Box(Point(0, 0), Point(2, 2))
        assert geo.within(Point(2, 1), box)
        assert not geo.within(Point(3, 1), box)

    def test_polygon_with_hole(self):
        shell = [Point(0, 0), Point(10, 0), Point(10, 10), Point(0, 10)]
        hole = [Point(4, 4), Point(6, 4), Point(6, 6), Point(4, 6)]
        polygon = geo.Polygon(shell, [hole])
        assert polygon.contains(Point(1, 1))
        assert not polygon.contains(Point(5, 5))
        assert polygon.contains(Point(0, 5))
        assert not polygon.contains(Point(11, 5))

    def test_circle(self):
        circle = geo.Circle(Point(0, 0), 1)
        assert circle.contains(Point(1, 0))
        assert not circle.contains(Point(1, 1))

    def test_parse_shapes(self):
        assert isinstance(geo.parse_shape({"$box": [[0, 0], [1, 1]]}), geo.Box)
        assert isinstance(geo.parse_shape({"$polygon": [[0, 0], [1, 0], [1, 1]]}), geo.Polygon)
        assert geo.parse_shape({"$centerSphere": [[0, 0], 0.1]}).spherical
        geometry = {"$geometry": {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}}
        assert len(geo.parse_shape(geometry).shell) == 3

    @pytest.mark.parametrize(
        "spec",
        [
            [],
            {"$box": [[0, 0]]},
            {"$polygon": [[0, 0], [1, 1]]},
            {"$center": [[0, 0], -1]},
            {"$geometry": {"type": "Point", "coordinates": [0, 0]}},
        ],
    )
    def test_bad_shapes(self, spec):
        with pytest.raises(QueryCompilationError):
            geo.parse_shape(spec)


class TestGeohash:
    def test_known_hash(self):
        assert geo.encode_geohash(Point(10.40744, 57.64911)) == "u4pru"

    def test_bounds_contain_point(self):
        point = Point(-73.98, 40.75)
        min_x, min_y, max_x, max_y = geo.geohash_bounds(geo.encode_geohash(point))
        assert min_x <= point.x <= max_x
        assert min_y <= point.y <= max_y

    def test_off_the_globe(self):
        assert geo.encode_geohash(Point(500, 0)) == ""

    def test_radius_bbox(self):
        assert geo.radius_bbox(Point(1, 1), 2, geo.PLANAR) == (-1, -1, 3, 3)
        assert geo.radius_bbox(Point(0, 0), 4, geo.SPHERICAL) is None

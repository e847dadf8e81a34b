"""Tests for obspine.om.geometry."""

from shapely.geometry import Point

from obspine.om.geometry import (
    envelope,
    from_wkb,
    intersects_bbox,
    normalize_geometry,
    normalize_srid,
    to_wkb,
    union_bounds,
)


class TestSrid:
    def test_zero_and_none_read_as_wgs84(self):
        assert normalize_srid(0) == 4326
        assert normalize_srid(None) == 4326
        assert normalize_srid(3857) == 3857


class TestAxisOrder:
    def test_latlon_is_swapped(self):
        geom, srid = normalize_geometry(Point(43.0, 5.0), 4326, "latlon")
        assert (geom.x, geom.y, srid) == (5.0, 43.0, 4326)

    def test_other_crs_untouched(self):
        geom, _ = normalize_geometry(Point(1.0, 2.0), 3857, "latlon")
        assert (geom.x, geom.y) == (1.0, 2.0)

    def test_latlon_bbox(self):
        box = envelope(42.0, 4.0, 44.0, 6.0, 4326, "latlon")
        assert intersects_bbox(Point(5.0, 43.0), box)


class TestCodec:
    def test_wkb_round_trip(self):
        assert from_wkb(to_wkb(Point(5.0, 43.0))).equals(Point(5.0, 43.0))

    def test_none(self):
        assert to_wkb(None) is None
        assert from_wkb(None) is None


class TestBounds:
    def test_intersects(self):
        box = envelope(0, 0, 10, 10)
        assert intersects_bbox(Point(5, 5), box)
        assert intersects_bbox(Point(10, 10), box)
        assert not intersects_bbox(Point(11, 5), box)
        assert not intersects_bbox(None, box)

    def test_union_bounds(self):
        assert union_bounds([Point(1, 2), Point(3, -1), None]) == (1.0, -1.0, 3.0, 2.0)
        assert union_bounds([]) is None

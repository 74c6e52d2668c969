"""Unit tests for geographic primitives."""
import math

import pytest

from app.errors import InvalidCoordinate
from app.utils.geo import EARTH_RADIUS_M, Coordinate, bounding_box, haversine_m


class TestCoordinate:

    def test_accepts_boundaries(self):
        for lat, lon in [(90, 180), (-90, -180), (0, 0)]:
            c = Coordinate(lat, lon)
            assert (c.latitude, c.longitude) == (lat, lon)

    @pytest.mark.parametrize(
        "lat,lon",
        [(90.0001, 0), (-91, 0), (0, 180.5), (0, -181), (math.nan, 0), (0, math.inf)],
    )
    def test_rejects_out_of_range(self, lat, lon):
        with pytest.raises(InvalidCoordinate):
            Coordinate(lat, lon)

    def test_rejects_non_numeric(self):
        with pytest.raises(InvalidCoordinate):
            Coordinate("37.5", 126.9)

    def test_of_coerces_pairs(self):
        assert Coordinate.of((1.0, 2.0)) == Coordinate(1.0, 2.0)
        c = Coordinate(3.0, 4.0)
        assert Coordinate.of(c) is c

    def test_of_rejects_malformed(self):
        with pytest.raises(InvalidCoordinate):
            Coordinate.of((1.0,))
        with pytest.raises(InvalidCoordinate):
            Coordinate.of(None)


class TestHaversine:

    def test_zero_distance(self):
        c = Coordinate(37.5665, 126.9780)
        assert haversine_m(c, c) == 0.0

    def test_one_ten_thousandth_degree_latitude(self):
        """0.0001 degrees of latitude is about 11.1 metres."""
        d = haversine_m(Coordinate(37.5665, 126.9780), Coordinate(37.5666, 126.9780))
        assert d == pytest.approx(11.12, abs=0.05)

    def test_symmetric(self):
        a, b = Coordinate(37.5665, 126.9780), Coordinate(35.1796, 129.0756)
        assert haversine_m(a, b) == pytest.approx(haversine_m(b, a))

    def test_seoul_busan(self):
        d = haversine_m(Coordinate(37.5665, 126.9780), Coordinate(35.1796, 129.0756))
        assert 320_000 < d < 330_000

    def test_across_antimeridian(self):
        d = haversine_m(Coordinate(0.0, 179.9999), Coordinate(0.0, -179.9999))
        assert d == pytest.approx(22.24, abs=0.05)

    def test_antipodal_is_half_circumference(self):
        d = haversine_m(Coordinate(0.0, 0.0), Coordinate(0.0, 180.0))
        assert d == pytest.approx(math.pi * EARTH_RADIUS_M)


class TestBoundingBox:

    def test_small_radius_has_longitude_span(self):
        lat_min, lat_max, dlon = bounding_box(Coordinate(37.5, 127.0), 1_000)
        assert lat_min < 37.5 < lat_max
        assert dlon is not None
        # Longitude degrees shrink with latitude so the span is wider
        assert dlon > (lat_max - lat_min) / 2

    def test_box_contains_circle(self):
        center = Coordinate(60.0, 10.0)
        lat_min, lat_max, dlon = bounding_box(center, 5_000)
        for bearing in range(0, 360, 15):
            # Walk roughly 4.99 km along each bearing
            rad = math.radians(bearing)
            lat = center.latitude + math.degrees(4_990 / EARTH_RADIUS_M) * math.cos(rad)
            lon = center.longitude + math.degrees(4_990 / EARTH_RADIUS_M) * math.sin(rad) / math.cos(math.radians(lat))
            assert lat_min <= lat <= lat_max
            assert abs(lon - center.longitude) <= dlon

    def test_reaching_pole_spans_all_longitudes(self):
        lat_min, lat_max, dlon = bounding_box(Coordinate(89.99, 0.0), 5_000)
        assert lat_max == 90.0
        assert dlon is None

    def test_south_pole_clamped(self):
        lat_min, lat_max, dlon = bounding_box(Coordinate(-89.999, 45.0), 1_000)
        assert lat_min == -90.0
        assert dlon is None

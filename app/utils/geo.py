"""Geographic primitives: validated coordinates and great-circle distance."""

from __future__ import annotations

import math
from dataclasses import dataclass

from app.errors import InvalidCoordinate

EARTH_RADIUS_M = 6_371_008.8  # IUGG mean radius


@dataclass(frozen=True, slots=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        lat, lon = self.latitude, self.longitude
        if not (isinstance(lat, (int, float)) and isinstance(lon, (int, float))):
            raise InvalidCoordinate(latitude=lat, longitude=lon)
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise InvalidCoordinate(latitude=lat, longitude=lon)
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise InvalidCoordinate(latitude=lat, longitude=lon)

    @classmethod
    def of(cls, value: "Coordinate | tuple[float, float]") -> "Coordinate":
        """Coerce a ``(latitude, longitude)`` pair into a Coordinate."""
        if isinstance(value, cls):
            return value
        try:
            latitude, longitude = value
        except (TypeError, ValueError):
            raise InvalidCoordinate(value=repr(value)) from None
        return cls(latitude, longitude)


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in metres."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # min() guards against h drifting just above 1.0 for antipodal points
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def bounding_box(center: Coordinate, radius_m: float) -> tuple[float, float, float | None]:
    """Return ``(lat_min, lat_max, lon_half_width)`` enclosing a radius.

    ``lon_half_width`` is ``None`` when the circle reaches a pole (or is
    wide enough) that every longitude must be considered.
    """
    angular = radius_m / EARTH_RADIUS_M
    dlat = math.degrees(angular)
    lat_min = center.latitude - dlat
    lat_max = center.latitude + dlat
    if lat_min <= -90.0 or lat_max >= 90.0:
        return max(lat_min, -90.0), min(lat_max, 90.0), None

    # Widest longitude extent of a spherical cap centred off the equator
    ratio = math.sin(angular) / math.cos(math.radians(center.latitude))
    if ratio >= 1.0:
        return lat_min, lat_max, None
    dlon = math.degrees(math.asin(ratio))
    if dlon >= 180.0:
        return lat_min, lat_max, None
    return lat_min, lat_max, dlon

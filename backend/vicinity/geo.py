from __future__ import annotations

import math
from dataclasses import dataclass

from .schemas import GeoPoint

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE_LAT = 111_320.0


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters."""
    dlat = math.radians(b.lat - a.lat)
    dlon = math.radians(b.lon - a.lon)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_M * c


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    @classmethod
    def around(cls, center: GeoPoint, half_size_m: float) -> BoundingBox:
        dlat = half_size_m / METERS_PER_DEGREE_LAT
        # Longitude degrees shrink towards the poles; cap to avoid blowing up near them
        cos_lat = max(math.cos(math.radians(center.lat)), 0.01)
        dlon = half_size_m / (METERS_PER_DEGREE_LAT * cos_lat)
        return cls(
            min_lat=max(-90.0, center.lat - dlat),
            min_lon=max(-180.0, center.lon - dlon),
            max_lat=min(90.0, center.lat + dlat),
            max_lon=min(180.0, center.lon + dlon),
        )

    def contains(self, point: GeoPoint) -> bool:
        return (
            self.min_lat <= point.lat <= self.max_lat
            and self.min_lon <= point.lon <= self.max_lon
        )


__all__ = ["BoundingBox", "EARTH_RADIUS_M", "haversine_m"]

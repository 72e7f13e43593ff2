from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from nearhelp.core.errors import InvalidCoordinate

# mean earth radius (IUGG)
EARTH_RADIUS_KM = 6371.0088

# one degree of latitude, in km
KM_PER_DEGREE = math.pi * EARTH_RADIUS_KM / 180.0

# a point computed to sit exactly on the circle must still count as inside
RADIUS_TOLERANCE_KM = 1e-9


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def __post_init__(self) -> None:
        validate(self.lat, self.lng)

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def label(self) -> str:
        return f"{self.lat:.4f}, {self.lng:.4f}"


def validate(lat: float, lng: float) -> None:
    if lat is None or lng is None:
        raise InvalidCoordinate("lat/lng required")
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"not a number: lat={lat!r} lng={lng!r}")
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinate(f"non-finite coordinate: lat={lat} lng={lng}")
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinate(f"latitude out of range: {lat}")
    if not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinate(f"longitude out of range: {lng}")


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle (haversine) distance between two points, in kilometers."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dphi = math.radians(b.lat - a.lat)
    dlambda = math.radians(b.lng - a.lng)

    h = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    # rounding can push h a hair past 1 for antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def within_radius(center: Coordinates, point: Coordinates, radius_km: float) -> bool:
    if radius_km < 0:
        raise ValueError(f"radius must be >= 0, got {radius_km}")
    return distance_km(center, point) <= radius_km + RADIUS_TOLERANCE_KM


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def spans_all_longitudes(self) -> bool:
        return self.min_lng <= -180.0 and self.max_lng >= 180.0


def bounding_box(center: Coordinates, radius_km: float) -> BoundingBox:
    """
    Lat/lng box that fully contains the circle. Only a prefilter: callers still
    run within_radius on whatever the box lets through.
    """
    dlat = radius_km / KM_PER_DEGREE
    min_lat = center.lat - dlat
    max_lat = center.lat + dlat

    # circle touches a pole: every longitude qualifies
    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    # widest longitude span is at the latitude farthest from the equator
    widest = max(abs(min_lat), abs(max_lat))
    dlng = radius_km / (KM_PER_DEGREE * math.cos(math.radians(widest)))
    min_lng = center.lng - dlng
    max_lng = center.lng + dlng

    # crossing the antimeridian: give up on the longitude filter
    if min_lng < -180.0 or max_lng > 180.0 or dlng >= 180.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    return BoundingBox(min_lat, max_lat, min_lng, max_lng)

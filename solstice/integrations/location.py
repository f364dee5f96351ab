"""Device location lookup used by candidate discovery."""

from __future__ import annotations

import abc
import math
from typing import Optional

from ..exceptions import LocationPermissionDeniedError, LocationUnavailableError
from ..models.user import GeoPoint

_EARTH_RADIUS_M = 6_371_000.0
METERS_PER_MILE = 1609.34


def haversine_distance_m(
    lat1: Optional[float],
    lon1: Optional[float],
    lat2: Optional[float],
    lon2: Optional[float],
) -> Optional[float]:
    """Return the great-circle distance in meters between two coordinates."""
    try:
        if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
            return None
        phi1 = math.radians(float(lat1))
        phi2 = math.radians(float(lat2))
        dphi = math.radians(float(lat2) - float(lat1))
        dlambda = math.radians(float(lon2) - float(lon1))
    except (TypeError, ValueError):
        return None
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return float(_EARTH_RADIUS_M * c)


def distance_miles(a: GeoPoint, b: GeoPoint) -> float:
    meters = haversine_distance_m(a.latitude, a.longitude, b.latitude, b.longitude)
    return (meters or 0.0) / METERS_PER_MILE


class LocationProvider(abc.ABC):
    @abc.abstractmethod
    async def current_location(self) -> GeoPoint:
        """Return the device location or raise a ``LocationError``."""


class StaticLocationProvider(LocationProvider):
    """Fixed location, or a fixed failure, for local runs and tests."""

    def __init__(self, location: Optional[GeoPoint] = None, *, permission_denied: bool = False) -> None:
        self._location = location
        self._permission_denied = permission_denied

    async def current_location(self) -> GeoPoint:
        if self._permission_denied:
            raise LocationPermissionDeniedError("location permission denied")
        if self._location is None:
            raise LocationUnavailableError("location not available")
        return self._location


__all__ = [
    "LocationProvider",
    "METERS_PER_MILE",
    "StaticLocationProvider",
    "distance_miles",
    "haversine_distance_m",
]

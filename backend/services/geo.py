from dataclasses import dataclass
from math import atan2, cos, radians, sin, sqrt

EARTH_RADIUS_METERS = 6371000.0


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in meters."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlmb = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlmb / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


@dataclass(frozen=True)
class Geofence:
    lat: float
    lng: float
    radius_meters: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0 or not -180.0 <= self.lng <= 180.0:
            raise ValueError("Geofence centre is not a valid coordinate.")
        if self.radius_meters <= 0:
            raise ValueError("Geofence radius must be positive.")

    def distance_to(self, lat: float, lng: float) -> float:
        return haversine_meters(self.lat, self.lng, lat, lng)

    def contains(self, lat: float, lng: float) -> bool:
        return self.distance_to(lat, lng) <= self.radius_meters

    def as_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng, "radius_meters": self.radius_meters}

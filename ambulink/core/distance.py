import math

from ambulink.core.domain import Coordinate

DEFAULT_SPEED_KMH = 40.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance (shortest path over the earth's surface) between two
    points given in decimal degrees. Returns kilometres.
    """
    rlat1 = math.radians(lat1)
    rlon1 = math.radians(lon1)
    rlat2 = math.radians(lat2)
    rlon2 = math.radians(lon2)

    dlon = rlon2 - rlon1
    dlat = rlat2 - rlat1

    a = math.sin(dlat / 2.0) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2.0) ** 2
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    radius_earth_km = 6371.0
    distance_km = radius_earth_km * c
    return distance_km


def distance_between(a: Coordinate, b: Coordinate) -> float:
    return haversine(a.lat, a.lon, b.lat, b.lon)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def eta_minutes(distance_km: float, speed_kmh: float = DEFAULT_SPEED_KMH) -> int:
    """
    Flat-speed travel time estimate, in whole minutes.
    Not road routing: distance / speed, nothing else.
    """
    if speed_kmh <= 0:
        speed_kmh = DEFAULT_SPEED_KMH
    return round_half_up(distance_km / speed_kmh * 60.0)

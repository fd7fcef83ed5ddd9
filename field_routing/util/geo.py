"""Small geometry helpers: haversine distance and geofence tests."""

from math import radians, sin, cos, asin, sqrt
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


EARTH_RADIUS_KM = 6371.0


def km(a_lat: float, a_lon: float, b_lat: float, b_lon: float) -> float:
    lat1, lon1, lat2, lon2 = map(radians, [a_lat, a_lon, b_lat, b_lon])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(h))


def minutes_from_km(distance_km: float, speed_kmph: float) -> float:
    if speed_kmph <= 0:
        return 0.0  # guard
    return (distance_km / speed_kmph) * 60.0


def minutes_with_traffic(minutes: float, factor: float) -> float:
    """Stretch a free-flow duration by a speed factor (<1 means slower)."""
    return minutes / max(factor, 0.01)


def valid_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    if lat is None or lon is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def _point(p) -> Tuple[float, float]:
    # Accept {"lat", "lng"} / {"lat", "lon"} dicts or (lat, lon) pairs
    if isinstance(p, dict):
        return float(p["lat"]), float(p.get("lng", p.get("lon")))
    return float(p[0]), float(p[1])


def in_circle(lat: float, lon: float, center, radius_km: float) -> bool:
    c_lat, c_lon = _point(center)
    return km(lat, lon, c_lat, c_lon) <= radius_km


def in_polygon(lat: float, lon: float, vertices: Sequence) -> bool:
    """Ray casting on lat/lon treated as planar; fine at service-area scale."""
    pts = [_point(v) for v in vertices]
    inside = False
    j = len(pts) - 1
    for i in range(len(pts)):
        yi, xi = pts[i]
        yj, xj = pts[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i
    return inside


def in_service_area(lat: float, lon: float, area: Dict) -> bool:
    kind = area.get("type")
    if kind == "circle":
        return in_circle(lat, lon, area["center"], float(area["radius_km"]))
    if kind == "polygon":
        return in_polygon(lat, lon, area.get("coordinates") or [])
    return False


def in_any_service_area(lat: float, lon: float, areas: Iterable[Dict]) -> bool:
    areas = list(areas or [])
    if not areas:
        return True  # no geofence means unrestricted
    return any(in_service_area(lat, lon, a) for a in areas)


def centroid(points: Iterable) -> Optional[Tuple[float, float]]:
    pts: List[Tuple[float, float]] = [_point(p) for p in points]
    if not pts:
        return None
    return (
        sum(p[0] for p in pts) / len(pts),
        sum(p[1] for p in pts) / len(pts),
    )


def area_anchor(area: Dict) -> Optional[Tuple[float, float]]:
    """Representative point of a geofence: circle center or polygon centroid."""
    if area.get("type") == "circle" and area.get("center"):
        return _point(area["center"])
    if area.get("type") == "polygon":
        return centroid(area.get("coordinates") or [])
    return None

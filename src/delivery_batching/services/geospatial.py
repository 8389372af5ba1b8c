"""Geospatial helper functions."""

from __future__ import annotations

import math
from typing import Sequence

from shapely.geometry import MultiPoint

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compute distance between two coordinates using the Haversine formula."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def haversine_table(coordinates: Sequence[tuple[float, float]], average_speed_kmh: float) -> dict:
    """Build an OSRM-shaped table (meters / seconds) from straight-line distances.

    Durations assume a constant average speed.
    """
    n = len(coordinates)
    distances: list[list[float]] = [[0.0] * n for _ in range(n)]
    durations: list[list[float]] = [[0.0] * n for _ in range(n)]
    for i in range(n):
        lat1, lon1 = coordinates[i]
        for j in range(n):
            if i == j:
                continue
            lat2, lon2 = coordinates[j]
            distance_km = haversine_km(lat1, lon1, lat2, lon2)
            distances[i][j] = distance_km * 1000.0
            durations[i][j] = (distance_km / average_speed_kmh) * 3600.0
    return {"distances": distances, "durations": durations}


def project_to_plane_km(lat: float, lon: float, lat_ref: float, lon_ref: float) -> tuple[float, float]:
    """Equirectangular projection around a reference point, in km.

    Good approximation for the few-km extents of a delivery area.
    """
    x = EARTH_RADIUS_KM * math.radians(lon - lon_ref) * math.cos(math.radians(lat_ref))
    y = EARTH_RADIUS_KM * math.radians(lat - lat_ref)
    return x, y


def centroid(points: Sequence[tuple[float, float]]) -> tuple[float, float]:
    """Return the (lat, lon) centroid of the given points."""
    if not points:
        raise ValueError("Cannot compute centroid of an empty point set.")
    if len(points) == 1:
        return points[0]
    center = MultiPoint([(lon, lat) for lat, lon in points]).centroid
    return center.y, center.x

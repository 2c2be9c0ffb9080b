from __future__ import annotations

from typing import Tuple
import math
import numpy as np


EARTH_RADIUS_M = 6371000.0   # mean Earth radius used for all ranking (m)
KM_PER_DEG = 111.0           # fixed-latitude approximation for tile sizing


# -------------------------
# Great-circle distance
# -------------------------
def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance in meters. NaN in, NaN out."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def haversine_m_many(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """
    Vectorised haversine from one point to many.

    `lats`/`lons` are 1-D arrays of equal length (degrees). Returns float64 meters,
    same shape. Matches haversine_m() element-wise.
    """
    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)
    p1 = math.radians(lat)
    p2 = np.radians(lats)
    dphi = p2 - p1
    dl = np.radians(lons - lon)
    a = np.sin(dphi / 2.0) ** 2 + math.cos(p1) * np.cos(p2) * np.sin(dl / 2.0) ** 2
    a = np.clip(a, 0.0, 1.0)
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


# -------------------------
# km <-> degree helpers
# -------------------------
def km_to_deg_lat(km: float) -> float:
    return km / KM_PER_DEG


def km_to_deg_lon(km: float, at_lat: float) -> float:
    """
    Longitude span for `km` at latitude `at_lat`.
    Near the poles cos(lat) -> 0; the span is capped at a full turn.
    """
    c = math.cos(math.radians(at_lat))
    if c <= 1e-9:
        return 360.0
    return min(360.0, km / (KM_PER_DEG * c))


def bbox_around(lat: float, lon: float, radius_km: float) -> Tuple[float, float, float, float]:
    """
    Axis-aligned box enclosing a circle of `radius_km` around (lat, lon).
    Returns (lon_min, lat_min, lon_max, lat_max) in degrees.
    """
    dlat = km_to_deg_lat(radius_km)
    dlon = km_to_deg_lon(radius_km, lat)
    return (lon - dlon, lat - dlat, lon + dlon, lat + dlat)

"""
Great-circle distance and travel-time estimation.

Distances use the haversine formula on a spherical Earth (R = 6371 km).
``haversine_km_many`` vectorises the computation over the whole facility
directory with numpy; ``haversine_km`` is the scalar form used in tests and
single-facility scoring.
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

import numpy as np

from .models import GeoPoint

EARTH_RADIUS_KM = 6371.0

# Traffic multipliers applied to travel time
WEEKEND_MULTIPLIER = 0.9
RUSH_HOUR_MULTIPLIER = 1.4
NIGHT_MULTIPLIER = 0.8
DAYTIME_MULTIPLIER = 1.1


def haversine_km_many(
    origin: GeoPoint,
    latitudes: Sequence[float],
    longitudes: Sequence[float],
) -> np.ndarray:
    """Distances in km from ``origin`` to every (lat, lng) pair."""
    lat1 = np.radians(origin.latitude)
    lng1 = np.radians(origin.longitude)
    lat2 = np.radians(np.asarray(latitudes, dtype=float))
    lng2 = np.radians(np.asarray(longitudes, dtype=float))

    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng / 2.0) ** 2
    # Guard against rounding pushing a marginally outside [0, 1]
    a = np.clip(a, 0.0, 1.0)
    return 2.0 * EARTH_RADIUS_KM * np.arctan2(np.sqrt(a), np.sqrt(1.0 - a))


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    return float(haversine_km_many(a, [b.latitude], [b.longitude])[0])


def traffic_multiplier(when: datetime) -> float:
    """
    Time-of-day traffic adjustment.

    Weekends are lighter all day; on weekdays rush hours (07-09, 17-19) are
    slowest, nights (22-06) fastest and ordinary daytime slightly congested.
    """
    if when.weekday() >= 5:
        return WEEKEND_MULTIPLIER

    hour = when.hour
    if 7 <= hour <= 9 or 17 <= hour <= 19:
        return RUSH_HOUR_MULTIPLIER
    if hour >= 22 or hour <= 6:
        return NIGHT_MULTIPLIER
    return DAYTIME_MULTIPLIER


def travel_time_minutes(distance_km: float, speed_kmh: float, when: datetime) -> float:
    if speed_kmh <= 0:
        raise ValueError(f"Speed must be positive, got {speed_kmh}")
    return distance_km / speed_kmh * 60.0 * traffic_multiplier(when)

"""
Great-circle distance and nearby-mechanic lookup.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import aiosqlite

from db import get_db
from dispatch_errors import DependencyFailure
from request_models import NearbyMechanic

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = math.pi / 180 * EARTH_RADIUS_KM


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Unrounded haversine distance in kilometers."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def display_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance rounded to 2 decimals, for display only."""
    return round(haversine_km(lat1, lng1, lat2, lng2), 2)


def bounding_box(lat: float, lng: float, radius_km: float) -> tuple[float, float, float, float]:
    """
    Return (min_lat, max_lat, min_lng, max_lng) enclosing the search circle.

    The longitude span is widened to the whole globe near the poles, where the
    circle covers every meridian.
    """
    d_lat = radius_km / KM_PER_DEGREE_LAT
    min_lat = max(-90.0, lat - d_lat)
    max_lat = min(90.0, lat + d_lat)

    cos_lat = math.cos(math.radians(lat))
    if max_lat >= 90.0 or min_lat <= -90.0 or cos_lat < 1e-6:
        return min_lat, max_lat, -180.0, 180.0

    d_lng = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    if d_lng >= 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, lng - d_lng, lng + d_lng


def lng_clause(min_lng: float, max_lng: float) -> tuple[str, list[float]]:
    """SQL condition on a `lng` column for a span that may cross the antimeridian."""
    if min_lng <= -180.0 and max_lng >= 180.0:
        return "1 = 1", []
    if min_lng < -180.0:
        return "(lng >= ? OR lng <= ?)", [min_lng + 360.0, max_lng]
    if max_lng > 180.0:
        return "(lng >= ? OR lng <= ?)", [min_lng, max_lng - 360.0]
    return "lng BETWEEN ? AND ?", [min_lng, max_lng]


def filter_by_distance(
    lat: float,
    lng: float,
    radius_km: float,
    rows: list[Any],
    limit: int,
) -> list[NearbyMechanic]:
    ranked: list[tuple[float, Any]] = []
    for row in rows:
        distance = haversine_km(lat, lng, float(row["lat"]), float(row["lng"]))
        if distance <= radius_km:
            ranked.append((distance, row))
    ranked.sort(key=lambda item: (item[0], int(item[1]["id"])))
    return [
        NearbyMechanic(
            id=int(row["id"]),
            display_name=str(row["display_name"] or ""),
            lat=float(row["lat"]),
            lng=float(row["lng"]),
            distance_km=round(distance, 2),
        )
        for distance, row in ranked[:limit]
    ]


async def find_nearby_mechanics(
    lat: float,
    lng: float,
    radius_km: float,
    limit: int,
) -> list[NearbyMechanic]:
    """
    Active, available mechanics with a known location within ``radius_km``,
    nearest first, at most ``limit`` of them.
    """
    if radius_km <= 0 or limit <= 0:
        return []

    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_km)
    lng_sql, lng_params = lng_clause(min_lng, max_lng)

    try:
        db = await get_db()
        try:
            cursor = await db.execute(
                f"""
                SELECT id, display_name, lat, lng
                FROM users
                WHERE role = 'mechanic'
                  AND is_active = 1
                  AND is_available = 1
                  AND lat IS NOT NULL
                  AND lng IS NOT NULL
                  AND lat BETWEEN ? AND ?
                  AND {lng_sql}
                """,
                (min_lat, max_lat, *lng_params),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        finally:
            await db.close()
    except aiosqlite.Error as exc:
        logger.error("Nearby-mechanic query failed: %s", exc)
        raise DependencyFailure("Mechanic locations are unavailable, please retry") from exc

    return filter_by_distance(lat, lng, radius_km, rows, limit)

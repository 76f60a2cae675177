"""
FastAPI router for mechanic discovery, availability and task lists.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from auth_deps import fetch_user_by_id, get_current_mechanic, get_current_user
from config import BROADCAST_CANDIDATE_LIMIT, DEFAULT_BROADCAST_RADIUS_KM
from db import get_db, utc_now_iso
from events import event_hub
from geo_index import find_nearby_mechanics
from request_models import AvailabilityUpdate, Location, MechanicStatus, NearbyMechanic, RequestResponse
from request_queries import list_mechanic_tasks

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mechanics", tags=["mechanics"])


def _to_status(user: dict[str, Any]) -> MechanicStatus:
    location = None
    if user.get("lat") is not None and user.get("lng") is not None:
        location = Location(lat=float(user["lat"]), lng=float(user["lng"]), address=str(user.get("address") or ""))
    return MechanicStatus(
        id=int(user["id"]),
        is_available=bool(user.get("is_available")),
        location=location,
        location_updated_at=user.get("location_updated_at"),
    )


@router.get("/nearby", response_model=list[NearbyMechanic])
async def get_nearby_mechanics(
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    radius: float = Query(default=DEFAULT_BROADCAST_RADIUS_KM, gt=0, le=50),
    limit: int = Query(default=BROADCAST_CANDIDATE_LIMIT, ge=1, le=100),
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await find_nearby_mechanics(lat, lng, radius, limit)


@router.get("/me", response_model=MechanicStatus)
async def get_my_status(current_user: dict[str, Any] = Depends(get_current_mechanic)):
    return _to_status(current_user)


@router.put("/me/availability", response_model=MechanicStatus)
async def update_my_availability(
    payload: AvailabilityUpdate,
    current_user: dict[str, Any] = Depends(get_current_mechanic),
):
    mechanic_id = int(current_user["id"])
    db = await get_db()
    try:
        if payload.location:
            await db.execute(
                """
                UPDATE users
                SET is_available = ?, lat = ?, lng = ?, address = ?, location_updated_at = ?
                WHERE id = ?
                """,
                (
                    1 if payload.is_available else 0,
                    payload.location.lat,
                    payload.location.lng,
                    payload.location.address,
                    utc_now_iso(),
                    mechanic_id,
                ),
            )
        else:
            await db.execute(
                "UPDATE users SET is_available = ? WHERE id = ?",
                (1 if payload.is_available else 0, mechanic_id),
            )
        await db.commit()
    finally:
        await db.close()

    if not payload.is_available:
        event_hub.mark_offline(mechanic_id)
    logger.info("Mechanic %s availability set to %s", mechanic_id, payload.is_available)
    return _to_status(await fetch_user_by_id(mechanic_id))


@router.get("/me/tasks", response_model=list[RequestResponse])
async def get_my_tasks(
    include_offers: bool = True,
    current_user: dict[str, Any] = Depends(get_current_mechanic),
):
    return await list_mechanic_tasks(current_user, include_offers=include_offers)

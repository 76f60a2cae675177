"""
Dispatch coordinator: creates a request and decides who hears about it.

Direct bookings are routed to the one mechanic the customer picked. Broadcast
requests are offered to the nearest active, available mechanics within the
request's broadcast radius.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from config import BROADCAST_CANDIDATE_LIMIT
from db import get_db, utc_now_iso
from dispatch_errors import Forbidden, ValidationError
from geo_index import find_nearby_mechanics
from quotation import QuotationEstimate, quotation_service
from request_events import announce_created
from request_models import (
    CreateRequestResponse,
    NearbyMechanic,
    QuotationRange,
    QuotationSummary,
    RequestCreate,
)
from request_state import get_request_row, load_history, to_response

logger = logging.getLogger(__name__)

NO_QUOTATION_MESSAGE = "No price estimate is available yet. The mechanic will confirm the price."


async def _get_direct_target(db, mechanic_id: int) -> dict[str, Any]:
    cursor = await db.execute(
        """
        SELECT id, role, is_active
        FROM users
        WHERE id = ?
        """,
        (mechanic_id,),
    )
    row = await cursor.fetchone()
    await cursor.close()
    if not row or row["role"] != "mechanic" or not row["is_active"]:
        raise ValidationError("Selected mechanic is not available for direct booking")
    return dict(row)


async def _estimate(payload: RequestCreate) -> QuotationEstimate | None:
    return await quotation_service.estimate(
        issue={
            "issue_type": payload.issue_type,
            "description": payload.description,
            "priority": payload.priority,
            "images": payload.images,
        },
        vehicle=payload.vehicle_info.model_dump(),
        location=payload.location.model_dump(),
        context={"time_of_day": datetime.now(), "weather": "clear"},
    )


async def _find_candidates(payload: RequestCreate) -> list[NearbyMechanic]:
    try:
        return await find_nearby_mechanics(
            payload.location.lat,
            payload.location.lng,
            payload.broadcast_radius,
            BROADCAST_CANDIDATE_LIMIT,
        )
    except Exception:
        # The request is still created; it just reaches nobody until a
        # mechanic finds it through their task list.
        logger.exception("Nearby-mechanic lookup failed; broadcast dispatch skipped")
        return []


async def _insert_request(
    db,
    customer_id: int,
    payload: RequestCreate,
    estimate: QuotationEstimate | None,
    now: str,
) -> int:
    vehicle = payload.vehicle_info
    location = payload.location
    cursor = await db.execute(
        """
        INSERT INTO service_requests (
            customer_id, mechanic_id, is_direct_booking, issue_type, description,
            vehicle_type, vehicle_make, vehicle_model, vehicle_plate, vehicle_year, images,
            lat, lng, address, broadcast_radius_km, priority, status,
            quotation, estimated_duration, version, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, 1, ?, ?)
        """,
        (
            customer_id,
            payload.mechanic_id if payload.is_direct_booking else None,
            1 if payload.is_direct_booking else 0,
            payload.issue_type,
            payload.description.strip(),
            vehicle.type,
            vehicle.make,
            vehicle.model,
            vehicle.plate,
            vehicle.year,
            json.dumps(payload.images),
            location.lat,
            location.lng,
            location.address,
            payload.broadcast_radius,
            payload.priority,
            estimate.quotation if estimate else None,
            estimate.estimated_duration if estimate else None,
            now,
            now,
        ),
    )
    request_id = int(cursor.lastrowid)
    await cursor.close()

    await db.execute(
        """
        INSERT INTO request_history (request_id, status, actor_id, note, created_at)
        VALUES (?, 'pending', ?, ?, ?)
        """,
        (request_id, customer_id, "Service request created", now),
    )
    return request_id


async def create_request(customer: dict[str, Any], payload: RequestCreate) -> CreateRequestResponse:
    if customer.get("role") != "customer":
        raise Forbidden("Only customers can create service requests")
    customer_id = int(customer["id"])

    db = await get_db()
    try:
        if payload.is_direct_booking:
            await _get_direct_target(db, int(payload.mechanic_id))
            candidates: list[NearbyMechanic] = []
        else:
            candidates = await _find_candidates(payload)

        estimate = await _estimate(payload)
        now = utc_now_iso()

        await db.execute("BEGIN IMMEDIATE")
        request_id = await _insert_request(db, customer_id, payload, estimate, now)
        if candidates:
            await db.executemany(
                """
                INSERT INTO request_candidates (request_id, mechanic_id, distance_km, notified_at)
                VALUES (?, ?, ?, ?)
                """,
                [(request_id, candidate.id, candidate.distance_km, now) for candidate in candidates],
            )
        row = await get_request_row(db, request_id)
        history = await load_history(db, request_id)
        await db.commit()

        announce_created(row, [candidate.model_dump() for candidate in candidates])
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()

    booking_type = "direct" if payload.is_direct_booking else "broadcast"
    logger.info(
        "Service request %s created by customer %s (%s, %s candidates, quotation=%s)",
        request_id,
        customer_id,
        booking_type,
        len(candidates),
        estimate.quotation if estimate else None,
    )
    if booking_type == "broadcast" and not candidates:
        logger.info("No eligible mechanics near request %s; it stays pending", request_id)

    quotation = None
    if estimate:
        quotation = QuotationSummary(
            estimated=estimate.quotation,
            range=QuotationRange(**estimate.range),
            estimated_duration=estimate.estimated_duration,
            confidence=estimate.confidence,
            breakdown=estimate.breakdown,
        )

    return CreateRequestResponse(
        request=to_response(row, history=history),
        quotation=quotation,
        quotation_message=None if estimate else NO_QUOTATION_MESSAGE,
        booking_type=booking_type,
        notified_mechanics=1 if payload.is_direct_booking else len(candidates),
    )

"""
Acceptance arbiter.

Many mechanics may try to claim the same broadcast request at once. The claim
is one conditional UPDATE (``status = 'pending' AND mechanic_id IS NULL``);
whoever matches the row wins and everyone else gets
``RequestNoLongerAvailable``. Direct bookings use the same pattern guarded by
the pre-assigned mechanic id.
"""

from __future__ import annotations

import logging
from typing import Any

from db import get_db
from dispatch_errors import Forbidden, MissingLocation, RequestNoLongerAvailable
from request_events import announce_accepted, announce_rejected
from request_models import AcceptPayload, RequestResponse
from request_state import apply_transition, get_request_row, load_snapshot, set_mechanic_availability
from utils import clean_text

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Rejected by mechanic"


def _require_mechanic(actor: dict[str, Any]) -> int:
    if actor.get("role") != "mechanic":
        raise Forbidden("Only mechanics can respond to service requests")
    return int(actor["id"])


def _has_location(actor: dict[str, Any]) -> bool:
    return actor.get("lat") is not None and actor.get("lng") is not None


async def _other_candidates(db, request_id: int, winner_id: int) -> list[int]:
    cursor = await db.execute(
        """
        SELECT mechanic_id
        FROM request_candidates
        WHERE request_id = ? AND mechanic_id != ?
        ORDER BY distance_km ASC
        """,
        (request_id, winner_id),
    )
    rows = await cursor.fetchall()
    await cursor.close()
    return [int(row["mechanic_id"]) for row in rows]


async def accept_request(
    request_id: int,
    actor: dict[str, Any],
    payload: AcceptPayload | None = None,
) -> RequestResponse:
    mechanic_id = _require_mechanic(actor)
    payload = payload or AcceptPayload()

    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        is_direct = bool(row["is_direct_booking"])

        if is_direct and (row["mechanic_id"] is None or int(row["mechanic_id"]) != mechanic_id):
            raise Forbidden("This direct booking is assigned to another mechanic")
        if row["status"] != "pending":
            raise RequestNoLongerAvailable()
        if not is_direct and not _has_location(actor):
            raise MissingLocation()

        changes: dict[str, Any] = {}
        if payload.quotation:
            changes["quotation"] = payload.quotation
        if payload.estimated_duration:
            changes["estimated_duration"] = payload.estimated_duration

        if is_direct:
            note = "Direct booking request accepted by mechanic"
            guards = {"mechanic_id": mechanic_id}
        else:
            note = "Request accepted by mechanic"
            changes["mechanic_id"] = mechanic_id
            guards = {"mechanic_id": None}

        await db.execute("BEGIN IMMEDIATE")
        won = await apply_transition(
            db,
            row,
            "assigned",
            actor_id=mechanic_id,
            note=note,
            changes=changes,
            guards=guards,
        )
        if not won:
            await db.rollback()
            logger.info("Mechanic %s lost the race for request %s", mechanic_id, request_id)
            raise RequestNoLongerAvailable()

        await set_mechanic_availability(db, mechanic_id, False)
        updated = await get_request_row(db, request_id)
        others = [] if is_direct else await _other_candidates(db, request_id, mechanic_id)
        await db.commit()

        announce_accepted(updated, others)
        logger.info(
            "Request %s accepted by mechanic %s (%s)",
            request_id,
            mechanic_id,
            "direct" if is_direct else "broadcast",
        )
        return await load_snapshot(db, request_id)
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


async def reject_request(request_id: int, actor: dict[str, Any], reason: str | None = None) -> RequestResponse:
    mechanic_id = _require_mechanic(actor)
    reason_text = clean_text(reason) or DEFAULT_REJECTION_REASON

    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        if (
            not row["is_direct_booking"]
            or row["mechanic_id"] is None
            or int(row["mechanic_id"]) != mechanic_id
        ):
            raise Forbidden("You can only reject direct booking requests assigned to you")
        if row["status"] != "pending":
            raise RequestNoLongerAvailable()

        await db.execute("BEGIN IMMEDIATE")
        applied = await apply_transition(
            db,
            row,
            "cancelled",
            actor_id=mechanic_id,
            note=f"Request rejected by mechanic: {reason_text}",
            changes={"cancellation_reason": reason_text},
            guards={"mechanic_id": mechanic_id},
        )
        if not applied:
            await db.rollback()
            raise RequestNoLongerAvailable()

        updated = await get_request_row(db, request_id)
        await db.commit()

        announce_rejected(updated, reason_text)
        logger.info("Direct booking %s rejected by mechanic %s: %s", request_id, mechanic_id, reason_text)
        return await load_snapshot(db, request_id)
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()

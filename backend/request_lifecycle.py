"""
Status updates, cancellation, notes and live location for existing requests.
"""

from __future__ import annotations

import logging
from typing import Any

from arbiter import accept_request, reject_request
from db import get_db, utc_now_iso
from dispatch_errors import (
    Forbidden,
    InvalidTransition,
    MissingAmount,
    NotCancellable,
    ValidationError,
)
from request_events import announce_location, announce_status
from request_models import LocationShare, NoteResponse, RequestResponse, StatusUpdate
from request_state import (
    ACTIVE_STATUSES,
    apply_transition,
    authorize_transition,
    check_transition,
    get_request_row,
    is_cancellable,
    is_terminal,
    load_snapshot,
    set_mechanic_availability,
)
from utils import clean_text

logger = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3


async def _open_candidates(db, row: Any) -> list[int]:
    if row["is_direct_booking"]:
        return []
    cursor = await db.execute(
        "SELECT mechanic_id FROM request_candidates WHERE request_id = ?",
        (int(row["id"]),),
    )
    rows = await cursor.fetchall()
    await cursor.close()
    return [int(candidate["mechanic_id"]) for candidate in rows]


async def _require_mechanic_account(db, mechanic_id: int) -> None:
    cursor = await db.execute(
        "SELECT role, is_active FROM users WHERE id = ?",
        (mechanic_id,),
    )
    row = await cursor.fetchone()
    await cursor.close()
    if not row or row["role"] != "mechanic" or not row["is_active"]:
        raise ValidationError("mechanic_id must reference an active mechanic")


async def _peek_request(request_id: int):
    db = await get_db()
    try:
        return await get_request_row(db, request_id)
    finally:
        await db.close()


def _completion_amount(row: Any, payload: StatusUpdate, changes: dict[str, Any]) -> float:
    for candidate in (
        payload.final_amount,
        row["final_amount"],
        changes.get("quotation"),
        row["quotation"],
    ):
        if candidate is not None:
            return float(candidate)
    raise MissingAmount()


async def update_status(request_id: int, actor: dict[str, Any], payload: StatusUpdate) -> RequestResponse:
    """
    Drive a request to ``payload.status`` on behalf of ``actor``.

    Cancellation is routed through ``cancel_request`` (the note is the reason),
    and a mechanic moving their own pending direct booking to ``assigned`` is
    an acceptance.
    """
    next_status = payload.status
    if next_status == "cancelled":
        return await cancel_request(request_id, actor, payload.note or "")

    if actor.get("role") == "mechanic" and next_status == "assigned":
        peeked = await _peek_request(request_id)
        if peeked["status"] == "pending":
            return await accept_request(request_id, actor)

    actor_id = int(actor["id"])
    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        previous = str(row["status"])

        authorize_transition(actor, row, next_status)
        check_transition(previous, next_status)

        changes: dict[str, Any] = {}
        guards: dict[str, Any] = {}
        if actor.get("role") == "mechanic":
            guards["mechanic_id"] = actor_id

        if next_status == "assigned":
            # Only admins get here; mechanics accept through the arbiter.
            mechanic_id = payload.mechanic_id or row["mechanic_id"]
            if mechanic_id is None:
                raise ValidationError("mechanic_id is required to assign a request")
            await _require_mechanic_account(db, int(mechanic_id))
            changes["mechanic_id"] = int(mechanic_id)

        if payload.quotation and next_status in ("enroute", "in_progress", "completed"):
            changes["quotation"] = payload.quotation

        if next_status == "completed":
            changes["final_amount"] = _completion_amount(row, payload, changes)

        note = clean_text(payload.note) or f"Status updated to {next_status}"

        await db.execute("BEGIN IMMEDIATE")
        applied = await apply_transition(
            db,
            row,
            next_status,
            actor_id=actor_id,
            note=note,
            changes=changes,
            guards=guards,
        )
        if not applied:
            await db.rollback()
            current = await get_request_row(db, request_id)
            raise InvalidTransition(str(current["status"]), next_status)

        if next_status == "assigned":
            await set_mechanic_availability(db, changes["mechanic_id"], False)
        elif is_terminal(next_status):
            await set_mechanic_availability(db, row["mechanic_id"], True)

        updated = await get_request_row(db, request_id)
        await db.commit()

        announce_status(updated, previous, actor_id=actor_id, note=note)
        logger.info(
            "Request %s moved %s -> %s by %s %s",
            request_id,
            previous,
            next_status,
            actor.get("role"),
            actor_id,
        )
        return await load_snapshot(db, request_id)
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


def _authorize_cancel(actor: dict[str, Any], row: Any) -> None:
    role = actor.get("role")
    actor_id = int(actor["id"])
    if role == "admin":
        return
    if role == "customer":
        if int(row["customer_id"]) != actor_id:
            raise Forbidden("You can only cancel your own requests")
        return
    if role == "mechanic":
        if row["mechanic_id"] is None or int(row["mechanic_id"]) != actor_id:
            raise Forbidden("You can only cancel requests assigned to you")
        return
    raise Forbidden()


async def cancel_request(request_id: int, actor: dict[str, Any], reason: str) -> RequestResponse:
    """
    Cancel a request from any non-terminal status.

    The conditional write is retried when the status moved between two
    cancellable states while we were deciding; it gives up with
    ``NotCancellable`` once the request is terminal.
    """
    reason = clean_text(reason)
    if not reason:
        raise ValidationError("A cancellation reason is required")

    actor_id = int(actor["id"])
    role = actor.get("role")

    if role == "mechanic":
        peeked = await _peek_request(request_id)
        if (
            peeked["status"] == "pending"
            and peeked["is_direct_booking"]
            and peeked["mechanic_id"] is not None
            and int(peeked["mechanic_id"]) == actor_id
        ):
            return await reject_request(request_id, actor, reason)

    db = await get_db()
    try:
        for _ in range(CANCEL_ATTEMPTS):
            row = await get_request_row(db, request_id)
            previous = str(row["status"])

            _authorize_cancel(actor, row)
            if not is_cancellable(previous):
                raise NotCancellable(f"Request cannot be cancelled once it is {previous}")

            await db.execute("BEGIN IMMEDIATE")
            applied = await apply_transition(
                db,
                row,
                "cancelled",
                actor_id=actor_id,
                note=f"Cancelled by {role}: {reason}",
                changes={"cancellation_reason": reason},
            )
            if not applied:
                await db.rollback()
                continue

            if previous != "pending":
                await set_mechanic_availability(db, row["mechanic_id"], True)
            updated = await get_request_row(db, request_id)
            open_candidates = await _open_candidates(db, row) if previous == "pending" else []
            await db.commit()

            announce_status(
                updated,
                previous,
                actor_id=actor_id,
                note=f"Cancelled: {reason}",
                open_candidates=open_candidates,
            )
            logger.info("Request %s cancelled by %s %s: %s", request_id, role, actor_id, reason)
            return await load_snapshot(db, request_id)

        raise NotCancellable("Request changed while cancelling, please retry")
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


def _can_add_note(actor: dict[str, Any], row: Any) -> bool:
    role = actor.get("role")
    actor_id = int(actor["id"])
    if role == "admin":
        return True
    if role == "customer":
        return int(row["customer_id"]) == actor_id
    if role == "mechanic":
        return row["mechanic_id"] is not None and int(row["mechanic_id"]) == actor_id
    return False


async def add_note(request_id: int, actor: dict[str, Any], text: str) -> NoteResponse:
    text = clean_text(text)
    if not text:
        raise ValidationError("Note text is required")

    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        if not _can_add_note(actor, row):
            raise Forbidden("You cannot add notes to this request")

        now = utc_now_iso()
        cursor = await db.execute(
            """
            INSERT INTO request_notes (request_id, text, added_by, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (request_id, text, int(actor["id"]), now),
        )
        note_id = int(cursor.lastrowid)
        await cursor.close()
        await db.commit()
        return NoteResponse(id=note_id, text=text, added_by=int(actor["id"]), timestamp=now)
    finally:
        await db.close()


async def share_location(request_id: int, actor: dict[str, Any], update: LocationShare) -> dict[str, Any]:
    """
    Relay a live position between the two parties of an active request.

    The assigned mechanic's position is also stored as their current location.
    """
    role = actor.get("role")
    actor_id = int(actor["id"])

    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        if role == "mechanic":
            allowed = row["mechanic_id"] is not None and int(row["mechanic_id"]) == actor_id
        elif role == "customer":
            allowed = int(row["customer_id"]) == actor_id and row["mechanic_id"] is not None
        else:
            allowed = False
        if not allowed:
            raise Forbidden("You cannot share your location on this request")
        if row["status"] not in ACTIVE_STATUSES:
            raise ValidationError("Location is only shared while a request is active")

        now = utc_now_iso()
        if role == "mechanic":
            await db.execute(
                "UPDATE users SET lat = ?, lng = ?, location_updated_at = ? WHERE id = ?",
                (update.lat, update.lng, now, actor_id),
            )
            await db.commit()
    finally:
        await db.close()

    data = {
        f"{role}_id": actor_id,
        "location": {"lat": update.lat, "lng": update.lng},
        "heading": update.heading,
        "speed": update.speed,
        "sent_at": now,
    }
    announce_location(row, role, data)
    return data

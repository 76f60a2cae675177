"""
Service request state machine.

Every status change goes through ``apply_transition``, a single conditional
UPDATE guarded by the status the caller last observed. A zero-row match means
another writer committed first; the caller decides how to report that.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from db import utc_now_iso
from dispatch_errors import Forbidden, InvalidTransition, NotFound
from request_models import HistoryEntry, Location, NoteResponse, RequestResponse, VehicleInfo

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"assigned", "cancelled"}),
    "assigned": frozenset({"enroute", "cancelled"}),
    "enroute": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})
CANCELLABLE_STATUSES = frozenset({"pending", "assigned", "enroute", "in_progress"})
ACTIVE_STATUSES = frozenset({"assigned", "enroute", "in_progress"})
ACTIVE_PLACEHOLDERS = ", ".join("?" for _ in ACTIVE_STATUSES)

# Transitions an assigned mechanic may drive through updateStatus.
MECHANIC_TRANSITIONS = frozenset(
    {
        ("assigned", "enroute"),
        ("enroute", "in_progress"),
        ("in_progress", "completed"),
    }
)

STATUS_TIMESTAMP_COLUMN = {
    "assigned": "accepted_at",
    "in_progress": "started_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
}

SELECT_COLUMNS = """
    id, customer_id, mechanic_id, is_direct_booking, issue_type, description,
    vehicle_type, vehicle_make, vehicle_model, vehicle_plate, vehicle_year, images,
    lat, lng, address, broadcast_radius_km, priority, status,
    quotation, estimated_duration, final_amount, actual_duration, cancellation_reason,
    version, created_at, updated_at, accepted_at, started_at, completed_at, cancelled_at
"""


def is_transition_allowed(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def check_transition(current: str, requested: str) -> None:
    if not is_transition_allowed(current, requested):
        raise InvalidTransition(current, requested)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_cancellable(status: str) -> bool:
    return status in CANCELLABLE_STATUSES


def authorize_transition(actor: dict[str, Any], request_row: Any, requested: str) -> None:
    """
    Apply the per-role transition policy.

    Raises ``Forbidden`` when the actor may not drive ``requested`` on this
    request. Legality of the pair itself is checked separately.
    """
    role = actor["role"]
    actor_id = int(actor["id"])
    current = str(request_row["status"])

    if role == "admin":
        return

    if role == "customer":
        if int(request_row["customer_id"]) != actor_id:
            raise Forbidden("You can only update your own requests")
        if requested != "cancelled":
            raise Forbidden("Customers can only cancel requests")
        return

    if role == "mechanic":
        if request_row["mechanic_id"] is None or int(request_row["mechanic_id"]) != actor_id:
            raise Forbidden("You can only update requests assigned to you")
        if requested == "cancelled":
            return
        if (current, requested) not in MECHANIC_TRANSITIONS and is_transition_allowed(current, requested):
            raise Forbidden(f"Mechanics cannot move a request from {current} to {requested}")
        return

    raise Forbidden()


async def fetch_request_row(db, request_id: int):
    cursor = await db.execute(
        f"""
        SELECT {SELECT_COLUMNS}
        FROM service_requests
        WHERE id = ?
        """,
        (request_id,),
    )
    row = await cursor.fetchone()
    await cursor.close()
    return row


async def get_request_row(db, request_id: int):
    row = await fetch_request_row(db, request_id)
    if not row:
        raise NotFound()
    return row


def _minutes_between(start_iso: str | None, end_iso: str) -> int | None:
    if not start_iso:
        return None
    try:
        started = datetime.fromisoformat(start_iso)
        ended = datetime.fromisoformat(end_iso)
    except ValueError:
        return None
    return round((ended - started).total_seconds() / 60)


async def apply_transition(
    db,
    request_row: Any,
    next_status: str,
    *,
    actor_id: int | None,
    note: str = "",
    changes: dict[str, Any] | None = None,
    guards: dict[str, Any] | None = None,
) -> bool:
    """
    Conditionally move a request from the status in ``request_row`` to
    ``next_status`` and append one history entry.

    ``changes`` are extra columns written in the same UPDATE. ``guards`` are
    extra equality conditions (``None`` means ``IS NULL``). Returns False when
    the row no longer matches; nothing is written in that case. The caller
    owns the surrounding transaction.
    """
    current = str(request_row["status"])
    check_transition(current, next_status)

    now = utc_now_iso()
    values: dict[str, Any] = dict(changes or {})
    values["status"] = next_status
    values["updated_at"] = now
    timestamp_column = STATUS_TIMESTAMP_COLUMN.get(next_status)
    if timestamp_column:
        values[timestamp_column] = now
    if next_status == "completed":
        values["actual_duration"] = _minutes_between(request_row["started_at"], now)

    set_clause = ", ".join(f"{key} = ?" for key in values)
    where_clauses = ["id = ?", "status = ?"]
    params: list[Any] = [*values.values(), int(request_row["id"]), current]
    for column, expected in (guards or {}).items():
        if expected is None:
            where_clauses.append(f"{column} IS NULL")
        else:
            where_clauses.append(f"{column} = ?")
            params.append(expected)

    cursor = await db.execute(
        f"""
        UPDATE service_requests
        SET {set_clause}, version = version + 1
        WHERE {" AND ".join(where_clauses)}
        """,
        params,
    )
    matched = cursor.rowcount
    await cursor.close()
    if matched == 0:
        logger.info(
            "Transition %s -> %s on request %s lost to a concurrent writer",
            current,
            next_status,
            request_row["id"],
        )
        return False

    await db.execute(
        """
        INSERT INTO request_history (request_id, status, actor_id, note, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (int(request_row["id"]), next_status, actor_id, note or "", now),
    )
    return True


async def set_mechanic_availability(db, mechanic_id: int | None, is_available: bool) -> None:
    if mechanic_id is None:
        return
    if not is_available:
        await db.execute(
            "UPDATE users SET is_available = 0 WHERE id = ? AND role = 'mechanic'",
            (int(mechanic_id),),
        )
        return
    # Released only once the mechanic holds no other active job.
    await db.execute(
        f"""
        UPDATE users
        SET is_available = 1
        WHERE id = ? AND role = 'mechanic'
          AND NOT EXISTS (
              SELECT 1 FROM service_requests
              WHERE mechanic_id = ? AND status IN ({ACTIVE_PLACEHOLDERS})
          )
        """,
        (int(mechanic_id), int(mechanic_id), *sorted(ACTIVE_STATUSES)),
    )


async def load_history(db, request_id: int) -> list[HistoryEntry]:
    cursor = await db.execute(
        """
        SELECT status, actor_id, note, created_at
        FROM request_history
        WHERE request_id = ?
        ORDER BY id ASC
        """,
        (request_id,),
    )
    rows = await cursor.fetchall()
    await cursor.close()
    return [
        HistoryEntry(
            status=row["status"],
            actor_id=row["actor_id"],
            note=row["note"] or "",
            timestamp=row["created_at"],
        )
        for row in rows
    ]


async def load_notes(db, request_id: int) -> list[NoteResponse]:
    cursor = await db.execute(
        """
        SELECT id, text, added_by, created_at
        FROM request_notes
        WHERE request_id = ?
        ORDER BY id ASC
        """,
        (request_id,),
    )
    rows = await cursor.fetchall()
    await cursor.close()
    return [
        NoteResponse(id=row["id"], text=row["text"], added_by=row["added_by"], timestamp=row["created_at"])
        for row in rows
    ]


def to_response(row: Any, **extra: Any) -> RequestResponse:
    return RequestResponse(
        id=row["id"],
        customer_id=row["customer_id"],
        mechanic_id=row["mechanic_id"],
        is_direct_booking=bool(row["is_direct_booking"]),
        issue_type=row["issue_type"],
        description=row["description"],
        vehicle_info=VehicleInfo(
            type=row["vehicle_type"],
            make=row["vehicle_make"] or "",
            model=row["vehicle_model"],
            plate=row["vehicle_plate"],
            year=row["vehicle_year"],
        ),
        images=json.loads(row["images"] or "[]"),
        location=Location(lat=row["lat"], lng=row["lng"], address=row["address"] or ""),
        broadcast_radius=row["broadcast_radius_km"],
        priority=row["priority"],
        status=row["status"],
        quotation=row["quotation"],
        estimated_duration=row["estimated_duration"],
        final_amount=row["final_amount"],
        actual_duration=row["actual_duration"],
        cancellation_reason=row["cancellation_reason"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        accepted_at=row["accepted_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        cancelled_at=row["cancelled_at"],
        **extra,
    )


async def load_snapshot(db, request_id: int) -> RequestResponse:
    row = await get_request_row(db, request_id)
    return to_response(
        row,
        history=await load_history(db, request_id),
        notes=await load_notes(db, request_id),
    )

"""
Read side of the request store: snapshots, listings and payment gating.
"""

from __future__ import annotations

from typing import Any, get_args

from config import MECHANIC_TASK_RADIUS_KM
from db import get_db
from dispatch_errors import Forbidden
from geo_index import bounding_box, display_distance, haversine_km, lng_clause
from request_models import PaymentEligibility, RequestPriority, RequestResponse, RequestStatus, RequestSummary
from request_state import SELECT_COLUMNS, get_request_row, load_history, load_notes, to_response

ALLOWED_STATUSES = get_args(RequestStatus)
ALLOWED_PRIORITIES = get_args(RequestPriority)

PRIORITY_RANK_SQL = "CASE priority WHEN 'emergency' THEN 0 WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3 END"
SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "priority": PRIORITY_RANK_SQL,
    "status": "status",
}


def _actor_location(actor: dict[str, Any]) -> tuple[float, float] | None:
    if actor.get("lat") is None or actor.get("lng") is None:
        return None
    return float(actor["lat"]), float(actor["lng"])


def _distance_to(actor: dict[str, Any], row: Any) -> float | None:
    origin = _actor_location(actor)
    if origin is None:
        return None
    return display_distance(origin[0], origin[1], float(row["lat"]), float(row["lng"]))


async def _is_candidate(db, request_id: int, mechanic_id: int) -> bool:
    cursor = await db.execute(
        "SELECT 1 FROM request_candidates WHERE request_id = ? AND mechanic_id = ?",
        (request_id, mechanic_id),
    )
    row = await cursor.fetchone()
    await cursor.close()
    return row is not None


async def _can_view(db, actor: dict[str, Any], row: Any) -> bool:
    role = actor.get("role")
    actor_id = int(actor["id"])
    if role == "admin":
        return True
    if role == "customer":
        return int(row["customer_id"]) == actor_id
    if role == "mechanic":
        if row["mechanic_id"] is not None and int(row["mechanic_id"]) == actor_id:
            return True
        # Open broadcast offers are visible to mechanics so they can decide.
        if row["status"] == "pending" and not row["is_direct_booking"]:
            return True
        return await _is_candidate(db, int(row["id"]), actor_id)
    return False


async def ensure_request_access(request_id: int, actor: dict[str, Any]) -> None:
    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        if not await _can_view(db, actor, row):
            raise Forbidden("You do not have access to this request")
    finally:
        await db.close()


async def get_snapshot(request_id: int, actor: dict[str, Any]) -> RequestResponse:
    """
    Current state of a request with its history and notes.

    Clients use this to reconcile after missing real-time events; ``version``
    tells them whether their copy is stale.
    """
    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
        if not await _can_view(db, actor, row):
            raise Forbidden("You do not have access to this request")
        return to_response(
            row,
            distance_km=_distance_to(actor, row) if actor.get("role") == "mechanic" else None,
            history=await load_history(db, request_id),
            notes=await load_notes(db, request_id),
        )
    finally:
        await db.close()


async def list_customer_requests(
    customer_id: int,
    *,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[RequestResponse]:
    clauses = ["customer_id = ?"]
    params: list[Any] = [customer_id]
    if status:
        clauses.append("status = ?")
        params.append(status)

    db = await get_db()
    try:
        cursor = await db.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM service_requests
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()
    finally:
        await db.close()
    return [to_response(row) for row in rows]


async def list_mechanic_tasks(mechanic: dict[str, Any], *, include_offers: bool = True) -> list[RequestResponse]:
    """
    Requests assigned to the mechanic plus pending offers they can still take.

    Offers are the broadcasts the mechanic was notified about and, when the
    mechanic has a location, any other pending broadcast whose own radius
    reaches them (searched within ``MECHANIC_TASK_RADIUS_KM``).
    """
    mechanic_id = int(mechanic["id"])
    origin = _actor_location(mechanic)

    db = await get_db()
    try:
        cursor = await db.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM service_requests
            WHERE mechanic_id = ?
            ORDER BY updated_at DESC, id DESC
            """,
            (mechanic_id,),
        )
        own_rows = list(await cursor.fetchall())
        await cursor.close()

        offer_rows: list[Any] = []
        if include_offers:
            cursor = await db.execute(
                f"""
                SELECT {", ".join(f"r.{column.strip()}" for column in SELECT_COLUMNS.split(","))}
                FROM service_requests r
                JOIN request_candidates c ON c.request_id = r.id
                WHERE c.mechanic_id = ?
                  AND r.status = 'pending'
                  AND r.mechanic_id IS NULL
                """,
                (mechanic_id,),
            )
            offer_rows.extend(await cursor.fetchall())
            await cursor.close()

            if origin is not None:
                min_lat, max_lat, min_lng, max_lng = bounding_box(origin[0], origin[1], MECHANIC_TASK_RADIUS_KM)
                lng_sql, lng_params = lng_clause(min_lng, max_lng)
                cursor = await db.execute(
                    f"""
                    SELECT {SELECT_COLUMNS}
                    FROM service_requests
                    WHERE status = 'pending'
                      AND is_direct_booking = 0
                      AND mechanic_id IS NULL
                      AND lat BETWEEN ? AND ?
                      AND {lng_sql}
                    """,
                    (min_lat, max_lat, *lng_params),
                )
                for row in await cursor.fetchall():
                    distance = haversine_km(origin[0], origin[1], float(row["lat"]), float(row["lng"]))
                    if distance <= min(float(row["broadcast_radius_km"]), MECHANIC_TASK_RADIUS_KM):
                        offer_rows.append(row)
                await cursor.close()
    finally:
        await db.close()

    seen: set[int] = set()
    tasks: list[RequestResponse] = []
    for row in own_rows:
        seen.add(int(row["id"]))
        tasks.append(to_response(row, distance_km=_distance_to(mechanic, row)))

    offers: list[RequestResponse] = []
    for row in offer_rows:
        if int(row["id"]) in seen:
            continue
        seen.add(int(row["id"]))
        offers.append(to_response(row, distance_km=_distance_to(mechanic, row)))
    offers.sort(key=lambda item: (item.distance_km is None, item.distance_km or 0.0, item.id))
    return tasks + offers


async def list_requests(
    *,
    status: str | None = None,
    priority: str | None = None,
    issue_type: str | None = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> list[RequestResponse]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in (("status", status), ("priority", priority), ("issue_type", issue_type)):
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    order_column = SORT_COLUMNS.get(sort_by, "created_at")
    direction = "ASC" if sort_order == "asc" else "DESC"

    db = await get_db()
    try:
        cursor = await db.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM service_requests
            {where_sql}
            ORDER BY {order_column} {direction}, id {direction}
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()
    finally:
        await db.close()
    return [to_response(row) for row in rows]


async def request_summary() -> RequestSummary:
    summary = RequestSummary(
        status={key: 0 for key in ALLOWED_STATUSES},
        priority={key: 0 for key in ALLOWED_PRIORITIES},
        total=0,
    )

    db = await get_db()
    try:
        cursor = await db.execute("SELECT status, COUNT(*) AS total FROM service_requests GROUP BY status")
        for row in await cursor.fetchall():
            summary.status[row["status"]] = int(row["total"])
            summary.total += int(row["total"])
        await cursor.close()

        cursor = await db.execute("SELECT priority, COUNT(*) AS total FROM service_requests GROUP BY priority")
        for row in await cursor.fetchall():
            summary.priority[row["priority"]] = int(row["total"])
        await cursor.close()
    finally:
        await db.close()
    return summary


async def payment_eligibility(request_id: int, actor: dict[str, Any]) -> PaymentEligibility:
    """A request can be paid only once it is completed with a final amount."""
    db = await get_db()
    try:
        row = await get_request_row(db, request_id)
    finally:
        await db.close()

    if actor.get("role") != "admin" and int(row["customer_id"]) != int(actor["id"]):
        raise Forbidden("Only the requesting customer can pay for this request")

    if row["status"] != "completed":
        return PaymentEligibility(
            request_id=request_id,
            eligible=False,
            amount=None,
            reason=f"Request is {row['status']}, payment opens once it is completed",
        )
    if row["final_amount"] is None:
        return PaymentEligibility(
            request_id=request_id,
            eligible=False,
            amount=None,
            reason="No final amount recorded",
        )
    return PaymentEligibility(request_id=request_id, eligible=True, amount=float(row["final_amount"]))

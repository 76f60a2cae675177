"""
Post-commit side effects of request transitions: real-time events and
notifications.

Called synchronously right after a transition commits, before the response
is returned, so events for one request leave in commit order. Nothing here
may fail the transition that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from events import POOL_CHANNEL, event_hub, mechanic_channel, request_channel, user_channel
from notifications import notification_dispatcher

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "assigned": "A mechanic has accepted your request",
    "enroute": "Your mechanic is on the way",
    "in_progress": "Work on your vehicle has started",
    "completed": "Service completed",
    "cancelled": "The request was cancelled",
}


def event_payload(row: Any) -> dict[str, Any]:
    return {
        "request_id": int(row["id"]),
        "status": row["status"],
        "customer_id": int(row["customer_id"]),
        "mechanic_id": row["mechanic_id"],
        "issue_type": row["issue_type"],
        "priority": row["priority"],
        "location": {"lat": row["lat"], "lng": row["lng"], "address": row["address"] or ""},
        "quotation": row["quotation"],
        "estimated_duration": row["estimated_duration"],
        "final_amount": row["final_amount"],
        "is_direct_booking": bool(row["is_direct_booking"]),
    }


def _party_channels(row: Any) -> list[str]:
    channels = [request_channel(int(row["id"])), user_channel(int(row["customer_id"]))]
    if row["mechanic_id"] is not None:
        channels.append(mechanic_channel(int(row["mechanic_id"])))
    return channels


def _run_safely(action: str, func, *args, **kwargs) -> None:
    try:
        func(*args, **kwargs)
    except Exception:
        logger.exception("Fan-out for %s failed", action)


def announce_created(row: Any, candidates: Iterable[dict[str, Any]]) -> None:
    _run_safely("request creation", _announce_created, row, list(candidates))


def _announce_created(row: Any, candidates: list[dict[str, Any]]) -> None:
    payload = event_payload(row)
    version = int(row["version"])
    notification_dispatcher.dispatch("request-created", row["customer_id"], payload)

    if row["is_direct_booking"]:
        # Only the targeted mechanic ever hears about a direct booking.
        mechanic_id = int(row["mechanic_id"])
        event_hub.publish(mechanic_channel(mechanic_id), "direct-booking-request", payload, version=version)
        notification_dispatcher.dispatch("direct-booking", mechanic_id, payload)
        if row["priority"] == "emergency":
            event_hub.publish(mechanic_channel(mechanic_id), "emergency-alert", payload, version=version)
        return

    if not candidates:
        return
    candidate_ids = [int(candidate["id"]) for candidate in candidates]
    for candidate in candidates:
        offer = dict(payload, distance_km=candidate["distance_km"])
        event_hub.publish(mechanic_channel(int(candidate["id"])), "new-request-available", offer, version=version)
    # Candidates already got their own offer with the distance attached.
    event_hub.publish(POOL_CHANNEL, "new-request-available", payload, version=version, skip_users=candidate_ids)
    notification_dispatcher.dispatch_many("new-request", candidate_ids, payload)

    if row["priority"] == "emergency":
        event_hub.publish_many(
            [request_channel(int(row["id"])), *(mechanic_channel(mid) for mid in candidate_ids)],
            "emergency-alert",
            payload,
            version=version,
        )


def announce_accepted(row: Any, other_candidates: Iterable[int]) -> None:
    _run_safely("acceptance", _announce_accepted, row, list(other_candidates))


def _announce_accepted(row: Any, other_candidates: list[int]) -> None:
    payload = event_payload(row)
    version = int(row["version"])
    event_hub.mark_offline(int(row["mechanic_id"]))
    event_hub.publish_many(_party_channels(row), "request-accepted", payload, version=version)
    event_hub.publish_many(
        _party_channels(row),
        "status-update",
        dict(payload, message=STATUS_MESSAGES["assigned"]),
        version=version,
    )
    notification_dispatcher.dispatch("mechanic-assigned", row["customer_id"], payload)

    if not row["is_direct_booking"]:
        taken = {"request_id": int(row["id"])}
        event_hub.publish_many(
            [POOL_CHANNEL, *(mechanic_channel(mid) for mid in other_candidates)],
            "request-taken",
            taken,
            version=version,
        )


def announce_rejected(row: Any, reason: str) -> None:
    _run_safely("rejection", _announce_rejected, row, reason)


def _announce_rejected(row: Any, reason: str) -> None:
    payload = dict(event_payload(row), reason=reason)
    version = int(row["version"])
    event_hub.publish_many(_party_channels(row), "request-rejected", payload, version=version)
    event_hub.publish_many(
        _party_channels(row),
        "status-update",
        dict(payload, message=STATUS_MESSAGES["cancelled"]),
        version=version,
    )
    notification_dispatcher.dispatch("request-rejected", row["customer_id"], payload)


def announce_status(
    row: Any,
    previous_status: str,
    *,
    actor_id: int | None,
    note: str = "",
    open_candidates: Iterable[int] = (),
) -> None:
    _run_safely("status update", _announce_status, row, previous_status, actor_id, note, list(open_candidates))


def _announce_status(
    row: Any,
    previous_status: str,
    actor_id: int | None,
    note: str,
    open_candidates: list[int],
) -> None:
    status = str(row["status"])
    payload = dict(
        event_payload(row),
        previous_status=previous_status,
        message=note or STATUS_MESSAGES.get(status, f"Status updated to {status}"),
    )
    version = int(row["version"])
    channels = _party_channels(row)

    if status == "assigned" and row["mechanic_id"] is not None:
        # A busy mechanic leaves the pool until they go online again.
        event_hub.mark_offline(int(row["mechanic_id"]))
    event_hub.publish_many(channels, "status-update", payload, version=version)
    if status == "in_progress":
        event_hub.publish_many(channels, "work-started", payload, version=version)
    elif status == "completed":
        event_hub.publish_many(channels, "work-completed", payload, version=version)
    elif status == "cancelled":
        cancelled = dict(payload, reason=row["cancellation_reason"])
        event_hub.publish_many(channels, "request-cancelled", cancelled, version=version)
        if previous_status == "pending" and not row["is_direct_booking"]:
            event_hub.publish_many(
                [POOL_CHANNEL, *(mechanic_channel(mid) for mid in open_candidates)],
                "request-cancelled",
                {"request_id": int(row["id"])},
                version=version,
            )

    # Notify whichever party did not drive the change.
    kind = "request-cancelled" if status == "cancelled" else "status-update"
    if actor_id is None or int(actor_id) != int(row["customer_id"]):
        notification_dispatcher.dispatch(kind, row["customer_id"], payload)
    if row["mechanic_id"] is not None and (actor_id is None or int(actor_id) != int(row["mechanic_id"])):
        notification_dispatcher.dispatch(kind, row["mechanic_id"], payload)


def announce_location(row: Any, sender_role: str, data: dict[str, Any]) -> None:
    _run_safely("location update", _announce_location, row, sender_role, data)


def _announce_location(row: Any, sender_role: str, data: dict[str, Any]) -> None:
    request_id = int(row["id"])
    if sender_role == "mechanic":
        channels = [request_channel(request_id), user_channel(int(row["customer_id"]))]
        event = "mechanic-location-update"
    else:
        channels = [request_channel(request_id), mechanic_channel(int(row["mechanic_id"]))]
        event = "customer-location-update"
    event_hub.publish_many(channels, event, dict(data, request_id=request_id))

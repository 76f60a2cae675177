"""
WebSocket transport for request lifecycle events.

Every connection is subscribed to ``user:{id}`` and, for mechanics,
``mechanic:{id}``. Clients send JSON actions to follow individual requests,
to register in the available-mechanics pool or to share a live position:

    {"action": "join-request", "request_id": 7}
    {"action": "leave-request", "request_id": 7}
    {"action": "go-online"}
    {"action": "heartbeat"}
    {"action": "go-offline"}
    {"action": "location-update", "request_id": 7, "lat": 40.7, "lng": -74.0}
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PayloadValidationError

from auth_deps import fetch_user_by_id, get_websocket_user
from events import Subscription, event_hub, mechanic_channel, request_channel, user_channel
from request_lifecycle import share_location
from request_models import LocationShare
from request_queries import ensure_request_access

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

POLICY_VIOLATION_CLOSE_CODE = status.WS_1008_POLICY_VIOLATION


async def _send_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        frame = await subscription.queue.get()
        await websocket.send_json(frame)


async def _send_error(websocket: WebSocket, detail: Any) -> None:
    await websocket.send_json({"type": "error", "detail": detail})


def _request_id(message: dict[str, Any]) -> int:
    try:
        return int(message["request_id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("request_id is required") from exc


async def _is_available(mechanic_id: int) -> bool:
    mechanic = await fetch_user_by_id(mechanic_id)
    return bool(mechanic and mechanic["is_active"] and mechanic["is_available"])


async def _share_location(websocket: WebSocket, user: dict[str, Any], message: dict[str, Any]) -> None:
    try:
        update = LocationShare.model_validate(message)
    except PayloadValidationError:
        await _send_error(websocket, "request_id, lat and lng are required")
        return
    try:
        await share_location(update.request_id, user, update)
    except HTTPException as exc:
        await _send_error(websocket, exc.detail)
        return
    await websocket.send_json({"type": "location-shared", "request_id": update.request_id})


async def _handle_action(websocket: WebSocket, user: dict[str, Any], subscription: Subscription, message: Any) -> None:
    if not isinstance(message, dict):
        await _send_error(websocket, "Messages must be JSON objects")
        return

    action = message.get("action")
    is_mechanic = user.get("role") == "mechanic"

    if action == "join-request":
        try:
            request_id = _request_id(message)
            await ensure_request_access(request_id, user)
        except ValueError as exc:
            await _send_error(websocket, str(exc))
            return
        except HTTPException as exc:
            await _send_error(websocket, exc.detail)
            return
        channel = request_channel(request_id)
        event_hub.join(subscription, channel)
        await websocket.send_json({"type": "subscribed", "channel": channel})
    elif action == "leave-request":
        try:
            request_id = _request_id(message)
        except ValueError as exc:
            await _send_error(websocket, str(exc))
            return
        channel = request_channel(request_id)
        event_hub.leave(subscription, channel)
        await websocket.send_json({"type": "unsubscribed", "channel": channel})
    elif action == "location-update":
        await _share_location(websocket, user, message)
    elif action in ("go-online", "heartbeat", "go-offline") and not is_mechanic:
        await _send_error(websocket, "Only mechanics can join the available pool")
    elif action == "go-online":
        if not await _is_available(subscription.user_id):
            await _send_error(websocket, "Mark yourself available before going online")
            return
        event_hub.mark_available(subscription)
        await websocket.send_json({"type": "subscribed", "channel": "available-mechanics"})
    elif action == "heartbeat":
        online = event_hub.heartbeat(subscription.user_id)
        if not online and await _is_available(subscription.user_id):
            # Expired: re-register on this connection.
            event_hub.mark_available(subscription)
            online = True
        await websocket.send_json({"type": "heartbeat", "online": online})
    elif action == "go-offline":
        event_hub.mark_offline(subscription.user_id)
        await websocket.send_json({"type": "unsubscribed", "channel": "available-mechanics"})
    else:
        await _send_error(websocket, f"Unknown action: {action}")


async def _receive_actions(websocket: WebSocket, user: dict[str, Any], subscription: Subscription) -> None:
    while True:
        text = await websocket.receive_text()
        try:
            message = json.loads(text)
        except ValueError:
            await _send_error(websocket, "Messages must be valid JSON")
            continue
        await _handle_action(websocket, user, subscription, message)


@router.websocket("/ws/requests")
async def request_events_ws(websocket: WebSocket):
    try:
        user = await get_websocket_user(websocket)
    except HTTPException:
        await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE)
        return

    await websocket.accept()
    subscription = event_hub.open(int(user["id"]), str(user["role"]))
    event_hub.join(subscription, user_channel(subscription.user_id))
    if subscription.role == "mechanic":
        event_hub.join(subscription, mechanic_channel(subscription.user_id))
    logger.info("Event stream opened for %s %s", subscription.role, subscription.user_id)

    sender = asyncio.create_task(_send_events(websocket, subscription))
    receiver = asyncio.create_task(_receive_actions(websocket, user, subscription))
    try:
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Event stream for user %s ended with %r", subscription.user_id, exc)
    finally:
        sender.cancel()
        receiver.cancel()
        event_hub.close(subscription)
        logger.info(
            "Event stream closed for %s %s (%s dropped)",
            subscription.role,
            subscription.user_id,
            subscription.dropped,
        )

"""
Notification dispatch (e-mail / push gateway collaborator).

Deliveries run as background tasks so a slow or failing gateway never delays
or fails a state transition. Failures are logged and dropped; retrying is the
gateway's concern.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from config import NOTIFIER_BACKEND, NOTIFY_TIMEOUT_SECONDS, NOTIFY_WEBHOOK_URL
from db import utc_now_iso

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = frozenset(
    {
        "request-created",
        "direct-booking",
        "new-request",
        "mechanic-assigned",
        "request-rejected",
        "status-update",
        "request-cancelled",
    }
)


class NotifierBackend(ABC):
    @abstractmethod
    async def send(self, kind: str, target: int, payload: dict[str, Any]) -> None:
        """
        Deliver one notification. Raise on failure.
        """


class LogNotifier(NotifierBackend):
    async def send(self, kind: str, target: int, payload: dict[str, Any]) -> None:
        logger.info("Notification %s -> user %s: %s", kind, target, payload)


class WebhookNotifier(NotifierBackend):
    def __init__(self, url: str, timeout: float, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, kind: str, target: int, payload: dict[str, Any]) -> None:
        body = {"kind": kind, "target": target, "payload": payload, "sent_at": utc_now_iso()}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


def create_backend(name: str) -> NotifierBackend:
    normalized = name.strip().lower()
    if normalized == "log":
        return LogNotifier()
    if normalized == "webhook":
        return WebhookNotifier(NOTIFY_WEBHOOK_URL, NOTIFY_TIMEOUT_SECONDS)
    raise RuntimeError(f"Unsupported notifier backend: {name}")


class NotificationDispatcher:
    def __init__(self, backend: NotifierBackend) -> None:
        self.backend = backend
        self._pending: set[asyncio.Task] = set()

    async def notify(self, kind: str, target: int, payload: dict[str, Any]) -> bool:
        if kind not in NOTIFICATION_KINDS:
            logger.warning("Unknown notification kind %s dropped", kind)
            return False
        try:
            await self.backend.send(kind, target, payload)
            return True
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Notification %s to user %s rejected by gateway: HTTP %s",
                kind,
                target,
                exc.response.status_code,
            )
        except Exception:
            logger.exception("Notification %s to user %s failed", kind, target)
        return False

    def dispatch(self, kind: str, target: int | None, payload: dict[str, Any]) -> None:
        """Fire-and-forget ``notify`` on the running loop."""
        if target is None:
            return
        task = asyncio.get_running_loop().create_task(self.notify(kind, int(target), payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def dispatch_many(self, kind: str, targets: list[int], payload: dict[str, Any]) -> None:
        for target in targets:
            self.dispatch(kind, target, payload)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for outstanding deliveries."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


notification_dispatcher = NotificationDispatcher(create_backend(NOTIFIER_BACKEND))

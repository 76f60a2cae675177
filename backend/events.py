"""
In-process real-time fan-out of request lifecycle events.

Channels:
    user:{id}             customer-facing updates for a user's own requests
    mechanic:{id}         targeted bookings and confirmations for a mechanic
    request:{id}          every transition of one request, in commit order
    available-mechanics   "new request" / "request taken" signals for the
                          mechanics currently registered as online

Delivery is best-effort: nothing is persisted, a subscriber that is not
connected when an event fires never sees it, and a full subscriber queue drops
the event. Clients reconcile by fetching the request snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from config import EVENT_QUEUE_MAXSIZE, PRESENCE_TTL_SECONDS
from db import utc_now_iso

logger = logging.getLogger(__name__)

POOL_CHANNEL = "available-mechanics"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


def mechanic_channel(mechanic_id: int) -> str:
    return f"mechanic:{mechanic_id}"


def request_channel(request_id: int) -> str:
    return f"request:{request_id}"


@dataclass(eq=False)
class Subscription:
    user_id: int
    role: str
    queue: asyncio.Queue
    channels: set[str] = field(default_factory=set)
    dropped: int = 0


class EventHub:
    def __init__(
        self,
        presence_ttl_seconds: float = PRESENCE_TTL_SECONDS,
        queue_maxsize: int = EVENT_QUEUE_MAXSIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.presence_ttl_seconds = presence_ttl_seconds
        self.queue_maxsize = queue_maxsize
        self._clock = clock
        self._channels: dict[str, set[Subscription]] = defaultdict(set)
        # mechanic id -> presence expiry (clock seconds)
        self._presence: dict[int, float] = {}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def open(self, user_id: int, role: str) -> Subscription:
        return Subscription(user_id=int(user_id), role=role, queue=asyncio.Queue(maxsize=self.queue_maxsize))

    def join(self, subscription: Subscription, channel: str) -> None:
        self._channels[channel].add(subscription)
        subscription.channels.add(channel)

    def leave(self, subscription: Subscription, channel: str) -> None:
        members = self._channels.get(channel)
        if members is not None:
            members.discard(subscription)
            if not members:
                del self._channels[channel]
        subscription.channels.discard(channel)

    def close(self, subscription: Subscription) -> None:
        for channel in list(subscription.channels):
            self.leave(subscription, channel)
        if subscription.role == "mechanic" and not self._has_pool_connection(subscription.user_id):
            self._presence.pop(subscription.user_id, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    # ------------------------------------------------------------------
    # Available-mechanics registry
    # ------------------------------------------------------------------

    def mark_available(self, subscription: Subscription) -> None:
        self._presence[subscription.user_id] = self._clock() + self.presence_ttl_seconds
        self.join(subscription, POOL_CHANNEL)

    def heartbeat(self, mechanic_id: int) -> bool:
        mechanic_id = int(mechanic_id)
        if not self.is_online(mechanic_id):
            return False
        self._presence[mechanic_id] = self._clock() + self.presence_ttl_seconds
        return True

    def mark_offline(self, mechanic_id: int) -> None:
        mechanic_id = int(mechanic_id)
        self._presence.pop(mechanic_id, None)
        for subscription in list(self._channels.get(POOL_CHANNEL, ())):
            if subscription.user_id == mechanic_id:
                self.leave(subscription, POOL_CHANNEL)

    def is_online(self, mechanic_id: int) -> bool:
        expires_at = self._presence.get(int(mechanic_id))
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            self.mark_offline(mechanic_id)
            return False
        return True

    def online_mechanics(self) -> list[int]:
        self._prune_presence()
        return sorted(self._presence)

    def _prune_presence(self) -> None:
        now = self._clock()
        for mechanic_id in [key for key, expires in self._presence.items() if expires <= now]:
            logger.info("Mechanic %s presence expired", mechanic_id)
            self.mark_offline(mechanic_id)

    def _has_pool_connection(self, mechanic_id: int) -> bool:
        return any(sub.user_id == mechanic_id for sub in self._channels.get(POOL_CHANNEL, ()))

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(
        self,
        channel: str,
        event: str,
        data: dict[str, Any],
        *,
        version: int | None = None,
        skip_users: Iterable[int] = (),
    ) -> int:
        """
        Enqueue an event for every subscriber of ``channel``; returns how many
        subscribers received it. Never blocks. Connections of ``skip_users``
        are passed over.
        """
        skipped = {int(user_id) for user_id in skip_users}
        reached = {sub for sub in self._channels.get(channel, ()) if sub.user_id in skipped}
        return self._deliver(channel, event, data, version, reached)

    def publish_many(
        self,
        channels: Iterable[str],
        event: str,
        data: dict[str, Any],
        *,
        version: int | None = None,
    ) -> int:
        """
        Publish one event to several channels; a subscriber on more than one
        of them receives it once, tagged with the first matching channel.
        """
        delivered = 0
        reached: set[Subscription] = set()
        seen: set[str] = set()
        for channel in channels:
            if channel in seen:
                continue
            seen.add(channel)
            delivered += self._deliver(channel, event, data, version, reached)
        return delivered

    def _deliver(
        self,
        channel: str,
        event: str,
        data: dict[str, Any],
        version: int | None,
        reached: set[Subscription],
    ) -> int:
        if channel == POOL_CHANNEL:
            self._prune_presence()

        frame = {
            "type": "event",
            "channel": channel,
            "event": event,
            "data": data,
            "version": version,
            "timestamp": utc_now_iso(),
        }
        delivered = 0
        for subscription in list(self._channels.get(channel, ())):
            if subscription in reached:
                continue
            reached.add(subscription)
            try:
                subscription.queue.put_nowait(frame)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "Dropped %s on %s for user %s: subscriber queue full",
                    event,
                    channel,
                    subscription.user_id,
                )
        return delivered


event_hub = EventHub()

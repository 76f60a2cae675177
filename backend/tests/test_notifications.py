from __future__ import annotations

import asyncio
import sys
import unittest
from pathlib import Path

import httpx

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from notifications import NotificationDispatcher, NotifierBackend, WebhookNotifier  # noqa: E402


class RecordingBackend(NotifierBackend):
    def __init__(self, fail_for: set[int] | None = None) -> None:
        self.sent: list[tuple[str, int]] = []
        self.fail_for = fail_for or set()

    async def send(self, kind, target, payload):
        if target in self.fail_for:
            raise ConnectionError("gateway unreachable")
        self.sent.append((kind, target))


class NotificationDispatcherTests(unittest.TestCase):
    def test_notify_reports_delivery(self):
        dispatcher = NotificationDispatcher(RecordingBackend(fail_for={2}))

        async def scenario():
            delivered = await dispatcher.notify("status-update", 1, {"request_id": 1})
            with self.assertLogs("notifications", level="ERROR"):
                failed = await dispatcher.notify("status-update", 2, {"request_id": 1})
            return delivered, failed

        self.assertEqual(asyncio.run(scenario()), (True, False))

    def test_unknown_kind_is_dropped(self):
        backend = RecordingBackend()
        dispatcher = NotificationDispatcher(backend)

        result = asyncio.run(dispatcher.notify("marketing", 1, {}))

        self.assertFalse(result)
        self.assertEqual(backend.sent, [])

    def test_dispatch_runs_in_background_and_drains(self):
        backend = RecordingBackend(fail_for={3})
        dispatcher = NotificationDispatcher(backend)

        async def scenario():
            dispatcher.dispatch_many("new-request", [1, 2, 3], {"request_id": 9})
            dispatcher.dispatch("request-created", None, {})
            queued = dispatcher.pending
            await dispatcher.drain()
            return queued

        with self.assertLogs("notifications", level="ERROR"):
            queued = asyncio.run(scenario())

        self.assertEqual(queued, 3)
        self.assertEqual(dispatcher.pending, 0)
        self.assertEqual(sorted(backend.sent), [("new-request", 1), ("new-request", 2)])

    def test_webhook_posts_notification_body(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(204)

        backend = WebhookNotifier("http://gateway.test/notify", 1.0, transport=httpx.MockTransport(handler))
        result = asyncio.run(NotificationDispatcher(backend).notify("mechanic-assigned", 4, {"request_id": 8}))

        self.assertTrue(result)
        self.assertEqual(len(received), 1)
        self.assertEqual(str(received[0].url), "http://gateway.test/notify")
        self.assertIn(b'"kind":"mechanic-assigned"', received[0].content.replace(b" ", b""))

    def test_webhook_rejection_is_logged_not_raised(self):
        backend = WebhookNotifier(
            "http://gateway.test/notify",
            1.0,
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )
        dispatcher = NotificationDispatcher(backend)
        with self.assertLogs("notifications", level="ERROR") as logs:
            result = asyncio.run(dispatcher.notify("mechanic-assigned", 4, {}))

        self.assertFalse(result)
        self.assertIn("HTTP 502", logs.output[0])


if __name__ == "__main__":
    unittest.main()

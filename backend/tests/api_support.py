from __future__ import annotations

import importlib
import os
import sys
import unittest
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Dependency order: each module is reloaded after everything it imports from.
RELOAD_ORDER = (
    "config",
    "db",
    "events",
    "notifications",
    "geo_index",
    "quotation",
    "request_state",
    "request_events",
    "dispatch",
    "arbiter",
    "request_lifecycle",
    "request_queries",
    "auth_deps",
    "auth_api",
    "request_api",
    "mechanic_api",
    "events_api",
)

# Lower Manhattan; the mechanics below sit due north of it.
CUSTOMER_LOCATION = {"lat": 40.7128, "lng": -74.0060, "address": "City Hall, New York"}
MECHANIC_2KM = {"lat": 40.7308, "lng": -74.0060, "address": "Greenwich Village"}
MECHANIC_8KM = {"lat": 40.7848, "lng": -74.0060, "address": "Upper West Side"}
MECHANIC_15KM = {"lat": 40.8477, "lng": -74.0060, "address": "Fort Lee"}

TEST_ENV = {
    "SECRET_KEY": "test-secret-key",
    "COOKIE_SECURE": "false",
    "FRONTEND_ORIGINS": "http://localhost:5173",
    "ADMIN_EMAILS": "admin@example.com",
    "QUOTATION_BACKEND": "rules",
    "NOTIFIER_BACKEND": "log",
}


def reload_backend(db_path: Path) -> dict[str, Any]:
    os.environ["DB_PATH"] = str(db_path)
    os.environ.update(TEST_ENV)
    modules = {}
    for name in RELOAD_ORDER:
        module = importlib.import_module(name)
        modules[name] = importlib.reload(module)
    return modules


def make_recording_backend(notifications_module):
    class RecordingNotifier(notifications_module.NotifierBackend):
        def __init__(self) -> None:
            self.sent: list[tuple[str, int, dict[str, Any]]] = []

        async def send(self, kind, target, payload):
            self.sent.append((kind, target, payload))

        def kinds_for(self, target: int) -> list[str]:
            return [kind for kind, sent_to, _ in self.sent if sent_to == target]

    return RecordingNotifier()


def request_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "issue_type": "flat_tire",
        "description": "Rear left tire is flat on the highway shoulder",
        "vehicle_info": {"type": "car", "make": "Toyota", "model": "Corolla", "plate": "abc-1234", "year": 2018},
        "location": dict(CUSTOMER_LOCATION),
        "priority": "medium",
        "broadcast_radius": 10,
    }
    payload.update(overrides)
    return payload


class DispatchApiTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp_root = BACKEND_DIR / "tests" / ".tmp"
        self._tmp_root.mkdir(parents=True, exist_ok=True)
        self._db_path = self._tmp_root / f"dispatch_test_{uuid.uuid4().hex}.db"
        self._env_backup = {key: os.environ.get(key) for key in ("DB_PATH", *TEST_ENV)}

        self.modules = reload_backend(self._db_path)
        self.notifier = make_recording_backend(self.modules["notifications"])
        self.modules["notifications"].notification_dispatcher.backend = self.notifier
        self.hub = self.modules["events"].event_hub

        db = self.modules["db"]

        @asynccontextmanager
        async def lifespan(_app: FastAPI):
            await db.init_db()
            yield

        app = FastAPI(lifespan=lifespan)
        app.include_router(self.modules["auth_api"].router)
        app.include_router(self.modules["request_api"].router)
        app.include_router(self.modules["mechanic_api"].router)
        app.include_router(self.modules["events_api"].router)

        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)

        for key, value in self._env_backup.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

        for suffix in ("", "-wal", "-shm"):
            candidate = Path(f"{self._db_path}{suffix}")
            if candidate.exists():
                candidate.unlink()

    def register(
        self,
        email: str,
        role: str = "customer",
        location: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        body: dict[str, Any] = {
            "email": email,
            "password": "a long enough password",
            "display_name": email.split("@")[0],
            "role": role,
        }
        if location is not None:
            body["location"] = location
        response = self.client.post("/auth/register", json=body)
        self.assertEqual(response.status_code, 201, response.text)
        # Every party authenticates with its own bearer token; the shared
        # client's cookie jar only remembers the last registration.
        self.client.cookies.clear()
        payload = response.json()
        return payload["user"], {"Authorization": f"Bearer {payload['access_token']}"}

    def create_request(self, headers: dict[str, str], **overrides: Any) -> dict[str, Any]:
        response = self.client.post("/api/requests", json=request_payload(**overrides), headers=headers)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def drain_notifications(self) -> None:
        self.client.portal.call(self.modules["notifications"].notification_dispatcher.drain)

from __future__ import annotations

import unittest

from starlette.websockets import WebSocketDisconnect

from api_support import MECHANIC_2KM, MECHANIC_8KM, DispatchApiTestCase


class RequestEventStreamTests(DispatchApiTestCase):
    def setUp(self):
        super().setUp()
        self.customer, self.customer_headers = self.register("customer@example.com")
        self.near, self.near_headers = self.register("near@example.com", "mechanic", MECHANIC_2KM)
        self.mid, self.mid_headers = self.register("mid@example.com", "mechanic", MECHANIC_8KM)

    def test_connection_without_token_is_refused(self):
        with self.assertRaises(WebSocketDisconnect):
            with self.client.websocket_connect("/ws/requests"):
                pass

    def test_online_mechanic_receives_offer_then_request_taken(self):
        with self.client.websocket_connect("/ws/requests", headers=self.mid_headers) as mechanic_ws:
            mechanic_ws.send_json({"action": "go-online"})
            self.assertEqual(
                mechanic_ws.receive_json(),
                {"type": "subscribed", "channel": "available-mechanics"},
            )
            self.assertEqual(self.hub.online_mechanics(), [self.mid["id"]])

            request_id = self.create_request(self.customer_headers)["request"]["id"]

            offer = mechanic_ws.receive_json()
            self.assertEqual(offer["type"], "event")
            self.assertEqual(offer["event"], "new-request-available")
            self.assertEqual(offer["channel"], f"mechanic:{self.mid['id']}")
            self.assertEqual(offer["data"]["request_id"], request_id)
            self.assertAlmostEqual(offer["data"]["distance_km"], 8.0, delta=0.05)
            self.assertEqual(offer["version"], 1)

            accepted = self.client.post(f"/api/requests/{request_id}/accept", json={}, headers=self.near_headers)
            self.assertEqual(accepted.status_code, 200, accepted.text)

            taken = mechanic_ws.receive_json()
            self.assertEqual(taken["event"], "request-taken")
            self.assertEqual(taken["data"], {"request_id": request_id})
            self.assertEqual(taken["version"], 2)

        self.assertEqual(self.hub.online_mechanics(), [])

    def test_customer_follows_request_transitions_in_order(self):
        request_id = self.create_request(self.customer_headers)["request"]["id"]

        with self.client.websocket_connect(f"/ws/requests?token={self._token(self.customer_headers)}") as ws:
            ws.send_json({"action": "join-request", "request_id": request_id})
            self.assertEqual(ws.receive_json(), {"type": "subscribed", "channel": f"request:{request_id}"})

            self.client.post(f"/api/requests/{request_id}/accept", json={}, headers=self.near_headers)
            self.client.patch(
                f"/api/requests/{request_id}/status",
                json={"status": "enroute"},
                headers=self.near_headers,
            )

            frames = [ws.receive_json() for _ in range(3)]
            self.assertEqual(
                [(frame["event"], frame["version"]) for frame in frames],
                [("request-accepted", 2), ("status-update", 2), ("status-update", 3)],
            )
            self.assertTrue(all(frame["channel"] == f"request:{request_id}" for frame in frames))
            self.assertEqual(frames[2]["data"]["status"], "enroute")
            self.assertEqual(frames[2]["data"]["previous_status"], "assigned")

    def test_join_request_checks_access(self):
        request_id = self.create_request(self.customer_headers)["request"]["id"]
        _, stranger_headers = self.register("stranger@example.com")

        with self.client.websocket_connect("/ws/requests", headers=stranger_headers) as ws:
            ws.send_json({"action": "join-request", "request_id": request_id})
            denied = ws.receive_json()
            ws.send_json({"action": "join-request"})
            malformed = ws.receive_json()
            ws.send_json({"action": "go-online"})
            not_mechanic = ws.receive_json()

        self.assertEqual(denied["type"], "error")
        self.assertEqual(malformed, {"type": "error", "detail": "request_id is required"})
        self.assertEqual(not_mechanic["type"], "error")

    def test_direct_booking_reaches_only_the_chosen_mechanic(self):
        with self.client.websocket_connect("/ws/requests", headers=self.near_headers) as near_ws:
            near_ws.send_json({"action": "go-online"})
            near_ws.receive_json()

            with self.client.websocket_connect("/ws/requests", headers=self.mid_headers) as mid_ws:
                mid_ws.send_json({"action": "go-online"})
                mid_ws.receive_json()

                self.create_request(
                    self.customer_headers,
                    mechanic_id=self.mid["id"],
                    is_direct_booking=True,
                    priority="emergency",
                )

                booking = mid_ws.receive_json()
                alert = mid_ws.receive_json()
                self.assertEqual(booking["event"], "direct-booking-request")
                self.assertEqual(alert["event"], "emergency-alert")

                mid_ws.send_json({"action": "heartbeat"})
                self.assertEqual(mid_ws.receive_json(), {"type": "heartbeat", "online": True})

            # The next frame the near mechanic sees is the reply to its own
            # heartbeat, so nothing about the direct booking was queued for it.
            near_ws.send_json({"action": "heartbeat"})
            self.assertEqual(near_ws.receive_json(), {"type": "heartbeat", "online": True})

    def test_assigned_mechanic_leaves_the_pool(self):
        with self.client.websocket_connect("/ws/requests", headers=self.near_headers) as near_ws:
            near_ws.send_json({"action": "go-online"})
            near_ws.receive_json()

            first_id = self.create_request(self.customer_headers)["request"]["id"]
            self.assertEqual(near_ws.receive_json()["event"], "new-request-available")

            accepted = self.client.post(f"/api/requests/{first_id}/accept", json={}, headers=self.near_headers)
            self.assertEqual(accepted.status_code, 200, accepted.text)
            self.assertEqual(
                [near_ws.receive_json()["event"] for _ in range(2)],
                ["request-accepted", "status-update"],
            )
            self.assertEqual(self.hub.online_mechanics(), [])

            near_ws.send_json({"action": "go-online"})
            self.assertEqual(
                near_ws.receive_json(),
                {"type": "error", "detail": "Mark yourself available before going online"},
            )

            second = self.create_request(self.customer_headers)
            self.assertEqual(second["notified_mechanics"], 1)

            # Nothing about the second request was queued ahead of this reply.
            near_ws.send_json({"action": "heartbeat"})
            self.assertEqual(near_ws.receive_json(), {"type": "heartbeat", "online": False})

    def test_location_updates_are_relayed_between_parties(self):
        request_id = self.create_request(self.customer_headers)["request"]["id"]
        self.client.post(f"/api/requests/{request_id}/accept", json={}, headers=self.near_headers)

        with self.client.websocket_connect("/ws/requests", headers=self.customer_headers) as customer_ws:
            with self.client.websocket_connect("/ws/requests", headers=self.near_headers) as near_ws:
                near_ws.send_json(
                    {
                        "action": "location-update",
                        "request_id": request_id,
                        "lat": 40.7200,
                        "lng": -74.0030,
                        "heading": 180,
                        "speed": 35,
                    }
                )
                self.assertEqual(near_ws.receive_json(), {"type": "location-shared", "request_id": request_id})

                relayed = customer_ws.receive_json()
                self.assertEqual(relayed["event"], "mechanic-location-update")
                self.assertEqual(relayed["channel"], f"user:{self.customer['id']}")
                self.assertEqual(relayed["data"]["mechanic_id"], self.near["id"])
                self.assertEqual(relayed["data"]["request_id"], request_id)
                self.assertEqual(relayed["data"]["location"], {"lat": 40.72, "lng": -74.003})
                self.assertEqual(relayed["data"]["speed"], 35)

                customer_ws.send_json(
                    {"action": "location-update", "request_id": request_id, "lat": 40.7128, "lng": -74.0060}
                )
                self.assertEqual(customer_ws.receive_json(), {"type": "location-shared", "request_id": request_id})

                from_customer = near_ws.receive_json()
                self.assertEqual(from_customer["event"], "customer-location-update")
                self.assertEqual(from_customer["channel"], f"mechanic:{self.near['id']}")
                self.assertEqual(from_customer["data"]["customer_id"], self.customer["id"])

        with self.client.websocket_connect("/ws/requests", headers=self.mid_headers) as mid_ws:
            mid_ws.send_json({"action": "location-update", "request_id": request_id, "lat": 40.78, "lng": -74.0})
            self.assertEqual(
                mid_ws.receive_json(),
                {"type": "error", "detail": "You cannot share your location on this request"},
            )
            mid_ws.send_json({"action": "location-update", "request_id": request_id})
            self.assertEqual(
                mid_ws.receive_json(),
                {"type": "error", "detail": "request_id, lat and lng are required"},
            )

        status = self.client.get("/api/mechanics/me", headers=self.near_headers).json()
        self.assertEqual(status["location"]["lat"], 40.72)

    def test_malformed_frames_get_an_error_and_keep_the_connection(self):
        with self.client.websocket_connect("/ws/requests", headers=self.customer_headers) as ws:
            ws.send_text("{not json")
            self.assertEqual(ws.receive_json(), {"type": "error", "detail": "Messages must be valid JSON"})

            ws.send_json(["join-request"])
            self.assertEqual(ws.receive_json(), {"type": "error", "detail": "Messages must be JSON objects"})

            ws.send_json({"action": "join-request"})
            self.assertEqual(ws.receive_json(), {"type": "error", "detail": "request_id is required"})

    @staticmethod
    def _token(headers: dict[str, str]) -> str:
        return headers["Authorization"].split(" ", 1)[1]


if __name__ == "__main__":
    unittest.main()

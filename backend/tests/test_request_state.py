from __future__ import annotations

import sys
import unittest
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from dispatch_errors import Forbidden, InvalidTransition  # noqa: E402
from request_state import (  # noqa: E402
    TRANSITIONS,
    authorize_transition,
    check_transition,
    is_cancellable,
    is_terminal,
    is_transition_allowed,
)

ALL_STATUSES = ("pending", "assigned", "enroute", "in_progress", "completed", "cancelled")


def _row(status: str, customer_id: int = 1, mechanic_id: int | None = 2) -> dict:
    return {"status": status, "customer_id": customer_id, "mechanic_id": mechanic_id}


class TransitionTableTests(unittest.TestCase):
    def test_only_listed_pairs_are_allowed(self):
        allowed = {
            (current, requested)
            for current in ALL_STATUSES
            for requested in ALL_STATUSES
            if is_transition_allowed(current, requested)
        }
        self.assertEqual(
            allowed,
            {
                ("pending", "assigned"),
                ("pending", "cancelled"),
                ("assigned", "enroute"),
                ("assigned", "cancelled"),
                ("enroute", "in_progress"),
                ("enroute", "cancelled"),
                ("in_progress", "completed"),
                ("in_progress", "cancelled"),
            },
        )

    def test_terminal_states_have_no_exits(self):
        for status in ("completed", "cancelled"):
            self.assertTrue(is_terminal(status))
            self.assertFalse(is_cancellable(status))
            self.assertEqual(TRANSITIONS[status], frozenset())

    def test_invalid_transition_names_the_pair(self):
        with self.assertRaises(InvalidTransition) as ctx:
            check_transition("completed", "enroute")
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.detail, "Cannot move from completed to enroute")


class TransitionPolicyTests(unittest.TestCase):
    def test_assigned_mechanic_drives_the_work_statuses(self):
        mechanic = {"id": 2, "role": "mechanic"}
        authorize_transition(mechanic, _row("assigned"), "enroute")
        authorize_transition(mechanic, _row("enroute"), "in_progress")
        authorize_transition(mechanic, _row("in_progress"), "completed")
        authorize_transition(mechanic, _row("in_progress"), "cancelled")

    def test_other_mechanic_is_forbidden(self):
        with self.assertRaises(Forbidden):
            authorize_transition({"id": 3, "role": "mechanic"}, _row("assigned"), "enroute")

    def test_customer_may_only_cancel_own_request(self):
        owner = {"id": 1, "role": "customer"}
        authorize_transition(owner, _row("enroute"), "cancelled")
        with self.assertRaises(Forbidden):
            authorize_transition(owner, _row("assigned"), "enroute")
        with self.assertRaises(Forbidden):
            authorize_transition({"id": 9, "role": "customer"}, _row("assigned"), "cancelled")

    def test_admin_passes_policy(self):
        authorize_transition({"id": 99, "role": "admin"}, _row("pending", mechanic_id=None), "assigned")


if __name__ == "__main__":
    unittest.main()

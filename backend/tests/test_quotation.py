from __future__ import annotations

import asyncio
import sys
import unittest
from datetime import datetime
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from quotation import (  # noqa: E402
    QuotationEstimate,
    QuotationEstimator,
    QuotationService,
    RuleBasedEstimator,
    classify_complexity,
    time_multiplier,
)

# A Wednesday mid-morning: no peak, night or weekend surcharge.
QUIET_HOUR = datetime(2024, 5, 15, 11, 0)
RURAL = {"lat": 45.0, "lng": -100.0}


class RuleBasedEstimatorTests(unittest.TestCase):
    def _estimate(self, issue_type="flat_tire", description="tire is flat", priority="medium", **context):
        estimator = RuleBasedEstimator()
        return asyncio.run(
            estimator.estimate(
                {"issue_type": issue_type, "description": description, "priority": priority},
                {"type": "car"},
                RURAL,
                {"time_of_day": QUIET_HOUR, "weather": "clear", "distance_km": 0, "mechanic_rating": 2, **context},
            )
        )

    def test_neutral_context_returns_the_base_rate(self):
        estimate = self._estimate()
        self.assertEqual(estimate.quotation, 800)
        self.assertEqual(estimate.estimated_duration, 30)
        self.assertEqual(estimate.range, {"min": 640, "max": 960})

    def test_amount_is_clamped_to_issue_bounds(self):
        estimate = self._estimate(priority="emergency", weather="snow", distance_km=40)
        self.assertEqual(estimate.quotation, 1500)

    def test_amount_is_rounded_to_fifty(self):
        estimate = self._estimate(issue_type="battery_dead", priority="high")
        self.assertEqual(estimate.quotation % 50, 0)

    def test_complexity_words(self):
        self.assertEqual(classify_complexity("severe smoking and strange noise", "other"), "high")
        self.assertEqual(classify_complexity("simple quick fix", "other"), "low")
        self.assertEqual(classify_complexity("", "accident"), "high")

    def test_time_multiplier(self):
        self.assertEqual(time_multiplier(QUIET_HOUR), 1.0)
        self.assertEqual(time_multiplier(datetime(2024, 5, 15, 8, 0)), 1.4)
        self.assertEqual(time_multiplier(datetime(2024, 5, 15, 23, 0)), 1.6)
        self.assertEqual(time_multiplier(datetime(2024, 5, 18, 11, 0)), 1.2)


class SlowEstimator(QuotationEstimator):
    async def estimate(self, issue, vehicle, location, context):
        await asyncio.sleep(1)
        return QuotationEstimate(quotation=100, estimated_duration=10)


class BrokenEstimator(QuotationEstimator):
    async def estimate(self, issue, vehicle, location, context):
        raise ValueError("bad response")


class QuotationServiceTests(unittest.TestCase):
    def test_timeout_yields_no_estimate(self):
        service = QuotationService(SlowEstimator(), timeout_seconds=0.01)
        with self.assertLogs("quotation", level="WARNING"):
            result = asyncio.run(service.estimate({}, {}, RURAL))
        self.assertIsNone(result)

    def test_failure_yields_no_estimate(self):
        service = QuotationService(BrokenEstimator(), timeout_seconds=1)
        with self.assertLogs("quotation", level="ERROR"):
            result = asyncio.run(service.estimate({}, {}, RURAL))
        self.assertIsNone(result)


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import sys
import unittest
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from geo_index import bounding_box, display_distance, filter_by_distance, haversine_km, lng_clause  # noqa: E402


def _mechanic(mechanic_id: int, lat: float, lng: float) -> dict:
    return {"id": mechanic_id, "display_name": f"m{mechanic_id}", "lat": lat, "lng": lng}


class HaversineTests(unittest.TestCase):
    def test_known_distances(self):
        self.assertAlmostEqual(haversine_km(40.7128, -74.0060, 40.7308, -74.0060), 2.0, delta=0.01)
        # New York to London.
        self.assertAlmostEqual(haversine_km(40.7128, -74.0060, 51.5074, -0.1278), 5570, delta=10)
        self.assertEqual(haversine_km(10, 10, 10, 10), 0)

    def test_display_distance_rounds_to_two_decimals(self):
        self.assertEqual(display_distance(40.7128, -74.0060, 40.7308, -74.0060), 2.0)


class BoundingBoxTests(unittest.TestCase):
    def test_box_contains_the_circle(self):
        min_lat, max_lat, min_lng, max_lng = bounding_box(40.7128, -74.0060, 10)
        self.assertLess(min_lat, 40.7128 - 0.089)
        self.assertGreater(max_lat, 40.7128 + 0.089)
        self.assertLess(min_lng, -74.0060)
        self.assertGreater(max_lng, -74.0060)

    def test_polar_box_spans_every_meridian(self):
        _, max_lat, min_lng, max_lng = bounding_box(89.99, 0, 50)
        self.assertEqual(max_lat, 90.0)
        self.assertEqual((min_lng, max_lng), (-180.0, 180.0))

    def test_longitude_clause_wraps_the_antimeridian(self):
        _, _, min_lng, max_lng = bounding_box(0.0, 179.99, 10)
        sql, params = lng_clause(min_lng, max_lng)
        self.assertEqual(sql, "(lng >= ? OR lng <= ?)")
        self.assertLess(params[0], 179.99)
        self.assertGreater(params[1], -180.0)
        self.assertLess(params[1], -179.8)

        self.assertEqual(lng_clause(-180.0, 180.0), ("1 = 1", []))
        self.assertEqual(lng_clause(-74.1, -73.9), ("lng BETWEEN ? AND ?", [-74.1, -73.9]))


class FilterByDistanceTests(unittest.TestCase):
    def test_filters_sorts_and_limits(self):
        rows = [
            _mechanic(3, 40.8477, -74.0060),
            _mechanic(2, 40.7848, -74.0060),
            _mechanic(1, 40.7308, -74.0060),
        ]

        within = filter_by_distance(40.7128, -74.0060, 10, rows, limit=20)
        self.assertEqual([item.id for item in within], [1, 2])
        self.assertTrue(all(item.distance_km <= 10 for item in within))

        nearest = filter_by_distance(40.7128, -74.0060, 10, rows, limit=1)
        self.assertEqual([item.id for item in nearest], [1])

    def test_boundary_uses_unrounded_distance(self):
        # ~10.004 km away: rounds to 10.0 but is outside a 10 km radius.
        rows = [_mechanic(1, 40.8027700, -74.0060)]
        self.assertEqual(filter_by_distance(40.7128, -74.0060, 10, rows, limit=5), [])

    def test_ties_break_on_id(self):
        rows = [_mechanic(7, 40.7308, -74.0060), _mechanic(4, 40.7308, -74.0060)]
        self.assertEqual([item.id for item in filter_by_distance(40.7128, -74.0060, 5, rows, 5)], [4, 7])


if __name__ == "__main__":
    unittest.main()

"""
Quotation estimators.

The dispatch flow treats the estimator as an opaque collaborator: it either
returns an estimate or nothing. Timeouts and errors never block request
creation.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from config import QUOTATION_BACKEND, QUOTATION_SERVICE_URL, QUOTATION_TIMEOUT_SECONDS
from geo_index import haversine_km

logger = logging.getLogger(__name__)


@dataclass
class QuotationEstimate:
    quotation: float
    estimated_duration: int | None
    confidence: float = 0.7
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def range(self) -> dict[str, int]:
        return {"min": round(self.quotation * 0.8), "max": round(self.quotation * 1.2)}


class QuotationEstimator(ABC):
    @abstractmethod
    async def estimate(
        self,
        issue: dict[str, Any],
        vehicle: dict[str, Any],
        location: dict[str, Any],
        context: dict[str, Any],
    ) -> QuotationEstimate:
        """
        Produce a price and duration estimate for a new request.
        """


BASE_RATES = {
    "flat_tire": (500, 1500, 800),
    "battery_dead": (300, 800, 500),
    "engine_trouble": (1000, 5000, 2000),
    "fuel_empty": (200, 500, 300),
    "key_locked": (400, 1000, 600),
    "accident": (2000, 10000, 4000),
    "overheating": (800, 2500, 1200),
    "brake_failure": (1500, 4000, 2200),
    "transmission_issue": (2000, 8000, 3500),
    "other": (500, 2000, 1000),
}

BASE_DURATIONS = {
    "flat_tire": 30,
    "battery_dead": 20,
    "engine_trouble": 90,
    "fuel_empty": 15,
    "key_locked": 25,
    "accident": 120,
    "overheating": 60,
    "brake_failure": 80,
    "transmission_issue": 150,
    "other": 45,
}

VEHICLE_MULTIPLIERS = {"car": 1.0, "motorcycle": 0.7, "truck": 1.5, "bus": 1.8, "other": 1.2}
PRIORITY_MULTIPLIERS = {"low": 0.8, "medium": 1.0, "high": 1.3, "emergency": 1.8}
WEATHER_MULTIPLIERS = {"clear": 1.0, "rain": 1.3, "storm": 1.6, "fog": 1.2, "snow": 1.8}
COMPLEXITY_MULTIPLIERS = {"low": 0.8, "medium": 1.0, "high": 1.4}
DURATION_COMPLEXITY = {"low": 0.7, "medium": 1.0, "high": 1.5}

HIGH_COMPLEXITY_WORDS = (
    "multiple", "several", "many", "complex", "complicated", "severe",
    "major", "extensive", "complete", "total", "broken", "damaged",
    "leaking", "smoking", "burning", "noise", "strange", "unusual",
)
MEDIUM_COMPLEXITY_WORDS = (
    "some", "partial", "intermittent", "sometimes", "occasional",
    "minor", "small", "slight", "little",
)
LOW_COMPLEXITY_WORDS = ("simple", "easy", "basic", "quick", "fast", "minor", "small")

# (lat, lng) of metro centers that carry an urban premium.
URBAN_CENTERS = (
    (28.6139, 77.2090),
    (19.0760, 72.8777),
    (12.9716, 77.5946),
    (13.0827, 80.2707),
)


def classify_complexity(description: str, issue_type: str) -> str:
    text = (description or "").lower()
    high = sum(1 for word in HIGH_COMPLEXITY_WORDS if word in text)
    medium = sum(1 for word in MEDIUM_COMPLEXITY_WORDS if word in text)
    low = sum(1 for word in LOW_COMPLEXITY_WORDS if word in text)

    if issue_type in ("accident", "brake_failure"):
        high += 2

    if high > medium and high > low:
        return "high"
    if low > medium and low > high:
        return "low"
    return "medium"


def time_multiplier(moment: datetime) -> float:
    if moment.weekday() >= 5:
        return 1.2
    hour = moment.hour
    if 7 <= hour < 10 or 17 <= hour < 20:
        return 1.4
    if hour >= 20 or hour < 7:
        return 1.6
    return 1.0


def location_multiplier(lat: float, lng: float) -> float:
    distances = [haversine_km(lat, lng, c_lat, c_lng) for c_lat, c_lng in URBAN_CENTERS]
    nearest = min(distances)
    if nearest < 20:
        return 1.3
    if nearest < 50:
        return 1.1
    return 1.0


class RuleBasedEstimator(QuotationEstimator):
    """
    Deterministic pricing from issue, vehicle, priority and context.
    """

    async def estimate(
        self,
        issue: dict[str, Any],
        vehicle: dict[str, Any],
        location: dict[str, Any],
        context: dict[str, Any],
    ) -> QuotationEstimate:
        issue_type = str(issue.get("issue_type") or "other")
        min_rate, max_rate, base = BASE_RATES.get(issue_type, BASE_RATES["other"])
        complexity = classify_complexity(str(issue.get("description") or ""), issue_type)

        factors = {
            "vehicle": VEHICLE_MULTIPLIERS.get(str(vehicle.get("type")), 1.0),
            "priority": PRIORITY_MULTIPLIERS.get(str(issue.get("priority") or "medium"), 1.0),
            "time": time_multiplier(context.get("time_of_day") or datetime.now()),
            "weather": WEATHER_MULTIPLIERS.get(str(context.get("weather") or "clear"), 1.0),
            "distance": 1 + float(context.get("distance_km", 5)) * 0.05,
            "rating": 0.8 + float(context.get("mechanic_rating", 4.0)) * 0.1,
            "complexity": COMPLEXITY_MULTIPLIERS[complexity],
            "location": location_multiplier(float(location["lat"]), float(location["lng"])),
        }

        amount = float(base)
        for value in factors.values():
            amount *= value
        amount = round(amount / 50) * 50
        amount = max(min_rate, min(max_rate, amount))

        duration = round(BASE_DURATIONS.get(issue_type, 45) * DURATION_COMPLEXITY[complexity])

        confidence = 0.7
        if len(str(issue.get("description") or "")) > 50:
            confidence += 0.1
        if issue.get("images"):
            confidence += 0.1
        if str(context.get("weather") or "clear") != "clear":
            confidence -= 0.05
        confidence = min(0.95, max(0.5, confidence))

        return QuotationEstimate(
            quotation=float(amount),
            estimated_duration=duration,
            confidence=round(confidence, 2),
            breakdown={name: round((value - 1) * base) for name, value in factors.items()},
        )


class RemoteEstimator(QuotationEstimator):
    def __init__(self, base_url: str, timeout: float) -> None:
        self.base_url = base_url.strip()
        self.timeout = timeout

    async def estimate(
        self,
        issue: dict[str, Any],
        vehicle: dict[str, Any],
        location: dict[str, Any],
        context: dict[str, Any],
    ) -> QuotationEstimate:
        payload = {
            "issue": issue,
            "vehicle": vehicle,
            "location": location,
            "context": {
                key: (value.isoformat() if isinstance(value, datetime) else value)
                for key, value in context.items()
            },
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.base_url, json=payload)
            response.raise_for_status()
            data = response.json()

        quotation = data.get("quotation")
        if quotation is None:
            raise ValueError("Estimator response has no quotation")
        duration = data.get("estimatedDuration", data.get("estimated_duration"))
        return QuotationEstimate(
            quotation=float(quotation),
            estimated_duration=int(duration) if duration is not None else None,
            confidence=float(data.get("confidence", 0.7)),
        )


def create_estimator(backend: str) -> QuotationEstimator:
    normalized = backend.strip().lower()
    if normalized == "rules":
        return RuleBasedEstimator()
    if normalized == "remote":
        return RemoteEstimator(QUOTATION_SERVICE_URL, QUOTATION_TIMEOUT_SECONDS)
    raise RuntimeError(f"Unsupported quotation backend: {backend}")


class QuotationService:
    def __init__(self, estimator: QuotationEstimator, timeout_seconds: float) -> None:
        self.estimator = estimator
        self.timeout_seconds = timeout_seconds

    async def estimate(
        self,
        issue: dict[str, Any],
        vehicle: dict[str, Any],
        location: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> QuotationEstimate | None:
        """
        Return an estimate, or None when the estimator fails or times out.
        """
        try:
            return await asyncio.wait_for(
                self.estimator.estimate(issue, vehicle, location, context or {}),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Quotation estimator timed out after %.1fs", self.timeout_seconds)
        except httpx.HTTPStatusError as exc:
            logger.error("Quotation estimator HTTP error: %s", exc.response.status_code)
        except Exception as exc:
            logger.error("Quotation estimator failed: %s", exc)
        return None


quotation_service = QuotationService(create_estimator(QUOTATION_BACKEND), QUOTATION_TIMEOUT_SECONDS)

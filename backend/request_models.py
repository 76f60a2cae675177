"""
Pydantic models for service requests and mechanic dispatch.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

IssueType = Literal[
    "flat_tire",
    "battery_dead",
    "engine_trouble",
    "fuel_empty",
    "key_locked",
    "accident",
    "overheating",
    "brake_failure",
    "transmission_issue",
    "other",
]
VehicleType = Literal["car", "motorcycle", "truck", "bus", "other"]
RequestPriority = Literal["low", "medium", "high", "emergency"]
RequestStatus = Literal["pending", "assigned", "enroute", "in_progress", "completed", "cancelled"]
BookingType = Literal["direct", "broadcast"]
SortBy = Literal["created_at", "updated_at", "priority", "status"]
SortOrder = Literal["asc", "desc"]


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str = Field(default="", max_length=200)


class VehicleInfo(BaseModel):
    type: VehicleType
    make: str = Field(default="", max_length=80)
    model: str = Field(min_length=1, max_length=80)
    plate: str = Field(min_length=1, max_length=20)
    year: int | None = Field(default=None, ge=1900, le=2100)

    @field_validator("plate")
    @classmethod
    def _upper_plate(cls, value: str) -> str:
        return value.strip().upper()


class RequestCreate(BaseModel):
    issue_type: IssueType
    description: str = Field(min_length=1, max_length=1000)
    vehicle_info: VehicleInfo
    location: Location
    images: list[str] = Field(default_factory=list, max_length=5)
    priority: RequestPriority = "medium"
    broadcast_radius: float = Field(default=10, ge=1, le=50)
    mechanic_id: int | None = None
    is_direct_booking: bool = False

    @model_validator(mode="after")
    def _check_booking_target(self) -> "RequestCreate":
        if self.is_direct_booking and self.mechanic_id is None:
            raise ValueError("mechanic_id is required for direct bookings")
        if not self.is_direct_booking and self.mechanic_id is not None:
            raise ValueError("mechanic_id is only allowed for direct bookings")
        return self


class AcceptPayload(BaseModel):
    quotation: float | None = Field(default=None, gt=0, le=100000)
    estimated_duration: int | None = Field(default=None, ge=5, le=480)


class RejectPayload(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class StatusUpdate(BaseModel):
    status: RequestStatus
    note: str | None = Field(default=None, max_length=500)
    quotation: float | None = Field(default=None, gt=0, le=100000)
    final_amount: float | None = Field(default=None, ge=0, le=100000)
    mechanic_id: int | None = None


class CancelPayload(BaseModel):
    reason: str = Field(min_length=5, max_length=500)


class NoteCreate(BaseModel):
    text: str = Field(min_length=1, max_length=500)


class AvailabilityUpdate(BaseModel):
    is_available: bool
    location: Location | None = None


class LocationShare(BaseModel):
    request_id: int
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: float | None = Field(default=None, ge=0, lt=360)
    speed: float | None = Field(default=None, ge=0)


class HistoryEntry(BaseModel):
    status: RequestStatus
    actor_id: int | None
    note: str
    timestamp: str


class NoteResponse(BaseModel):
    id: int
    text: str
    added_by: int
    timestamp: str


class RequestResponse(BaseModel):
    id: int
    customer_id: int
    mechanic_id: int | None
    is_direct_booking: bool
    issue_type: IssueType
    description: str
    vehicle_info: VehicleInfo
    images: list[str]
    location: Location
    broadcast_radius: float
    priority: RequestPriority
    status: RequestStatus
    quotation: float | None
    estimated_duration: int | None
    final_amount: float | None
    actual_duration: int | None
    cancellation_reason: str | None
    version: int
    created_at: str
    updated_at: str
    accepted_at: str | None
    started_at: str | None
    completed_at: str | None
    cancelled_at: str | None
    distance_km: float | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    notes: list[NoteResponse] = Field(default_factory=list)


class QuotationRange(BaseModel):
    min: int
    max: int


class QuotationSummary(BaseModel):
    estimated: float
    range: QuotationRange
    estimated_duration: int | None
    confidence: float
    breakdown: dict[str, float] = Field(default_factory=dict)


class CreateRequestResponse(BaseModel):
    request: RequestResponse
    quotation: QuotationSummary | None
    quotation_message: str | None = None
    booking_type: BookingType
    notified_mechanics: int


class NearbyMechanic(BaseModel):
    id: int
    display_name: str
    lat: float
    lng: float
    distance_km: float


class MechanicStatus(BaseModel):
    id: int
    is_available: bool
    location: Location | None
    location_updated_at: str | None


class PaymentEligibility(BaseModel):
    request_id: int
    eligible: bool
    amount: float | None
    reason: str | None = None


class RequestSummary(BaseModel):
    status: dict[str, int]
    priority: dict[str, int]
    total: int

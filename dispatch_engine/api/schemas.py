"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from dispatch_engine.domain.entities import Location, RequestDraft
from dispatch_engine.domain.enums import (
    ESCROW_TERMINAL,
    MILESTONE_TIMESTAMPS,
    DeliveryType,
    DemandLevel,
    EscrowStatus,
    OfferStatus,
    RequestStatus,
    ServiceType,
    VehicleClass,
)


# ── Requests ──────────────────────────────────────────────────────────


class Point(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_location(self) -> Location:
        return Location(self.lat, self.lng)


class _RequestBase(BaseModel):
    requester_id: str = Field(..., min_length=1, max_length=64)
    pickup: Point
    destination: Point
    prepaid: bool = False
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class RideRequestCreate(_RequestBase):
    kind: Literal["ride"]
    vehicle_class: VehicleClass
    service_type: ServiceType = ServiceType.TAXI

    @field_validator("service_type")
    @classmethod
    def _not_delivery(cls, v: ServiceType) -> ServiceType:
        if v == ServiceType.DELIVERY:
            raise ValueError("deliveries use kind=\"delivery\" with a delivery_type")
        return v

    def to_draft(self) -> RequestDraft:
        return RequestDraft(
            requester_id=self.requester_id,
            pickup=self.pickup.to_location(),
            destination=self.destination.to_location(),
            vehicle_class=self.vehicle_class,
            service_type=self.service_type,
            prepaid=self.prepaid,
            idempotency_key=self.idempotency_key,
        )


class DeliveryRequestCreate(_RequestBase):
    kind: Literal["delivery"]
    delivery_type: DeliveryType

    def to_draft(self) -> RequestDraft:
        return RequestDraft.delivery(
            self.requester_id,
            self.pickup.to_location(),
            self.destination.to_location(),
            self.delivery_type,
            prepaid=self.prepaid,
            idempotency_key=self.idempotency_key,
        )


RequestCreate = Annotated[
    Union[RideRequestCreate, DeliveryRequestCreate], Field(discriminator="kind")
]


class QuoteCreate(BaseModel):
    pickup: Point
    destination: Point
    vehicle_class: VehicleClass


class DriverLocationUpdate(BaseModel):
    vehicle_class: VehicleClass
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = Field(None, ge=0, lt=360)
    speed: Optional[float] = Field(None, ge=0)
    accuracy: Optional[float] = Field(None, ge=0)
    is_online: bool = True
    is_available: bool = True
    timestamp: Optional[datetime] = Field(
        None, description="Device time of the fix; server time when omitted."
    )


class OfferReply(BaseModel):
    driver_id: str
    accept: bool


class MilestoneUpdate(BaseModel):
    driver_id: str
    status: RequestStatus

    @field_validator("status")
    @classmethod
    def _is_milestone(cls, v: RequestStatus) -> RequestStatus:
        if v not in MILESTONE_TIMESTAMPS:
            raise ValueError(f"{v.value} is not a driver milestone")
        return v


class CancelRequest(BaseModel):
    reason: str = Field("requester_cancelled", max_length=64)


class EscrowHoldCreate(BaseModel):
    order_id: str = Field(..., max_length=64)
    order_type: Literal["ride", "marketplace"] = "marketplace"
    buyer_id: str
    seller_id: Optional[str] = None
    driver_id: Optional[str] = None
    total_amount: int = Field(..., gt=0, description="Minor currency units.")
    delivery_fee: int = Field(0, ge=0, description="Minor units owed to the driver.")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class EscrowReason(BaseModel):
    reason: str = Field(..., min_length=1)


class DisputeResolution(BaseModel):
    outcome: EscrowStatus
    reason: str = ""

    @field_validator("outcome")
    @classmethod
    def _is_terminal(cls, v: EscrowStatus) -> EscrowStatus:
        if v not in ESCROW_TERMINAL:
            raise ValueError("a dispute resolves to RELEASED or REFUNDED")
        return v


# ── Responses ─────────────────────────────────────────────────────────


class ErrorBody(BaseModel):
    detail: str
    code: str
    retry_suggested: bool = False


class RequestResponse(BaseModel):
    id: int
    requester_id: str
    service_type: ServiceType
    vehicle_class: VehicleClass
    delivery_type: Optional[str] = None
    status: RequestStatus
    assignment_version: int
    assigned_driver_id: Optional[str] = None
    active_offer_id: Optional[int] = None
    zone_id: Optional[int] = None
    quoted_fare: Optional[float] = None
    currency: Optional[str] = None
    surge_multiplier: Optional[float] = None
    demand_ratio: Optional[float] = None
    estimated_distance_km: Optional[float] = None
    estimated_duration_min: Optional[float] = None
    requires_extra_billing: bool = False
    overage_surcharge: float = 0.0
    cancellation_fee: float = 0.0
    prepaid: bool = False
    manual_review: bool = False
    failure_reason: Optional[str] = None
    offer_attempts: int = 0
    next_dispatch_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OfferResponse(BaseModel):
    id: int
    request_id: int
    driver_id: str
    status: OfferStatus
    rank: int
    distance_km: float
    expires_at: datetime
    responded_at: Optional[datetime] = None
    reason: Optional[str] = None

    model_config = {"from_attributes": True}


class DispatchResponse(BaseModel):
    result: str
    request: RequestResponse
    offer: Optional[OfferResponse] = None
    error: Optional[ErrorBody] = None
    retry_after: Optional[int] = None


class OfferReplyResponse(BaseModel):
    result: str
    offer: OfferResponse
    request: Optional[RequestResponse] = None
    rides_remaining: Optional[int] = None


class AssignmentEventResponse(BaseModel):
    assignment_version: int
    event: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    driver_id: Optional[str] = None
    detail: Optional[dict[str, Any]] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class FareResponse(BaseModel):
    zone_id: int
    vehicle_class: VehicleClass
    distance_km: float
    duration_min: float
    demand_ratio: float
    base_fare: float
    surge_multiplier: float
    total: float
    minimum_fare: float
    maximum_fare: float
    currency: str

    model_config = {"from_attributes": True}


class LocationAck(BaseModel):
    driver_id: str
    stored: bool
    zone_id: Optional[int] = None


class EscrowResponse(BaseModel):
    id: int
    order_id: str
    order_type: str
    buyer_id: str
    seller_id: Optional[str] = None
    driver_id: Optional[str] = None
    seller_amount: int
    platform_fee: int
    driver_amount: int
    total_amount: int
    currency: str
    status: EscrowStatus
    held_at: datetime
    auto_release_at: datetime
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    dispute_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class DemandResponse(BaseModel):
    zone_id: int
    vehicle_class: VehicleClass
    pending_requests: int
    available_drivers: int
    demand_ratio: float
    demand_level: DemandLevel
    calculated_at: datetime

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"
    zones: int = 0
    tracked_drivers: int = 0

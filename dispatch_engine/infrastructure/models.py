"""
SQLAlchemy ORM models  (PostgreSQL in production, SQLite in tests).

Tables
------
* ``service_zones``        -- zone polygons + pricing/surge parameters
* ``zone_pricing_rules``   -- per-zone, per-vehicle-class fare rules
* ``zone_demand``          -- demand snapshots written by the recompute job
* ``drivers``              -- rating + the driver's active-assignment claim
* ``driver_subscriptions`` -- quota ledger (one row per driver)
* ``dispatch_requests``    -- ride / delivery requests (CAS on version)
* ``driver_offers``        -- time-boxed offers to candidate drivers
* ``assignment_events``    -- append-only audit history per request
* ``escrow_transactions``  -- held funds, amounts in minor units

Indexes
-------
* Partial **unique** index on ``driver_offers(request_id)`` where
  ``status = 'ACCEPTED'``: at most one accepted offer per request.
* **B-Tree** on status / due-time columns scanned by the background sweeps.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    func,
    text,
)

from .database import Base
from dispatch_engine.domain.enums import (
    EscrowStatus,
    OfferStatus,
    RequestStatus,
    ServiceType,
    SubscriptionStatus,
    VehicleClass,
    ZoneStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ── Configuration-store tables (read-only for the core) ───────────────


class ServiceZoneModel(Base):
    __tablename__ = "service_zones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    city = Column(String(80), nullable=False, default="")
    zone_type = Column(String(40), nullable=False, default="urban")
    # [[lat, lng], ...] -- closed implicitly
    coordinates = Column(JSON, nullable=False)
    base_price_multiplier = Column(Float, nullable=False, default=1.0)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    status = Column(Enum(ZoneStatus), nullable=False, default=ZoneStatus.ACTIVE)
    maintenance_start = Column(UTCDateTime, nullable=True)
    maintenance_end = Column(UTCDateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("idx_zones_status", "status"),)


class ZonePricingRuleModel(Base):
    __tablename__ = "zone_pricing_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    zone_id = Column(Integer, ForeignKey("service_zones.id"), nullable=False)
    vehicle_class = Column(Enum(VehicleClass), nullable=False)
    base_price = Column(Float, nullable=False)
    price_per_km = Column(Float, nullable=False)
    price_per_minute = Column(Float, nullable=False, default=0.0)
    minimum_fare = Column(Float, nullable=False)
    maximum_fare = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_pricing_zone_class", "zone_id", "vehicle_class"),
    )


class ZoneDemandModel(Base):
    __tablename__ = "zone_demand"

    id = Column(Integer, primary_key=True, autoincrement=True)
    zone_id = Column(Integer, ForeignKey("service_zones.id"), nullable=False)
    vehicle_class = Column(Enum(VehicleClass), nullable=False)
    pending_requests = Column(Integer, nullable=False, default=0)
    available_drivers = Column(Integer, nullable=False, default=0)
    demand_ratio = Column(Float, nullable=False, default=0.0)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    demand_level = Column(String(20), nullable=False)
    calculated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    valid_until = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_demand_zone_class", "zone_id", "vehicle_class", "calculated_at"),
    )


# ── Supply side ───────────────────────────────────────────────────────


class DriverModel(Base):
    __tablename__ = "drivers"

    driver_id = Column(String(64), primary_key=True)
    vehicle_class = Column(Enum(VehicleClass), nullable=False)
    rating_average = Column(Float, nullable=False, default=5.0)
    total_rides = Column(Integer, nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)
    # single-assignment claim, set/cleared by compare-and-swap
    active_request_id = Column(Integer, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_drivers_active_request", "active_request_id"),)


class DriverSubscriptionModel(Base):
    __tablename__ = "driver_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(String(64), ForeignKey("drivers.driver_id"), unique=True, nullable=False)
    plan_id = Column(String(64), nullable=False)
    rides_remaining = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE
    )
    start_date = Column(UTCDateTime, nullable=False, default=utcnow)
    end_date = Column(UTCDateTime, nullable=False)
    last_request_id = Column(Integer, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("rides_remaining >= 0", name="ck_subscription_rides_non_negative"),
    )


# ── Demand side ───────────────────────────────────────────────────────


class DispatchRequestModel(Base):
    __tablename__ = "dispatch_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requester_id = Column(String(64), nullable=False)
    service_type = Column(Enum(ServiceType), nullable=False, default=ServiceType.TAXI)
    vehicle_class = Column(Enum(VehicleClass), nullable=False)
    delivery_type = Column(String(20), nullable=True)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)
    zone_id = Column(Integer, ForeignKey("service_zones.id"), nullable=True)

    status = Column(Enum(RequestStatus), nullable=False, default=RequestStatus.REQUESTED)
    assigned_driver_id = Column(String(64), nullable=True)
    assignment_version = Column(Integer, nullable=False, default=0)
    # the single non-terminal offer, claimed by compare-and-swap
    active_offer_id = Column(Integer, nullable=True)

    # pricing
    estimated_distance_km = Column(Float, nullable=True)
    estimated_duration_min = Column(Float, nullable=True)
    demand_ratio = Column(Float, nullable=True)
    surge_multiplier = Column(Float, nullable=True)
    quoted_fare = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    overage_surcharge = Column(Float, nullable=False, default=0.0)
    requires_extra_billing = Column(Boolean, nullable=False, default=False)
    cancellation_fee = Column(Float, nullable=False, default=0.0)
    prepaid = Column(Boolean, nullable=False, default=False)

    # dispatch bookkeeping
    dispatch_attempts = Column(Integer, nullable=False, default=0)
    offer_attempts = Column(Integer, nullable=False, default=0)
    next_dispatch_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(String(64), nullable=True)
    manual_review = Column(Boolean, nullable=False, default=False)
    idempotency_key = Column(String(64), unique=True, nullable=True)

    # per-stage timestamps
    requested_at = Column(UTCDateTime, nullable=False, default=utcnow)
    quoted_at = Column(UTCDateTime, nullable=True)
    dispatched_at = Column(UTCDateTime, nullable=True)
    accepted_at = Column(UTCDateTime, nullable=True)
    en_route_at = Column(UTCDateTime, nullable=True)
    arrived_at = Column(UTCDateTime, nullable=True)
    picked_up_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    expired_at = Column(UTCDateTime, nullable=True)

    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_requests_status", "status"),
        Index("idx_requests_next_dispatch", "status", "next_dispatch_at"),
        Index("idx_requests_driver", "assigned_driver_id"),
        Index("idx_requests_zone_class", "zone_id", "vehicle_class"),
        Index("idx_requests_idempotency", "idempotency_key"),
    )


class DriverOfferModel(Base):
    __tablename__ = "driver_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dispatch_requests.id"), nullable=False)
    driver_id = Column(String(64), nullable=False)
    status = Column(Enum(OfferStatus), nullable=False, default=OfferStatus.PENDING)
    # assignment_version observed when the offer was made
    request_version = Column(Integer, nullable=False)
    rank = Column(Integer, nullable=False, default=0)
    distance_km = Column(Float, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    responded_at = Column(UTCDateTime, nullable=True)
    reason = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_offers_request", "request_id"),
        Index("idx_offers_driver_status", "driver_id", "status"),
        Index("idx_offers_status_expiry", "status", "expires_at"),
        Index(
            "uq_offers_one_accepted_per_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
    )


class AssignmentEventModel(Base):
    __tablename__ = "assignment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dispatch_requests.id"), nullable=False)
    assignment_version = Column(Integer, nullable=False)
    event = Column(String(40), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    driver_id = Column(String(64), nullable=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_assignment_events_request", "request_id", "id"),)


# ── Settlement ────────────────────────────────────────────────────────


class EscrowTransactionModel(Base):
    __tablename__ = "escrow_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(64), unique=True, nullable=False)
    order_type = Column(String(20), nullable=False, default="ride")
    buyer_id = Column(String(64), nullable=False)
    seller_id = Column(String(64), nullable=True)
    driver_id = Column(String(64), nullable=True)

    # minor currency units
    seller_amount = Column(BigInteger, nullable=False, default=0)
    platform_fee = Column(BigInteger, nullable=False, default=0)
    driver_amount = Column(BigInteger, nullable=False, default=0)
    total_amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(Enum(EscrowStatus), nullable=False, default=EscrowStatus.HELD)
    gateway_reference = Column(String(128), nullable=True)
    held_at = Column(UTCDateTime, nullable=False, default=utcnow)
    auto_release_at = Column(UTCDateTime, nullable=False)
    released_at = Column(UTCDateTime, nullable=True)
    refunded_at = Column(UTCDateTime, nullable=True)
    disputed_at = Column(UTCDateTime, nullable=True)
    refund_reason = Column(Text, nullable=True)
    dispute_reason = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "total_amount = seller_amount + platform_fee + driver_amount",
            name="ck_escrow_amounts_sum",
        ),
        Index("idx_escrow_status_release", "status", "auto_release_at"),
        Index("idx_escrow_order", "order_id"),
    )

"""Domain enumerations and state-transition rules."""

import enum


class RequestStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    QUOTING = "QUOTING"
    OFFERING = "OFFERING"
    ACCEPTED = "ACCEPTED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVED = "ARRIVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PENDING_PAYMENT = "PENDING_PAYMENT"


# State machine: maps current status -> set of valid next statuses
REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.REQUESTED: {
        RequestStatus.QUOTING,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.QUOTING: {
        RequestStatus.OFFERING,
        RequestStatus.PENDING_PAYMENT,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.OFFERING: {
        RequestStatus.ACCEPTED,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.ACCEPTED: {RequestStatus.EN_ROUTE, RequestStatus.CANCELLED},
    RequestStatus.EN_ROUTE: {RequestStatus.ARRIVED, RequestStatus.CANCELLED},
    RequestStatus.ARRIVED: {RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED},
    RequestStatus.IN_PROGRESS: {RequestStatus.COMPLETED, RequestStatus.CANCELLED},
    RequestStatus.PENDING_PAYMENT: {RequestStatus.CANCELLED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
    RequestStatus.EXPIRED: set(),
}

TERMINAL_STATUSES = frozenset(
    s for s, nxt in REQUEST_TRANSITIONS.items() if not nxt
)

# Statuses in which a driver is committed to the request.
ASSIGNED_STATUSES = frozenset(
    {
        RequestStatus.ACCEPTED,
        RequestStatus.EN_ROUTE,
        RequestStatus.ARRIVED,
        RequestStatus.IN_PROGRESS,
    }
)

# Statuses still looking for a driver.
DISPATCHABLE_STATUSES = frozenset(
    {RequestStatus.REQUESTED, RequestStatus.QUOTING, RequestStatus.OFFERING}
)

# Driver-reported milestones and the timestamp column each one stamps.
MILESTONE_TIMESTAMPS: dict[RequestStatus, str] = {
    RequestStatus.EN_ROUTE: "en_route_at",
    RequestStatus.ARRIVED: "arrived_at",
    RequestStatus.IN_PROGRESS: "picked_up_at",
    RequestStatus.COMPLETED: "completed_at",
}


class OfferStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class EscrowStatus(str, enum.Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


ESCROW_TERMINAL = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})


class ZoneStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    MAINTENANCE = "MAINTENANCE"
    INACTIVE = "INACTIVE"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"


class ServiceType(str, enum.Enum):
    TAXI = "TAXI"
    DELIVERY = "DELIVERY"
    FOOD = "FOOD"
    RENTAL = "RENTAL"


class VehicleClass(str, enum.Enum):
    MOTO = "MOTO"
    ECO = "ECO"
    STANDARD = "STANDARD"
    COMFORT = "COMFORT"
    PREMIUM = "PREMIUM"
    TRUCK = "TRUCK"


class DeliveryType(str, enum.Enum):
    FLASH = "flash"
    FLEX = "flex"
    MAXICHARGE = "maxicharge"


DELIVERY_VEHICLE_CLASS: dict[DeliveryType, VehicleClass] = {
    DeliveryType.FLASH: VehicleClass.MOTO,
    DeliveryType.FLEX: VehicleClass.STANDARD,
    DeliveryType.MAXICHARGE: VehicleClass.TRUCK,
}


class DemandLevel(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    VERY_HIGH = "very_high"


class DispatchResult(str, enum.Enum):
    """Outcome of one dispatch cycle, as reported to the caller."""

    OFFERED = "OFFERED"
    OFFER_OUTSTANDING = "OFFER_OUTSTANDING"
    PARKED = "PARKED"
    NO_DRIVERS_AVAILABLE = "NO_DRIVERS_AVAILABLE"
    RETRY_BUDGET_EXHAUSTED = "RETRY_BUDGET_EXHAUSTED"
    INVALID_ZONE = "INVALID_ZONE"
    PAYMENT_HOLD_FAILED = "PAYMENT_HOLD_FAILED"
    CONFLICT = "CONFLICT"
    NOT_DISPATCHABLE = "NOT_DISPATCHABLE"


class OfferResult(str, enum.Enum):
    """Outcome of a driver's response to an offer."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CONFLICT = "CONFLICT"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"

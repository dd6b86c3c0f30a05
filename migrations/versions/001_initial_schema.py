"""Initial schema: zones, drivers, quota ledger, requests, offers and escrow.

Revision ID: 001
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


VEHICLE_CLASSES = ("MOTO", "ECO", "STANDARD", "COMFORT", "PREMIUM", "TRUCK")
REQUEST_STATUSES = (
    "REQUESTED",
    "QUOTING",
    "OFFERING",
    "ACCEPTED",
    "EN_ROUTE",
    "ARRIVED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    "EXPIRED",
    "PENDING_PAYMENT",
)

ENUM_TYPES = (
    "vehicleclass",
    "zonestatus",
    "subscriptionstatus",
    "servicetype",
    "requeststatus",
    "offerstatus",
    "escrowstatus",
)


def upgrade() -> None:
    vehicle_class = sa.Enum(*VEHICLE_CLASSES, name="vehicleclass")

    # ── service_zones ─────────────────────────────────────────────────
    op.create_table(
        "service_zones",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("city", sa.String(80), nullable=False, server_default=""),
        sa.Column("zone_type", sa.String(40), nullable=False, server_default="urban"),
        sa.Column("coordinates", sa.JSON, nullable=False),
        sa.Column("base_price_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "MAINTENANCE", "INACTIVE", name="zonestatus"),
            nullable=False,
            server_default="ACTIVE",
        ),
        sa.Column("maintenance_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("maintenance_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_zones_status", "service_zones", ["status"])

    # ── zone_pricing_rules ────────────────────────────────────────────
    op.create_table(
        "zone_pricing_rules",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("zone_id", sa.Integer, sa.ForeignKey("service_zones.id"), nullable=False),
        sa.Column("vehicle_class", vehicle_class, nullable=False),
        sa.Column("base_price", sa.Float, nullable=False),
        sa.Column("price_per_km", sa.Float, nullable=False),
        sa.Column("price_per_minute", sa.Float, nullable=False, server_default="0"),
        sa.Column("minimum_fare", sa.Float, nullable=False),
        sa.Column("maximum_fare", sa.Float, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index(
        "idx_pricing_zone_class", "zone_pricing_rules", ["zone_id", "vehicle_class"]
    )

    # ── zone_demand ───────────────────────────────────────────────────
    op.create_table(
        "zone_demand",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("zone_id", sa.Integer, sa.ForeignKey("service_zones.id"), nullable=False),
        sa.Column("vehicle_class", vehicle_class, nullable=False),
        sa.Column("pending_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("available_drivers", sa.Integer, nullable=False, server_default="0"),
        sa.Column("demand_ratio", sa.Float, nullable=False, server_default="0"),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("demand_level", sa.String(20), nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_demand_zone_class",
        "zone_demand",
        ["zone_id", "vehicle_class", "calculated_at"],
    )

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("driver_id", sa.String(64), primary_key=True),
        sa.Column("vehicle_class", vehicle_class, nullable=False),
        sa.Column("rating_average", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("total_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("active_request_id", sa.Integer, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_drivers_active_request", "drivers", ["active_request_id"])

    # ── driver_subscriptions ──────────────────────────────────────────
    op.create_table(
        "driver_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "driver_id",
            sa.String(64),
            sa.ForeignKey("drivers.driver_id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("rides_remaining", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "SUSPENDED", "EXPIRED", name="subscriptionstatus"),
            nullable=False,
            server_default="ACTIVE",
        ),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_request_id", sa.Integer, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "rides_remaining >= 0", name="ck_subscription_rides_non_negative"
        ),
    )

    # ── dispatch_requests ─────────────────────────────────────────────
    op.create_table(
        "dispatch_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("requester_id", sa.String(64), nullable=False),
        sa.Column(
            "service_type",
            sa.Enum("TAXI", "DELIVERY", "FOOD", "RENTAL", name="servicetype"),
            nullable=False,
            server_default="TAXI",
        ),
        sa.Column("vehicle_class", vehicle_class, nullable=False),
        sa.Column("delivery_type", sa.String(20), nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("destination_lat", sa.Float, nullable=False),
        sa.Column("destination_lng", sa.Float, nullable=False),
        sa.Column("zone_id", sa.Integer, sa.ForeignKey("service_zones.id"), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*REQUEST_STATUSES, name="requeststatus"),
            nullable=False,
            server_default="REQUESTED",
        ),
        sa.Column("assigned_driver_id", sa.String(64), nullable=True),
        sa.Column("assignment_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("active_offer_id", sa.Integer, nullable=True),
        sa.Column("estimated_distance_km", sa.Float, nullable=True),
        sa.Column("estimated_duration_min", sa.Float, nullable=True),
        sa.Column("demand_ratio", sa.Float, nullable=True),
        sa.Column("surge_multiplier", sa.Float, nullable=True),
        sa.Column("quoted_fare", sa.Float, nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("overage_surcharge", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "requires_extra_billing", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("cancellation_fee", sa.Float, nullable=False, server_default="0"),
        sa.Column("prepaid", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dispatch_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("offer_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_dispatch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(64), nullable=True),
        sa.Column("manual_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("quoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("en_route_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_requests_status", "dispatch_requests", ["status"])
    op.create_index(
        "idx_requests_next_dispatch", "dispatch_requests", ["status", "next_dispatch_at"]
    )
    op.create_index("idx_requests_driver", "dispatch_requests", ["assigned_driver_id"])
    op.create_index(
        "idx_requests_zone_class", "dispatch_requests", ["zone_id", "vehicle_class"]
    )
    op.create_index("idx_requests_idempotency", "dispatch_requests", ["idempotency_key"])

    # ── driver_offers ─────────────────────────────────────────────────
    op.create_table(
        "driver_offers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "request_id", sa.Integer, sa.ForeignKey("dispatch_requests.id"), nullable=False
        ),
        sa.Column("driver_id", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACCEPTED", "REJECTED", "EXPIRED", name="offerstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("request_version", sa.Integer, nullable=False),
        sa.Column("rank", sa.Integer, nullable=False, server_default="0"),
        sa.Column("distance_km", sa.Float, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_offers_request", "driver_offers", ["request_id"])
    op.create_index("idx_offers_driver_status", "driver_offers", ["driver_id", "status"])
    op.create_index("idx_offers_status_expiry", "driver_offers", ["status", "expires_at"])
    # at most one accepted offer per request
    op.create_index(
        "uq_offers_one_accepted_per_request",
        "driver_offers",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACCEPTED'"),
    )

    # ── assignment_events ─────────────────────────────────────────────
    op.create_table(
        "assignment_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "request_id", sa.Integer, sa.ForeignKey("dispatch_requests.id"), nullable=False
        ),
        sa.Column("assignment_version", sa.Integer, nullable=False),
        sa.Column("event", sa.String(40), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=True),
        sa.Column("driver_id", sa.String(64), nullable=True),
        sa.Column("detail", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_assignment_events_request", "assignment_events", ["request_id", "id"]
    )

    # ── escrow_transactions ───────────────────────────────────────────
    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), unique=True, nullable=False),
        sa.Column("order_type", sa.String(20), nullable=False, server_default="ride"),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=True),
        sa.Column("driver_id", sa.String(64), nullable=True),
        sa.Column("seller_amount", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("platform_fee", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("driver_amount", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("total_amount", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum("HELD", "RELEASED", "REFUNDED", "DISPUTED", name="escrowstatus"),
            nullable=False,
            server_default="HELD",
        ),
        sa.Column("gateway_reference", sa.String(128), nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_release_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_reason", sa.Text, nullable=True),
        sa.Column("dispute_reason", sa.Text, nullable=True),
        sa.CheckConstraint(
            "total_amount = seller_amount + platform_fee + driver_amount",
            name="ck_escrow_amounts_sum",
        ),
    )
    op.create_index(
        "idx_escrow_status_release", "escrow_transactions", ["status", "auto_release_at"]
    )
    op.create_index("idx_escrow_order", "escrow_transactions", ["order_id"])


def downgrade() -> None:
    op.drop_table("escrow_transactions")
    op.drop_table("assignment_events")
    op.drop_table("driver_offers")
    op.drop_table("dispatch_requests")
    op.drop_table("driver_subscriptions")
    op.drop_table("drivers")
    op.drop_table("zone_demand")
    op.drop_table("zone_pricing_rules")
    op.drop_table("service_zones")
    for name in ENUM_TYPES:
        op.execute(f"DROP TYPE IF EXISTS {name}")

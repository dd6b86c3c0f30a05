"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

With a ``sqlite+aiosqlite`` DATABASE_URL the tables are created directly.

Creates:
  - 3 service zones in Kinshasa (city-wide, Gombe, Limete) with pricing rules
  - 12 drivers spread around Gombe, each with a ride subscription
    (one of them out of rides, one suspended)

Driver locations are not persisted; post pings to
``/api/v1/drivers/{driver_id}/location`` to bring drivers online.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import func, select

from dispatch_engine.domain.enums import SubscriptionStatus, VehicleClass, ZoneStatus
from dispatch_engine.infrastructure.database import (
    async_session_factory,
    create_schema,
    engine,
)
from dispatch_engine.infrastructure.models import (
    DriverModel,
    DriverSubscriptionModel,
    ServiceZoneModel,
    ZonePricingRuleModel,
    utcnow,
)

# Gombe, Kinshasa (approx)
GOMBE_LAT, GOMBE_LNG = -4.3040, 15.3110


ZONES = [
    {
        "name": "Kinshasa",
        "zone_type": "city",
        "coordinates": [[-4.28, 15.15], [-4.28, 15.45], [-4.50, 15.45], [-4.50, 15.15]],
        "base_price_multiplier": 1.0,
        "surge_multiplier": 1.0,
    },
    {
        "name": "Gombe",
        "zone_type": "business",
        "coordinates": [[-4.290, 15.280], [-4.290, 15.335], [-4.325, 15.335], [-4.325, 15.280]],
        "base_price_multiplier": 1.2,
        "surge_multiplier": 1.0,
    },
    {
        "name": "Limete",
        "zone_type": "industrial",
        "coordinates": [[-4.340, 15.330], [-4.340, 15.375], [-4.375, 15.375], [-4.375, 15.330]],
        "base_price_multiplier": 1.0,
        "surge_multiplier": 1.1,
    },
]

# CDF: base, per km, per minute, min, max
RULES = {
    VehicleClass.MOTO: (1000, 300, 20, 1500, 20000),
    VehicleClass.ECO: (1500, 450, 40, 2500, 40000),
    VehicleClass.STANDARD: (2000, 550, 50, 3000, 50000),
    VehicleClass.COMFORT: (3000, 750, 70, 5000, 80000),
    VehicleClass.PREMIUM: (5000, 1100, 100, 9000, 150000),
    VehicleClass.TRUCK: (8000, 1500, 120, 12000, 200000),
}

DRIVERS = [
    # driver_id, vehicle class, rating, rides left, subscription status
    ("drv-moto-01", VehicleClass.MOTO, 4.8, 40, SubscriptionStatus.ACTIVE),
    ("drv-moto-02", VehicleClass.MOTO, 4.6, 12, SubscriptionStatus.ACTIVE),
    ("drv-moto-03", VehicleClass.MOTO, 4.9, 0, SubscriptionStatus.ACTIVE),
    ("drv-eco-01", VehicleClass.ECO, 4.7, 25, SubscriptionStatus.ACTIVE),
    ("drv-eco-02", VehicleClass.ECO, 4.4, 30, SubscriptionStatus.ACTIVE),
    ("drv-eco-03", VehicleClass.ECO, 4.9, 5, SubscriptionStatus.SUSPENDED),
    ("drv-std-01", VehicleClass.STANDARD, 4.5, 50, SubscriptionStatus.ACTIVE),
    ("drv-std-02", VehicleClass.STANDARD, 4.8, 18, SubscriptionStatus.ACTIVE),
    ("drv-cmf-01", VehicleClass.COMFORT, 4.9, 20, SubscriptionStatus.ACTIVE),
    ("drv-prm-01", VehicleClass.PREMIUM, 5.0, 15, SubscriptionStatus.ACTIVE),
    ("drv-trk-01", VehicleClass.TRUCK, 4.3, 10, SubscriptionStatus.ACTIVE),
    ("drv-trk-02", VehicleClass.TRUCK, 4.6, 8, SubscriptionStatus.ACTIVE),
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(select(func.count()).select_from(ServiceZoneModel))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Zones and pricing rules ───────────────────────────────────
        for z in ZONES:
            zone = ServiceZoneModel(city="Kinshasa", status=ZoneStatus.ACTIVE, **z)
            session.add(zone)
            await session.flush()
            for vclass, (base, per_km, per_min, low, high) in RULES.items():
                session.add(
                    ZonePricingRuleModel(
                        zone_id=zone.id,
                        vehicle_class=vclass,
                        base_price=base,
                        price_per_km=per_km,
                        price_per_minute=per_min,
                        minimum_fare=low,
                        maximum_fare=high,
                    )
                )
        await session.flush()
        print(f"  Created {len(ZONES)} zones with {len(RULES)} pricing rules each")

        # ── Drivers and subscriptions ─────────────────────────────────
        now = utcnow()
        for driver_id, vclass, rating, rides, status in DRIVERS:
            session.add(
                DriverModel(
                    driver_id=driver_id,
                    vehicle_class=vclass,
                    rating_average=rating,
                    is_verified=True,
                )
            )
            session.add(
                DriverSubscriptionModel(
                    driver_id=driver_id,
                    plan_id="monthly-50",
                    rides_remaining=rides,
                    status=status,
                    start_date=now,
                    end_date=now + timedelta(days=30),
                )
            )
        await session.flush()
        print(f"  Created {len(DRIVERS)} drivers near Gombe ({GOMBE_LAT}, {GOMBE_LNG})")

        await session.commit()
        print("\nSeed complete!")


async def main():
    if engine.dialect.name == "sqlite":
        # No migrations for local SQLite demos.
        await create_schema(engine)
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())

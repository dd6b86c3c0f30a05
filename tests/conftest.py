"""
Shared test fixtures.

Every test gets its own in-memory SQLite database (via aiosqlite) so tests
run without Docker / PostgreSQL / Redis.  The core is wired with an
in-memory event bus and the manual payment gateway, and one square zone
centred on Gombe, Kinshasa.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.domain.distance import offset_point
from dispatch_engine.domain.entities import DriverLocation, PricingRule, ServiceZone
from dispatch_engine.domain.enums import (
    RequestStatus,
    ServiceType,
    SubscriptionStatus,
    VehicleClass,
)
from dispatch_engine.infrastructure.database import (
    create_schema,
    make_engine,
    make_session_factory,
)
from dispatch_engine.infrastructure.event_bus import InMemoryEventBus
from dispatch_engine.infrastructure.models import (
    DispatchRequestModel,
    DriverModel,
    DriverSubscriptionModel,
)
from dispatch_engine.infrastructure.payment_gateway import ManualPaymentGateway
from dispatch_engine.services.core import DispatchCore


TEST_DB_URL = "sqlite+aiosqlite://"

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
GOMBE = (-4.3040, 15.3110)
FAR_AWAY = (-4.6000, 15.7000)  # outside every test zone
PLAN_END = datetime(2099, 1, 1, tzinfo=timezone.utc)

ECO_RULE = PricingRule(
    vehicle_class=VehicleClass.ECO,
    base_price=1000.0,
    price_per_km=500.0,
    price_per_minute=0.0,
    minimum_fare=1500.0,
    maximum_fare=20000.0,
)


def square_zone(
    zone_id: int = 1,
    name: str = "Gombe",
    center: tuple[float, float] = GOMBE,
    half_deg: float = 0.05,
    **kwargs,
) -> ServiceZone:
    lat, lng = center
    kwargs.setdefault("pricing_rules", {VehicleClass.ECO: ECO_RULE})
    return ServiceZone(
        id=zone_id,
        name=name,
        polygon=(
            (lat - half_deg, lng - half_deg),
            (lat - half_deg, lng + half_deg),
            (lat + half_deg, lng + half_deg),
            (lat + half_deg, lng - half_deg),
        ),
        city="Kinshasa",
        **kwargs,
    )


def point(north_km: float = 0.0, east_km: float = 0.0, origin=GOMBE) -> tuple[float, float]:
    return offset_point(origin[0], origin[1], north_km, east_km)


def ping(
    core: DispatchCore,
    driver_id: str,
    north_km: float = 0.0,
    east_km: float = 0.0,
    *,
    vehicle_class: VehicleClass = VehicleClass.ECO,
    at: datetime = NOW,
    origin=GOMBE,
    **kwargs,
) -> bool:
    lat, lng = point(north_km, east_km, origin)
    return core.locations.upsert(
        DriverLocation(
            driver_id=driver_id,
            latitude=lat,
            longitude=lng,
            vehicle_class=vehicle_class,
            last_ping=at,
            **kwargs,
        ),
        at,
    )


async def add_driver(
    session: AsyncSession,
    driver_id: str,
    vehicle_class: VehicleClass = VehicleClass.ECO,
    *,
    rides: int = 10,
    rating: float = 4.8,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    end_date: datetime = PLAN_END,
    subscription: bool = True,
) -> DriverModel:
    driver = DriverModel(
        driver_id=driver_id,
        vehicle_class=vehicle_class,
        rating_average=rating,
        is_verified=True,
    )
    session.add(driver)
    if subscription:
        session.add(
            DriverSubscriptionModel(
                driver_id=driver_id,
                plan_id="monthly-50",
                rides_remaining=rides,
                status=status,
                start_date=NOW - timedelta(days=1),
                end_date=end_date,
            )
        )
    await session.flush()
    return driver


async def add_request(
    session: AsyncSession,
    *,
    status: RequestStatus = RequestStatus.QUOTING,
    vehicle_class: VehicleClass = VehicleClass.ECO,
    service_type: ServiceType = ServiceType.TAXI,
    pickup: tuple[float, float] = GOMBE,
    zone_id: Optional[int] = 1,
) -> DispatchRequestModel:
    """A request row written directly, bypassing the dispatcher."""
    destination = point(3.0, 0.0, pickup)
    request = DispatchRequestModel(
        requester_id="rider-1",
        service_type=service_type,
        vehicle_class=vehicle_class,
        pickup_lat=pickup[0],
        pickup_lng=pickup[1],
        destination_lat=destination[0],
        destination_lng=destination[1],
        zone_id=zone_id,
        status=status,
        assignment_version=0,
        requested_at=NOW,
    )
    session.add(request)
    await session.flush()
    return request


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    """A fresh in-memory database per test."""
    engine = make_engine(TEST_DB_URL)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def events() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def make_core(events):
    """Build a core with setting overrides and an optional gateway."""

    def _make(gateway=None, zones=None, **overrides) -> DispatchCore:
        return DispatchCore.from_settings(
            Settings(_env_file=None, **overrides),
            events=events,
            gateway=gateway if gateway is not None else ManualPaymentGateway(),
            zones=zones if zones is not None else [square_zone()],
        )

    return _make


@pytest.fixture
def core(make_core) -> DispatchCore:
    return make_core()

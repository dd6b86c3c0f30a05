"""
Process-wide collaborators and per-session service factories.

``DispatchCore`` owns everything that outlives a unit of work: the zone
catalogue, the location store, the demand board, the pricing engine, the
event publisher and the payment gateway.  Services that touch the
database are built per ``AsyncSession`` through the factory methods.

The location store and demand board are in-process, so the API runs as a
single process per deployment; the sweeps are additionally guarded by a
Redis lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import Settings
from dispatch_engine.domain.demand import DemandBoard
from dispatch_engine.domain.entities import PricingRule, ServiceZone
from dispatch_engine.domain.enums import VehicleClass
from dispatch_engine.domain.events import EventPublisher
from dispatch_engine.domain.pricing import PricingEngine, build_surge_curve
from dispatch_engine.domain.zones import ZoneCatalog, ZoneClassifier
from dispatch_engine.infrastructure.event_bus import RedisEventPublisher
from dispatch_engine.infrastructure.location_store import LocationStore
from dispatch_engine.infrastructure.models import utcnow
from dispatch_engine.infrastructure.payment_gateway import PaymentGateway, build_gateway
from dispatch_engine.infrastructure.redis_client import redis_client
from dispatch_engine.infrastructure.repositories import ZoneRepository
from dispatch_engine.services.demand import DemandEstimator
from dispatch_engine.services.dispatcher import Dispatcher
from dispatch_engine.services.escrow import EscrowSettlement
from dispatch_engine.services.matchmaker import Matchmaker
from dispatch_engine.services.policies import CancellationPolicy
from dispatch_engine.services.quota import QuotaLedger
from dispatch_engine.services.quoting import QuoteService

logger = logging.getLogger(__name__)


@dataclass
class DispatchCore:
    settings: Settings
    catalog: ZoneCatalog
    classifier: ZoneClassifier
    locations: LocationStore
    demand_board: DemandBoard
    pricing: PricingEngine
    events: EventPublisher
    gateway: PaymentGateway
    cancellation_policy: CancellationPolicy

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        events: Optional[EventPublisher] = None,
        gateway: Optional[PaymentGateway] = None,
        zones: Iterable[ServiceZone] = (),
    ) -> "DispatchCore":
        catalog = ZoneCatalog(zones)
        classifier = ZoneClassifier(catalog)
        if events is None:
            events = RedisEventPublisher(redis_client(), settings.events_channel)

        return cls(
            settings=settings,
            catalog=catalog,
            classifier=classifier,
            locations=LocationStore(
                timedelta(seconds=settings.staleness_window_seconds),
                resolution=settings.h3_resolution,
                zone_resolver=classifier.zone_id_for,
            ),
            demand_board=DemandBoard(
                timedelta(seconds=settings.demand_staleness_seconds)
            ),
            pricing=PricingEngine(
                build_surge_curve(
                    settings.surge_curve,
                    tiers=settings.surge_tiers,
                    slope=settings.surge_linear_slope,
                    max_surge=settings.max_surge,
                ),
                fallback_rule(settings),
                currency=settings.currency,
            ),
            events=events,
            gateway=gateway
            or build_gateway(
                settings.payment_gateway_url,
                timeout=settings.payment_gateway_timeout_seconds,
            ),
            cancellation_policy=CancellationPolicy(settings.cancellation_fee),
        )

    # ── Configuration store mirror ────────────────────────────────

    async def refresh_zones(
        self, session: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        zones = await ZoneRepository(session).load_zones()
        self.catalog.replace(zones, loaded_at=now or utcnow())
        logger.info("Zone catalogue refreshed: %d zones", len(zones))
        return len(zones)

    # ── Per-session services ──────────────────────────────────────

    def quota(self, session: AsyncSession) -> QuotaLedger:
        return QuotaLedger(
            session,
            self.settings.pay_per_ride_services,
            self.settings.overage_surcharge,
        )

    def escrow(self, session: AsyncSession) -> EscrowSettlement:
        return EscrowSettlement(
            session,
            self.gateway,
            auto_release_after=timedelta(hours=self.settings.escrow_auto_release_hours),
        )

    def matchmaker(
        self, session: AsyncSession, quota: Optional[QuotaLedger] = None
    ) -> Matchmaker:
        return Matchmaker(
            session,
            self.locations,
            quota or self.quota(session),
            search_radii_km=self.settings.search_radii_km,
            max_distance_km=self.settings.max_distance_km,
            restrict_to_zone=self.settings.restrict_to_zone,
        )

    def quotes(self, session: AsyncSession) -> QuoteService:
        return QuoteService(
            session,
            self.classifier,
            self.pricing,
            self.demand_board,
            self.locations,
            average_speed_kmh=self.settings.average_speed_kmh,
        )

    def demand(self, session: AsyncSession) -> DemandEstimator:
        return DemandEstimator(
            session, self.demand_board, self.locations, self.pricing, self.catalog
        )

    def dispatcher(self, session: AsyncSession) -> Dispatcher:
        quota = self.quota(session)
        return Dispatcher(
            session,
            settings=self.settings,
            quotes=self.quotes(session),
            matchmaker=self.matchmaker(session, quota),
            quota=quota,
            escrow=self.escrow(session),
            locations=self.locations,
            events=self.events,
            cancellation_policy=self.cancellation_policy,
        )


def fallback_rule(settings: Settings) -> PricingRule:
    """The configured pricing rule for zones without one of their own."""
    return PricingRule(
        vehicle_class=VehicleClass.STANDARD,
        base_price=settings.base_price,
        price_per_km=settings.price_per_km,
        price_per_minute=settings.price_per_minute,
        minimum_fare=settings.minimum_fare,
        maximum_fare=settings.maximum_fare,
    )

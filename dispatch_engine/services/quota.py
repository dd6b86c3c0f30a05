"""
Quota Ledger
============

Each driver's subscription carries a ride allowance.  One ride is consumed
when an assignment is accepted.

Concurrency
-----------
The decrement is a single conditional row update
(``... WHERE driver_id = ? AND rides_remaining > 0``), so writers for the
same driver serialise on the row lock and different drivers never contend.

Idempotency
-----------
The row remembers the last ``request_id`` it was consumed for.  Replaying
a consumption for that request is a no-op that reports success, so a
retried acceptance can never cost the driver a second ride.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.domain.entities import QuotaReceipt
from dispatch_engine.domain.enums import ServiceType, SubscriptionStatus
from dispatch_engine.domain.errors import QuotaExhausted
from dispatch_engine.infrastructure.repositories import SubscriptionRepository

logger = logging.getLogger(__name__)


class QuotaLedger:
    def __init__(
        self,
        session: AsyncSession,
        pay_per_ride_services: Iterable[str] = (),
        overage_surcharge: float = 0.0,
    ):
        self.subscriptions = SubscriptionRepository(session)
        self.pay_per_ride_services = {s.upper() for s in pay_per_ride_services}
        self.overage_surcharge = overage_surcharge

    def fallback_allowed(self, service_type: ServiceType) -> bool:
        return ServiceType(service_type).value in self.pay_per_ride_services

    async def remaining_for(
        self, driver_ids: Iterable[str], now: datetime
    ) -> dict[str, int]:
        return await self.subscriptions.remaining_for(driver_ids, now)

    async def try_consume(
        self, driver_id: str, request_id: int, now: datetime
    ) -> QuotaReceipt:
        if await self.subscriptions.decrement(driver_id, request_id, now):
            sub = await self.subscriptions.get(driver_id)
            logger.info(
                "Quota consumed: driver=%s request=%s remaining=%d",
                driver_id,
                request_id,
                sub.rides_remaining,
            )
            return QuotaReceipt(driver_id, request_id, sub.rides_remaining)

        sub = await self.subscriptions.get(driver_id)
        if sub is not None and sub.last_request_id == request_id:
            return QuotaReceipt(driver_id, request_id, sub.rides_remaining, replayed=True)

        if sub is None:
            reason = "no subscription"
        elif SubscriptionStatus(sub.status) != SubscriptionStatus.ACTIVE:
            reason = f"subscription {SubscriptionStatus(sub.status).value.lower()}"
        elif sub.end_date <= now:
            reason = "subscription ended"
        else:
            reason = "no rides remaining"
        raise QuotaExhausted(
            f"Driver {driver_id}: {reason}", driver_id=driver_id, request_id=request_id
        )

    async def restore(self, driver_id: str, request_id: int, now: datetime) -> bool:
        """Compensate a consumption (post-acceptance cancellation)."""
        restored = await self.subscriptions.increment(driver_id, request_id, now)
        if restored:
            logger.info("Quota restored: driver=%s request=%s", driver_id, request_id)
        else:
            logger.warning(
                "Quota for driver=%s request=%s not restored (not the last consumption)",
                driver_id,
                request_id,
            )
        return restored

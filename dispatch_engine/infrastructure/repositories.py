"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.

Compare-and-swap
----------------
Every contended mutation is one conditional ``UPDATE ... WHERE <expected
state>`` whose ``rowcount`` tells the caller whether it won.  Session
synchronisation is disabled for these statements: the in-memory object
must never be patched by an update the database refused, so winners
refresh explicitly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AssignmentEventModel,
    DispatchRequestModel,
    DriverModel,
    DriverOfferModel,
    DriverSubscriptionModel,
    EscrowTransactionModel,
    ServiceZoneModel,
    ZoneDemandModel,
    ZonePricingRuleModel,
)
from dispatch_engine.domain.entities import DemandSnapshot, PricingRule, ServiceZone
from dispatch_engine.domain.enums import (
    DISPATCHABLE_STATUSES,
    EscrowStatus,
    OfferStatus,
    RequestStatus,
    SubscriptionStatus,
    VehicleClass,
    ZoneStatus,
)


async def conditional_update(
    session: AsyncSession, model, criteria: Sequence, values: dict
) -> bool:
    """Run ``UPDATE model SET values WHERE criteria``; True iff one row won."""
    result = await session.execute(
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class ZoneRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def load_zones(self) -> list[ServiceZone]:
        """All non-inactive zones with their active pricing rules."""
        zones = (
            await self.session.execute(
                select(ServiceZoneModel).where(
                    ServiceZoneModel.status != ZoneStatus.INACTIVE
                )
            )
        ).scalars().all()
        rules = (
            await self.session.execute(
                select(ZonePricingRuleModel).where(
                    ZonePricingRuleModel.is_active.is_(True)
                )
            )
        ).scalars().all()

        by_zone: dict[int, dict[VehicleClass, PricingRule]] = {}
        for r in rules:
            by_zone.setdefault(r.zone_id, {})[VehicleClass(r.vehicle_class)] = PricingRule(
                vehicle_class=VehicleClass(r.vehicle_class),
                base_price=r.base_price,
                price_per_km=r.price_per_km,
                price_per_minute=r.price_per_minute,
                minimum_fare=r.minimum_fare,
                maximum_fare=r.maximum_fare,
            )

        return [
            ServiceZone(
                id=z.id,
                name=z.name,
                city=z.city,
                polygon=tuple((float(p[0]), float(p[1])) for p in z.coordinates),
                base_price_multiplier=z.base_price_multiplier,
                surge_multiplier=z.surge_multiplier,
                status=ZoneStatus(z.status),
                maintenance_start=z.maintenance_start,
                maintenance_end=z.maintenance_end,
                pricing_rules=by_zone.get(z.id, {}),
            )
            for z in zones
        ]


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, driver_id: str) -> Optional[DriverModel]:
        return await self.session.get(DriverModel, driver_id, populate_existing=True)

    async def get_many(self, driver_ids: Iterable[str]) -> dict[str, DriverModel]:
        ids = list(driver_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(DriverModel)
            .where(DriverModel.driver_id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return {d.driver_id: d for d in result.scalars().all()}

    async def claim(self, driver_id: str, request_id: int) -> bool:
        """Bind the driver to *request_id* unless already bound elsewhere."""
        return await conditional_update(
            self.session,
            DriverModel,
            [
                DriverModel.driver_id == driver_id,
                DriverModel.active_request_id.is_(None),
            ],
            {"active_request_id": request_id},
        )

    async def release(self, driver_id: str, request_id: int) -> bool:
        return await conditional_update(
            self.session,
            DriverModel,
            [
                DriverModel.driver_id == driver_id,
                DriverModel.active_request_id == request_id,
            ],
            {"active_request_id": None},
        )

    async def record_completed_ride(self, driver_id: str) -> None:
        await self.session.execute(
            update(DriverModel)
            .where(DriverModel.driver_id == driver_id)
            .values(total_rides=DriverModel.total_rides + 1)
            .execution_options(synchronize_session=False)
        )


class SubscriptionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, driver_id: str) -> Optional[DriverSubscriptionModel]:
        result = await self.session.execute(
            select(DriverSubscriptionModel)
            .where(DriverSubscriptionModel.driver_id == driver_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def remaining_for(
        self, driver_ids: Iterable[str], now: datetime
    ) -> dict[str, int]:
        """Usable rides per driver; inactive or expired plans count as zero."""
        ids = list(driver_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(
                DriverSubscriptionModel.driver_id,
                DriverSubscriptionModel.rides_remaining,
            ).where(
                DriverSubscriptionModel.driver_id.in_(ids),
                DriverSubscriptionModel.status == SubscriptionStatus.ACTIVE,
                DriverSubscriptionModel.end_date > now,
            )
        )
        remaining = {driver_id: 0 for driver_id in ids}
        remaining.update({row.driver_id: row.rides_remaining for row in result})
        return remaining

    async def decrement(self, driver_id: str, request_id: int, now: datetime) -> bool:
        """
        ``UPDATE ... SET rides_remaining = rides_remaining - 1
        WHERE driver_id = ? AND rides_remaining > 0`` plus the replay guard.
        """
        return await conditional_update(
            self.session,
            DriverSubscriptionModel,
            [
                DriverSubscriptionModel.driver_id == driver_id,
                DriverSubscriptionModel.status == SubscriptionStatus.ACTIVE,
                DriverSubscriptionModel.end_date > now,
                DriverSubscriptionModel.rides_remaining > 0,
                (DriverSubscriptionModel.last_request_id.is_(None))
                | (DriverSubscriptionModel.last_request_id != request_id),
            ],
            {
                "rides_remaining": DriverSubscriptionModel.rides_remaining - 1,
                "last_request_id": request_id,
                "updated_at": now,
            },
        )

    async def increment(self, driver_id: str, request_id: int, now: datetime) -> bool:
        """Undo the decrement made for *request_id*, if it was the last one."""
        return await conditional_update(
            self.session,
            DriverSubscriptionModel,
            [
                DriverSubscriptionModel.driver_id == driver_id,
                DriverSubscriptionModel.last_request_id == request_id,
            ],
            {
                "rides_remaining": DriverSubscriptionModel.rides_remaining + 1,
                "last_request_id": None,
                "updated_at": now,
            },
        )


class RequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, request: DispatchRequestModel) -> DispatchRequestModel:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get(self, request_id: int) -> Optional[DispatchRequestModel]:
        return await self.session.get(DispatchRequestModel, request_id)

    async def reload(self, request_id: int) -> Optional[DispatchRequestModel]:
        """Fetch the row again, overwriting whatever the session holds."""
        return await self.session.get(
            DispatchRequestModel, request_id, populate_existing=True
        )

    async def get_by_idempotency_key(self, key: str) -> Optional[DispatchRequestModel]:
        result = await self.session.execute(
            select(DispatchRequestModel).where(
                DispatchRequestModel.idempotency_key == key
            )
        )
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        request_id: int,
        expected_version: int,
        *,
        statuses: Iterable[RequestStatus] | None = None,
        offer_slot: int | None = None,
        **values,
    ) -> bool:
        """
        Advance ``assignment_version`` by one iff it still equals
        *expected_version* (and the optional status / offer-slot guards hold).
        ``offer_slot`` guards on the current ``active_offer_id``; the column
        itself may still be written through *values*.
        """
        criteria = [
            DispatchRequestModel.id == request_id,
            DispatchRequestModel.assignment_version == expected_version,
        ]
        if statuses is not None:
            criteria.append(DispatchRequestModel.status.in_(list(statuses)))
        if offer_slot is not None:
            criteria.append(DispatchRequestModel.active_offer_id == offer_slot)
        values["assignment_version"] = expected_version + 1
        return await conditional_update(
            self.session, DispatchRequestModel, criteria, values
        )

    async def claim_offer_slot(
        self, request_id: int, expected_version: int, offer_id: int, now: datetime
    ) -> bool:
        """
        Reserve the single non-terminal offer slot.  Guarded by the version
        (a cancellation or acceptance in between wins) and by the slot being
        empty (a concurrent dispatch cycle wins).  Does not bump the version:
        an outstanding offer is not yet an assignment.
        """
        return await conditional_update(
            self.session,
            DispatchRequestModel,
            [
                DispatchRequestModel.id == request_id,
                DispatchRequestModel.assignment_version == expected_version,
                DispatchRequestModel.status.in_(
                    [RequestStatus.QUOTING, RequestStatus.OFFERING]
                ),
                DispatchRequestModel.active_offer_id.is_(None),
            ],
            {
                "active_offer_id": offer_id,
                "status": RequestStatus.OFFERING,
                "dispatched_at": now,
                "offer_attempts": DispatchRequestModel.offer_attempts + 1,
                "next_dispatch_at": None,
            },
        )

    async def release_offer_slot(self, request_id: int, offer_id: int) -> bool:
        return await conditional_update(
            self.session,
            DispatchRequestModel,
            [
                DispatchRequestModel.id == request_id,
                DispatchRequestModel.active_offer_id == offer_id,
            ],
            {"active_offer_id": None},
        )

    async def update_if_status(
        self, request_id: int, statuses: Iterable[RequestStatus], **values
    ) -> bool:
        """Bookkeeping write that only applies while the status is unchanged."""
        return await conditional_update(
            self.session,
            DispatchRequestModel,
            [
                DispatchRequestModel.id == request_id,
                DispatchRequestModel.status.in_(list(statuses)),
            ],
            values,
        )

    async def due_for_dispatch(
        self, now: datetime, limit: int = 100
    ) -> list[DispatchRequestModel]:
        """Requests still looking for a driver, without an outstanding offer."""
        result = await self.session.execute(
            select(DispatchRequestModel)
            .where(
                DispatchRequestModel.status.in_(list(DISPATCHABLE_STATUSES)),
                DispatchRequestModel.active_offer_id.is_(None),
                (DispatchRequestModel.next_dispatch_at.is_(None))
                | (DispatchRequestModel.next_dispatch_at <= now),
            )
            .order_by(DispatchRequestModel.requested_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_pending(self) -> dict[tuple[int, VehicleClass], int]:
        """Pending (not yet assigned) requests per (zone, vehicle class)."""
        result = await self.session.execute(
            select(
                DispatchRequestModel.zone_id,
                DispatchRequestModel.vehicle_class,
                func.count(),
            )
            .where(
                DispatchRequestModel.status.in_(
                    [RequestStatus.QUOTING, RequestStatus.OFFERING]
                ),
                DispatchRequestModel.zone_id.is_not(None),
            )
            .group_by(DispatchRequestModel.zone_id, DispatchRequestModel.vehicle_class)
        )
        return {
            (zone_id, VehicleClass(vehicle_class)): count
            for zone_id, vehicle_class, count in result.all()
        }

    async def count_pending_in(self, zone_id: int, vehicle_class: VehicleClass) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(DispatchRequestModel)
            .where(
                DispatchRequestModel.zone_id == zone_id,
                DispatchRequestModel.vehicle_class == vehicle_class,
                DispatchRequestModel.status.in_(
                    [RequestStatus.QUOTING, RequestStatus.OFFERING]
                ),
            )
        )
        return result.scalar() or 0


class OfferRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, offer: DriverOfferModel) -> DriverOfferModel:
        self.session.add(offer)
        await self.session.flush()
        return offer

    async def get(self, offer_id: int) -> Optional[DriverOfferModel]:
        return await self.session.get(DriverOfferModel, offer_id, populate_existing=True)

    async def transition(
        self,
        offer_id: int,
        to_status: OfferStatus,
        *,
        from_status: OfferStatus = OfferStatus.PENDING,
        **values,
    ) -> bool:
        values["status"] = to_status
        return await conditional_update(
            self.session,
            DriverOfferModel,
            [DriverOfferModel.id == offer_id, DriverOfferModel.status == from_status],
            values,
        )

    async def for_request(self, request_id: int) -> list[DriverOfferModel]:
        result = await self.session.execute(
            select(DriverOfferModel)
            .where(DriverOfferModel.request_id == request_id)
            .order_by(DriverOfferModel.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def offered_driver_ids(self, request_id: int) -> set[str]:
        result = await self.session.execute(
            select(DriverOfferModel.driver_id).where(
                DriverOfferModel.request_id == request_id
            )
        )
        return set(result.scalars().all())

    async def drivers_with_pending_offers(self, driver_ids: Iterable[str]) -> set[str]:
        ids = list(driver_ids)
        if not ids:
            return set()
        result = await self.session.execute(
            select(DriverOfferModel.driver_id).where(
                DriverOfferModel.driver_id.in_(ids),
                DriverOfferModel.status == OfferStatus.PENDING,
            )
        )
        return set(result.scalars().all())

    async def due_for_expiry(self, now: datetime, limit: int = 200) -> list[DriverOfferModel]:
        result = await self.session.execute(
            select(DriverOfferModel)
            .where(
                DriverOfferModel.status == OfferStatus.PENDING,
                DriverOfferModel.expires_at <= now,
            )
            .order_by(DriverOfferModel.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class AssignmentEventRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        request_id: int,
        assignment_version: int,
        event: str,
        *,
        from_status: RequestStatus | None = None,
        to_status: RequestStatus | None = None,
        driver_id: str | None = None,
        detail: dict | None = None,
        now: datetime | None = None,
    ) -> AssignmentEventModel:
        row = AssignmentEventModel(
            request_id=request_id,
            assignment_version=assignment_version,
            event=event,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value if to_status else None,
            driver_id=driver_id,
            detail=detail or None,
        )
        if now is not None:
            row.created_at = now
        self.session.add(row)
        await self.session.flush()
        return row

    async def history(self, request_id: int) -> list[AssignmentEventModel]:
        result = await self.session.execute(
            select(AssignmentEventModel)
            .where(AssignmentEventModel.request_id == request_id)
            .order_by(AssignmentEventModel.id)
        )
        return list(result.scalars().all())


class EscrowRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, tx: EscrowTransactionModel) -> EscrowTransactionModel:
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def get(self, escrow_id: int) -> Optional[EscrowTransactionModel]:
        return await self.session.get(
            EscrowTransactionModel, escrow_id, populate_existing=True
        )

    async def get_by_order(self, order_id: str) -> Optional[EscrowTransactionModel]:
        result = await self.session.execute(
            select(EscrowTransactionModel)
            .where(EscrowTransactionModel.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        escrow_id: int,
        from_statuses: Iterable[EscrowStatus],
        to_status: EscrowStatus,
        **values,
    ) -> bool:
        values["status"] = to_status
        return await conditional_update(
            self.session,
            EscrowTransactionModel,
            [
                EscrowTransactionModel.id == escrow_id,
                EscrowTransactionModel.status.in_(list(from_statuses)),
            ],
            values,
        )

    async def due_for_release(
        self, now: datetime, limit: int = 500
    ) -> list[EscrowTransactionModel]:
        result = await self.session.execute(
            select(EscrowTransactionModel)
            .where(
                EscrowTransactionModel.status == EscrowStatus.HELD,
                EscrowTransactionModel.auto_release_at <= now,
            )
            .order_by(EscrowTransactionModel.auto_release_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class DemandRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(
        self, snapshots: Iterable[DemandSnapshot], surge: dict, valid_until: datetime
    ) -> int:
        rows = [
            ZoneDemandModel(
                zone_id=s.zone_id,
                vehicle_class=s.vehicle_class,
                pending_requests=s.pending_requests,
                available_drivers=s.available_drivers,
                demand_ratio=s.demand_ratio,
                surge_multiplier=surge.get((s.zone_id, s.vehicle_class), 1.0),
                demand_level=s.demand_level.value,
                calculated_at=s.calculated_at,
                valid_until=valid_until,
            )
            for s in snapshots
        ]
        self.session.add_all(rows)
        await self.session.flush()
        return len(rows)

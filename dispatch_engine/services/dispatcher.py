"""
Dispatcher  (assignment state machine)
======================================

REQUESTED -> QUOTING -> OFFERING -> ACCEPTED -> EN_ROUTE -> ARRIVED
-> IN_PROGRESS -> COMPLETED, with CANCELLED reachable from every
non-terminal state and EXPIRED from the dispatch states.

One dispatch cycle
------------------
1. REQUESTED: quote.  An ``InvalidZone`` leaves the request in REQUESTED
   with a backoff; prepaid bookings place their escrow hold here.
2. QUOTING / OFFERING: ask the matchmaker.  No candidate parks the
   request on the backoff schedule; after ``no_driver_max_attempts`` it
   expires as NO_DRIVERS_AVAILABLE.
3. Offer the best candidate.  The request has a single offer slot
   (``active_offer_id``) claimed by compare-and-swap, so two concurrent
   cycles can never both have an offer out.

Accepting an offer
------------------
offer PENDING -> ACCEPTED, quota consumed (or pay-per-ride fallback),
driver claimed, then the request CAS on the version the offer was made
against.  Everything happens in the caller's unit of work; if the request
CAS loses, the earlier steps are compensated in the same transaction and
the request goes back to dispatch when it is still open.

``assignment_version`` advances on every assignment mutation (accept,
milestones, cancel, expiry) and never on quoting or offering.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import Settings
from dispatch_engine.domain.entities import (
    Candidate,
    Fare,
    QuotaReceipt,
    RequestDraft,
    ensure_transition,
)
from dispatch_engine.domain.enums import (
    ASSIGNED_STATUSES,
    DISPATCHABLE_STATUSES,
    MILESTONE_TIMESTAMPS,
    DispatchResult,
    EscrowStatus,
    OfferResult,
    OfferStatus,
    RequestStatus,
    ServiceType,
)
from dispatch_engine.domain.errors import (
    AssignmentConflict,
    DispatchError,
    DriverNotAssigned,
    InvalidStateTransition,
    InvalidZone,
    NoDriversAvailable,
    OfferExpired,
    OfferNotFound,
    PaymentGatewayError,
    PaymentHoldFailed,
    QuotaExhausted,
    RequestNotFound,
)
from dispatch_engine.domain.events import (
    AssignmentAccepted,
    EventPublisher,
    OfferCreated,
    StatusChanged,
)
from dispatch_engine.domain.money import allocate_ride, to_minor_units
from dispatch_engine.infrastructure.location_store import LocationStore
from dispatch_engine.infrastructure.models import (
    AssignmentEventModel,
    DispatchRequestModel,
    DriverOfferModel,
    utcnow,
)
from dispatch_engine.infrastructure.repositories import (
    AssignmentEventRepository,
    DriverRepository,
    OfferRepository,
    RequestRepository,
)
from dispatch_engine.services.escrow import EscrowSettlement, ride_order_id
from dispatch_engine.services.matchmaker import Matchmaker
from dispatch_engine.services.policies import CancellationPolicy
from dispatch_engine.services.quota import QuotaLedger
from dispatch_engine.services.quoting import QuoteService

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    result: DispatchResult
    request: DispatchRequestModel
    offer: Optional[DriverOfferModel] = None
    error: Optional[DispatchError] = None
    retry_after: Optional[int] = None  # seconds


@dataclass
class OfferOutcome:
    result: OfferResult
    offer: DriverOfferModel
    request: Optional[DispatchRequestModel] = None
    error: Optional[DispatchError] = None
    receipt: Optional[QuotaReceipt] = None
    redispatch: Optional[DispatchOutcome] = None


class Dispatcher:
    def __init__(
        self,
        session: AsyncSession,
        *,
        settings: Settings,
        quotes: QuoteService,
        matchmaker: Matchmaker,
        quota: QuotaLedger,
        escrow: EscrowSettlement,
        locations: LocationStore,
        events: EventPublisher,
        cancellation_policy: CancellationPolicy,
    ):
        self.session = session
        self.settings = settings
        self.requests = RequestRepository(session)
        self.offers = OfferRepository(session)
        self.drivers = DriverRepository(session)
        self.audit = AssignmentEventRepository(session)
        self.quotes = quotes
        self.matchmaker = matchmaker
        self.quota = quota
        self.escrow = escrow
        self.locations = locations
        self.events = events
        self.cancellation_policy = cancellation_policy

    # ══════════════════════════════════════════════════════════════
    #  Intake and lookups
    # ══════════════════════════════════════════════════════════════

    async def create_request(
        self, draft: RequestDraft, now: Optional[datetime] = None
    ) -> DispatchRequestModel:
        """Persist a new request in REQUESTED (idempotent on the client key)."""
        now = now or utcnow()
        if draft.idempotency_key:
            existing = await self.requests.get_by_idempotency_key(draft.idempotency_key)
            if existing is not None:
                return existing

        request = await self.requests.create(
            DispatchRequestModel(
                requester_id=draft.requester_id,
                service_type=draft.service_type,
                vehicle_class=draft.vehicle_class,
                delivery_type=draft.delivery_type.value if draft.delivery_type else None,
                pickup_lat=draft.pickup.latitude,
                pickup_lng=draft.pickup.longitude,
                destination_lat=draft.destination.latitude,
                destination_lng=draft.destination.longitude,
                status=RequestStatus.REQUESTED,
                assignment_version=0,
                prepaid=draft.prepaid,
                idempotency_key=draft.idempotency_key,
                requested_at=now,
            )
        )
        await self.audit.record(
            request.id,
            0,
            "created",
            to_status=RequestStatus.REQUESTED,
            detail={
                "service_type": draft.service_type.value,
                "vehicle_class": draft.vehicle_class.value,
            },
            now=now,
        )
        logger.info(
            "Request %s created by %s (%s/%s)",
            request.id,
            draft.requester_id,
            draft.service_type.value,
            draft.vehicle_class.value,
        )
        return request

    async def get(self, request_id: int) -> DispatchRequestModel:
        request = await self.requests.reload(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found", request_id=request_id)
        return request

    async def history(self, request_id: int) -> list[AssignmentEventModel]:
        await self.get(request_id)
        return await self.audit.history(request_id)

    # ══════════════════════════════════════════════════════════════
    #  Dispatch cycle
    # ══════════════════════════════════════════════════════════════

    async def dispatch(
        self, request_id: int, now: Optional[datetime] = None
    ) -> DispatchOutcome:
        """Run one dispatch cycle for the request."""
        now = now or utcnow()
        request = await self.get(request_id)

        if RequestStatus(request.status) == RequestStatus.REQUESTED:
            request, outcome = await self._quote(request, now)
            if outcome is not None:
                return outcome

        if RequestStatus(request.status) not in (
            RequestStatus.QUOTING,
            RequestStatus.OFFERING,
        ):
            return DispatchOutcome(DispatchResult.NOT_DISPATCHABLE, request)
        if request.active_offer_id is not None:
            return DispatchOutcome(DispatchResult.OFFER_OUTSTANDING, request)

        if request.offer_attempts >= self.settings.dispatch_retry_budget:
            request = await self._expire(request, "RETRY_BUDGET_EXHAUSTED", now)
            return DispatchOutcome(
                DispatchResult.RETRY_BUDGET_EXHAUSTED,
                request,
                error=NoDriversAvailable(
                    f"Request {request_id}: no driver accepted after "
                    f"{self.settings.dispatch_retry_budget} offers",
                    request_id=request_id,
                ),
            )

        candidates = await self.matchmaker.find_candidates(request, now)
        if not candidates:
            return await self._park(request, now)
        return await self._offer(request, candidates, now)

    async def redispatch_due(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> list[DispatchOutcome]:
        """Retry parked requests whose backoff has elapsed."""
        now = now or utcnow()
        outcomes = []
        for request in await self.requests.due_for_dispatch(now, limit):
            outcomes.append(await self.dispatch(request.id, now))
        return outcomes

    async def _quote(
        self, request: DispatchRequestModel, now: datetime
    ) -> tuple[DispatchRequestModel, Optional[DispatchOutcome]]:
        try:
            fare = await self.quotes.quote(
                request.pickup_lat,
                request.pickup_lng,
                request.destination_lat,
                request.destination_lng,
                request.vehicle_class,
                now,
            )
        except InvalidZone as exc:
            return request, await self._quote_failed(request, exc, now)

        won = await self.requests.update_if_status(
            request.id,
            [RequestStatus.REQUESTED],
            status=RequestStatus.QUOTING,
            zone_id=fare.zone_id,
            estimated_distance_km=fare.distance_km,
            estimated_duration_min=fare.duration_min,
            demand_ratio=fare.demand_ratio,
            surge_multiplier=fare.surge_multiplier,
            quoted_fare=fare.total,
            currency=fare.currency,
            quoted_at=now,
            dispatch_attempts=0,
            next_dispatch_at=None,
            failure_reason=None,
        )
        request = await self.requests.reload(request.id)
        if not won:
            # quoted or cancelled by someone else meanwhile
            return request, None

        await self.audit.record(
            request.id,
            request.assignment_version,
            "quoted",
            from_status=RequestStatus.REQUESTED,
            to_status=RequestStatus.QUOTING,
            detail={
                "zone_id": fare.zone_id,
                "fare": fare.total,
                "surge": fare.surge_multiplier,
                "demand_ratio": round(fare.demand_ratio, 3),
            },
            now=now,
        )
        self._status_changed(request, RequestStatus.REQUESTED, now)
        logger.info(
            "Request %s quoted: %.2f %s (zone=%s surge=%.2f)",
            request.id,
            fare.total,
            fare.currency,
            fare.zone_id,
            fare.surge_multiplier,
        )

        if request.prepaid:
            return await self._hold_payment(request, fare, now)
        return request, None

    async def _quote_failed(
        self, request: DispatchRequestModel, exc: InvalidZone, now: datetime
    ) -> DispatchOutcome:
        attempts = request.dispatch_attempts + 1
        if attempts >= self.settings.no_driver_max_attempts:
            request = await self._expire(request, "INVALID_ZONE", now)
            return DispatchOutcome(DispatchResult.INVALID_ZONE, request, error=exc)

        delay = self._backoff(attempts)
        await self.requests.update_if_status(
            request.id,
            [RequestStatus.REQUESTED],
            dispatch_attempts=attempts,
            next_dispatch_at=now + timedelta(seconds=delay),
            failure_reason="INVALID_ZONE",
        )
        logger.warning(
            "Request %s could not be quoted (attempt %d): %s", request.id, attempts, exc
        )
        request = await self.requests.reload(request.id)
        return DispatchOutcome(
            DispatchResult.INVALID_ZONE, request, error=exc, retry_after=delay
        )

    async def _hold_payment(
        self, request: DispatchRequestModel, fare: Fare, now: datetime
    ) -> tuple[DispatchRequestModel, Optional[DispatchOutcome]]:
        allocation = allocate_ride(
            to_minor_units(fare.total, self.settings.currency_minor_units),
            self.settings.platform_commission_rate,
        )
        try:
            await self.escrow.hold(
                ride_order_id(request.id),
                request.requester_id,
                allocation,
                fare.currency,
                now=now,
            )
        except PaymentHoldFailed as exc:
            await self.requests.update_if_status(
                request.id,
                [RequestStatus.QUOTING],
                status=RequestStatus.PENDING_PAYMENT,
                manual_review=True,
                failure_reason="PAYMENT_HOLD_FAILED",
            )
            request = await self.requests.reload(request.id)
            await self.audit.record(
                request.id,
                request.assignment_version,
                "payment_hold_failed",
                from_status=RequestStatus.QUOTING,
                to_status=RequestStatus(request.status),
                detail={"code": exc.code, "message": str(exc)},
                now=now,
            )
            self._status_changed(request, RequestStatus.QUOTING, now)
            await self._log_fatal(request, exc)
            return request, DispatchOutcome(
                DispatchResult.PAYMENT_HOLD_FAILED, request, error=exc
            )
        return request, None

    async def _park(
        self, request: DispatchRequestModel, now: datetime
    ) -> DispatchOutcome:
        attempts = request.dispatch_attempts + 1
        if attempts >= self.settings.no_driver_max_attempts:
            request = await self._expire(request, "NO_DRIVERS_AVAILABLE", now)
            return DispatchOutcome(
                DispatchResult.NO_DRIVERS_AVAILABLE,
                request,
                error=NoDriversAvailable(
                    f"No driver found for request {request.id} after {attempts} attempts",
                    request_id=request.id,
                ),
            )

        delay = self._backoff(attempts)
        await self.requests.update_if_status(
            request.id,
            [RequestStatus.QUOTING, RequestStatus.OFFERING],
            dispatch_attempts=attempts,
            next_dispatch_at=now + timedelta(seconds=delay),
        )
        logger.warning(
            "Request %s: no eligible driver (attempt %d), retrying in %ds",
            request.id,
            attempts,
            delay,
        )
        request = await self.requests.reload(request.id)
        return DispatchOutcome(
            DispatchResult.PARKED,
            request,
            error=NoDriversAvailable(
                f"No driver available yet for request {request.id}",
                request_id=request.id,
            ),
            retry_after=delay,
        )

    async def _offer(
        self,
        request: DispatchRequestModel,
        candidates: list[Candidate],
        now: datetime,
    ) -> DispatchOutcome:
        conflict = None
        for rank, candidate in enumerate(candidates):
            offer = await self.offers.create(
                DriverOfferModel(
                    request_id=request.id,
                    driver_id=candidate.driver_id,
                    status=OfferStatus.PENDING,
                    request_version=request.assignment_version,
                    rank=rank,
                    distance_km=round(candidate.distance_km, 3),
                    expires_at=now + timedelta(seconds=self.settings.offer_ttl_seconds),
                    created_at=now,
                )
            )
            if await self.requests.claim_offer_slot(
                request.id, request.assignment_version, offer.id, now
            ):
                return await self._offered(request, offer, candidate, now)

            # lost the slot: another cycle got there first
            await self.session.delete(offer)
            await self.session.flush()
            conflict = AssignmentConflict(
                f"Request {request.id} changed while offering to {candidate.driver_id}",
                request_id=request.id,
                expected_version=request.assignment_version,
            )
            logger.warning("%s", conflict)

            request = await self.requests.reload(request.id)
            if RequestStatus(request.status) not in (
                RequestStatus.QUOTING,
                RequestStatus.OFFERING,
            ):
                return DispatchOutcome(
                    DispatchResult.CONFLICT, request, error=conflict
                )
            if request.active_offer_id is not None:
                return DispatchOutcome(
                    DispatchResult.OFFER_OUTSTANDING, request, error=conflict
                )

        return DispatchOutcome(DispatchResult.CONFLICT, request, error=conflict)

    async def _offered(
        self,
        request: DispatchRequestModel,
        offer: DriverOfferModel,
        candidate: Candidate,
        now: datetime,
    ) -> DispatchOutcome:
        previous = RequestStatus(request.status)
        request = await self.requests.reload(request.id)
        await self.audit.record(
            request.id,
            request.assignment_version,
            "offer_created",
            from_status=previous,
            to_status=RequestStatus.OFFERING,
            driver_id=offer.driver_id,
            detail={
                "offer_id": offer.id,
                "rank": offer.rank,
                "distance_km": offer.distance_km,
                "quota_exhausted": candidate.quota_exhausted,
            },
            now=now,
        )
        self.events.publish(
            OfferCreated(
                request_id=request.id,
                occurred_at=now,
                offer_id=offer.id,
                driver_id=offer.driver_id,
                expires_at=offer.expires_at,
                distance_km=offer.distance_km,
            )
        )
        if previous != RequestStatus.OFFERING:
            self._status_changed(request, previous, now)
        logger.info(
            "Request %s offered to %s (%.2f km, offer %s, attempt %d)",
            request.id,
            offer.driver_id,
            offer.distance_km,
            offer.id,
            request.offer_attempts,
        )
        return DispatchOutcome(DispatchResult.OFFERED, request, offer=offer)

    async def _expire(
        self, request: DispatchRequestModel, reason: str, now: datetime
    ) -> DispatchRequestModel:
        previous = RequestStatus(request.status)
        ensure_transition(previous, RequestStatus.EXPIRED)
        won = await self.requests.compare_and_set(
            request.id,
            request.assignment_version,
            statuses=DISPATCHABLE_STATUSES,
            status=RequestStatus.EXPIRED,
            expired_at=now,
            failure_reason=reason,
            next_dispatch_at=None,
            active_offer_id=None,
        )
        request = await self.requests.reload(request.id)
        if not won:
            return request

        await self.audit.record(
            request.id,
            request.assignment_version,
            "expired",
            from_status=previous,
            to_status=RequestStatus.EXPIRED,
            detail={"reason": reason},
            now=now,
        )
        self._status_changed(request, previous, now, reason=reason)
        logger.warning("Request %s expired: %s", request.id, reason)
        return request

    def _backoff(self, attempt: int) -> int:
        schedule = self.settings.no_driver_backoff_seconds
        return schedule[min(attempt, len(schedule)) - 1]

    # ══════════════════════════════════════════════════════════════
    #  Offers
    # ══════════════════════════════════════════════════════════════

    async def respond_to_offer(
        self,
        offer_id: int,
        driver_id: str,
        accept: bool,
        now: Optional[datetime] = None,
    ) -> OfferOutcome:
        now = now or utcnow()
        offer = await self.offers.get(offer_id)
        if offer is None:
            raise OfferNotFound(f"Offer {offer_id} not found", offer_id=offer_id)
        if offer.driver_id != driver_id:
            raise DriverNotAssigned(
                f"Offer {offer_id} was not made to driver {driver_id}",
                offer_id=offer_id,
            )

        if OfferStatus(offer.status) != OfferStatus.PENDING:
            return await self._already_answered(offer, accept)
        if now >= offer.expires_at:
            redispatch = await self.expire_offer(offer.id, now)
            offer = await self.offers.get(offer.id)
            return OfferOutcome(
                OfferResult.EXPIRED,
                offer,
                request=redispatch.request if redispatch else None,
                error=OfferExpired(f"Offer {offer_id} expired", offer_id=offer_id),
                redispatch=redispatch,
            )
        if accept:
            return await self._accept(offer, now)
        return await self._decline(offer, now)

    async def expire_offer(
        self, offer_id: int, now: Optional[datetime] = None, reason: str = "ttl"
    ) -> Optional[DispatchOutcome]:
        """Expire a pending offer and immediately redispatch the request."""
        now = now or utcnow()
        offer = await self.offers.get(offer_id)
        if offer is None or not await self.offers.transition(
            offer_id, OfferStatus.EXPIRED, reason=reason, responded_at=now
        ):
            return None

        await self.requests.release_offer_slot(offer.request_id, offer.id)
        request = await self.requests.reload(offer.request_id)
        await self.audit.record(
            request.id,
            request.assignment_version,
            "offer_expired",
            driver_id=offer.driver_id,
            detail={"offer_id": offer.id, "reason": reason},
            now=now,
        )
        logger.warning(
            "%s", OfferExpired(f"Offer {offer.id} to {offer.driver_id} expired ({reason})")
        )
        return await self.dispatch(offer.request_id, now)

    async def expire_due_offers(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = 0
        for offer in await self.offers.due_for_expiry(now):
            if await self.expire_offer(offer.id, now) is not None:
                expired += 1
        return expired

    async def _already_answered(
        self, offer: DriverOfferModel, accept: bool
    ) -> OfferOutcome:
        status = OfferStatus(offer.status)
        request = await self.requests.reload(offer.request_id)
        if accept and status == OfferStatus.ACCEPTED:
            return OfferOutcome(OfferResult.ACCEPTED, offer, request)
        if not accept and status == OfferStatus.REJECTED:
            return OfferOutcome(OfferResult.REJECTED, offer, request)
        if status == OfferStatus.EXPIRED and offer.reason == "ttl":
            return OfferOutcome(
                OfferResult.EXPIRED,
                offer,
                request,
                error=OfferExpired(f"Offer {offer.id} expired", offer_id=offer.id),
            )
        return OfferOutcome(
            OfferResult.CONFLICT,
            offer,
            request,
            error=AssignmentConflict(
                f"Offer {offer.id} is no longer open ({offer.reason or status.value.lower()})",
                offer_id=offer.id,
            ),
        )

    async def _decline(self, offer: DriverOfferModel, now: datetime) -> OfferOutcome:
        if not await self.offers.transition(
            offer.id, OfferStatus.REJECTED, responded_at=now, reason="declined"
        ):
            return await self._already_answered(await self.offers.get(offer.id), False)

        await self.requests.release_offer_slot(offer.request_id, offer.id)
        request = await self.requests.reload(offer.request_id)
        await self.audit.record(
            request.id,
            request.assignment_version,
            "offer_declined",
            driver_id=offer.driver_id,
            detail={"offer_id": offer.id},
            now=now,
        )
        logger.info("Offer %s declined by %s", offer.id, offer.driver_id)
        redispatch = await self.dispatch(request.id, now)
        return OfferOutcome(
            OfferResult.REJECTED,
            await self.offers.get(offer.id),
            redispatch.request,
            redispatch=redispatch,
        )

    async def _accept(self, offer: DriverOfferModel, now: datetime) -> OfferOutcome:
        if not await self.offers.transition(
            offer.id, OfferStatus.ACCEPTED, responded_at=now
        ):
            return await self._already_answered(await self.offers.get(offer.id), True)

        request = await self.requests.reload(offer.request_id)
        receipt = None
        extra_billing = False
        try:
            receipt = await self.quota.try_consume(offer.driver_id, request.id, now)
        except QuotaExhausted as exc:
            if not self.quota.fallback_allowed(ServiceType(request.service_type)):
                return await self._undo_accept(
                    offer, request, now, OfferResult.QUOTA_EXHAUSTED, exc
                )
            extra_billing = True
            logger.warning(
                "Request %s: %s; billing as pay-per-ride overage", request.id, exc
            )

        if not await self.drivers.claim(offer.driver_id, request.id):
            await self._restore_quota(receipt, now)
            return await self._undo_accept(
                offer,
                request,
                now,
                OfferResult.CONFLICT,
                AssignmentConflict(
                    f"Driver {offer.driver_id} already holds an active assignment",
                    driver_id=offer.driver_id,
                ),
            )

        won = await self.requests.compare_and_set(
            request.id,
            offer.request_version,
            statuses=[RequestStatus.OFFERING],
            offer_slot=offer.id,
            status=RequestStatus.ACCEPTED,
            assigned_driver_id=offer.driver_id,
            accepted_at=now,
            active_offer_id=None,
            requires_extra_billing=extra_billing,
            overage_surcharge=self.quota.overage_surcharge if extra_billing else 0.0,
        )
        if not won:
            await self._restore_quota(receipt, now)
            await self.drivers.release(offer.driver_id, request.id)
            return await self._undo_accept(
                offer,
                request,
                now,
                OfferResult.CONFLICT,
                AssignmentConflict(
                    f"Request {request.id} moved past version {offer.request_version}",
                    request_id=request.id,
                    expected_version=offer.request_version,
                ),
            )

        request = await self.requests.reload(request.id)
        self.locations.set_availability(offer.driver_id, False)
        await self.audit.record(
            request.id,
            request.assignment_version,
            "accepted",
            from_status=RequestStatus.OFFERING,
            to_status=RequestStatus.ACCEPTED,
            driver_id=offer.driver_id,
            detail={
                "offer_id": offer.id,
                "requires_extra_billing": extra_billing,
                "rides_remaining": receipt.rides_remaining if receipt else 0,
            },
            now=now,
        )
        self.events.publish(
            AssignmentAccepted(
                request_id=request.id,
                occurred_at=now,
                driver_id=offer.driver_id,
                assignment_version=request.assignment_version,
                requires_extra_billing=extra_billing,
            )
        )
        self._status_changed(request, RequestStatus.OFFERING, now)
        logger.info(
            "Request %s accepted by %s (version %d%s)",
            request.id,
            offer.driver_id,
            request.assignment_version,
            ", overage" if extra_billing else "",
        )
        return OfferOutcome(
            OfferResult.ACCEPTED,
            await self.offers.get(offer.id),
            request,
            receipt=receipt,
        )

    async def _undo_accept(
        self,
        offer: DriverOfferModel,
        request: DispatchRequestModel,
        now: datetime,
        result: OfferResult,
        error: DispatchError,
    ) -> OfferOutcome:
        await self.offers.transition(
            offer.id,
            OfferStatus.REJECTED,
            from_status=OfferStatus.ACCEPTED,
            reason=error.code,
        )
        await self.requests.release_offer_slot(request.id, offer.id)
        logger.warning("Acceptance of offer %s discarded: %s", offer.id, error)

        request = await self.requests.reload(request.id)
        await self.audit.record(
            request.id,
            request.assignment_version,
            "acceptance_discarded",
            driver_id=offer.driver_id,
            detail={"offer_id": offer.id, "code": error.code},
            now=now,
        )
        redispatch = None
        if RequestStatus(request.status) in DISPATCHABLE_STATUSES:
            redispatch = await self.dispatch(request.id, now)
            request = redispatch.request
        return OfferOutcome(
            result,
            await self.offers.get(offer.id),
            request,
            error=error,
            redispatch=redispatch,
        )

    async def _restore_quota(self, receipt: Optional[QuotaReceipt], now: datetime) -> None:
        if receipt is not None and not receipt.replayed:
            await self.quota.restore(receipt.driver_id, receipt.request_id, now)

    # ══════════════════════════════════════════════════════════════
    #  Cancellation and milestones
    # ══════════════════════════════════════════════════════════════

    async def cancel(
        self,
        request_id: int,
        reason: str = "requester_cancelled",
        now: Optional[datetime] = None,
        max_attempts: int = 3,
    ) -> DispatchRequestModel:
        now = now or utcnow()
        for _ in range(max_attempts):
            request = await self.get(request_id)
            previous = RequestStatus(request.status)
            if previous == RequestStatus.CANCELLED:
                return request
            ensure_transition(previous, RequestStatus.CANCELLED)

            pending_offer_id = request.active_offer_id
            driver_id = request.assigned_driver_id
            fee = self.cancellation_policy.fee_for(request, now)
            if await self.requests.compare_and_set(
                request_id,
                request.assignment_version,
                statuses=[previous],
                status=RequestStatus.CANCELLED,
                cancelled_at=now,
                cancellation_fee=fee,
                active_offer_id=None,
                next_dispatch_at=None,
            ):
                break
            logger.info("Request %s changed while cancelling; retrying", request_id)
        else:
            raise AssignmentConflict(
                f"Request {request_id} kept changing; cancellation not applied",
                request_id=request_id,
            )

        if pending_offer_id is not None:
            await self.offers.transition(
                pending_offer_id,
                OfferStatus.EXPIRED,
                reason="request_cancelled",
                responded_at=now,
            )
        if previous in ASSIGNED_STATUSES and driver_id:
            await self.quota.restore(driver_id, request_id, now)
            await self.drivers.release(driver_id, request_id)
            self.locations.set_availability(driver_id, True)
        if request.prepaid:
            await self._refund_prepaid(request_id, reason, now)

        request = await self.requests.reload(request_id)
        await self.audit.record(
            request_id,
            request.assignment_version,
            "cancelled",
            from_status=previous,
            to_status=RequestStatus.CANCELLED,
            driver_id=driver_id,
            detail={"reason": reason, "fee": fee},
            now=now,
        )
        self._status_changed(request, previous, now, reason=reason)
        logger.info(
            "Request %s cancelled from %s (fee %.2f)", request_id, previous.value, fee
        )
        return request

    async def advance(
        self,
        request_id: int,
        driver_id: str,
        milestone: RequestStatus,
        now: Optional[datetime] = None,
    ) -> DispatchRequestModel:
        """Record a driver-reported milestone (EN_ROUTE ... COMPLETED)."""
        now = now or utcnow()
        milestone = RequestStatus(milestone)
        column = MILESTONE_TIMESTAMPS.get(milestone)
        if column is None:
            raise InvalidStateTransition(f"{milestone.value} is not a driver milestone")

        request = await self.get(request_id)
        if request.assigned_driver_id != driver_id:
            raise DriverNotAssigned(
                f"Driver {driver_id} is not assigned to request {request_id}",
                request_id=request_id,
            )
        previous = RequestStatus(request.status)
        if previous == milestone:
            return request
        ensure_transition(previous, milestone)

        if not await self.requests.compare_and_set(
            request_id,
            request.assignment_version,
            statuses=[previous],
            status=milestone,
            **{column: now},
        ):
            raise AssignmentConflict(
                f"Request {request_id} changed before {milestone.value} was recorded",
                request_id=request_id,
            )
        if milestone == RequestStatus.COMPLETED:
            await self._complete(request_id, driver_id, now)

        request = await self.requests.reload(request_id)
        await self.audit.record(
            request_id,
            request.assignment_version,
            milestone.value.lower(),
            from_status=previous,
            to_status=milestone,
            driver_id=driver_id,
            now=now,
        )
        self._status_changed(request, previous, now)
        logger.info("Request %s %s", request_id, milestone.value)
        return request

    async def _complete(self, request_id: int, driver_id: str, now: datetime) -> None:
        tx = await self.escrow.get_by_order(ride_order_id(request_id))
        if tx is not None:
            if EscrowStatus(tx.status) == EscrowStatus.HELD:
                try:
                    await self.escrow.release(tx.id, now)
                except PaymentGatewayError:
                    # the ride is done; the auto-release sweep retries the capture
                    logger.exception(
                        "Capture failed for request %s; release rescheduled", request_id
                    )
                    await self.escrow.schedule_release(tx.id, now)
            else:
                logger.warning(
                    "Escrow for request %s is %s at completion; left as is",
                    request_id,
                    EscrowStatus(tx.status).value,
                )
        await self.drivers.release(driver_id, request_id)
        await self.drivers.record_completed_ride(driver_id)
        self.locations.set_availability(driver_id, True)

    async def _refund_prepaid(self, request_id: int, reason: str, now: datetime) -> None:
        """A failed refund propagates: the cancellation is rolled back with it."""
        tx = await self.escrow.get_by_order(ride_order_id(request_id))
        if tx is None:
            return
        if EscrowStatus(tx.status) == EscrowStatus.HELD:
            await self.escrow.refund(tx.id, reason, now)
        else:
            logger.warning(
                "Escrow for cancelled request %s is %s; refund skipped",
                request_id,
                EscrowStatus(tx.status).value,
            )

    # ══════════════════════════════════════════════════════════════
    #  Internals
    # ══════════════════════════════════════════════════════════════

    def _status_changed(
        self,
        request: DispatchRequestModel,
        previous: RequestStatus,
        now: datetime,
        **detail,
    ) -> None:
        self.events.publish(
            StatusChanged(
                request_id=request.id,
                occurred_at=now,
                previous=previous.value,
                current=RequestStatus(request.status).value,
                assignment_version=request.assignment_version,
                detail=detail,
            )
        )

    async def _log_fatal(
        self, request: DispatchRequestModel, error: DispatchError
    ) -> None:
        trail = "; ".join(
            f"v{e.assignment_version} {e.event} "
            f"{e.from_status or '-'}->{e.to_status or '-'}"
            f"{' driver=' + e.driver_id if e.driver_id else ''}"
            for e in await self.audit.history(request.id)
        )
        logger.error(
            "Request %s failed [%s]: %s | history: %s",
            request.id,
            error.code,
            error,
            trail,
        )

"""
Concurrency safety tests.

Demonstrates:
1. Compare-and-swap on ``assignment_version`` lets exactly one writer win.
2. The single offer slot keeps at most one offer outstanding per request.
3. A driver can be bound to one active request at a time.
4. Distributed lock prevents two processes running the same sweep.
"""

from datetime import timedelta
import logging
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from dispatch_engine.domain.entities import Location, RequestDraft
from dispatch_engine.domain.enums import (
    DispatchResult,
    OfferResult,
    OfferStatus,
    RequestStatus,
    VehicleClass,
)
from dispatch_engine.infrastructure.locks import DistributedLock, LockNotAcquired
from dispatch_engine.infrastructure.models import DriverOfferModel
from dispatch_engine.infrastructure.repositories import (
    DriverRepository,
    OfferRepository,
    RequestRepository,
    SubscriptionRepository,
)
from dispatch_engine.workers import sweeps
from dispatch_engine.workers.scheduler import PeriodicJob
from tests.conftest import GOMBE, NOW, add_driver, add_request, ping, point


def _draft() -> RequestDraft:
    return RequestDraft(
        requester_id="rider-1",
        pickup=Location(*GOMBE),
        destination=Location(*point(3.0)),
        vehicle_class=VehicleClass.ECO,
    )


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_stale_version_loses(self, db_session):
        request = await add_request(db_session)
        repo = RequestRepository(db_session)

        assert await repo.compare_and_set(request.id, 0, status=RequestStatus.OFFERING)
        assert not await repo.compare_and_set(request.id, 0, status=RequestStatus.EXPIRED)

        row = await repo.reload(request.id)
        assert (row.status, row.assignment_version) == (RequestStatus.OFFERING, 1)

    @pytest.mark.asyncio
    async def test_status_guard(self, db_session):
        request = await add_request(db_session, status=RequestStatus.CANCELLED)
        repo = RequestRepository(db_session)

        assert not await repo.compare_and_set(
            request.id, 0, statuses=[RequestStatus.OFFERING], status=RequestStatus.ACCEPTED
        )
        assert (await repo.reload(request.id)).assignment_version == 0

    @pytest.mark.asyncio
    async def test_offer_slot_taken_once(self, db_session):
        request = await add_request(db_session)
        repo = RequestRepository(db_session)

        assert await repo.claim_offer_slot(request.id, 0, 11, NOW)
        assert not await repo.claim_offer_slot(request.id, 0, 12, NOW)

        row = await repo.reload(request.id)
        assert row.active_offer_id == 11
        assert row.offer_attempts == 1
        assert row.assignment_version == 0


class TestSingleOutstandingOffer:
    @pytest.mark.asyncio
    async def test_second_cycle_sees_outstanding_offer(self, core, db_session):
        await add_driver(db_session, "d1")
        await add_driver(db_session, "d2")
        ping(core, "d1", 1.0)
        ping(core, "d2", 1.5)
        dispatcher = core.dispatcher(db_session)
        request = await dispatcher.create_request(_draft(), NOW)

        first = await dispatcher.dispatch(request.id, NOW)
        second = await dispatcher.dispatch(request.id, NOW)

        assert first.result == DispatchResult.OFFERED
        assert second.result == DispatchResult.OFFER_OUTSTANDING
        offers = await dispatcher.offers.for_request(request.id)
        assert [o.driver_id for o in offers] == ["d1"]

    @pytest.mark.asyncio
    async def test_lost_slot_moves_to_next_candidate(self, core, db_session):
        await add_driver(db_session, "d1")
        await add_driver(db_session, "d2")
        ping(core, "d1", 1.0)
        ping(core, "d2", 1.5)
        dispatcher = core.dispatcher(db_session)
        request = await dispatcher.create_request(_draft(), NOW)

        with patch.object(
            dispatcher.requests,
            "claim_offer_slot",
            AsyncMock(side_effect=[False, True]),
        ):
            outcome = await dispatcher.dispatch(request.id, NOW)

        assert outcome.result == DispatchResult.OFFERED
        assert (outcome.offer.driver_id, outcome.offer.rank) == ("d2", 1)
        offers = await dispatcher.offers.for_request(request.id)
        assert [o.driver_id for o in offers] == ["d2"]

    @pytest.mark.asyncio
    async def test_two_accepted_offers_rejected_by_database(self, db_session):
        request = await add_request(db_session)
        for driver_id in ("d1", "d2"):
            db_session.add(
                DriverOfferModel(
                    request_id=request.id,
                    driver_id=driver_id,
                    status=OfferStatus.ACCEPTED,
                    request_version=0,
                    distance_km=1.0,
                    expires_at=NOW + timedelta(seconds=15),
                )
            )
        with pytest.raises(IntegrityError):
            await db_session.flush()


class TestDriverBinding:
    @pytest.mark.asyncio
    async def test_claim_and_release(self, db_session):
        await add_driver(db_session, "d1")
        drivers = DriverRepository(db_session)

        assert await drivers.claim("d1", 1)
        assert not await drivers.claim("d1", 2)
        assert not await drivers.release("d1", 2)
        assert await drivers.release("d1", 1)
        assert await drivers.claim("d1", 2)

    @pytest.mark.asyncio
    async def test_accept_while_bound_elsewhere(self, core, db_session):
        await add_driver(db_session, "d1")
        ping(core, "d1", 1.0)
        dispatcher = core.dispatcher(db_session)
        request = await dispatcher.create_request(_draft(), NOW)
        outcome = await dispatcher.dispatch(request.id, NOW)
        other = await add_request(db_session, status=RequestStatus.ACCEPTED)
        await DriverRepository(db_session).claim("d1", other.id)

        result = await dispatcher.respond_to_offer(
            outcome.offer.id, "d1", True, NOW + timedelta(seconds=5)
        )

        assert result.result == OfferResult.CONFLICT
        assert result.error.code == "assignment_conflict"
        assert (await SubscriptionRepository(db_session).get("d1")).rides_remaining == 10
        assert (await DriverRepository(db_session).get("d1")).active_request_id == other.id
        assert result.request.status == RequestStatus.OFFERING
        assert result.request.assigned_driver_id is None


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "sweep:offer-expiry", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "dispatch:lock:sweep:offer-expiry", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "sweep:offer-expiry", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "sweep:offer-expiry", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="Could not acquire lock"):
            async with lock:
                pass
        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_reports_lost_ownership(self):
        mock_redis = AsyncMock()
        mock_redis.eval = AsyncMock(return_value=0)

        lock = DistributedLock(mock_redis, "sweep:offer-expiry", ttl_seconds=10)
        assert await lock.release() is False
        mock_redis.eval.assert_awaited_once()
        assert mock_redis.eval.await_args.args[1:] == (
            1,
            "dispatch:lock:sweep:offer-expiry",
            lock.token,
        )


class TestPeriodicJob:
    @pytest.mark.asyncio
    async def test_runs_under_lock(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)
        run = AsyncMock(return_value=3)
        job = PeriodicJob("offer-expiry", 1.0, run)

        with patch(
            "dispatch_engine.workers.scheduler.get_redis",
            AsyncMock(return_value=mock_redis),
        ):
            assert await job.run_once() == 3

        run.assert_awaited_once()
        mock_redis.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_when_another_process_holds_the_lock(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)
        run = AsyncMock(return_value=3)
        job = PeriodicJob("offer-expiry", 1.0, run)

        with patch(
            "dispatch_engine.workers.scheduler.get_redis",
            AsyncMock(return_value=mock_redis),
        ):
            assert await job.run_once() == 0

        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_warns_when_lock_expired_mid_sweep(self, caplog):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=0)
        job = PeriodicJob("escrow-auto-release", 1.0, AsyncMock(return_value=4))

        with patch(
            "dispatch_engine.workers.scheduler.get_redis",
            AsyncMock(return_value=mock_redis),
        ), caplog.at_level(logging.WARNING, logger="dispatch_engine.workers.scheduler"):
            assert await job.run_once() == 4

        assert "expired before the sweep finished" in caplog.text

    @pytest.mark.asyncio
    async def test_local_job_never_touches_redis(self):
        get_redis = AsyncMock()
        job = PeriodicJob("zone-refresh", 1.0, AsyncMock(return_value=2), distributed=False)

        with patch("dispatch_engine.workers.scheduler.get_redis", get_redis):
            assert await job.run_once() == 2

        get_redis.assert_not_awaited()


@pytest.mark.asyncio
async def test_offer_sweep_commits_expiry_and_redispatch(core, session_factory):
    async with session_factory() as session:
        await add_driver(session, "d1")
        await add_driver(session, "d2")
        request = await core.dispatcher(session).create_request(_draft(), NOW)
        ping(core, "d1", 1.0)
        ping(core, "d2", 1.5)
        await core.dispatcher(session).dispatch(request.id, NOW)
        await session.commit()
        request_id = request.id

    assert await sweeps.expire_offers(core, session_factory, NOW + timedelta(seconds=16)) == 1

    async with session_factory() as session:
        offers = await OfferRepository(session).for_request(request_id)
        assert [(o.driver_id, o.status) for o in offers] == [
            ("d1", OfferStatus.EXPIRED),
            ("d2", OfferStatus.PENDING),
        ]

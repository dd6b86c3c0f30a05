"""Quota ledger: atomic decrement, replay idempotency and compensation."""

from datetime import timedelta

import pytest

from dispatch_engine.domain.enums import ServiceType, SubscriptionStatus
from dispatch_engine.domain.errors import QuotaExhausted
from dispatch_engine.infrastructure.repositories import SubscriptionRepository
from tests.conftest import NOW, add_driver


async def _rides(session, driver_id: str) -> int:
    return (await SubscriptionRepository(session).get(driver_id)).rides_remaining


class TestConsume:
    @pytest.mark.asyncio
    async def test_consumes_exactly_one_ride(self, core, db_session):
        await add_driver(db_session, "d1", rides=10)
        receipt = await core.quota(db_session).try_consume("d1", 101, NOW)

        assert receipt.rides_remaining == 9
        assert not receipt.replayed
        assert await _rides(db_session, "d1") == 9

    @pytest.mark.asyncio
    async def test_replay_for_same_request_is_free(self, core, db_session):
        await add_driver(db_session, "d1", rides=10)
        quota = core.quota(db_session)
        await quota.try_consume("d1", 101, NOW)

        again = await quota.try_consume("d1", 101, NOW)

        assert again.replayed
        assert again.rides_remaining == 9
        assert await _rides(db_session, "d1") == 9

    @pytest.mark.asyncio
    async def test_last_ride_goes_to_one_request_only(self, core, db_session):
        await add_driver(db_session, "d1", rides=1)
        quota = core.quota(db_session)

        await quota.try_consume("d1", 101, NOW)
        with pytest.raises(QuotaExhausted, match="no rides remaining"):
            await quota.try_consume("d1", 102, NOW)
        assert await _rides(db_session, "d1") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,reason",
        [
            ({"status": SubscriptionStatus.SUSPENDED}, "subscription suspended"),
            ({"end_date": NOW - timedelta(hours=1)}, "subscription ended"),
            ({"subscription": False}, "no subscription"),
        ],
    )
    async def test_unusable_subscription(self, core, db_session, kwargs, reason):
        await add_driver(db_session, "d1", **kwargs)
        with pytest.raises(QuotaExhausted, match=reason) as exc:
            await core.quota(db_session).try_consume("d1", 101, NOW)
        assert exc.value.status_code == 402

    @pytest.mark.asyncio
    async def test_drivers_do_not_share_a_ledger(self, core, db_session):
        await add_driver(db_session, "d1", rides=1)
        await add_driver(db_session, "d2", rides=1)
        quota = core.quota(db_session)

        await quota.try_consume("d1", 101, NOW)
        await quota.try_consume("d2", 102, NOW)

        assert await quota.remaining_for(["d1", "d2", "nobody"], NOW) == {
            "d1": 0,
            "d2": 0,
            "nobody": 0,
        }


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_undoes_the_last_consumption_once(self, core, db_session):
        await add_driver(db_session, "d1", rides=5)
        quota = core.quota(db_session)
        await quota.try_consume("d1", 101, NOW)

        assert await quota.restore("d1", 101, NOW) is True
        assert await quota.restore("d1", 101, NOW) is False
        assert await _rides(db_session, "d1") == 5

    @pytest.mark.asyncio
    async def test_restore_of_older_request_is_refused(self, core, db_session):
        await add_driver(db_session, "d1", rides=5)
        quota = core.quota(db_session)
        await quota.try_consume("d1", 101, NOW)
        await quota.try_consume("d1", 102, NOW)

        assert await quota.restore("d1", 101, NOW) is False
        assert await _rides(db_session, "d1") == 3


def test_fallback_only_for_pay_per_ride_services(core):
    quota = core.quota(None)
    assert quota.fallback_allowed(ServiceType.DELIVERY)
    assert not quota.fallback_allowed(ServiceType.TAXI)
    assert quota.overage_surcharge == core.settings.overage_surcharge

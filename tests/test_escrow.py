"""Escrow settlement: money splits, exactly-once settlement, auto-release and disputes."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from dispatch_engine.domain.enums import EscrowStatus
from dispatch_engine.domain.errors import (
    EscrowAlreadyTerminal,
    EscrowAmountMismatch,
    EscrowDisputed,
    EscrowNotFound,
    InvalidStateTransition,
    PaymentGatewayError,
    PaymentHoldFailed,
)
from dispatch_engine.domain.money import (
    Allocation,
    allocate_order,
    allocate_ride,
    to_minor_units,
)
from dispatch_engine.infrastructure.models import EscrowTransactionModel
from dispatch_engine.infrastructure.payment_gateway import PaymentGateway
from dispatch_engine.services.escrow import EscrowSettlement
from dispatch_engine.workers import sweeps
from tests.conftest import NOW


class TestMoney:
    @pytest.mark.parametrize("total", [0, 1, 99, 720000, 1234567])
    def test_ride_split_is_lossless(self, total):
        alloc = allocate_ride(total, 0.15)
        assert alloc.seller_amount == 0
        assert alloc.platform_fee + alloc.driver_amount == total

    def test_marketplace_split(self):
        alloc = allocate_order(10000, 0.15, delivery_fee=1500)
        assert (alloc.seller_amount, alloc.platform_fee, alloc.driver_amount) == (
            7225,
            1275,
            1500,
        )

    def test_delivery_fee_larger_than_total(self):
        with pytest.raises(EscrowAmountMismatch):
            allocate_order(1000, 0.15, delivery_fee=1001)

    def test_parts_must_add_up(self):
        with pytest.raises(EscrowAmountMismatch):
            Allocation(total_amount=100, seller_amount=50, platform_fee=10, driver_amount=30)
        with pytest.raises(EscrowAmountMismatch):
            Allocation(total_amount=0, seller_amount=-10, platform_fee=10, driver_amount=0)

    def test_minor_units(self):
        assert to_minor_units(7200.0) == 720000
        assert to_minor_units(0.015) == 2


@pytest.fixture
def gateway():
    gw = AsyncMock(spec=PaymentGateway)
    gw.authorize_hold.return_value = "ref-1"
    return gw


@pytest.fixture
def escrow(db_session, gateway):
    return EscrowSettlement(db_session, gateway, auto_release_after=timedelta(hours=48))


async def _hold(escrow, order_id="order-1", total=10000, now=NOW):
    return await escrow.hold(
        order_id,
        "buyer-1",
        allocate_order(total, 0.15, delivery_fee=1500),
        "CDF",
        order_type="marketplace",
        seller_id="seller-1",
        now=now,
    )


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_records_transaction(self, escrow, gateway):
        tx = await _hold(escrow)

        assert tx.status == EscrowStatus.HELD
        assert tx.gateway_reference == "ref-1"
        assert tx.auto_release_at == NOW + timedelta(hours=48)
        assert tx.seller_amount + tx.platform_fee + tx.driver_amount == tx.total_amount
        gateway.authorize_hold.assert_awaited_once_with("order-1", 10000, "CDF")

    @pytest.mark.asyncio
    async def test_repeated_hold_returns_existing(self, escrow, gateway):
        first = await _hold(escrow)
        again = await _hold(escrow)

        assert again.id == first.id
        assert gateway.authorize_hold.await_count == 1

    @pytest.mark.asyncio
    async def test_repeated_hold_with_other_amount_rejected(self, escrow):
        await _hold(escrow)
        with pytest.raises(EscrowAmountMismatch):
            await _hold(escrow, total=12000)

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_no_row(self, escrow, gateway, db_session):
        gateway.authorize_hold.side_effect = PaymentHoldFailed("card declined")

        with pytest.raises(PaymentHoldFailed):
            await _hold(escrow)

        count = await db_session.scalar(select(func.count(EscrowTransactionModel.id)))
        assert count == 0


class TestSettlement:
    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, escrow, gateway):
        tx = await _hold(escrow)

        released = await escrow.release(tx.id, NOW + timedelta(hours=1))
        again = await escrow.release(tx.id, NOW + timedelta(hours=2))

        assert released.status == again.status == EscrowStatus.RELEASED
        assert again.released_at == NOW + timedelta(hours=1)
        gateway.capture.assert_awaited_once_with("ref-1", 10000)

    @pytest.mark.asyncio
    async def test_refund_after_release_rejected(self, escrow, gateway):
        tx = await _hold(escrow)
        await escrow.release(tx.id, NOW)

        with pytest.raises(EscrowAlreadyTerminal):
            await escrow.refund(tx.id, "changed my mind", NOW)
        gateway.refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refund(self, escrow, gateway):
        tx = await _hold(escrow)

        refunded = await escrow.refund_order("order-1", "out of stock", NOW)

        assert refunded.status == EscrowStatus.REFUNDED
        assert refunded.refund_reason == "out of stock"
        gateway.refund.assert_awaited_once_with("ref-1", 10000, "out of stock")
        with pytest.raises(EscrowAlreadyTerminal):
            await escrow.release(tx.id, NOW)

    @pytest.mark.asyncio
    async def test_unknown_order(self, escrow):
        with pytest.raises(EscrowNotFound):
            await escrow.require_order("nope")


class TestAutoRelease:
    @pytest.mark.asyncio
    async def test_released_exactly_at_deadline(self, escrow, gateway):
        tx = await _hold(escrow)

        assert await escrow.auto_release(NOW + timedelta(hours=47, minutes=59)) == []
        assert await escrow.auto_release(NOW + timedelta(hours=48)) == [tx.id]
        assert (await escrow.require_order("order-1")).status == EscrowStatus.RELEASED
        gateway.capture.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_explicit_release_is_not_repeated_by_sweep(self, escrow, gateway):
        tx = await _hold(escrow)
        await escrow.release(tx.id, NOW + timedelta(hours=2))

        assert await escrow.auto_release(NOW + timedelta(hours=48)) == []
        assert gateway.capture.await_count == 1


class TestDispute:
    @pytest.mark.asyncio
    async def test_dispute_blocks_release(self, escrow, gateway):
        tx = await _hold(escrow)
        disputed = await escrow.dispute_order("order-1", "item damaged", NOW)

        assert disputed.status == EscrowStatus.DISPUTED
        with pytest.raises(EscrowDisputed):
            await escrow.release(tx.id, NOW)
        assert await escrow.auto_release(NOW + timedelta(days=5)) == []
        gateway.capture.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolve_to_refund(self, escrow, gateway):
        tx = await _hold(escrow)
        await escrow.dispute(tx.id, "item damaged", NOW)

        resolved = await escrow.resolve_dispute(tx.id, EscrowStatus.REFUNDED, now=NOW)

        assert resolved.status == EscrowStatus.REFUNDED
        assert resolved.refund_reason == "item damaged"
        gateway.refund.assert_awaited_once_with("ref-1", 10000, "item damaged")

    @pytest.mark.asyncio
    async def test_resolve_requires_dispute(self, escrow):
        tx = await _hold(escrow)
        with pytest.raises(InvalidStateTransition):
            await escrow.resolve_dispute(tx.id, EscrowStatus.RELEASED, now=NOW)
        with pytest.raises(ValueError):
            await escrow.resolve_dispute(tx.id, EscrowStatus.HELD, now=NOW)

    @pytest.mark.asyncio
    async def test_cannot_dispute_settled_funds(self, escrow):
        tx = await _hold(escrow)
        await escrow.release(tx.id, NOW)
        with pytest.raises(EscrowAlreadyTerminal):
            await escrow.dispute(tx.id, "too late", NOW)


class TestGatewayFailures:
    @pytest.mark.asyncio
    async def test_failed_capture_leaves_transaction_held(self, escrow, gateway):
        gateway.authorize_hold.side_effect = ["ref-1", "ref-2"]
        first = await _hold(escrow, "order-1")
        second = await _hold(escrow, "order-2", now=NOW + timedelta(minutes=1))
        gateway.capture.side_effect = [None, PaymentGatewayError("gateway down")]

        assert await escrow.auto_release(NOW + timedelta(hours=49)) == [first.id]

        tx = await escrow.require_order("order-2")
        assert (tx.status, tx.released_at) == (EscrowStatus.HELD, None)

        gateway.capture.side_effect = None
        assert await escrow.auto_release(NOW + timedelta(hours=49)) == [second.id]
        assert [c.args[0] for c in gateway.capture.await_args_list] == [
            "ref-1",
            "ref-2",
            "ref-2",
        ]

    @pytest.mark.asyncio
    async def test_failed_refund_keeps_funds_held(self, escrow, gateway):
        tx = await _hold(escrow)
        gateway.refund.side_effect = PaymentGatewayError("gateway down")

        with pytest.raises(PaymentGatewayError):
            await escrow.refund(tx.id, "out of stock", NOW)

        held = await escrow.require_order("order-1")
        assert (held.status, held.refund_reason, held.refunded_at) == (
            EscrowStatus.HELD,
            None,
            None,
        )
        assert (await escrow.release(tx.id, NOW)).status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_failed_resolution_stays_disputed(self, escrow, gateway):
        tx = await _hold(escrow)
        await escrow.dispute(tx.id, "item damaged", NOW)
        gateway.refund.side_effect = PaymentGatewayError("gateway down")

        with pytest.raises(PaymentGatewayError):
            await escrow.resolve_dispute(tx.id, EscrowStatus.REFUNDED, now=NOW)

        assert (await escrow.require_order("order-1")).status == EscrowStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_completed_order_release_can_be_brought_forward(self, escrow, gateway):
        tx = await _hold(escrow)

        assert await escrow.schedule_release(tx.id, NOW + timedelta(hours=1))
        assert await escrow.auto_release(NOW + timedelta(hours=1)) == [tx.id]


class TestAutoReleaseSweep:
    """The sweep commits each transaction before touching the next one."""

    async def _hold_two(self, core, session_factory):
        async with session_factory() as session:
            escrow = core.escrow(session)
            await _hold(escrow, "order-1")
            await _hold(escrow, "order-2", now=NOW + timedelta(minutes=1))
            await session.commit()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "failure", [PaymentGatewayError("gateway down"), RuntimeError("boom")]
    )
    async def test_failure_on_one_row_never_repeats_another(
        self, make_core, session_factory, gateway, failure
    ):
        gateway.authorize_hold.side_effect = ["ref-1", "ref-2"]
        gateway.capture.side_effect = [None, failure, None]
        core = make_core(gateway=gateway)
        await self._hold_two(core, session_factory)
        later = NOW + timedelta(hours=49)

        assert await sweeps.auto_release_escrow(core, session_factory, later) == 1
        assert await sweeps.auto_release_escrow(core, session_factory, later) == 1
        assert await sweeps.auto_release_escrow(core, session_factory, later) == 0

        assert [c.args[0] for c in gateway.capture.await_args_list] == [
            "ref-1",
            "ref-2",
            "ref-2",
        ]
        async with session_factory() as session:
            statuses = await session.scalars(
                select(EscrowTransactionModel.status).order_by(EscrowTransactionModel.id)
            )
            assert list(statuses) == [EscrowStatus.RELEASED, EscrowStatus.RELEASED]

"""
Escrow Settlement
=================

Funds are held at booking time and leave escrow exactly once, either
released to the payees or refunded to the buyer.

State machine
-------------
HELD -> RELEASED | REFUNDED | DISPUTED
DISPUTED -> RELEASED | REFUNDED   (arbitration only)

* RELEASED / REFUNDED are terminal.  Repeating the same settlement is a
  no-op; asking for the opposite one raises ``EscrowAlreadyTerminal``.
* A DISPUTED transaction is invisible to the auto-release sweep and can
  only be settled through ``resolve_dispute``.
* Every transition is one conditional UPDATE on the expected status, so a
  sweep racing an explicit release can never settle the same row twice.
* The row is claimed before the gateway is called.  A failed capture or
  refund hands it back to its previous status; the gateway dedupes a
  repeated call by its idempotency key, so a commit lost after a
  successful capture is also safe to retry.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.domain.enums import ESCROW_TERMINAL, EscrowStatus
from dispatch_engine.domain.errors import (
    EscrowAlreadyTerminal,
    EscrowAmountMismatch,
    EscrowDisputed,
    EscrowNotFound,
    InvalidStateTransition,
    PaymentGatewayError,
)
from dispatch_engine.domain.money import Allocation, check_decomposition
from dispatch_engine.infrastructure.models import EscrowTransactionModel, utcnow
from dispatch_engine.infrastructure.payment_gateway import PaymentGateway
from dispatch_engine.infrastructure.repositories import EscrowRepository

logger = logging.getLogger(__name__)

_TIMESTAMP_FOR = {
    EscrowStatus.RELEASED: "released_at",
    EscrowStatus.REFUNDED: "refunded_at",
    EscrowStatus.DISPUTED: "disputed_at",
}


def ride_order_id(request_id: int) -> str:
    return f"ride:{request_id}"


class EscrowSettlement:
    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        auto_release_after: timedelta = timedelta(hours=48),
    ):
        self.repo = EscrowRepository(session)
        self.gateway = gateway
        self.auto_release_after = auto_release_after

    # ── Hold ──────────────────────────────────────────────────────

    async def hold(
        self,
        order_id: str,
        buyer_id: str,
        allocation: Allocation,
        currency: str,
        *,
        order_type: str = "ride",
        seller_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EscrowTransactionModel:
        """
        Authorize the hold with the gateway and record it.  Holding the same
        order twice returns the existing transaction when the amounts agree.
        """
        now = now or utcnow()
        check_decomposition(
            allocation.total_amount,
            allocation.seller_amount,
            allocation.platform_fee,
            allocation.driver_amount,
        )

        existing = await self.repo.get_by_order(order_id)
        if existing is not None:
            if existing.total_amount != allocation.total_amount:
                raise EscrowAmountMismatch(
                    f"Order {order_id} already held for {existing.total_amount}",
                    order_id=order_id,
                )
            return existing

        reference = await self.gateway.authorize_hold(
            order_id, allocation.total_amount, currency
        )
        tx = EscrowTransactionModel(
            order_id=order_id,
            order_type=order_type,
            buyer_id=buyer_id,
            seller_id=seller_id,
            driver_id=driver_id,
            seller_amount=allocation.seller_amount,
            platform_fee=allocation.platform_fee,
            driver_amount=allocation.driver_amount,
            total_amount=allocation.total_amount,
            currency=currency,
            status=EscrowStatus.HELD,
            gateway_reference=reference,
            held_at=now,
            auto_release_at=now + self.auto_release_after,
        )
        tx = await self.repo.create(tx)
        logger.info(
            "Escrow %s held for order %s: %d %s (auto-release at %s)",
            tx.id,
            order_id,
            tx.total_amount,
            currency,
            tx.auto_release_at.isoformat(),
        )
        return tx

    # ── Settlement ────────────────────────────────────────────────

    async def release(
        self, escrow_id: int, now: Optional[datetime] = None
    ) -> EscrowTransactionModel:
        tx = await self._settle(escrow_id, EscrowStatus.RELEASED, now or utcnow())
        return tx

    async def refund(
        self, escrow_id: int, reason: str, now: Optional[datetime] = None
    ) -> EscrowTransactionModel:
        return await self._settle(
            escrow_id, EscrowStatus.REFUNDED, now or utcnow(), refund_reason=reason
        )

    async def dispute(
        self, escrow_id: int, reason: str, now: Optional[datetime] = None
    ) -> EscrowTransactionModel:
        now = now or utcnow()
        tx = await self._require(escrow_id)
        status = EscrowStatus(tx.status)
        if status == EscrowStatus.DISPUTED:
            return tx
        if status in ESCROW_TERMINAL:
            raise EscrowAlreadyTerminal(
                f"Escrow {escrow_id} is already {status.value}", escrow_id=escrow_id
            )

        won = await self.repo.transition(
            escrow_id,
            [EscrowStatus.HELD],
            EscrowStatus.DISPUTED,
            disputed_at=now,
            dispute_reason=reason,
        )
        if not won:
            # settled or disputed in between; report what actually happened
            return await self.dispute(escrow_id, reason, now)
        logger.warning("Escrow %s disputed: %s", escrow_id, reason)
        return await self._require(escrow_id)

    async def resolve_dispute(
        self,
        escrow_id: int,
        outcome: EscrowStatus,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> EscrowTransactionModel:
        """Arbitration: settle a disputed transaction one way or the other."""
        if outcome not in ESCROW_TERMINAL:
            raise ValueError("A dispute resolves to RELEASED or REFUNDED")
        now = now or utcnow()
        tx = await self._require(escrow_id)
        status = EscrowStatus(tx.status)
        if status == outcome:
            return tx
        if status in ESCROW_TERMINAL:
            raise EscrowAlreadyTerminal(
                f"Escrow {escrow_id} is already {status.value}", escrow_id=escrow_id
            )
        if status != EscrowStatus.DISPUTED:
            raise InvalidStateTransition(
                f"Escrow {escrow_id} is not disputed", escrow_id=escrow_id
            )

        values = {_TIMESTAMP_FOR[outcome]: now}
        if outcome == EscrowStatus.REFUNDED:
            values["refund_reason"] = reason or tx.dispute_reason
        if not await self._transition_and_move(
            tx, EscrowStatus.DISPUTED, outcome, values
        ):
            return await self.resolve_dispute(escrow_id, outcome, reason, now)
        logger.info("Escrow %s dispute resolved: %s", escrow_id, outcome.value)
        return await self._require(escrow_id)

    async def due_for_release(self, now: Optional[datetime] = None) -> list[int]:
        return [tx.id for tx in await self.repo.due_for_release(now or utcnow())]

    async def release_due(self, escrow_id: int, now: Optional[datetime] = None) -> bool:
        """Auto-release one transaction if it is still HELD and due.

        A gateway failure is logged and leaves the row HELD for the next pass.
        """
        now = now or utcnow()
        tx = await self.repo.get(escrow_id)
        if (
            tx is None
            or EscrowStatus(tx.status) != EscrowStatus.HELD
            or tx.auto_release_at > now
        ):
            return False
        try:
            return await self._transition_and_move(
                tx, EscrowStatus.HELD, EscrowStatus.RELEASED, {"released_at": now}
            )
        except PaymentGatewayError:
            logger.exception("Auto-release of escrow %s failed; left HELD", escrow_id)
            return False

    async def auto_release(self, now: Optional[datetime] = None) -> list[int]:
        """Release every HELD transaction whose auto-release time has come."""
        now = now or utcnow()
        released = [
            escrow_id
            for escrow_id in await self.due_for_release(now)
            if await self.release_due(escrow_id, now)
        ]
        if released:
            logger.info("Auto-released %d escrow transactions", len(released))
        return released

    async def schedule_release(self, escrow_id: int, now: Optional[datetime] = None) -> bool:
        """Bring a HELD transaction's auto-release forward to *now*."""
        return await self.repo.transition(
            escrow_id,
            [EscrowStatus.HELD],
            EscrowStatus.HELD,
            auto_release_at=now or utcnow(),
        )

    # ── Lookups by order ──────────────────────────────────────────

    async def get_by_order(self, order_id: str) -> Optional[EscrowTransactionModel]:
        return await self.repo.get_by_order(order_id)

    async def require_order(self, order_id: str) -> EscrowTransactionModel:
        tx = await self.repo.get_by_order(order_id)
        if tx is None:
            raise EscrowNotFound(f"No escrow for order {order_id}", order_id=order_id)
        return tx

    async def release_order(
        self, order_id: str, now: Optional[datetime] = None
    ) -> EscrowTransactionModel:
        tx = await self.require_order(order_id)
        return await self.release(tx.id, now)

    async def refund_order(
        self, order_id: str, reason: str, now: Optional[datetime] = None
    ) -> EscrowTransactionModel:
        tx = await self.require_order(order_id)
        return await self.refund(tx.id, reason, now)

    async def dispute_order(
        self, order_id: str, reason: str, now: Optional[datetime] = None
    ) -> EscrowTransactionModel:
        tx = await self.require_order(order_id)
        return await self.dispute(tx.id, reason, now)

    # ── Internals ─────────────────────────────────────────────────

    async def _require(self, escrow_id: int) -> EscrowTransactionModel:
        tx = await self.repo.get(escrow_id)
        if tx is None:
            raise EscrowNotFound(f"Escrow {escrow_id} not found", escrow_id=escrow_id)
        return tx

    async def _settle(
        self, escrow_id: int, target: EscrowStatus, now: datetime, **values
    ) -> EscrowTransactionModel:
        tx = await self._require(escrow_id)
        status = EscrowStatus(tx.status)
        if status == target:
            return tx
        if status in ESCROW_TERMINAL:
            raise EscrowAlreadyTerminal(
                f"Escrow {escrow_id} is already {status.value}", escrow_id=escrow_id
            )
        if status == EscrowStatus.DISPUTED:
            raise EscrowDisputed(
                f"Escrow {escrow_id} is under dispute", escrow_id=escrow_id
            )

        values[_TIMESTAMP_FOR[target]] = now
        if not await self._transition_and_move(tx, EscrowStatus.HELD, target, values):
            return await self._settle(escrow_id, target, now, **values)

        logger.info("Escrow %s %s (order %s)", escrow_id, target.value.lower(), tx.order_id)
        return await self._require(escrow_id)

    async def _transition_and_move(
        self,
        tx: EscrowTransactionModel,
        from_status: EscrowStatus,
        target: EscrowStatus,
        values: dict,
    ) -> bool:
        """Claim the row for *target*, then move the money.

        Returns False when another writer moved the row first.  If the
        gateway call fails the claim is undone and the error propagates.
        """
        if not await self.repo.transition(tx.id, [from_status], target, **values):
            return False
        try:
            await self._move_funds(tx, target, values.get("refund_reason") or "")
        except PaymentGatewayError:
            await self.repo.transition(
                tx.id, [target], from_status, **{column: None for column in values}
            )
            raise
        return True

    async def _move_funds(
        self, tx: EscrowTransactionModel, outcome: EscrowStatus, reason: str = ""
    ) -> None:
        if not tx.gateway_reference:
            return
        if outcome == EscrowStatus.RELEASED:
            await self.gateway.capture(tx.gateway_reference, tx.total_amount)
        else:
            await self.gateway.refund(tx.gateway_reference, tx.total_amount, reason)

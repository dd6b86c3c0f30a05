"""
Payment gateway collaborators.

The core only issues intents (authorize a hold, capture it, refund it)
and treats the gateway as the source of truth for money movement.  Any
failure to authorize a hold surfaces as ``PaymentHoldFailed``; a failed
capture or refund surfaces as ``PaymentGatewayError``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from dispatch_engine.domain.errors import PaymentGatewayError, PaymentHoldFailed

logger = logging.getLogger(__name__)


class PaymentGateway(ABC):
    @abstractmethod
    async def authorize_hold(self, order_id: str, amount: int, currency: str) -> str:
        """Reserve *amount* (minor units); return the gateway reference."""

    @abstractmethod
    async def capture(self, reference: str, amount: int) -> None: ...

    @abstractmethod
    async def refund(self, reference: str, amount: int, reason: str) -> None: ...

    async def aclose(self) -> None:
        """Release connections held by the gateway client, if any."""


class ManualPaymentGateway(PaymentGateway):
    """
    Used when no gateway URL is configured: funds are collected offline
    (cash, mobile money reconciled by finance) and intents are only logged.
    """

    async def authorize_hold(self, order_id: str, amount: int, currency: str) -> str:
        logger.info("Manual hold for %s: %d %s", order_id, amount, currency)
        return f"manual:{order_id}"

    async def capture(self, reference: str, amount: int) -> None:
        logger.info("Manual capture %s: %d", reference, amount)

    async def refund(self, reference: str, amount: int, reason: str) -> None:
        logger.info("Manual refund %s: %d (%s)", reference, amount, reason)


class HttpPaymentGateway(PaymentGateway):
    """
    JSON-over-HTTP gateway.  Every call carries an ``Idempotency-Key``
    derived from the order or hold reference, so repeating a capture or
    refund after a lost commit does not move the money twice.
    """

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def authorize_hold(self, order_id: str, amount: int, currency: str) -> str:
        try:
            resp = await self.client.post(
                "/holds",
                json={"order_id": order_id, "amount": amount, "currency": currency},
                headers={"Idempotency-Key": f"hold-{order_id}"},
            )
            resp.raise_for_status()
            return str(resp.json()["reference"])
        except httpx.TimeoutException as exc:
            raise PaymentHoldFailed(
                f"Gateway timed out holding {order_id}", order_id=order_id
            ) from exc
        except httpx.HTTPError as exc:
            raise PaymentHoldFailed(
                f"Gateway refused hold for {order_id}: {exc}", order_id=order_id
            ) from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise PaymentHoldFailed(
                f"Unreadable hold response for {order_id}", order_id=order_id
            ) from exc

    async def capture(self, reference: str, amount: int) -> None:
        await self._settle("capture", reference, {"amount": amount})

    async def refund(self, reference: str, amount: int, reason: str) -> None:
        await self._settle("refund", reference, {"amount": amount, "reason": reason})

    async def _settle(self, action: str, reference: str, body: dict) -> None:
        try:
            resp = await self.client.post(
                f"/holds/{reference}/{action}",
                json=body,
                headers={"Idempotency-Key": f"{action}-{reference}"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(
                f"Gateway {action} failed for {reference}: {exc}", reference=reference
            ) from exc

    async def aclose(self) -> None:
        await self.client.aclose()


def build_gateway(base_url: str | None, timeout: float = 10.0) -> PaymentGateway:
    if base_url:
        return HttpPaymentGateway(base_url, timeout=timeout)
    return ManualPaymentGateway()

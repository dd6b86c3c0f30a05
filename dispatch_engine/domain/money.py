"""
Money helpers.

Escrow amounts are integers in the currency's minor unit, so the
decomposition ``total == seller + platform_fee + driver`` is exact.  Only
the platform fee is computed by rounding (half-up); the remainder goes to
the payee, which makes the split lossless by construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .errors import EscrowAmountMismatch


@dataclass(frozen=True)
class Allocation:
    total_amount: int
    seller_amount: int
    platform_fee: int
    driver_amount: int

    def __post_init__(self):
        for name in ("total_amount", "seller_amount", "platform_fee", "driver_amount"):
            if getattr(self, name) < 0:
                raise EscrowAmountMismatch(f"{name} must not be negative")
        check_decomposition(
            self.total_amount, self.seller_amount, self.platform_fee, self.driver_amount
        )


def to_minor_units(amount: float, minor_units: int = 100) -> int:
    value = Decimal(str(amount)) * minor_units
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, minor_units: int = 100) -> Decimal:
    return Decimal(amount) / minor_units


def percentage_of(total: int, rate: float) -> int:
    value = Decimal(total) * Decimal(str(rate))
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def check_decomposition(
    total: int, seller_amount: int, platform_fee: int, driver_amount: int
) -> None:
    if seller_amount + platform_fee + driver_amount != total:
        raise EscrowAmountMismatch(
            f"{seller_amount} + {platform_fee} + {driver_amount} != {total}",
            total_amount=total,
        )


def allocate_ride(total: int, commission_rate: float) -> Allocation:
    """Ride/delivery fare: platform commission, remainder to the driver."""
    fee = percentage_of(total, commission_rate)
    return Allocation(
        total_amount=total,
        seller_amount=0,
        platform_fee=fee,
        driver_amount=total - fee,
    )


def allocate_order(
    total: int, commission_rate: float, delivery_fee: int = 0
) -> Allocation:
    """Marketplace order: driver gets the delivery fee, commission on goods."""
    if delivery_fee > total:
        raise EscrowAmountMismatch("delivery fee exceeds order total")
    goods = total - delivery_fee
    fee = percentage_of(goods, commission_rate)
    return Allocation(
        total_amount=total,
        seller_amount=goods - fee,
        platform_fee=fee,
        driver_amount=delivery_fee,
    )

"""
Escrow endpoints
================

POST /api/v1/escrow                       -- hold funds for an order
GET  /api/v1/escrow/{order_id}            -- transaction status
POST /api/v1/escrow/{order_id}/release    -- release to the payees
POST /api/v1/escrow/{order_id}/refund     -- refund the buyer
POST /api/v1/escrow/{order_id}/dispute    -- freeze pending arbitration
POST /api/v1/escrow/{order_id}/resolve    -- arbitration outcome
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_core, get_db
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.schemas import (
    DisputeResolution,
    EscrowHoldCreate,
    EscrowReason,
    EscrowResponse,
)
from dispatch_engine.domain.money import allocate_order, allocate_ride
from dispatch_engine.services.core import DispatchCore

router = APIRouter(prefix="/escrow", tags=["escrow"])


@router.post("", status_code=201, response_model=EscrowResponse, summary="Hold funds")
@limiter.limit("100/minute")
async def hold_escrow(
    request: Request,
    body: EscrowHoldCreate,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    rate = core.settings.platform_commission_rate
    if body.order_type == "ride":
        allocation = allocate_ride(body.total_amount, rate)
    else:
        allocation = allocate_order(body.total_amount, rate, body.delivery_fee)
    return await core.escrow(db).hold(
        body.order_id,
        body.buyer_id,
        allocation,
        body.currency or core.settings.currency,
        order_type=body.order_type,
        seller_id=body.seller_id,
        driver_id=body.driver_id,
    )


@router.get("/{order_id}", response_model=EscrowResponse, summary="Escrow status")
@limiter.limit("100/minute")
async def get_escrow(
    request: Request,
    order_id: str,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.escrow(db).require_order(order_id)


@router.post(
    "/{order_id}/release", response_model=EscrowResponse, summary="Release funds"
)
@limiter.limit("100/minute")
async def release_escrow(
    request: Request,
    order_id: str,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.escrow(db).release_order(order_id)


@router.post("/{order_id}/refund", response_model=EscrowResponse, summary="Refund buyer")
@limiter.limit("100/minute")
async def refund_escrow(
    request: Request,
    order_id: str,
    body: EscrowReason,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.escrow(db).refund_order(order_id, body.reason)


@router.post(
    "/{order_id}/dispute", response_model=EscrowResponse, summary="Open a dispute"
)
@limiter.limit("100/minute")
async def dispute_escrow(
    request: Request,
    order_id: str,
    body: EscrowReason,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.escrow(db).dispute_order(order_id, body.reason)


@router.post(
    "/{order_id}/resolve", response_model=EscrowResponse, summary="Resolve a dispute"
)
@limiter.limit("100/minute")
async def resolve_escrow(
    request: Request,
    order_id: str,
    body: DisputeResolution,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    escrow = core.escrow(db)
    tx = await escrow.require_order(order_id)
    return await escrow.resolve_dispute(tx.id, body.outcome, body.reason)

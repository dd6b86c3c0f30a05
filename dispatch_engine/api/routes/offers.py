"""
Offer responses
===============

POST /api/v1/offers/{offer_id}/respond -- accept or decline an offer

An acceptance that loses to a concurrent change answers 409, an expired
offer 410 and an exhausted quota (without fallback) 402.  The request is
redispatched in every one of those cases before the response is sent.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_core, get_db
from dispatch_engine.api.errors import error_response
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.schemas import (
    OfferReply,
    OfferReplyResponse,
    OfferResponse,
    RequestResponse,
)
from dispatch_engine.services.core import DispatchCore

router = APIRouter(prefix="/offers", tags=["offers"])


@router.post(
    "/{offer_id}/respond",
    response_model=OfferReplyResponse,
    summary="Accept or decline an offer",
    responses={
        402: {"description": "Driver has no rides left on the subscription."},
        409: {"description": "Offer superseded or request already moved on."},
        410: {"description": "Offer expired."},
    },
)
@limiter.limit("100/minute")
async def respond_to_offer(
    request: Request,
    offer_id: int,
    body: OfferReply,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    outcome = await core.dispatcher(db).respond_to_offer(
        offer_id, body.driver_id, body.accept
    )
    if outcome.error is not None:
        return error_response(outcome.error, result=outcome.result.value)
    return OfferReplyResponse(
        result=outcome.result.value,
        offer=OfferResponse.model_validate(outcome.offer),
        request=RequestResponse.model_validate(outcome.request) if outcome.request else None,
        rides_remaining=outcome.receipt.rides_remaining if outcome.receipt else None,
    )

"""
Dispatch request endpoints
==========================

POST /api/v1/requests                      -- create a ride / delivery request (202)
GET  /api/v1/requests/{request_id}         -- assignment status snapshot
GET  /api/v1/requests/{request_id}/history -- assignment audit trail
POST /api/v1/requests/{request_id}/cancel  -- cancel a request
POST /api/v1/requests/{request_id}/status  -- driver-reported milestone
POST /api/v1/requests/{request_id}/dispatch -- run a dispatch cycle now
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_core, get_db
from dispatch_engine.api.errors import error_body
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.schemas import (
    AssignmentEventResponse,
    CancelRequest,
    DispatchResponse,
    MilestoneUpdate,
    OfferResponse,
    RequestCreate,
    RequestResponse,
)
from dispatch_engine.services.core import DispatchCore
from dispatch_engine.services.dispatcher import DispatchOutcome

router = APIRouter(prefix="/requests", tags=["requests"])


def to_dispatch_response(outcome: DispatchOutcome) -> DispatchResponse:
    return DispatchResponse(
        result=outcome.result.value,
        request=RequestResponse.model_validate(outcome.request),
        offer=OfferResponse.model_validate(outcome.offer) if outcome.offer else None,
        error=error_body(outcome.error) if outcome.error else None,
        retry_after=outcome.retry_after,
    )


@router.post(
    "",
    status_code=202,
    response_model=DispatchResponse,
    summary="Create a ride or delivery request",
    responses={202: {"description": "Request accepted; the first dispatch cycle has run."}},
)
@limiter.limit("100/minute")
async def create_request(
    request: Request,
    body: RequestCreate = Body(...),
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    dispatcher = core.dispatcher(db)
    created = await dispatcher.create_request(body.to_draft())
    outcome = await dispatcher.dispatch(created.id)
    return to_dispatch_response(outcome)


@router.get(
    "/{request_id}",
    response_model=RequestResponse,
    summary="Get assignment status",
)
@limiter.limit("100/minute")
async def get_request(
    request: Request,
    request_id: int,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.dispatcher(db).get(request_id)


@router.get(
    "/{request_id}/history",
    response_model=list[AssignmentEventResponse],
    summary="Assignment / version history",
)
@limiter.limit("100/minute")
async def get_history(
    request: Request,
    request_id: int,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.dispatcher(db).history(request_id)


@router.post(
    "/{request_id}/cancel",
    response_model=RequestResponse,
    summary="Cancel a request",
    description=(
        "Free before a driver accepted.  Afterwards the cancellation fee "
        "applies, the driver's ride is credited back and any prepaid hold "
        "is refunded."
    ),
)
@limiter.limit("100/minute")
async def cancel_request(
    request: Request,
    request_id: int,
    body: Optional[CancelRequest] = None,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    body = body or CancelRequest()
    return await core.dispatcher(db).cancel(request_id, reason=body.reason)


@router.post(
    "/{request_id}/status",
    response_model=RequestResponse,
    summary="Record a driver milestone",
)
@limiter.limit("100/minute")
async def advance_request(
    request: Request,
    request_id: int,
    body: MilestoneUpdate,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.dispatcher(db).advance(request_id, body.driver_id, body.status)


@router.post(
    "/{request_id}/dispatch",
    response_model=DispatchResponse,
    summary="Run a dispatch cycle now",
)
@limiter.limit("100/minute")
async def dispatch_request(
    request: Request,
    request_id: int,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return to_dispatch_response(await core.dispatcher(db).dispatch(request_id))

"""
Quote preview
=============

POST /api/v1/quotes -- price a trip without creating a request
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_core, get_db
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.schemas import FareResponse, QuoteCreate
from dispatch_engine.infrastructure.models import utcnow
from dispatch_engine.services.core import DispatchCore

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.post("", response_model=FareResponse, summary="Preview a fare")
@limiter.limit("100/minute")
async def preview_quote(
    request: Request,
    body: QuoteCreate,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    return await core.quotes(db).quote(
        body.pickup.lat,
        body.pickup.lng,
        body.destination.lat,
        body.destination.lng,
        body.vehicle_class,
        utcnow(),
    )

"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/health        -- simple health check
GET  /api/v1/admin/demand        -- latest demand snapshots
POST /api/v1/admin/zones/refresh -- reload the zone catalogue now
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_core, get_db
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.schemas import DemandResponse, HealthResponse
from dispatch_engine.services.core import DispatchCore

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/demand",
    response_model=list[DemandResponse],
    summary="Latest demand snapshot per zone and vehicle class",
)
@limiter.limit("100/minute")
async def get_demand(
    request: Request,
    core: DispatchCore = Depends(get_core),
):
    return sorted(
        core.demand_board.all(), key=lambda s: (s.zone_id, s.vehicle_class.value)
    )


@router.post("/zones/refresh", response_model=HealthResponse, summary="Reload zones")
@limiter.limit("10/minute")
async def refresh_zones(
    request: Request,
    db: AsyncSession = Depends(get_db),
    core: DispatchCore = Depends(get_core),
):
    await core.refresh_zones(db)
    return HealthResponse(zones=len(core.catalog), tracked_drivers=len(core.locations))


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(core: DispatchCore = Depends(get_core)):
    return HealthResponse(zones=len(core.catalog), tracked_drivers=len(core.locations))

"""
Driver location ingestion
=========================

POST /api/v1/drivers/{driver_id}/location -- submit a GPS ping

Pings only touch the in-memory location store; there is no database
write on this path.
"""

from fastapi import APIRouter, Depends, Request

from dispatch_engine.api.dependencies import get_core
from dispatch_engine.api.middleware import limiter
from dispatch_engine.api.schemas import DriverLocationUpdate, LocationAck
from dispatch_engine.domain.entities import DriverLocation
from dispatch_engine.infrastructure.models import utcnow
from dispatch_engine.services.core import DispatchCore

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post(
    "/{driver_id}/location",
    response_model=LocationAck,
    summary="Submit a driver location ping",
    responses={409: {"description": "Ping older than the staleness window."}},
)
@limiter.limit("600/minute")
async def submit_location(
    request: Request,
    driver_id: str,
    body: DriverLocationUpdate,
    core: DispatchCore = Depends(get_core),
):
    now = utcnow()
    ping = DriverLocation(
        driver_id=driver_id,
        latitude=body.lat,
        longitude=body.lng,
        vehicle_class=body.vehicle_class,
        last_ping=body.timestamp or now,
        heading=body.heading,
        speed=body.speed,
        accuracy=body.accuracy,
        is_online=body.is_online,
        is_available=body.is_available,
    )
    stored = core.locations.upsert(ping, now)
    current = core.locations.get(driver_id)
    return LocationAck(
        driver_id=driver_id,
        stored=stored,
        zone_id=current.zone_id if current else None,
    )

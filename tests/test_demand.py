"""Demand aggregation: snapshot levels, the board, recomputation and quoting."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from dispatch_engine.domain.demand import (
    DemandBoard,
    build_snapshot,
    count_available,
    demand_level,
)
from dispatch_engine.domain.entities import DriverLocation
from dispatch_engine.domain.enums import DemandLevel, RequestStatus, VehicleClass
from dispatch_engine.domain.errors import InvalidZone
from dispatch_engine.infrastructure.models import ZoneDemandModel
from tests.conftest import FAR_AWAY, GOMBE, NOW, add_request, ping, point


class TestDemandLevel:
    @pytest.mark.parametrize(
        "ratio,level",
        [
            (0.0, DemandLevel.LOW),
            (0.7, DemandLevel.NORMAL),
            (1.5, DemandLevel.HIGH),
            (3.0, DemandLevel.VERY_HIGH),
        ],
    )
    def test_thresholds(self, ratio, level):
        assert demand_level(ratio) == level


def test_count_available_skips_unzoned_and_busy():
    def loc(driver_id, zone_id, available=True, vclass=VehicleClass.ECO):
        return DriverLocation(
            driver_id, *GOMBE, vclass, NOW, zone_id=zone_id, is_available=available
        )

    counts = count_available(
        [
            loc("a", 1),
            loc("b", 1),
            loc("c", 1, available=False),
            loc("d", None),
            loc("e", 1, vclass=VehicleClass.MOTO),
        ]
    )
    assert counts[(1, VehicleClass.ECO)] == 2
    assert counts[(1, VehicleClass.MOTO)] == 1
    assert sum(counts.values()) == 3


def test_board_serves_only_fresh_snapshots():
    board = DemandBoard(timedelta(seconds=120))
    board.publish([build_snapshot(1, VehicleClass.ECO, 6, 2, NOW)])
    assert board.get(1, VehicleClass.ECO, NOW + timedelta(seconds=120)).demand_ratio == 3.0
    assert board.get(1, VehicleClass.ECO, NOW + timedelta(seconds=121)) is None
    assert board.get(1, VehicleClass.MOTO, NOW) is None


@pytest.mark.asyncio
async def test_recompute_publishes_and_persists(core, db_session):
    for _ in range(12):
        await add_request(db_session)
    await add_request(db_session, status=RequestStatus.ACCEPTED)  # not pending
    await add_request(db_session, zone_id=None)  # unclassified
    for i in range(3):
        ping(core, f"d{i}", north_km=i * 0.5)

    snapshots = await core.demand(db_session).recompute(NOW)

    assert len(snapshots) == 1
    snap = snapshots[0]
    assert (snap.pending_requests, snap.available_drivers) == (12, 3)
    assert snap.demand_ratio == 4.0
    assert snap.demand_level == DemandLevel.VERY_HIGH
    assert core.demand_board.get(1, VehicleClass.ECO, NOW) == snap

    row = (await db_session.execute(select(ZoneDemandModel))).scalar_one()
    assert row.surge_multiplier == 1.8
    assert row.valid_until == NOW + timedelta(seconds=core.settings.demand_staleness_seconds)


@pytest.mark.asyncio
async def test_quote_prefers_fresh_snapshot(core, db_session):
    core.demand_board.publish([build_snapshot(1, VehicleClass.ECO, 12, 3, NOW)])
    quotes = core.quotes(db_session)

    fare = await quotes.quote(*GOMBE, *point(6.0), VehicleClass.ECO, NOW)

    assert fare.demand_ratio == 4.0
    assert fare.surge_multiplier == 1.8
    assert fare.zone_id == 1


@pytest.mark.asyncio
async def test_quote_counts_live_when_snapshot_is_stale(core, db_session):
    core.demand_board.publish(
        [build_snapshot(1, VehicleClass.ECO, 50, 1, NOW - timedelta(minutes=10))]
    )
    await add_request(db_session)
    await add_request(db_session)
    ping(core, "d1")

    ratio = await core.quotes(db_session).demand_ratio(1, VehicleClass.ECO, NOW)

    assert ratio == 2.0


@pytest.mark.asyncio
async def test_quote_outside_zones_raises(core, db_session):
    with pytest.raises(InvalidZone):
        await core.quotes(db_session).quote(*FAR_AWAY, *GOMBE, VehicleClass.ECO, NOW)

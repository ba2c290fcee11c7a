"""Vehicle REST API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query

from transit_tracker.api.deps import get_delay_matcher, get_live_state
from transit_tracker.core.delay_matcher import DelayMatcher
from transit_tracker.core.live_state import LiveState
from transit_tracker.schemas.vehicle import VehicleDto, VehicleStopEta

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])


@router.get("", response_model=list[VehicleDto])
async def list_vehicles(
    line: str | None = None,
    mode: str | None = Query(None, alias="type"),
    live: LiveState = Depends(get_live_state),
):
    """All tracked vehicles, optionally filtered by line number and mode."""
    return live.get_vehicles(line, mode)


@router.get("/{vehicle_id}", response_model=VehicleDto)
async def get_vehicle(vehicle_id: str, live: LiveState = Depends(get_live_state)):
    vehicle = live.get_vehicle_by_id(vehicle_id)
    if vehicle is None:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return vehicle


@router.get("/{vehicle_id}/stops", response_model=list[VehicleStopEta])
async def get_vehicle_stops(
    vehicle_id: str,
    live: LiveState = Depends(get_live_state),
    matcher: DelayMatcher = Depends(get_delay_matcher),
):
    """Upcoming stops of a vehicle with live expected times."""
    etas = await matcher.upcoming_stop_etas(vehicle_id)
    if etas is None:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return etas

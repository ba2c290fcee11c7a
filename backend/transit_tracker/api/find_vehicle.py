"""Live vehicle lookup for a planned itinerary leg."""

from fastapi import APIRouter, Depends, HTTPException, Query

from transit_tracker.api.deps import get_live_state, get_vehicle_matcher
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.vehicle_matcher import VehicleMatcher
from transit_tracker.schemas.match import VehicleMatch

router = APIRouter(prefix="/api", tags=["vehicles"])


@router.get("/find-vehicle", response_model=VehicleMatch)
async def find_vehicle(
    line: str | None = None,
    mode: str | None = None,
    dep_lat: float | None = Query(None, alias="depLat"),
    dep_lng: float | None = Query(None, alias="depLng"),
    arr_lat: float | None = Query(None, alias="arrLat"),
    arr_lng: float | None = Query(None, alias="arrLng"),
    scheduled_dep: str | None = Query(None, alias="scheduledDep"),
    live: LiveState = Depends(get_live_state),
    matcher: VehicleMatcher = Depends(get_vehicle_matcher),
):
    """The vehicle most likely to serve the leg, with every candidate's score."""
    if not line or dep_lat is None or dep_lng is None:
        raise HTTPException(status_code=400, detail="line, depLat, depLng are required")
    return matcher.find_vehicle_for_leg(
        line, mode, dep_lat, dep_lng,
        arr_lat, arr_lng,
        scheduled_departure=scheduled_dep,
    )

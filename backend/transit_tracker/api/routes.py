"""Line, shape, pattern and schedule endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query

from transit_tracker.api.deps import get_live_state
from transit_tracker.core.live_state import LiveState
from transit_tracker.schemas.route import LineDto, PatternStopInfo, ScheduleEntryInfo

router = APIRouter(prefix="/api", tags=["routes"])


@router.get("/lines", response_model=list[LineDto])
async def list_lines(live: LiveState = Depends(get_live_state)):
    return live.get_lines()


@router.get("/shapes")
async def get_shapes(live: LiveState = Depends(get_live_state)) -> dict[str, list[list[float]]]:
    """Per-pattern polylines as [lat, lon, distance] triples."""
    return live.get_shapes()


@router.get("/patterns/{route_key}/stops", response_model=list[PatternStopInfo])
async def get_pattern_stops(route_key: str, live: LiveState = Depends(get_live_state)):
    stops = live.get_pattern_stops(route_key)
    if stops is None:
        raise HTTPException(status_code=404, detail="Pattern not found")
    return [
        PatternStopInfo(
            stop_id=s.stop_id, stop_name=s.name,
            latitude=s.lat, longitude=s.lon,
            dist_along_route=s.dist_along_route,
        )
        for s in stops
    ]


@router.get("/schedule", response_model=list[ScheduleEntryInfo])
async def get_schedule(
    route_id: str = Query(..., alias="routeId"),
    stop_id: str = Query(..., alias="stopId"),
    live: LiveState = Depends(get_live_state),
):
    """Planned departures of a route at a stop; empty when none are known."""
    entries = live.get_schedule_for_stop(route_id, stop_id) or []
    return [
        ScheduleEntryInfo(trip_id=e.trip_id, direction_id=e.direction_id, departure_time=e.departure_time)
        for e in entries
    ]

"""Stop lookup and live departure board endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query

from transit_tracker.api.deps import get_arrivals_client, get_live_state
from transit_tracker.core.geo import haversine_distance
from transit_tracker.core.live_state import STOP_LOOKUP_RADIUS_M, LiveState
from transit_tracker.core.siri_client import ArrivalsClient
from transit_tracker.schemas.arrivals import StopArrival
from transit_tracker.schemas.route import CatalogStop, StopInfo

router = APIRouter(prefix="/api", tags=["stops"])


@router.get("/stops", response_model=list[CatalogStop], response_model_exclude_none=True)
async def all_stops(live: LiveState = Depends(get_live_state)):
    """Every stop in the service area with the lines serving it."""
    return live.get_all_stops()


@router.get("/stops/nearest", response_model=StopInfo)
async def nearest_stop(
    lat: float,
    lng: float,
    live: LiveState = Depends(get_live_state),
):
    """Closest stop within 200 m of the coordinate."""
    stop_id = live.get_stop_id_by_coords(lat, lng)
    if stop_id is None:
        raise HTTPException(status_code=404, detail=f"No stop within {STOP_LOOKUP_RADIUS_M:.0f} m")
    stop = live.model.stops[stop_id]
    return StopInfo(
        stop_id=stop.stop_id,
        stop_name=stop.name,
        latitude=stop.lat,
        longitude=stop.lon,
        distance_meters=round(haversine_distance(lat, lng, stop.lat, stop.lon), 1),
    )


@router.get("/departures", response_model=list[StopArrival])
async def get_departures(
    stop_id: str = Query(..., alias="stopId", min_length=1),
    arrivals: ArrivalsClient = Depends(get_arrivals_client),
):
    """Live departure board of a stop, soonest first."""
    departures = await arrivals.fetch_stop_arrivals(stop_id)
    return [
        StopArrival(
            transport_type=d.transport_type,
            route=d.route,
            expected_time=d.expected_time,
            schedule_time=d.schedule_time,
            destination=d.destination,
            seconds_until_arrival=d.seconds_until_arrival,
            delay_seconds=d.delay_seconds,
        )
        for d in departures
    ]

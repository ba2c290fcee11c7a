"""Live delay estimate for a planned itinerary leg."""

from fastapi import APIRouter, Depends, Query

from transit_tracker.api.deps import get_delay_matcher, get_live_state
from transit_tracker.core.delay_matcher import DelayMatcher
from transit_tracker.core.live_state import LiveState
from transit_tracker.schemas.arrivals import DelayInfo

router = APIRouter(prefix="/api", tags=["delay"])


@router.get("/leg-delay", response_model=DelayInfo | None)
async def get_leg_delay(
    line: str | None = None,
    mode: str | None = Query(None, alias="type"),
    dep_stop: str | None = Query(None, alias="depStop"),
    dep_lat: float | None = Query(None, alias="depLat"),
    dep_lng: float | None = Query(None, alias="depLng"),
    arr_stop: str | None = Query(None, alias="arrStop"),
    arr_lat: float | None = Query(None, alias="arrLat"),
    arr_lng: float | None = Query(None, alias="arrLng"),
    scheduled_dep: str | None = Query(None, alias="scheduledDep"),
    live: LiveState = Depends(get_live_state),
    matcher: DelayMatcher = Depends(get_delay_matcher),
):
    """Null when no live estimate is available."""
    return await matcher.match_transit_leg(
        line, mode,
        dep_stop, dep_lat, dep_lng,
        scheduled_dep,
        arr_stop, arr_lat, arr_lng,
    )

"""Request dependencies: the service objects live on ``app.state``."""

import logging

from fastapi import HTTPException, Request

from transit_tracker.core.delay_matcher import DelayMatcher
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.network import NetworkLoadError
from transit_tracker.core.siri_client import ArrivalsClient
from transit_tracker.core.vehicle_matcher import VehicleMatcher

logger = logging.getLogger(__name__)


async def get_live_state(request: Request) -> LiveState:
    live: LiveState = request.app.state.live
    try:
        await live.initialize()
    except (NetworkLoadError, TimeoutError) as e:
        logger.error("Live state unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Transit data not loaded") from e
    return live


def get_arrivals_client(request: Request) -> ArrivalsClient:
    return request.app.state.arrivals


def get_delay_matcher(request: Request) -> DelayMatcher:
    return request.app.state.delay_matcher


def get_vehicle_matcher(request: Request) -> VehicleMatcher:
    return request.app.state.vehicle_matcher

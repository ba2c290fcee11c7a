"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from transit_tracker.api import delay, diagnostics, find_vehicle, routes, stops, vehicles, ws
from transit_tracker.config import settings
from transit_tracker.core.delay_matcher import DelayMatcher
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.siri_client import ArrivalsClient
from transit_tracker.core.vehicle_matcher import VehicleMatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(live: LiveState | None = None, arrivals: ArrivalsClient | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        app.state.live = live or LiveState()
        app.state.arrivals = arrivals or ArrivalsClient()
        app.state.delay_matcher = DelayMatcher(app.state.live, app.state.arrivals)
        app.state.vehicle_matcher = VehicleMatcher(app.state.live)

        try:
            await app.state.live.initialize()
            logger.info("Transit tracker started - polling every %ds", settings.poll_interval_seconds)
        except Exception:
            logger.exception("Failed to load transit data - will retry on first request")

        yield

        await app.state.live.shutdown()
        await app.state.arrivals.close()
        logger.info("Transit tracker shut down")

    app = FastAPI(
        title="Transit Live Tracker",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(vehicles.router)
    app.include_router(routes.router)
    app.include_router(stops.router)
    app.include_router(delay.router)
    app.include_router(find_vehicle.router)
    app.include_router(diagnostics.router)
    app.include_router(ws.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "ready": app.state.live.initialized}

    return app


app = create_app()

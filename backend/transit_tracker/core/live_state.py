"""Live-state orchestrator: owns the network model, tracker and poller lifecycle."""

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable

from transit_tracker.config import settings
from transit_tracker.core.broadcaster import Broadcaster
from transit_tracker.core.eta_calculator import EtaCalculator, compute_speed_ms
from transit_tracker.core.gps_poller import GpsClient, GpsPoller
from transit_tracker.core.gtfs_loader import GtfsTableSource, download_gtfs, select_source
from transit_tracker.core.network import (
    NetworkLoadError,
    NetworkModel,
    PatternStop,
    RoutePattern,
    ScheduleEntry,
    codes_for_mode,
    mode_for_code,
    mode_for_route_id,
)
from transit_tracker.core.vehicle_tracker import TelemetryReading, VehicleState, VehicleTracker
from transit_tracker.schemas.route import CatalogStop, Diagnostics, LineDto
from transit_tracker.schemas.vehicle import NextStopDto, VehicleDto, VehicleUpdate

logger = logging.getLogger(__name__)

# Radius for resolving a coordinate to a stop id
STOP_LOOKUP_RADIUS_M = 200.0

# Line key prefix per mode in the stop catalogue, e.g. "T:4"
LINE_KEY_PREFIX = {"bus": "B", "tram": "T", "trolleybus": "TR", "train": "R"}


async def load_network_model(
    snapshot_dir: str | None = None,
    gtfs_dir: str | None = None,
    zip_url: str | None = None,
    timeout: float | None = None,
) -> NetworkModel:
    """Load the model from disk in a worker thread, downloading raw tables if needed."""
    snapshot_dir = snapshot_dir or settings.gtfs_snapshot_dir
    gtfs_dir = gtfs_dir or settings.gtfs_dir
    zip_url = settings.gtfs_zip_url if zip_url is None else zip_url
    timeout = settings.model_load_timeout_seconds if timeout is None else timeout

    source = select_source(snapshot_dir, gtfs_dir)
    if isinstance(source, GtfsTableSource) and not source.exists() and zip_url:
        logger.info("No network data in %s, downloading %s", gtfs_dir, zip_url)
        if not await download_gtfs(zip_url, gtfs_dir):
            raise NetworkLoadError(f"Could not download network data from {zip_url}")

    logger.info("Loading network model via %s", type(source).__name__)
    return await asyncio.wait_for(asyncio.to_thread(source.load), timeout)


def _default_poller(on_data) -> GpsPoller:
    return GpsPoller(GpsClient(), on_data)


def _compare_lines(a: LineDto, b: LineDto) -> int:
    if a.transport_type != b.transport_type:
        return -1 if a.transport_type < b.transport_type else 1
    try:
        an, bn = int(a.line_number), int(b.line_number)
    except ValueError:
        an = bn = None
    if an is not None and an != bn:
        return -1 if an < bn else 1
    if a.line_number == b.line_number:
        return 0
    return -1 if a.line_number < b.line_number else 1


class LiveState:
    """Single owner of live tracking state, shared by the poll loop and request handlers.

    ``initialize()`` is idempotent and safe under concurrent callers: they all await
    the same in-flight load. A failed load leaves the object uninitialized so a
    later call retries.
    """

    def __init__(
        self,
        model_loader: Callable[[], Awaitable[NetworkModel]] = load_network_model,
        poller_factory: Callable = _default_poller,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self._model_loader = model_loader
        self._poller_factory = poller_factory
        self.broadcaster = broadcaster or Broadcaster()
        self.eta = EtaCalculator()

        self.model: NetworkModel | None = None
        self.tracker: VehicleTracker | None = None
        self._poller = None
        self._init_task: asyncio.Future | None = None
        self._shapes_cache: dict[str, list[list[float]]] | None = None
        self._stops_cache: list[CatalogStop] | None = None

    @property
    def initialized(self) -> bool:
        return self.model is not None and self.tracker is not None

    async def initialize(self) -> None:
        if self.initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._do_initialize())
        task = self._init_task
        try:
            # shield: a cancelled caller must not cancel the shared load
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _do_initialize(self) -> None:
        model = await self._model_loader()
        self.model = model
        self.tracker = VehicleTracker(model)
        self._shapes_cache = None
        self._stops_cache = None
        try:
            await self.broadcaster.connect()
            poller = self._poller_factory(self.handle_batch)
            poller.start()
        except Exception:
            self.model = None
            self.tracker = None
            raise
        self._poller = poller
        logger.info("Live state ready: %d routes, %d patterns", len(model.routes), len(model.patterns))

    async def shutdown(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None
        await self.broadcaster.close()
        logger.info("Live state shut down")

    def on_update(self, callback: Callable[[list[VehicleDto]], None]) -> Callable[[], None]:
        return self.broadcaster.on_update(callback)

    def process_readings(self, readings: list[TelemetryReading]) -> list[VehicleDto]:
        """Apply one telemetry batch and notify subscribers synchronously."""
        if self.tracker is None:
            return []
        updated = self.tracker.process_readings(readings)
        logger.debug("Processed %d readings, %d vehicles tracked", len(updated), len(self.tracker.vehicles))
        vehicles = self.get_vehicles()
        self.broadcaster.notify(vehicles)
        return vehicles

    async def handle_batch(self, readings: list[TelemetryReading]) -> None:
        vehicles = self.process_readings(readings)
        await self.broadcaster.publish(VehicleUpdate(vehicles=vehicles))

    # -- queries ------------------------------------------------------------

    def get_vehicles(self, line: str | None = None, mode: str | None = None) -> list[VehicleDto]:
        if self.tracker is None:
            return []
        states = list(self.tracker.vehicles.values())
        if mode and mode != "all":
            codes = set(codes_for_mode(mode))
            states = [s for s in states if s.transport_type in codes]
        if line:
            states = [s for s in states if s.line_number == line]
        return [self.to_dto(s) for s in states]

    def get_vehicle_state(self, vehicle_id: str) -> VehicleState | None:
        if self.tracker is None:
            return None
        return self.tracker.vehicles.get(vehicle_id)

    def get_vehicle_by_id(self, vehicle_id: str) -> VehicleDto | None:
        state = self.get_vehicle_state(vehicle_id)
        return self.to_dto(state) if state else None

    def get_lines(self) -> list[LineDto]:
        if self.model is None:
            return []
        lines = [
            LineDto(route_id=r.route_id, line_number=r.line_number, transport_type=r.mode)
            for r in self.model.routes.values()
        ]
        return sorted(lines, key=functools.cmp_to_key(_compare_lines))

    def get_shapes(self) -> dict[str, list[list[float]]]:
        if self.model is None:
            return {}
        if self._shapes_cache is None:
            self._shapes_cache = {
                key: [[p.lat, p.lon, p.dist_traveled] for p in pattern.shape_points]
                for key, pattern in self.model.patterns.items()
            }
        return self._shapes_cache

    def get_pattern(self, key: str) -> RoutePattern | None:
        if not key or self.model is None:
            return None
        return self.model.patterns.get(key)

    def get_pattern_stops(self, key: str) -> list[PatternStop] | None:
        pattern = self.get_pattern(key)
        return pattern.ordered_stops if pattern else None

    def get_all_stops(self) -> list[CatalogStop]:
        """Stops inside the service area with the lines serving them, by name."""
        if self.model is None:
            return []
        if self._stops_cache is None:
            self._stops_cache = self._build_stop_catalogue(self.model)
        return self._stops_cache

    @staticmethod
    def _build_stop_catalogue(model: NetworkModel) -> list[CatalogStop]:
        stop_lines: dict[str, set[str]] = {}
        for pattern in model.patterns.values():
            route = model.routes.get(pattern.route_id)
            if route is None:
                continue
            line_key = None
            if route.line_number:
                line_key = f"{LINE_KEY_PREFIX[mode_for_route_id(route.route_id)]}:{route.line_number}"
            for stop in pattern.ordered_stops:
                lines = stop_lines.setdefault(stop.stop_id, set())
                if line_key:
                    lines.add(line_key)

        min_lat, min_lon, max_lat, max_lon = settings.service_area
        catalogue = [
            CatalogStop(
                stop_id=stop.stop_id,
                stop_name=stop.name,
                latitude=stop.lat,
                longitude=stop.lon,
                stop_desc=stop.description,
                stop_area=stop.area,
                lines=sorted(stop_lines[stop.stop_id]) if stop.stop_id in stop_lines else None,
            )
            for stop in model.stops.values()
            if min_lat <= stop.lat <= max_lat and min_lon <= stop.lon <= max_lon
        ]
        catalogue.sort(key=lambda s: s.stop_name)
        return catalogue

    def get_stop_id_by_coords(self, lat: float, lon: float) -> str | None:
        if self.model is None:
            return None
        stop = self.model.nearest_stop(lat, lon, STOP_LOOKUP_RADIUS_M)
        return stop.stop_id if stop else None

    def get_route_id_for_line(self, line: str, mode: str | None = None) -> str | None:
        if self.model is None:
            return None
        for code in codes_for_mode(mode):
            route_id = self.model.resolve_route(code, line)
            if route_id:
                return route_id
        return None

    def get_schedule_for_stop(self, route_id: str, stop_id: str) -> list[ScheduleEntry] | None:
        if self.model is None:
            return None
        return self.model.schedule.get((route_id, stop_id))

    def get_diagnostics(self) -> Diagnostics:
        vehicles = list(self.tracker.vehicles.values()) if self.tracker else []
        matched = sum(1 for v in vehicles if v.route_key is not None)
        model = self.model
        return Diagnostics(
            initialized=self.initialized,
            routes=len(model.routes) if model else 0,
            stops=len(model.stops) if model else 0,
            patterns=len(model.patterns) if model else 0,
            code_mappings=len(model.code_lookup) if model else 0,
            tracked_vehicles=len(vehicles),
            matched_vehicles=matched,
            unmatched_vehicles=len(vehicles) - matched,
            subscribers=self.broadcaster.subscriber_count,
        )

    def to_dto(self, state: VehicleState) -> VehicleDto:
        dto = VehicleDto(
            id=state.id,
            line_number=state.line_number,
            transport_type=mode_for_code(state.transport_type),
            latitude=state.lat,
            longitude=state.lon,
            speed=state.speed,
            heading=state.heading,
            destination=state.destination,
            direction_id=state.matched_direction_id or 0,
            stop_index=state.last_stop_index,
            distance_along_route=round(state.distance_along_route, 1),
            speed_ms=round(compute_speed_ms(state), 2),
            route_key=state.route_key,
        )

        key = state.route_key
        pattern = self.model.patterns.get(key) if key and self.model else None
        if pattern is not None:
            dto.total_stops = len(pattern.ordered_stops)
            nxt = self.eta.next_stop(state, pattern)
            if nxt is not None:
                dto.next_stop = NextStopDto(
                    name=nxt.stop.name,
                    latitude=nxt.stop.lat,
                    longitude=nxt.stop.lon,
                    distance_meters=round(nxt.distance_m),
                    eta_seconds=round(nxt.eta_seconds),
                )
        return dto

"""Map-matching tracker: binds vehicles to route patterns and follows their progress."""

import datetime
import logging
from dataclasses import dataclass, field

from transit_tracker.core.geo import RoutePosition, find_position_on_route
from transit_tracker.core.network import NetworkModel, PatternStop

logger = logging.getLogger(__name__)

# Direction hysteresis. Empirical values, pending calibration against fleet data:
# a candidate direction must lie within SWITCH_MAX_DISTANCE_M of the vehicle and be
# at least SWITCH_MIN_GAIN_M closer than the currently bound direction.
SWITCH_MAX_DISTANCE_M = 200.0
SWITCH_MIN_GAIN_M = 100.0

# Vehicles not seen for this long are dropped at the end of a batch
STALE_AFTER = datetime.timedelta(minutes=2)

MAX_HISTORY_SIZE = 60


@dataclass
class TelemetryReading:
    vehicle_id: str
    lat: float
    lon: float
    heading: float
    transport_type: int  # raw mode code
    line_number: str
    destination: str
    timestamp: datetime.datetime
    speed: float | None = None


@dataclass
class PositionSnapshot:
    lat: float
    lon: float
    speed: float | None
    distance_along_route: float
    stop_index: int
    timestamp: datetime.datetime


class HistoryBuffer:
    """Fixed-capacity ring buffer of position snapshots, oldest overwritten first."""

    def __init__(self, capacity: int = MAX_HISTORY_SIZE) -> None:
        self.capacity = capacity
        self._items: list[PositionSnapshot | None] = [None] * capacity
        self._next = 0
        self._size = 0

    def append(self, snapshot: PositionSnapshot) -> None:
        self._items[self._next] = snapshot
        self._next = (self._next + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def clear(self) -> None:
        self._items = [None] * self.capacity
        self._next = 0
        self._size = 0

    def last(self, n: int) -> list[PositionSnapshot]:
        """The newest ``n`` snapshots in chronological order."""
        n = min(n, self._size)
        return [
            self._items[(self._next - n + i) % self.capacity]  # type: ignore[misc]
            for i in range(n)
        ]

    def __len__(self) -> int:
        return self._size

    def __iter__(self):
        return iter(self.last(self._size))


@dataclass
class VehicleState:
    id: str
    transport_type: int = 0
    line_number: str = ""
    lat: float = 0.0
    lon: float = 0.0
    speed: float | None = None
    heading: float = 0.0
    destination: str = ""
    matched_route_id: str | None = None
    matched_direction_id: int | None = None
    last_stop_index: int = -1
    distance_along_route: float = 0.0
    last_update_time: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    history: HistoryBuffer = field(default_factory=HistoryBuffer)

    @property
    def route_key(self) -> str | None:
        if self.matched_route_id is None or self.matched_direction_id is None:
            return None
        return f"{self.matched_route_id}_{self.matched_direction_id}"

    def reset_binding(self) -> None:
        self.matched_route_id = None
        self.matched_direction_id = None
        self.last_stop_index = -1
        self.distance_along_route = 0.0
        self.history.clear()


def should_switch_direction(
    current_perp_m: float,
    candidate_perp_m: float,
    max_distance_m: float = SWITCH_MAX_DISTANCE_M,
    min_gain_m: float = SWITCH_MIN_GAIN_M,
) -> bool:
    """Whether a bound vehicle may move to a better-fitting direction."""
    return candidate_perp_m <= max_distance_m and (current_perp_m - candidate_perp_m) >= min_gain_m


def find_last_stop_index(stops: list[PatternStop], distance_along: float) -> int:
    """Highest stop index whose cumulative distance is <= ``distance_along``, else -1."""
    for i in range(len(stops) - 1, -1, -1):
        if stops[i].dist_along_route <= distance_along:
            return i
    return -1


class VehicleTracker:
    """Keeps per-vehicle state and resolves route, direction and progress."""

    def __init__(
        self,
        network: NetworkModel,
        switch_max_distance_m: float = SWITCH_MAX_DISTANCE_M,
        switch_min_gain_m: float = SWITCH_MIN_GAIN_M,
        stale_after: datetime.timedelta = STALE_AFTER,
        history_size: int = MAX_HISTORY_SIZE,
    ) -> None:
        self.network = network
        self.switch_max_distance_m = switch_max_distance_m
        self.switch_min_gain_m = switch_min_gain_m
        self.stale_after = stale_after
        self.history_size = history_size
        self._vehicles: dict[str, VehicleState] = {}

    @property
    def vehicles(self) -> dict[str, VehicleState]:
        return self._vehicles

    def process_readings(
        self,
        readings: list[TelemetryReading],
        now: datetime.datetime | None = None,
    ) -> list[VehicleState]:
        """Apply one telemetry batch and evict stale vehicles.

        Eviction is relative to ``now``; by default the newest reading timestamp of
        the batch, or the wall clock for an empty batch.
        """
        updated: list[VehicleState] = []

        for reading in readings:
            state = self._get_or_create(reading)

            state.lat = reading.lat
            state.lon = reading.lon
            state.speed = reading.speed
            state.heading = reading.heading
            state.destination = reading.destination
            state.last_update_time = reading.timestamp
            updated.append(state)

            if not self._match_route(state):
                continue

            self._match_direction_and_progress(state)

            state.history.append(PositionSnapshot(
                lat=state.lat,
                lon=state.lon,
                speed=state.speed,
                distance_along_route=state.distance_along_route,
                stop_index=state.last_stop_index,
                timestamp=state.last_update_time,
            ))

        if now is None:
            if readings:
                now = max(r.timestamp for r in readings)
            else:
                now = datetime.datetime.now(datetime.timezone.utc)
        self._evict_stale(now)

        return updated

    def _get_or_create(self, reading: TelemetryReading) -> VehicleState:
        state = self._vehicles.get(reading.vehicle_id)
        if state is None:
            state = VehicleState(
                id=reading.vehicle_id,
                transport_type=reading.transport_type,
                line_number=reading.line_number,
                history=HistoryBuffer(self.history_size),
            )
            self._vehicles[reading.vehicle_id] = state
        elif state.line_number != reading.line_number or state.transport_type != reading.transport_type:
            logger.debug(
                "Vehicle %s reassigned %s/%s -> %s/%s, resetting route binding",
                state.id, state.transport_type, state.line_number,
                reading.transport_type, reading.line_number,
            )
            state.reset_binding()
            state.transport_type = reading.transport_type
            state.line_number = reading.line_number
        return state

    def _match_route(self, state: VehicleState) -> bool:
        if state.matched_route_id is not None:
            return True
        route_id = self.network.resolve_route(state.transport_type, state.line_number)
        if route_id is None:
            return False
        state.matched_route_id = route_id
        return True

    def _position_on(self, state: VehicleState, direction_id: int) -> RoutePosition | None:
        pattern = self.network.pattern(state.matched_route_id, direction_id)
        if pattern is None or not pattern.shape_points:
            return None
        return find_position_on_route(state.lat, state.lon, pattern.shape_points)

    def _match_direction_and_progress(self, state: VehicleState) -> None:
        positions = {d: self._position_on(state, d) for d in (0, 1)}
        fits = {d: p for d, p in positions.items() if p is not None}
        if not fits:
            return

        best_dir = min(fits, key=lambda d: fits[d].perp_dist)
        chosen = best_dir
        current = state.matched_direction_id

        if current is not None and current != best_dir and current in fits:
            if not should_switch_direction(
                fits[current].perp_dist, fits[best_dir].perp_dist,
                self.switch_max_distance_m, self.switch_min_gain_m,
            ):
                chosen = current
            else:
                logger.debug(
                    "Vehicle %s switches direction %d -> %d (%.0fm -> %.0fm)",
                    state.id, current, best_dir,
                    fits[current].perp_dist, fits[best_dir].perp_dist,
                )

        state.matched_direction_id = chosen
        state.distance_along_route = fits[chosen].dist_along

        pattern = self.network.pattern(state.matched_route_id, chosen)
        state.last_stop_index = find_last_stop_index(pattern.ordered_stops, state.distance_along_route)

    def _evict_stale(self, now: datetime.datetime) -> None:
        cutoff = now - self.stale_after
        stale = [vid for vid, v in self._vehicles.items() if v.last_update_time < cutoff]
        for vid in stale:
            del self._vehicles[vid]
        if stale:
            logger.debug("Evicted %d stale vehicles", len(stale))

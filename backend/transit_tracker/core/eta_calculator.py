"""Speed estimate from tracked progress and ETA to the next pattern stop."""

from dataclasses import dataclass

from transit_tracker.core.network import PatternStop, RoutePattern
from transit_tracker.core.vehicle_tracker import VehicleState

# Below this measured speed (m/s) the vehicle is treated as standing
MIN_MEASURED_SPEED_MS = 0.5
# Assumed speed when measured speed is negligible: 20 km/h
FALLBACK_SPEED_MS = 20.0 / 3.6
# Speeds above this are GPS artifacts
MAX_SPEED_MS = 25.0
# Snapshots closer together than this (seconds) give no usable speed
MIN_SAMPLE_GAP_S = 0.5


@dataclass
class NextStopEta:
    stop: PatternStop
    distance_m: float
    eta_seconds: float


def compute_speed_ms(state: VehicleState) -> float:
    """Instantaneous speed along the route from the last two history snapshots."""
    if len(state.history) < 2:
        return 0.0
    prev, curr = state.history.last(2)
    dt = (curr.timestamp - prev.timestamp).total_seconds()
    if dt <= MIN_SAMPLE_GAP_S:
        return 0.0
    dd = curr.distance_along_route - prev.distance_along_route
    if dd <= 0:
        return 0.0
    return min(dd / dt, MAX_SPEED_MS)


class EtaCalculator:
    """Distance-along-route ETA to the stop after the last passed one."""

    def next_stop(self, state: VehicleState, pattern: RoutePattern) -> NextStopEta | None:
        next_idx = state.last_stop_index + 1
        if next_idx >= len(pattern.ordered_stops):
            return None

        stop = pattern.ordered_stops[next_idx]
        remaining_m = max(0.0, stop.dist_along_route - state.distance_along_route)

        speed_ms = compute_speed_ms(state)
        effective_speed = speed_ms if speed_ms > MIN_MEASURED_SPEED_MS else FALLBACK_SPEED_MS

        return NextStopEta(stop=stop, distance_m=remaining_m, eta_seconds=remaining_m / effective_speed)

"""Picks the live vehicle that will serve a planned leg.

Each candidate vehicle on the line is snapped onto the shape of the direction its
destination names. The meters it still has to travel to the departure stop
(possibly via the terminal and the opposite direction) give an ETA at a typical
city speed, and the vehicle whose ETA best fits the scheduled departure wins.
"""

import datetime
import logging
import math
from dataclasses import dataclass, field

from transit_tracker.core.geo import find_position_on_route, haversine_distance
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.network import PatternStop, RoutePattern, ShapePoint, route_key
from transit_tracker.core.time_utils import parse_timestamp
from transit_tracker.schemas.match import DirectionPatternInfo, VehicleCandidateInfo, VehicleMatch
from transit_tracker.schemas.vehicle import VehicleDto

logger = logging.getLogger(__name__)

# Typical in-service speed including dwell time (~20 km/h)
AVG_SPEED_MS = 5.5
# Leg endpoints further than this from every pattern stop are not on the pattern
STOP_SNAP_RADIUS_M = 500.0
# Vehicles further than this from their direction's shape are not on it
SHAPE_SNAP_RADIUS_M = 500.0

_PLANNER_MODES = {"BUS": "bus", "TRAM": "tram", "TROLLEYBUS": "trolleybus"}


@dataclass
class DirectionGeometry:
    pattern_key: str
    terminal: str = ""
    dep_dist: float | None = None
    arr_dist: float | None = None
    total_length: float = 0.0
    shape_points: list[ShapePoint] = field(default_factory=list)

    def info(self) -> DirectionPatternInfo:
        return DirectionPatternInfo(
            pattern_key=self.pattern_key,
            terminal=self.terminal,
            dep_stop_dist_along=self.dep_dist,
            arr_stop_dist_along=self.arr_dist,
            total_length=self.total_length,
        )


@dataclass
class ForwardDistance:
    meters: float
    reason: str
    matched_direction: int | None = None


def closest_stop(stops: list[PatternStop], lat: float, lon: float) -> tuple[int, float]:
    best_idx, best_dist = -1, math.inf
    for i, stop in enumerate(stops):
        d = haversine_distance(lat, lon, stop.lat, stop.lon)
        if d < best_dist:
            best_idx, best_dist = i, d
    return best_idx, best_dist


def _stop_dist_along(stops: list[PatternStop], lat: float | None, lon: float | None) -> float | None:
    if lat is None or lon is None:
        return None
    idx, dist = closest_stop(stops, lat, lon)
    if idx >= 0 and dist < STOP_SNAP_RADIUS_M:
        return stops[idx].dist_along_route
    return None


def direction_geometry(
    key: str,
    pattern: RoutePattern | None,
    dep_lat: float,
    dep_lon: float,
    arr_lat: float | None = None,
    arr_lon: float | None = None,
) -> DirectionGeometry:
    if pattern is None or not pattern.ordered_stops:
        return DirectionGeometry(pattern_key=key)
    stops = pattern.ordered_stops
    return DirectionGeometry(
        pattern_key=key,
        terminal=stops[-1].name,
        dep_dist=_stop_dist_along(stops, dep_lat, dep_lon),
        arr_dist=_stop_dist_along(stops, arr_lat, arr_lon),
        total_length=pattern.total_length,
        shape_points=pattern.shape_points,
    )


def correct_direction(directions: list[DirectionGeometry]) -> int | None:
    """Direction in which the departure stop comes before the arrival stop.

    When both qualify (loop lines) the shorter ride wins.
    """
    d0, d1 = directions
    valid0 = d0.dep_dist is not None and d0.arr_dist is not None and d0.dep_dist < d0.arr_dist
    valid1 = d1.dep_dist is not None and d1.arr_dist is not None and d1.dep_dist < d1.arr_dist
    if valid0 and not valid1:
        return 0
    if valid1 and not valid0:
        return 1
    if valid0 and valid1:
        return 0 if d0.arr_dist - d0.dep_dist <= d1.arr_dist - d1.dep_dist else 1
    return None


def _normalize(value: str) -> str:
    return " ".join(value.lower().split())


def fuzzy_match(a: str, b: str) -> bool:
    if not a or not b:
        return False
    if a == b or a in b or b in a:
        return True
    first = a.split()[0]
    return first == b.split()[0] and len(first) >= 3


def destination_direction(destination: str, directions: list[DirectionGeometry]) -> int | None:
    """Direction whose terminal the destination sign names, if exactly one does."""
    if not destination:
        return None
    dest = _normalize(destination)
    match0 = fuzzy_match(dest, _normalize(directions[0].terminal))
    match1 = fuzzy_match(dest, _normalize(directions[1].terminal))
    if match0 and not match1:
        return 0
    if match1 and not match0:
        return 1
    return None


def snap_to_shape(lat: float, lon: float, geometry: DirectionGeometry) -> float | None:
    if not geometry.shape_points:
        return None
    pos = find_position_on_route(lat, lon, geometry.shape_points)
    return pos.dist_along if pos.perp_dist < SHAPE_SNAP_RADIUS_M else None


def _towards(mine: DirectionGeometry, other: DirectionGeometry, pos: float, dep: float, direction: int) -> ForwardDistance:
    diff = dep - pos
    if diff >= 0:
        return ForwardDistance(diff, "approaching", direction)
    # already past: finish this run, do the return run, then reach the stop again
    return ForwardDistance(mine.total_length - pos + other.total_length + dep, "passed", direction)


def forward_distance(
    vehicle: VehicleDto,
    dep_lat: float,
    dep_lon: float,
    directions: list[DirectionGeometry] | None,
    correct: int | None,
) -> ForwardDistance:
    """Meters the vehicle travels along the line before reaching the departure stop."""
    straight = haversine_distance(vehicle.latitude, vehicle.longitude, dep_lat, dep_lon)
    if directions is None:
        return ForwardDistance(straight, "no-gtfs(haversine)")

    real = destination_direction(vehicle.destination, directions)
    if real is not None:
        mine, other = directions[real], directions[1 - real]
        pos = snap_to_shape(vehicle.latitude, vehicle.longitude, mine)
        if pos is not None:
            correct_dep = directions[correct].dep_dist if correct is not None else None
            if correct_dep is not None:
                if real == correct:
                    return _towards(mine, other, pos, correct_dep, real)
                return ForwardDistance(mine.total_length - pos + correct_dep, "wrong-dir", real)
            if mine.dep_dist is not None:
                return _towards(mine, other, pos, mine.dep_dist, real)
            if other.dep_dist is not None:
                return ForwardDistance(mine.total_length - pos + other.dep_dist, "other-dir-to-stop", real)

    return ForwardDistance(straight, "unmatched(haversine)")


class VehicleMatcher:
    def __init__(self, live: LiveState) -> None:
        self.live = live

    def route_directions(
        self,
        line_number: str,
        mode: str | None,
        dep_lat: float,
        dep_lon: float,
        arr_lat: float | None = None,
        arr_lon: float | None = None,
    ) -> tuple[str, list[DirectionGeometry]] | None:
        route_id = self.live.get_route_id_for_line(line_number, mode)
        if route_id is None:
            return None
        directions = []
        for direction_id in (0, 1):
            key = route_key(route_id, direction_id)
            directions.append(
                direction_geometry(key, self.live.get_pattern(key), dep_lat, dep_lon, arr_lat, arr_lon)
            )
        return route_id, directions

    def find_vehicle_for_leg(
        self,
        line_number: str,
        mode: str | None,
        dep_lat: float,
        dep_lon: float,
        arr_lat: float | None = None,
        arr_lon: float | None = None,
        scheduled_departure: str | datetime.datetime | None = None,
        now: datetime.datetime | None = None,
    ) -> VehicleMatch:
        type_filter = _PLANNER_MODES.get((mode or "").upper())

        vehicles = self.live.get_vehicles(line_number, type_filter)
        if not vehicles:
            vehicles = self.live.get_vehicles(line_number)

        resolved = self.route_directions(line_number, type_filter, dep_lat, dep_lon, arr_lat, arr_lon)
        route_id, directions = resolved if resolved else (None, None)
        correct = correct_direction(directions) if directions else None

        target = None
        scheduled = parse_timestamp(scheduled_departure)
        if scheduled is not None:
            now = now or datetime.datetime.now(datetime.timezone.utc)
            target = (scheduled - now).total_seconds()

        scored = []
        for vehicle in vehicles:
            fwd = forward_distance(vehicle, dep_lat, dep_lon, directions, correct)
            eta = fwd.meters / AVG_SPEED_MS
            scored.append((vehicle, fwd, eta, eta - target if target is not None else None))

        if target is not None:
            scored.sort(key=lambda s: abs(s[3]))
        else:
            scored.sort(key=lambda s: s[1].meters)

        best = scored[0] if scored else None
        candidates = [
            VehicleCandidateInfo(
                vehicle_id=vehicle.id,
                destination=vehicle.destination,
                latitude=vehicle.latitude,
                longitude=vehicle.longitude,
                matched_direction=fwd.matched_direction,
                reason=fwd.reason,
                forward_distance_meters=round(fwd.meters),
                eta_seconds=round(eta),
                time_diff_seconds=round(diff) if diff is not None else None,
                is_selected=vehicle.id == best[0].id,
            )
            for vehicle, fwd, eta, diff in scored
        ]

        match = VehicleMatch(
            vehicle_id=best[0].id if best else None,
            selection_reason=best[1].reason if best else "no-vehicles",
            line_number=line_number,
            route_id=route_id,
            correct_direction=correct,
            target_seconds=round(target) if target is not None else None,
            direction0=directions[0].info() if directions else None,
            direction1=directions[1].info() if directions else None,
            candidates=candidates,
        )
        logger.debug(
            "Leg on line %s: %d candidate(s), picked %s (%s)",
            line_number, len(candidates), match.vehicle_id, match.selection_reason,
        )
        return match

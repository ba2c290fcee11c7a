"""In-memory static transit network: routes, stops, per-direction patterns."""

import math
from dataclasses import dataclass, field

from shapely import STRtree
from shapely.geometry import Point

from transit_tracker.core.geo import haversine_distance

# Raw telemetry vehicle-type codes. Several legacy codes all mean "bus".
CODE_TROLLEYBUS = 1
CODE_BUS = 2
CODE_TRAM = 3
CODE_BUS_LEGACY = 7
CODE_TRAIN = 10

MODE_CODES: dict[str, tuple[int, ...]] = {
    "bus": (CODE_BUS, CODE_BUS_LEGACY),
    "tram": (CODE_TRAM,),
    "trolleybus": (CODE_TROLLEYBUS,),
    "train": (CODE_TRAIN,),
}
ALL_CODES: tuple[int, ...] = (CODE_TROLLEYBUS, CODE_BUS, CODE_TRAM, CODE_BUS_LEGACY, CODE_TRAIN)

# Codes under which telemetry for a route of the given mode may arrive.
_ROUTE_MODE_CODES: dict[str, tuple[int, ...]] = {
    "bus": (CODE_BUS, CODE_BUS_LEGACY, CODE_TROLLEYBUS),
    "trolleybus": (CODE_TROLLEYBUS,),
    "tram": (CODE_TRAM,),
    "train": (CODE_TRAIN,),
}

# Meters per degree of latitude, for sizing the stop-index envelope.
_M_PER_DEG_LAT = 111_000.0


class NetworkLoadError(Exception):
    """Raised when the network model source is missing or malformed."""


def explicit_mode_for_route_id(route_id: str) -> str | None:
    """Mode named by the route id convention, e.g. 'tallinn_tram_4', or None."""
    if "_tram_" in route_id:
        return "tram"
    if "_train_" in route_id or "_rail_" in route_id:
        return "train"
    if "_trolleybus_" in route_id:
        return "trolleybus"
    if "_bus_" in route_id:
        return "bus"
    return None


def mode_for_route_id(route_id: str) -> str:
    """Display mode of a route; ids without a mode token are listed as buses."""
    return explicit_mode_for_route_id(route_id) or "bus"


def mode_for_code(code: int) -> str:
    if code == CODE_TROLLEYBUS:
        return "trolleybus"
    if code in (CODE_BUS, CODE_BUS_LEGACY):
        return "bus"
    if code == CODE_TRAM:
        return "tram"
    if code == CODE_TRAIN:
        return "train"
    return "unknown"


def codes_for_mode(mode: str | None) -> tuple[int, ...]:
    """Raw codes for a mode filter; unknown, empty or 'all' means every code."""
    if not mode:
        return ALL_CODES
    return MODE_CODES.get(mode.strip().lower(), ALL_CODES)


def route_key(route_id: str, direction_id: int) -> str:
    return f"{route_id}_{direction_id}"


def split_route_key(key: str) -> tuple[str, int]:
    route_id, _, direction = key.rpartition("_")
    return route_id, int(direction)


@dataclass
class RouteDescriptor:
    route_id: str
    line_number: str
    route_type: int = 3

    @property
    def mode(self) -> str:
        return mode_for_route_id(self.route_id)


@dataclass
class StopDescriptor:
    stop_id: str
    name: str
    lat: float
    lon: float
    description: str | None = None
    area: str | None = None


@dataclass
class PatternStop:
    stop_id: str
    name: str
    lat: float
    lon: float
    dist_along_route: float


@dataclass
class ShapePoint:
    lat: float
    lon: float
    dist_traveled: float


@dataclass
class RoutePattern:
    route_id: str
    direction_id: int
    ordered_stops: list[PatternStop]
    shape_points: list[ShapePoint]

    @property
    def key(self) -> str:
        return route_key(self.route_id, self.direction_id)

    @property
    def total_length(self) -> float:
        return self.shape_points[-1].dist_traveled if self.shape_points else 0.0


@dataclass
class ScheduleEntry:
    trip_id: str
    direction_id: int
    departure_time: str  # "HH:MM:SS", may exceed 24h


@dataclass
class NetworkModel:
    """Immutable-by-convention network built once per process."""

    routes: dict[str, RouteDescriptor]
    stops: dict[str, StopDescriptor]
    patterns: dict[str, RoutePattern]
    code_lookup: dict[tuple[int, str], str]
    shapes_by_id: dict[str, list[ShapePoint]] = field(default_factory=dict)
    schedule: dict[tuple[str, str], list[ScheduleEntry]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._stop_list = list(self.stops.values())
        self._stop_tree = (
            STRtree([Point(s.lon, s.lat) for s in self._stop_list]) if self._stop_list else None
        )

    def pattern(self, route_id: str, direction_id: int) -> RoutePattern | None:
        return self.patterns.get(route_key(route_id, direction_id))

    def resolve_route(self, code: int, line_number: str) -> str | None:
        return self.code_lookup.get((code, line_number))

    def nearest_stop(self, lat: float, lon: float, max_distance_m: float) -> StopDescriptor | None:
        """Closest stop strictly within ``max_distance_m`` meters, or None."""
        if self._stop_tree is None:
            return None
        radius_deg = max_distance_m / (_M_PER_DEG_LAT * max(math.cos(math.radians(lat)), 0.01))
        candidates = self._stop_tree.query(Point(lon, lat).buffer(radius_deg))
        best: StopDescriptor | None = None
        best_dist = float("inf")
        for idx in candidates:
            stop = self._stop_list[int(idx)]
            d = haversine_distance(lat, lon, stop.lat, stop.lon)
            if d < best_dist:
                best_dist = d
                best = stop
        return best if best_dist < max_distance_m else None


def build_code_lookup(routes: dict[str, RouteDescriptor]) -> dict[tuple[int, str], str]:
    """Map (raw telemetry code, line number) to route id for every synonym code."""
    lookup: dict[tuple[int, str], str] = {}
    for route in routes.values():
        mode = explicit_mode_for_route_id(route.route_id)
        # Only ids naming their mode can receive telemetry
        if not route.line_number or mode is None:
            continue
        for code in _ROUTE_MODE_CODES[mode]:
            key = (code, route.line_number)
            if code == CODE_TROLLEYBUS and mode == "bus":
                # A dedicated trolleybus route owns code 1 for its line number.
                lookup.setdefault(key, route.route_id)
            else:
                lookup[key] = route.route_id
    return lookup

from transit_tracker.schemas.base import CamelModel


class LineDto(CamelModel):
    route_id: str
    line_number: str
    transport_type: str


class PatternStopInfo(CamelModel):
    stop_id: str
    stop_name: str
    latitude: float
    longitude: float
    dist_along_route: float


class StopInfo(CamelModel):
    stop_id: str
    stop_name: str
    latitude: float
    longitude: float
    distance_meters: float | None = None


class ScheduleEntryInfo(CamelModel):
    trip_id: str
    direction_id: int
    departure_time: str


class Diagnostics(CamelModel):
    initialized: bool
    routes: int
    stops: int
    patterns: int
    code_mappings: int
    tracked_vehicles: int
    matched_vehicles: int
    unmatched_vehicles: int
    subscribers: int


class CatalogStop(CamelModel):
    stop_id: str
    stop_name: str
    latitude: float
    longitude: float
    stop_desc: str | None = None
    stop_area: str | None = None
    lines: list[str] | None = None

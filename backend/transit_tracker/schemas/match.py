from transit_tracker.schemas.base import CamelModel


class DirectionPatternInfo(CamelModel):
    pattern_key: str
    terminal: str
    dep_stop_dist_along: float | None = None
    arr_stop_dist_along: float | None = None
    total_length: float


class VehicleCandidateInfo(CamelModel):
    vehicle_id: str
    destination: str
    latitude: float
    longitude: float
    matched_direction: int | None = None
    reason: str
    forward_distance_meters: int
    eta_seconds: int
    time_diff_seconds: int | None = None
    is_selected: bool = False


class VehicleMatch(CamelModel):
    vehicle_id: str | None = None
    selection_reason: str
    line_number: str
    route_id: str | None = None
    correct_direction: int | None = None
    target_seconds: int | None = None
    direction0: DirectionPatternInfo | None = None
    direction1: DirectionPatternInfo | None = None
    candidates: list[VehicleCandidateInfo] = []

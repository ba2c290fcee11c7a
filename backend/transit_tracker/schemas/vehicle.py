from typing import Literal

from transit_tracker.schemas.base import CamelModel


class NextStopDto(CamelModel):
    name: str
    latitude: float
    longitude: float
    distance_meters: int
    eta_seconds: int


class VehicleDto(CamelModel):
    id: str
    line_number: str
    transport_type: str
    latitude: float
    longitude: float
    speed: float | None = None
    heading: float
    destination: str
    direction_id: int = 0
    stop_index: int = -1
    total_stops: int = 0
    next_stop: NextStopDto | None = None
    distance_along_route: float = 0.0
    speed_ms: float = 0.0
    route_key: str | None = None


class VehicleUpdate(CamelModel):
    type: Literal["snapshot", "update"] = "update"
    vehicles: list[VehicleDto]


class VehicleStopEta(CamelModel):
    stop_id: str
    stop_name: str
    latitude: float
    longitude: float
    expected_arrival_seconds: float | None = None
    scheduled_arrival_seconds: float | None = None
    delay_seconds: float | None = None
    is_passed: bool

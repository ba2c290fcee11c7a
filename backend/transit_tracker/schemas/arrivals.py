from typing import Literal

from transit_tracker.schemas.base import CamelModel


class StopArrival(CamelModel):
    transport_type: str
    route: str
    expected_time: float
    schedule_time: float
    destination: str
    seconds_until_arrival: float
    delay_seconds: float


class DelayInfo(CamelModel):
    estimated_delay_seconds: float
    status: Literal["on_time", "delayed", "early"]

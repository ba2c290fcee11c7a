"""Shared fixtures: a small synthetic network around Tallinn old town."""

import datetime

import pytest

from transit_tracker.core.geo import haversine_distance
from transit_tracker.core.network import (
    NetworkModel,
    PatternStop,
    RouteDescriptor,
    RoutePattern,
    ScheduleEntry,
    ShapePoint,
    StopDescriptor,
    build_code_lookup,
)
from transit_tracker.core.vehicle_tracker import TelemetryReading

# Tram 4 runs east along LAT0 (direction 0) and back west along LAT1 (direction 1),
# about 189 m further north.
LAT0 = 59.4370
LAT1 = 59.4387
LONS = (24.700, 24.710, 24.720)
NAMES = ("Alpha", "Beta", "Gamma")
T0 = datetime.datetime(2024, 5, 6, 9, 0, tzinfo=datetime.timezone.utc)


def _shape(coords: list[tuple[float, float]]) -> list[ShapePoint]:
    points = []
    dist = 0.0
    for i, (lat, lon) in enumerate(coords):
        if i:
            dist += haversine_distance(coords[i - 1][0], coords[i - 1][1], lat, lon)
        points.append(ShapePoint(lat=lat, lon=lon, dist_traveled=dist))
    return points


def _pattern(route_id: str, direction_id: int, stop_ids, names, shape) -> RoutePattern:
    return RoutePattern(
        route_id=route_id,
        direction_id=direction_id,
        ordered_stops=[
            PatternStop(stop_id=sid, name=name, lat=sp.lat, lon=sp.lon, dist_along_route=sp.dist_traveled)
            for sid, name, sp in zip(stop_ids, names, shape)
        ],
        shape_points=shape,
    )


def build_network() -> NetworkModel:
    tram0 = _shape([(LAT0, lon) for lon in LONS])
    tram1 = _shape([(LAT1, lon) for lon in reversed(LONS)])
    bus0 = _shape([(59.4500, 24.700), (59.4500, 24.710)])

    patterns = {
        "tallinn_tram_4_0": _pattern("tallinn_tram_4", 0, ("101", "102", "103"), NAMES, tram0),
        "tallinn_tram_4_1": _pattern("tallinn_tram_4", 1, ("201", "202", "203"), NAMES[::-1], tram1),
        "tallinn_bus_5_0": _pattern("tallinn_bus_5", 0, ("301", "302"), ("Kesklinn", "Kadriorg"), bus0),
    }
    stops = {}
    for pattern in patterns.values():
        for ps in pattern.ordered_stops:
            stops[ps.stop_id] = StopDescriptor(stop_id=ps.stop_id, name=ps.name, lat=ps.lat, lon=ps.lon)

    routes = {
        "tallinn_tram_4": RouteDescriptor("tallinn_tram_4", "4", 0),
        "tallinn_bus_5": RouteDescriptor("tallinn_bus_5", "5", 3),
        "tallinn_bus_10": RouteDescriptor("tallinn_bus_10", "10", 3),
        "tallinn_trolleybus_3": RouteDescriptor("tallinn_trolleybus_3", "3", 800),
    }
    schedule = {
        ("tallinn_tram_4", "102"): [
            ScheduleEntry(trip_id="t1", direction_id=0, departure_time="08:55:00"),
            ScheduleEntry(trip_id="t2", direction_id=0, departure_time="09:10:00"),
        ],
    }
    return NetworkModel(
        routes=routes,
        stops=stops,
        patterns=patterns,
        code_lookup=build_code_lookup(routes),
        shapes_by_id={"tram0": tram0, "tram1": tram1, "bus0": bus0},
        schedule=schedule,
    )


@pytest.fixture
def network() -> NetworkModel:
    return build_network()


@pytest.fixture
def make_reading():
    def make(
        lat: float = LAT0,
        lon: float = 24.705,
        vehicle_id: str = "v1",
        line: str = "4",
        code: int = 3,
        at: datetime.datetime = T0,
        destination: str = "Gamma",
    ) -> TelemetryReading:
        return TelemetryReading(
            vehicle_id=vehicle_id,
            lat=lat,
            lon=lon,
            heading=90.0,
            transport_type=code,
            line_number=line,
            destination=destination,
            timestamp=at,
        )

    return make

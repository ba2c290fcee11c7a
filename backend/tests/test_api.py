"""Tests for the HTTP and WebSocket surface."""

import asyncio
import datetime

import orjson
import pytest
from fastapi.testclient import TestClient

from transit_tracker.api.ws import stop_sender
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.network import NetworkLoadError
from transit_tracker.core.siri_client import Departure
from transit_tracker.main import create_app


class NullPoller:
    def start(self):
        pass

    async def stop(self):
        pass


class FakeArrivals:
    def __init__(self, boards):
        self.boards = boards

    async def fetch_stop_arrivals(self, stop_id):
        return self.boards.get(stop_id, [])

    async def close(self):
        pass


BOARDS = {
    "102": [
        Departure("tram", "4", 43500, 43200, "Gamma", 120, 300),
        Departure("tram", "4", 50000, 50000, "Alpha", 7000, 0),
    ],
}


def _live(network=None, error=None) -> LiveState:
    async def loader():
        if error:
            raise error
        return network

    return LiveState(model_loader=loader, poller_factory=lambda on_data: NullPoller())


@pytest.fixture
def client(network, make_reading):
    live = _live(network)
    app = create_app(live=live, arrivals=FakeArrivals(BOARDS))
    with TestClient(app) as c:
        live.process_readings([
            make_reading(59.437, 24.705),
            make_reading(59.45, 24.705, vehicle_id="b1", line="5", code=2),
        ])
        yield c


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok", "ready": True}


def test_list_vehicles(client):
    vehicles = client.get("/api/vehicles").json()
    assert {v["id"] for v in vehicles} == {"v1", "b1"}
    tram = next(v for v in vehicles if v["id"] == "v1")
    assert tram["routeKey"] == "tallinn_tram_4_0"
    assert tram["transportType"] == "tram"
    assert tram["nextStop"]["name"] == "Beta"


def test_list_vehicles_filtered(client):
    assert [v["id"] for v in client.get("/api/vehicles", params={"type": "bus"}).json()] == ["b1"]
    assert [v["id"] for v in client.get("/api/vehicles", params={"line": "4"}).json()] == ["v1"]


def test_get_vehicle(client):
    assert client.get("/api/vehicles/v1").json()["lineNumber"] == "4"
    assert client.get("/api/vehicles/nope").status_code == 404


def test_vehicle_stops(client):
    stops = client.get("/api/vehicles/v1/stops").json()
    assert [s["stopId"] for s in stops] == ["101", "102", "103"]
    assert stops[0]["isPassed"] is True
    assert stops[1]["delaySeconds"] == 300
    assert client.get("/api/vehicles/nope/stops").status_code == 404


def test_lines(client):
    lines = client.get("/api/lines").json()
    assert [line["lineNumber"] for line in lines] == ["5", "10", "4", "3"]
    assert lines[2] == {"routeId": "tallinn_tram_4", "lineNumber": "4", "transportType": "tram"}


def test_shapes(client):
    shapes = client.get("/api/shapes").json()
    assert len(shapes["tallinn_tram_4_0"]) == 3
    assert shapes["tallinn_tram_4_0"][0] == [59.437, 24.7, 0.0]


def test_pattern_stops(client):
    stops = client.get("/api/patterns/tallinn_tram_4_1/stops").json()
    assert [s["stopName"] for s in stops] == ["Gamma", "Beta", "Alpha"]
    assert client.get("/api/patterns/unknown_0/stops").status_code == 404


def test_schedule(client):
    resp = client.get("/api/schedule", params={"routeId": "tallinn_tram_4", "stopId": "102"})
    assert [e["departureTime"] for e in resp.json()] == ["08:55:00", "09:10:00"]
    resp = client.get("/api/schedule", params={"routeId": "tallinn_tram_4", "stopId": "999"})
    assert resp.json() == []


def test_nearest_stop(client):
    stop = client.get("/api/stops/nearest", params={"lat": 59.4371, "lng": 24.7099}).json()
    assert stop["stopId"] == "102"
    assert stop["distanceMeters"] < 20
    assert client.get("/api/stops/nearest", params={"lat": 59.6, "lng": 24.9}).status_code == 404


def test_departures(client):
    board = client.get("/api/departures", params={"stopId": "102"}).json()
    assert board[0]["route"] == "4"
    assert board[0]["delaySeconds"] == 300
    assert client.get("/api/departures").status_code == 422


def test_leg_delay(client):
    params = {"line": "4", "type": "TRAM", "depStop": "Beta", "depLat": 59.437, "depLng": 24.71}
    assert client.get("/api/leg-delay", params=params).json() == {
        "estimatedDelaySeconds": 300,
        "status": "delayed",
    }


def test_leg_delay_far_future_is_null(client):
    later = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=2)
    params = {"line": "4", "type": "TRAM", "depStop": "Beta", "scheduledDep": later.isoformat()}
    resp = client.get("/api/leg-delay", params=params)
    assert resp.status_code == 200
    assert resp.json() is None


def test_stop_catalogue(client):
    stops = client.get("/api/stops").json()
    beta = next(s for s in stops if s["stopId"] == "102")
    assert beta["lines"] == ["T:4"]
    assert beta["stopName"] == "Beta"
    assert "stopDesc" not in beta


def test_find_vehicle_for_leg(client):
    params = {"line": "4", "mode": "TRAM", "depLat": 59.437, "depLng": 24.71, "arrLat": 59.437, "arrLng": 24.72}
    body = client.get("/api/find-vehicle", params=params).json()
    assert body["vehicleId"] == "v1"
    assert body["selectionReason"] == "approaching"
    assert body["correctDirection"] == 0
    assert body["candidates"][0]["isSelected"] is True


def test_find_vehicle_requires_line_and_departure(client):
    resp = client.get("/api/find-vehicle", params={"line": "4", "depLat": 59.437})
    assert resp.status_code == 400


def test_diagnostics(client):
    diag = client.get("/api/diagnostics").json()
    assert diag["initialized"] is True
    assert diag["trackedVehicles"] == 2
    assert diag["matchedVehicles"] == 2


def test_websocket_sends_snapshot_first(client):
    with client.websocket_connect("/ws/vehicles") as ws:
        message = orjson.loads(ws.receive_bytes())
    assert message["type"] == "snapshot"
    assert {v["id"] for v in message["vehicles"]} == {"v1", "b1"}


def test_stop_sender_collects_failed_send():
    async def run():
        async def failing_send():
            raise RuntimeError("client gone")

        failed = asyncio.create_task(failing_send())
        pending = asyncio.create_task(asyncio.sleep(60))
        await asyncio.sleep(0)
        await stop_sender(failed)
        await stop_sender(pending)
        return failed, pending

    failed, pending = asyncio.run(run())
    assert failed.done() and isinstance(failed.exception(), RuntimeError)
    assert pending.cancelled()


def test_unavailable_data_returns_503():
    app = create_app(live=_live(error=NetworkLoadError("no data")), arrivals=FakeArrivals({}))
    with TestClient(app) as c:
        assert c.get("/api/health").json()["ready"] is False
        assert c.get("/api/lines").status_code == 503
        assert c.get("/api/diagnostics").json()["initialized"] is False

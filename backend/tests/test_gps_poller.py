"""Tests for position feed parsing and the poll loop."""

import asyncio
import datetime
import logging

import httpx
import orjson
import pytest

from transit_tracker.core.gps_poller import (
    FeedError,
    GpsClient,
    GpsPoller,
    parse_feature_collection,
)

NOW = datetime.datetime(2024, 5, 6, 9, 0, tzinfo=datetime.timezone.utc)


def _feature(vid="123", lon=24.705, lat=59.437, line="4", type_=3, direction=90, destination="Kopli"):
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [lon, lat]},
        "properties": {
            "id": vid,
            "line": line,
            "type": type_,
            "direction": direction,
            "destination": destination,
        },
    }


def _collection(*features):
    return {"type": "FeatureCollection", "features": list(features)}


def test_parse_valid_features():
    readings = parse_feature_collection(_collection(_feature(), _feature(vid=" 7 ", line=18, type_=2)), NOW)

    assert len(readings) == 2
    first = readings[0]
    assert (first.vehicle_id, first.lat, first.lon) == ("123", 59.437, 24.705)
    assert (first.line_number, first.transport_type, first.heading) == ("4", 3, 90.0)
    assert first.destination == "Kopli"
    assert first.timestamp == NOW
    assert readings[1].vehicle_id == "7"
    assert readings[1].line_number == "18"


def test_invalid_features_skipped_not_fatal(caplog):
    bad_coords = _feature(vid="bad")
    bad_coords["geometry"]["coordinates"] = ["x", 59.4]
    no_props = {"type": "Feature", "geometry": {"type": "Point", "coordinates": [24.7, 59.4]}}
    empty_id = _feature(vid="  ")
    nan_heading = _feature(vid="nan", direction=float("nan"))

    with caplog.at_level(logging.WARNING):
        readings = parse_feature_collection(
            _collection(bad_coords, _feature(vid="ok"), no_props, empty_id, nan_heading, "junk"),
            NOW,
        )

    assert [r.vehicle_id for r in readings] == ["ok"]
    assert "skipped 5 invalid feature(s)" in caplog.text


def test_invalid_feature_details_are_capped(caplog):
    broken = [{"type": "Feature"} for _ in range(8)]
    with caplog.at_level(logging.WARNING):
        assert parse_feature_collection(_collection(*broken), NOW) == []

    assert caplog.text.count("invalid ->") == 5
    assert "3 additional invalid feature(s) omitted" in caplog.text


def test_missing_destination_defaults_to_empty():
    feature = _feature()
    del feature["properties"]["destination"]
    [reading] = parse_feature_collection(_collection(feature), NOW)
    assert reading.destination == ""


def test_not_a_feature_collection_raises():
    with pytest.raises(FeedError):
        parse_feature_collection({"type": "Feature"}, NOW)
    with pytest.raises(FeedError):
        parse_feature_collection([1, 2, 3], NOW)


def _client(handler) -> GpsClient:
    return GpsClient(url="https://feed.test/gps", transport=httpx.MockTransport(handler))


def test_client_fetches_with_cache_buster():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, content=orjson.dumps(_collection(_feature())))

    async def run():
        client = _client(handler)
        try:
            return await client.fetch_readings()
        finally:
            await client.close()

    readings = asyncio.run(run())
    assert len(readings) == 1
    assert "ver" in seen[0].params


def test_poll_delivers_batch_to_callback():
    batches = []

    def handler(request):
        return httpx.Response(200, content=orjson.dumps(_collection(_feature(), _feature(vid="2"))))

    async def run():
        poller = GpsPoller(_client(handler), batches.append, interval_seconds=10)
        await poller.poll()
        await poller.client.close()

    asyncio.run(run())
    assert len(batches) == 1
    assert len(batches[0]) == 2


def test_poll_awaits_async_callback():
    batches = []

    async def on_data(readings):
        batches.append(readings)

    def handler(request):
        return httpx.Response(200, content=orjson.dumps(_collection(_feature())))

    async def run():
        poller = GpsPoller(_client(handler), on_data)
        await poller.poll()
        await poller.client.close()

    asyncio.run(run())
    assert len(batches) == 1


def test_poll_failure_is_logged_not_raised(caplog):
    batches = []

    def handler(request):
        return httpx.Response(503)

    async def run():
        poller = GpsPoller(_client(handler), batches.append)
        await poller.poll()
        assert not poller._polling
        await poller.client.close()

    with caplog.at_level(logging.ERROR):
        asyncio.run(run())
    assert batches == []
    assert "Error in position poll cycle" in caplog.text


def test_overlapping_poll_is_skipped():
    calls = []

    class SlowClient:
        async def fetch_readings(self):
            calls.append(1)
            await asyncio.sleep(0.05)
            return []

    async def run():
        poller = GpsPoller(SlowClient(), lambda readings: None)
        await asyncio.gather(poller.poll(), poller.poll(), poller.poll())
        await poller.poll()

    asyncio.run(run())
    # three concurrent ticks collapse into one request, the later tick runs again
    assert len(calls) == 2

"""Tests for correlating planned legs with the live departure board."""

import asyncio
import datetime

from transit_tracker.core.delay_matcher import (
    DelayMatcher,
    TimeTarget,
    delay_status,
    departure_distance,
    filter_by_direction,
    find_stop_in_pattern,
    normalize_text,
    pick_best_departure,
    route_matches,
)
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.siri_client import Departure

T0 = datetime.datetime(2024, 5, 6, 9, 0, tzinfo=datetime.timezone.utc)  # 12:00 in Tallinn


class FakeArrivals:
    def __init__(self, boards=None, error=None):
        self.boards = boards or {}
        self.error = error
        self.requested = []

    async def fetch_stop_arrivals(self, stop_id):
        self.requested.append(stop_id)
        if self.error:
            raise self.error
        return self.boards.get(stop_id, [])


class NullPoller:
    def start(self):
        pass

    async def stop(self):
        pass


def _dep(route, schedule, delay, destination="Gamma", until=600):
    return Departure(
        transport_type="tram",
        route=route,
        expected_time=schedule + delay,
        schedule_time=schedule,
        destination=destination,
        seconds_until_arrival=until,
        delay_seconds=delay,
    )


def _matcher(network, boards=None, error=None) -> DelayMatcher:
    async def loader():
        return network

    live = LiveState(model_loader=loader, poller_factory=lambda on_data: NullPoller())
    asyncio.run(live.initialize())
    return DelayMatcher(live, FakeArrivals(boards, error), tz_name="Europe/Tallinn")


def _match(matcher, **kwargs):
    args = {
        "line_number": "4",
        "mode": "TRAM",
        "departure_stop_name": "Beta",
        "departure_lat": 59.437,
        "departure_lon": 24.71,
        "scheduled_departure": "2024-05-06T09:00:00Z",
        "now": T0,
    }
    args.update(kwargs)
    return asyncio.run(matcher.match_transit_leg(**args))


def test_delay_for_matching_direction(network):
    boards = {"102": [_dep("4", 43200, -60, destination="Alpha"), _dep("4", 43200, 300)]}
    matcher = _matcher(network, boards)

    info = _match(matcher)
    assert info.estimated_delay_seconds == 300
    assert info.status == "delayed"
    assert matcher.arrivals.requested == ["102"]


def test_far_future_departure_gives_no_result(network):
    matcher = _matcher(network, {"102": [_dep("4", 43200, 300)]})
    info = _match(matcher, scheduled_departure="2024-05-06T11:00:00Z")
    assert info is None
    assert matcher.arrivals.requested == []


def test_unknown_line_or_missing_line(network):
    matcher = _matcher(network)
    assert _match(matcher, line_number="99") is None
    assert _match(matcher, line_number=None) is None
    assert _match(matcher, line_number="4", mode="BUS") is None


def test_arrival_hint_selects_direction(network):
    boards = {
        "102": [_dep("4", 43200, 300, destination="Gamma")],
        "202": [_dep("4", 43200, -45, destination="Alpha")],
    }
    matcher = _matcher(network, boards)

    info = _match(
        matcher,
        departure_lat=None, departure_lon=None,
        arrival_stop_name="Alpha",
    )
    assert matcher.arrivals.requested == ["202"]
    assert info.status == "early"
    assert info.estimated_delay_seconds == -45


def test_arrival_hint_unconfirmed_falls_back_to_first_match(network):
    matcher = _matcher(network, {"102": [_dep("4", 43200, 0)]})
    info = _match(matcher, arrival_stop_name="Nowhere")
    assert matcher.arrivals.requested == ["102"]
    assert info.status == "on_time"


def test_closest_scheduled_departure_wins(network):
    boards = {"102": [_dep("4", 3600, 0), _dep("4", 61200, 120)]}
    matcher = _matcher(network, boards)
    # 17:00:05 local = 61205 seconds of day
    info = _match(
        matcher,
        scheduled_departure="2024-05-06T14:00:05Z",
        now=datetime.datetime(2024, 5, 6, 13, 30, tzinfo=datetime.timezone.utc),
    )
    assert info.estimated_delay_seconds == 120


def test_closest_departure_across_midnight(network):
    boards = {"102": [_dep("4", 3600, 0), _dep("4", 86390, 90)]}
    matcher = _matcher(network, boards)
    # 00:00:10 local on the next day
    info = _match(
        matcher,
        scheduled_departure="2024-05-06T21:00:10Z",
        now=datetime.datetime(2024, 5, 6, 20, 50, tzinfo=datetime.timezone.utc),
    )
    assert info.estimated_delay_seconds == 90


def test_route_number_normalized(network):
    matcher = _matcher(network, {"102": [_dep(" 04", 43200, 45)]})
    assert _match(matcher).estimated_delay_seconds == 45


def test_direction_filter_falls_back_to_all_departures(network):
    matcher = _matcher(network, {"102": [_dep("4", 43200, 75, destination="Depoo")]})
    assert _match(matcher).estimated_delay_seconds == 75


def test_no_same_line_departure(network):
    matcher = _matcher(network, {"102": [_dep("6", 43200, 75)]})
    assert _match(matcher) is None


def test_nearest_stop_fallback(network):
    boards = {"103": [_dep("5", 43200, 10, destination="Anywhere")]}
    matcher = _matcher(network, boards)
    info = _match(
        matcher,
        line_number="5", mode="bus",
        departure_stop_name="Not on route",
        departure_lat=59.4371, departure_lon=24.7201,
    )
    assert matcher.arrivals.requested == ["103"]
    assert info.status == "on_time"


def test_feed_error_gives_no_result(network):
    matcher = _matcher(network, error=RuntimeError("board down"))
    assert _match(matcher) is None


def test_missing_schedule_takes_first_departure(network):
    matcher = _matcher(network, {"102": [_dep("4", 50000, 200), _dep("4", 43200, 0)]})
    assert _match(matcher, scheduled_departure=None).estimated_delay_seconds == 200


def test_find_stop_in_pattern(network):
    stops = network.pattern("tallinn_tram_4", 0).ordered_stops
    assert find_stop_in_pattern(stops, "beta", None, None) == 1
    assert find_stop_in_pattern(stops, "Gamma stop", None, None) == 2
    assert find_stop_in_pattern(stops, None, 59.4371, 24.7001) == 0
    # name matches but the coordinate is far away
    assert find_stop_in_pattern(stops, "Beta", 59.50, 24.90) == -1
    # nearby stop with a different name is not taken when a name is given
    assert find_stop_in_pattern(stops, "Zeta", 59.437, 24.71) == -1
    assert find_stop_in_pattern([], "Beta", None, None) == -1


def test_delay_status_thresholds():
    assert delay_status(0) == "on_time"
    assert delay_status(29) == "on_time"
    assert delay_status(-29) == "on_time"
    assert delay_status(30) == "delayed"
    assert delay_status(-30) == "early"


def test_route_matches():
    assert route_matches("04", "4")
    assert route_matches(" 4A ", "4a")
    assert not route_matches("40", "4")


def test_normalize_text_strips_accents():
    assert normalize_text("  Mustjõe   Väljak ") == "mustjoe valjak"


def test_filter_by_direction():
    deps = [_dep("4", 0, 0, destination="Kopli"), _dep("4", 0, 0, destination="Mustjõe")]
    assert [d.destination for d in filter_by_direction(deps, "Mustjoe")] == ["Mustjõe"]
    assert filter_by_direction(deps, None) == deps


def test_departure_distance_and_pick():
    target = TimeTarget("seconds_of_day", 61205)
    deps = [_dep("4", 61200, 0), _dep("4", 3600, 0)]
    assert pick_best_departure(deps, target).schedule_time == 61200
    assert departure_distance(86390, TimeTarget("seconds_of_day", 10)) == 20
    assert departure_distance(1_715_000_100, TimeTarget("epoch", 1_715_000_000)) == 100
    assert pick_best_departure([], target) is None


def test_upcoming_stop_etas(network, make_reading):
    boards = {"102": [_dep("4", 43300, 30, destination="Gamma", until=120), _dep("4", 43300, 0, destination="Alpha")]}
    matcher = _matcher(network, boards)
    matcher.live.process_readings([make_reading(59.437, 24.705)])

    etas = asyncio.run(matcher.upcoming_stop_etas("v1"))
    assert [e.stop_id for e in etas] == ["101", "102", "103"]
    assert etas[0].is_passed
    assert etas[0].expected_arrival_seconds is None
    assert not etas[1].is_passed
    assert etas[1].expected_arrival_seconds == 120
    assert etas[1].scheduled_arrival_seconds == 90
    assert etas[1].delay_seconds == 30
    assert etas[2].delay_seconds is None
    assert "101" not in matcher.arrivals.requested


def test_upcoming_stop_etas_unknown_or_unmatched(network, make_reading):
    matcher = _matcher(network)
    assert asyncio.run(matcher.upcoming_stop_etas("ghost")) is None
    matcher.live.process_readings([make_reading(59.4, 24.8, line="99")])
    assert asyncio.run(matcher.upcoming_stop_etas("v1")) == []

"""Correlates a planned transit leg with the live departure board to estimate delay.

The planner only knows a line number, a mode, stop names/coordinates and a
scheduled time. The leg is resolved to a concrete pattern stop (and, when
possible, a direction whose terminal helps pick the right departures), the
stop's live board is fetched, and the departure whose scheduled time is closest
to the planned one supplies the delay.
"""

import datetime
import logging
import math
import re
import unicodedata
from dataclasses import dataclass

from transit_tracker.config import settings
from transit_tracker.core.geo import haversine_distance
from transit_tracker.core.live_state import LiveState
from transit_tracker.core.network import MODE_CODES, PatternStop
from transit_tracker.core.siri_client import ArrivalsClient, Departure
from transit_tracker.core.time_utils import SECONDS_PER_DAY, parse_timestamp, seconds_of_day
from transit_tracker.schemas.arrivals import DelayInfo
from transit_tracker.schemas.vehicle import VehicleStopEta

logger = logging.getLogger(__name__)

# The board only looks a short way ahead
LIVE_DELAY_LOOKAHEAD = datetime.timedelta(hours=1)
# Pattern stop counts as the planner's stop when closer than this
STOP_MATCH_RADIUS_M = 100.0
ON_TIME_THRESHOLD_S = 30
# Feed schedule times below this are seconds since local midnight (may run past 24h)
_SECONDS_OF_DAY_LIMIT = 2 * SECONDS_PER_DAY
UPCOMING_STOPS = 6

_WHITESPACE = re.compile(r"\s+")


@dataclass
class MatchedStop:
    stop_id: str
    direction_id: int | None
    terminal_stop_name: str | None


@dataclass
class TimeTarget:
    kind: str  # "seconds_of_day" or "epoch"
    value: float


def normalize_route(value: str) -> str:
    clean = _WHITESPACE.sub("", str(value).strip().lower())
    return clean.lstrip("0")


def route_matches(route: str, line_number: str) -> bool:
    return normalize_route(route) == normalize_route(line_number)


def normalize_text(value: str | None) -> str:
    """Lowercase, strip accents, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", str(value or "").lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _WHITESPACE.sub(" ", stripped).strip()


def find_stop_in_pattern(
    stops: list[PatternStop],
    name: str | None,
    lat: float | None,
    lon: float | None,
) -> int:
    """Index of the planner's stop within a pattern, or -1.

    A stop matching by both name and proximity wins immediately. Otherwise the
    closest geo match is taken (only among name matches when a name is given),
    and without coordinates the first name match.
    """
    has_coords = lat is not None and lon is not None
    best_idx = -1
    best_dist = math.inf

    for i, stop in enumerate(stops):
        name_match = False
        if name and stop.name:
            a, b = name.lower(), stop.name.lower()
            name_match = a in b or b in a

        geo_match = False
        if has_coords:
            dist = haversine_distance(lat, lon, stop.lat, stop.lon)
            if dist < STOP_MATCH_RADIUS_M:
                geo_match = True
                if dist < best_dist and (name_match or not name):
                    best_dist = dist
                    best_idx = i

        if name_match and geo_match:
            return i
        if name_match and not has_coords and best_idx < 0:
            best_idx = i

    return best_idx


def filter_by_direction(departures: list[Departure], terminal_stop_name: str | None) -> list[Departure]:
    """Departures heading to the terminal; all of them when none match."""
    if not terminal_stop_name:
        return departures
    terminal = normalize_text(terminal_stop_name)
    filtered = []
    for d in departures:
        dest = normalize_text(d.destination)
        if dest and (terminal in dest or dest in terminal):
            filtered.append(d)
    return filtered or departures


def is_seconds_of_day(value: float) -> bool:
    return math.isfinite(value) and 0 <= value < _SECONDS_OF_DAY_LIMIT


def build_time_target(
    scheduled: datetime.datetime | None,
    departures: list[Departure],
    tz_name: str,
) -> TimeTarget | None:
    if scheduled is None:
        return None
    if any(is_seconds_of_day(d.schedule_time) for d in departures):
        return TimeTarget("seconds_of_day", seconds_of_day(scheduled, tz_name))
    return TimeTarget("epoch", math.floor(scheduled.timestamp()))


def departure_distance(schedule_time: float, target: TimeTarget) -> float:
    if not math.isfinite(schedule_time):
        return math.inf
    raw = abs(schedule_time - target.value)
    if target.kind == "seconds_of_day" and is_seconds_of_day(schedule_time):
        # shorter way around midnight
        raw %= SECONDS_PER_DAY
        return min(raw, SECONDS_PER_DAY - raw)
    return raw


def pick_best_departure(departures: list[Departure], target: TimeTarget | None) -> Departure | None:
    if not departures:
        return None
    if target is None:
        return departures[0]
    return min(departures, key=lambda d: departure_distance(d.schedule_time, target))


def delay_status(delay_seconds: float) -> str:
    if abs(delay_seconds) < ON_TIME_THRESHOLD_S:
        return "on_time"
    return "delayed" if delay_seconds > 0 else "early"


def _mode_filter(mode: str | None) -> str | None:
    # Planner modes (BUS, TRAM, ...) map onto network modes; anything else searches all codes
    value = (mode or "").strip().lower()
    return value if value in MODE_CODES else None


class DelayMatcher:
    def __init__(self, live: LiveState, arrivals: ArrivalsClient, tz_name: str | None = None) -> None:
        self.live = live
        self.arrivals = arrivals
        self.tz_name = tz_name or settings.feed_timezone

    async def match_transit_leg(
        self,
        line_number: str | None,
        mode: str | None,
        departure_stop_name: str | None,
        departure_lat: float | None,
        departure_lon: float | None,
        scheduled_departure: str | datetime.datetime | None,
        arrival_stop_name: str | None = None,
        arrival_lat: float | None = None,
        arrival_lon: float | None = None,
        now: datetime.datetime | None = None,
    ) -> DelayInfo | None:
        """Estimated delay for a planned leg, or None when it cannot be determined."""
        if not line_number:
            return None
        now = now or datetime.datetime.now(datetime.timezone.utc)
        scheduled = parse_timestamp(scheduled_departure)
        if scheduled is not None and scheduled - now > LIVE_DELAY_LOOKAHEAD:
            return None

        try:
            stop = self.find_departure_stop(
                line_number, _mode_filter(mode),
                departure_stop_name, departure_lat, departure_lon,
                arrival_stop_name, arrival_lat, arrival_lon,
            )
            if stop is None:
                logger.debug("No stop resolved for line %s at %r", line_number, departure_stop_name)
                return None

            departures = await self.arrivals.fetch_stop_arrivals(stop.stop_id)
            same_line = [d for d in departures if route_matches(d.route, line_number)]
            if not same_line:
                return None

            candidates = filter_by_direction(same_line, stop.terminal_stop_name)
            target = build_time_target(scheduled, candidates, self.tz_name)
            match = pick_best_departure(candidates, target)
            if match is None:
                return None

            return DelayInfo(
                estimated_delay_seconds=match.delay_seconds,
                status=delay_status(match.delay_seconds),
            )
        except Exception:
            logger.exception("Delay matching failed for line %s", line_number)
            return None

    def find_departure_stop(
        self,
        line_number: str,
        mode: str | None,
        departure_stop_name: str | None,
        departure_lat: float | None,
        departure_lon: float | None,
        arrival_stop_name: str | None = None,
        arrival_lat: float | None = None,
        arrival_lon: float | None = None,
    ) -> MatchedStop | None:
        route_id = self.live.get_route_id_for_line(line_number, mode)
        if route_id is None:
            return None

        has_arrival_hint = bool(arrival_stop_name) or arrival_lat is not None
        fallback: MatchedStop | None = None

        for direction_id in (0, 1):
            stops = self.live.get_pattern_stops(f"{route_id}_{direction_id}")
            if not stops:
                continue

            dep_idx = find_stop_in_pattern(stops, departure_stop_name, departure_lat, departure_lon)
            if dep_idx < 0:
                continue

            candidate = MatchedStop(
                stop_id=stops[dep_idx].stop_id,
                direction_id=direction_id,
                terminal_stop_name=stops[-1].name or None,
            )
            if fallback is None:
                fallback = candidate

            if not has_arrival_hint:
                return candidate
            arr_idx = find_stop_in_pattern(stops, arrival_stop_name, arrival_lat, arrival_lon)
            if arr_idx > dep_idx:
                return candidate

        if fallback is not None:
            return fallback

        if departure_lat is not None and departure_lon is not None:
            stop_id = self.live.get_stop_id_by_coords(departure_lat, departure_lon)
            if stop_id:
                return MatchedStop(stop_id=stop_id, direction_id=None, terminal_stop_name=None)
        return None

    async def upcoming_stop_etas(self, vehicle_id: str) -> list[VehicleStopEta] | None:
        """Next stops of a vehicle with live times from each stop's board.

        None when the vehicle is unknown; an empty list when it is not bound to a pattern.
        """
        state = self.live.get_vehicle_state(vehicle_id)
        if state is None:
            return None
        stops = self.live.get_pattern_stops(state.route_key) if state.route_key else None
        if not stops:
            return []

        start = max(0, state.last_stop_index)
        etas = []
        for stop in stops[start:start + UPCOMING_STOPS]:
            is_passed = stop.dist_along_route <= state.distance_along_route
            expected = scheduled = delay = None
            if not is_passed:
                departures = await self.arrivals.fetch_stop_arrivals(stop.stop_id)
                match = next(
                    (d for d in departures
                     if d.route == state.line_number and d.destination == state.destination),
                    None,
                )
                if match is not None:
                    expected = match.seconds_until_arrival
                    scheduled = match.seconds_until_arrival - match.delay_seconds
                    delay = match.delay_seconds
            etas.append(VehicleStopEta(
                stop_id=stop.stop_id,
                stop_name=stop.name,
                latitude=stop.lat,
                longitude=stop.lon,
                expected_arrival_seconds=expected,
                scheduled_arrival_seconds=scheduled,
                delay_seconds=delay,
                is_passed=is_passed,
            ))
        return etas

"""Async client for the per-stop live departure board (SIRI stop-departures feed)."""

import datetime
import logging
import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from transit_tracker.config import settings
from transit_tracker.core.time_utils import seconds_of_day, seconds_until

logger = logging.getLogger(__name__)

# Cached boards are dropped once older than this many TTLs
CACHE_RETENTION_TTLS = 12

# Trailing ",<digits>" groups after a destination are an upstream artifact
# (stop counters and the like), never part of a place name. Revalidate if the
# board format changes.
_TRAILING_NUMERIC_FIELDS = re.compile(r"(?:,\s*\d+)+$")


@dataclass
class Departure:
    transport_type: str
    route: str
    expected_time: int | float  # seconds since local midnight
    schedule_time: int | float
    destination: str
    seconds_until_arrival: int | float
    delay_seconds: int | float
    realtime_marker: str = ""


@dataclass
class BoardLine:
    transport_type: str
    route: str
    expected_time: int | float
    schedule_time: int | float
    destination: str
    realtime_marker: str


def normalize_transport_type(raw: str) -> str:
    value = raw.strip().lower()
    if value in ("tram", "trolleybus"):
        return value
    if value in ("train", "rail"):
        return "train"
    return "bus"


def normalize_stop_id(stop_id: str) -> str:
    """Strip a 'feed:' style prefix, leaving the board's own numeric id."""
    value = str(stop_id or "").strip()
    if ":" in value:
        tail = value.rsplit(":", 1)[1].strip()
        return tail or value
    return value


def _number(raw: str) -> int | float | None:
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return int(value) if value.is_integer() else value


def parse_board_line(line: str) -> BoardLine | None:
    """Parse one departure record of the board.

    Destinations may contain commas, so the four fixed fields (mode, route,
    expected time, scheduled time) are taken from the left and the realtime
    marker from the right; everything between them is the destination.
    """
    ends: list[int] = []
    pos = 0
    for _ in range(4):
        idx = line.find(",", pos)
        if idx == -1:
            break
        ends.append(idx)
        pos = idx + 1
    if len(ends) < 4:
        return None

    route = line[ends[0] + 1:ends[1]].strip()
    expected = _number(line[ends[1] + 1:ends[2]])
    scheduled = _number(line[ends[2] + 1:ends[3]])
    if not route or expected is None or scheduled is None:
        return None

    tail = line[ends[3] + 1:]
    marker = ""
    last_comma = tail.rfind(",")
    if last_comma > 0:
        destination = tail[:last_comma].strip()
        marker = tail[last_comma + 1:].strip()
    else:
        destination = tail.strip()
    if not destination:
        destination = tail.strip()
        marker = ""

    destination = _TRAILING_NUMERIC_FIELDS.sub("", destination).strip()

    return BoardLine(
        transport_type=normalize_transport_type(line[:ends[0]]),
        route=route,
        expected_time=expected,
        schedule_time=scheduled,
        destination=destination,
        realtime_marker=marker,
    )


def parse_board(body: str, now_seconds: int) -> list[Departure]:
    """Parse a whole board: stop name line, metadata line, then one record per line."""
    lines = [ln.strip() for ln in body.splitlines()]
    lines = [ln for ln in lines if ln]
    if len(lines) < 3 or lines[0].startswith("ERROR:"):
        return []

    departures = []
    for raw in lines[2:]:
        parsed = parse_board_line(raw)
        if parsed is None:
            logger.debug("Skipping unparseable board line: %r", raw[:200])
            continue
        departures.append(Departure(
            transport_type=parsed.transport_type,
            route=parsed.route,
            expected_time=parsed.expected_time,
            schedule_time=parsed.schedule_time,
            destination=parsed.destination,
            seconds_until_arrival=seconds_until(now_seconds, parsed.expected_time),
            delay_seconds=parsed.expected_time - parsed.schedule_time,
            realtime_marker=parsed.realtime_marker,
        ))

    departures.sort(key=lambda d: d.seconds_until_arrival)
    return departures


class ArrivalsClient:
    """Fetches live departures per stop with a short TTL cache.

    On fetch failure the last cached board for the stop is returned, or an empty
    list when nothing was cached; errors never propagate to callers.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        cache_ttl: float | None = None,
        tz_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self.base_url = base_url or settings.siri_url
        self.cache_ttl = settings.arrivals_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self.tz_name = tz_name or settings.feed_timezone
        self._clock = clock
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds if timeout is None else timeout,
            transport=transport,
        )
        # stop_id -> (fetched_at, departures)
        self._cache: dict[str, tuple[float, list[Departure]]] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_stop_arrivals(self, stop_id: str) -> list[Departure]:
        cached = self._cache.get(stop_id)
        if cached and self._clock() - cached[0] < self.cache_ttl:
            return cached[1]

        try:
            departures = await self._fetch(stop_id)
        except Exception as e:
            logger.warning("Departures fetch failed for stop %s: %s", stop_id, e)
            return cached[1] if cached else []

        fetched_at = self._clock()
        self._cache[stop_id] = (fetched_at, departures)
        self._prune(fetched_at)
        return departures

    def _prune(self, now: float) -> None:
        # Boards older than the retention window are no longer kept as a stale fallback
        horizon = now - self.cache_ttl * CACHE_RETENTION_TTLS
        for stop_id in [k for k, (at, _) in self._cache.items() if at < horizon]:
            del self._cache[stop_id]

    async def _fetch(self, stop_id: str) -> list[Departure]:
        resp = await self._client.get(self.base_url, params={"stopid": normalize_stop_id(stop_id)})
        resp.raise_for_status()
        now_seconds = seconds_of_day(self._now(), self.tz_name)
        return parse_board(resp.text, now_seconds)

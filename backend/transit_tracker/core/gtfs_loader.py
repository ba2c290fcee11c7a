"""Build the static network model from a preprocessed snapshot or raw GTFS tables."""

import asyncio
import csv
import io
import logging
import math
import zipfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import httpx
import orjson

from transit_tracker.core.network import (
    NetworkLoadError,
    NetworkModel,
    PatternStop,
    RouteDescriptor,
    RoutePattern,
    ScheduleEntry,
    ShapePoint,
    StopDescriptor,
    build_code_lookup,
    route_key,
    split_route_key,
)

logger = logging.getLogger(__name__)

SNAPSHOT_FILES = ("routes.json", "stops.json", "patterns.json", "shapes.json", "gpsMap.json")
SCHEDULE_FILE = "schedule.json"
GTFS_TABLES = ("routes.txt", "stops.txt", "trips.txt", "stop_times.txt", "shapes.txt")

# Retry configuration for the raw feed download
MAX_RETRIES = 3
RETRY_BACKOFF = [2, 4, 8]  # seconds between retries


@dataclass
class TripRecord:
    trip_id: str
    route_id: str
    direction_id: int
    shape_id: str


@dataclass
class StopTimeRecord:
    trip_id: str
    stop_id: str
    stop_sequence: int
    shape_dist_traveled: float
    departure_time: str = ""


class NetworkSource:
    """Produces a NetworkModel from some on-disk representation."""

    def load(self) -> NetworkModel:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Snapshot (five JSON documents)
# ---------------------------------------------------------------------------


class SnapshotSource(NetworkSource):
    """Reads a snapshot written by :func:`write_snapshot`."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def exists(self) -> bool:
        return (self.directory / "routes.json").exists()

    def _read(self, name: str):
        path = self.directory / name
        try:
            return orjson.loads(path.read_bytes())
        except FileNotFoundError as e:
            raise NetworkLoadError(f"Snapshot document missing: {path}") from e
        except orjson.JSONDecodeError as e:
            raise NetworkLoadError(f"Snapshot document is not valid JSON: {path}") from e

    def load(self) -> NetworkModel:
        logger.info("Loading network snapshot from %s", self.directory.resolve())
        try:
            routes = {
                r["routeId"]: RouteDescriptor(
                    route_id=r["routeId"],
                    line_number=str(r.get("shortName", "")),
                    route_type=int(r.get("routeType", 3)),
                )
                for r in self._read("routes.json")
            }
            stops = {
                str(s["stopId"]): StopDescriptor(
                    stop_id=str(s["stopId"]),
                    name=s.get("stopName", ""),
                    lat=float(s["latitude"]),
                    lon=float(s["longitude"]),
                    description=s.get("stopDesc") or None,
                    area=s.get("stopArea") or None,
                )
                for s in self._read("stops.json")
            }
            patterns: dict[str, RoutePattern] = {}
            for p in self._read("patterns.json"):
                pattern = RoutePattern(
                    route_id=p["routeId"],
                    direction_id=int(p["directionId"]),
                    ordered_stops=[
                        PatternStop(
                            stop_id=str(s["stopId"]),
                            name=s.get("stopName", ""),
                            lat=float(s["latitude"]),
                            lon=float(s["longitude"]),
                            dist_along_route=float(s["distAlongRoute"]),
                        )
                        for s in p["orderedStops"]
                    ],
                    shape_points=[_shape_point(sp) for sp in p["shapePoints"]],
                )
                if pattern.ordered_stops and pattern.shape_points:
                    patterns[pattern.key] = pattern
            shapes_by_id = {
                shape_id: [_shape_point(sp) for sp in pts]
                for shape_id, pts in self._read("shapes.json").items()
            }
            code_lookup: dict[tuple[int, str], str] = {}
            for key, route_id in self._read("gpsMap.json").items():
                code, _, line = key.partition("_")
                code_lookup[(int(code), line)] = route_id
            schedule = self._read_schedule()
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkLoadError(f"Malformed snapshot in {self.directory}: {e!r}") from e

        model = NetworkModel(
            routes=routes,
            stops=stops,
            patterns=patterns,
            code_lookup=code_lookup,
            shapes_by_id=shapes_by_id,
            schedule=schedule,
        )
        _log_counts(model)
        return model

    def _read_schedule(self) -> dict[tuple[str, str], list[ScheduleEntry]]:
        if not (self.directory / SCHEDULE_FILE).exists():
            return {}
        schedule: dict[tuple[str, str], list[ScheduleEntry]] = {}
        for item in self._read(SCHEDULE_FILE):
            schedule[(item["routeId"], str(item["stopId"]))] = [
                ScheduleEntry(
                    trip_id=e["tripId"],
                    direction_id=int(e["directionId"]),
                    departure_time=e["departureTime"],
                )
                for e in item["entries"]
            ]
        return schedule


def _shape_point(raw: dict) -> ShapePoint:
    return ShapePoint(
        lat=float(raw["latitude"]),
        lon=float(raw["longitude"]),
        dist_traveled=float(raw["distTraveled"]),
    )


# ---------------------------------------------------------------------------
# Raw GTFS tables
# ---------------------------------------------------------------------------


def read_csv(path: Path) -> Iterator[dict[str, str]]:
    """Yield rows of an RFC 4180 CSV file; tolerates a UTF-8 BOM and blank lines."""
    try:
        f = path.open(encoding="utf-8-sig", newline="")
    except FileNotFoundError as e:
        raise NetworkLoadError(f"GTFS table missing: {path}") from e
    with f:
        for row in csv.DictReader(f):
            if not any(isinstance(v, str) and v.strip() for v in row.values()):
                continue
            yield row


def _to_float(raw: str | None, default: float = 0.0) -> float:
    try:
        value = float(raw) if raw not in (None, "") else default
    except ValueError:
        return default
    return value if math.isfinite(value) else default


def _to_int(raw: str | None, default: int = 0) -> int:
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


class GtfsTableSource(NetworkSource):
    """Parses routes/stops/trips/stop_times/shapes tables from a GTFS directory."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def exists(self) -> bool:
        return all((self.directory / name).exists() for name in GTFS_TABLES)

    def load(self) -> NetworkModel:
        d = self.directory
        logger.info("Loading GTFS tables from %s", d.resolve())

        routes: dict[str, RouteDescriptor] = {}
        for row in read_csv(d / "routes.txt"):
            routes[row["route_id"]] = RouteDescriptor(
                route_id=row["route_id"],
                line_number=(row.get("route_short_name") or "").strip(),
                route_type=_to_int(row.get("route_type"), 3),
            )

        stops: dict[str, StopDescriptor] = {}
        for row in read_csv(d / "stops.txt"):
            lat = _to_float(row.get("stop_lat"), math.nan)
            lon = _to_float(row.get("stop_lon"), math.nan)
            if not (math.isfinite(lat) and math.isfinite(lon)):
                logger.debug("Skipping stop %s without coordinates", row.get("stop_id"))
                continue
            stops[row["stop_id"]] = StopDescriptor(
                stop_id=row["stop_id"],
                name=(row.get("stop_name") or "").strip(),
                lat=lat,
                lon=lon,
                description=(row.get("stop_desc") or "").strip() or None,
                area=(row.get("stop_area") or "").strip() or None,
            )

        trips: dict[str, TripRecord] = {}
        for row in read_csv(d / "trips.txt"):
            trips[row["trip_id"]] = TripRecord(
                trip_id=row["trip_id"],
                route_id=row["route_id"],
                direction_id=_to_int(row.get("direction_id")),
                shape_id=row.get("shape_id") or "",
            )

        stop_times_by_trip: dict[str, list[StopTimeRecord]] = {}
        for row in read_csv(d / "stop_times.txt"):
            st = StopTimeRecord(
                trip_id=row["trip_id"],
                stop_id=row["stop_id"],
                stop_sequence=_to_int(row.get("stop_sequence")),
                shape_dist_traveled=_to_float(row.get("shape_dist_traveled")),
                departure_time=row.get("departure_time") or "",
            )
            stop_times_by_trip.setdefault(st.trip_id, []).append(st)
        for records in stop_times_by_trip.values():
            records.sort(key=lambda st: st.stop_sequence)

        raw_shapes: dict[str, list[tuple[int, ShapePoint]]] = {}
        for row in read_csv(d / "shapes.txt"):
            raw_shapes.setdefault(row["shape_id"], []).append((
                _to_int(row.get("shape_pt_sequence")),
                ShapePoint(
                    lat=_to_float(row.get("shape_pt_lat")),
                    lon=_to_float(row.get("shape_pt_lon")),
                    dist_traveled=_to_float(row.get("shape_dist_traveled")),
                ),
            ))
        shapes_by_id = {
            shape_id: [pt for _, pt in sorted(pts, key=lambda item: item[0])]
            for shape_id, pts in raw_shapes.items()
        }

        model = NetworkModel(
            routes=routes,
            stops=stops,
            patterns=build_patterns(trips, stop_times_by_trip, stops, shapes_by_id),
            code_lookup=build_code_lookup(routes),
            shapes_by_id=shapes_by_id,
            schedule=build_schedule(trips, stop_times_by_trip),
        )
        _log_counts(model)
        return model


def build_patterns(
    trips: dict[str, TripRecord],
    stop_times_by_trip: dict[str, list[StopTimeRecord]],
    stops: dict[str, StopDescriptor],
    shapes_by_id: dict[str, list[ShapePoint]],
) -> dict[str, RoutePattern]:
    """Pick one canonical trip per (route, direction): the one with most stop times.

    Ties keep the first trip encountered. Groups whose canonical trip resolves no
    known stops or has no shape geometry are left out.
    """
    groups: dict[str, list[TripRecord]] = {}
    for trip in trips.values():
        groups.setdefault(route_key(trip.route_id, trip.direction_id), []).append(trip)

    patterns: dict[str, RoutePattern] = {}
    for key, group in groups.items():
        best: TripRecord | None = None
        best_count = 0
        for trip in group:
            count = len(stop_times_by_trip.get(trip.trip_id, []))
            if count > best_count:
                best = trip
                best_count = count
        if best is None:
            continue

        ordered_stops = []
        for st in stop_times_by_trip[best.trip_id]:
            stop = stops.get(st.stop_id)
            if stop is None:
                continue
            ordered_stops.append(PatternStop(
                stop_id=st.stop_id,
                name=stop.name,
                lat=stop.lat,
                lon=stop.lon,
                dist_along_route=st.shape_dist_traveled,
            ))
        shape_points = list(shapes_by_id.get(best.shape_id, []))

        if not ordered_stops or not shape_points:
            logger.debug("Pattern %s skipped: %d stops, %d shape points",
                         key, len(ordered_stops), len(shape_points))
            continue
        route_id, direction_id = split_route_key(key)
        patterns[key] = RoutePattern(
            route_id=route_id,
            direction_id=direction_id,
            ordered_stops=ordered_stops,
            shape_points=shape_points,
        )
    return patterns


def build_schedule(
    trips: dict[str, TripRecord],
    stop_times_by_trip: dict[str, list[StopTimeRecord]],
) -> dict[tuple[str, str], list[ScheduleEntry]]:
    """Index planned departures by (route id, stop id), sorted by departure time."""
    schedule: dict[tuple[str, str], list[ScheduleEntry]] = {}
    for trip_id, records in stop_times_by_trip.items():
        trip = trips.get(trip_id)
        if trip is None:
            continue
        for st in records:
            if not st.departure_time:
                continue
            schedule.setdefault((trip.route_id, st.stop_id), []).append(ScheduleEntry(
                trip_id=trip_id,
                direction_id=trip.direction_id,
                departure_time=st.departure_time,
            ))
    for entries in schedule.values():
        # zero-pad so "9:05:00" sorts before "10:00:00"
        entries.sort(key=lambda e: e.departure_time.zfill(8))
    return schedule


def _log_counts(model: NetworkModel) -> None:
    logger.info(
        "Network model: %d routes, %d stops, %d patterns, %d shapes, %d code mappings",
        len(model.routes), len(model.stops), len(model.patterns),
        len(model.shapes_by_id), len(model.code_lookup),
    )


# ---------------------------------------------------------------------------
# Source selection, download, snapshot writer
# ---------------------------------------------------------------------------


def select_source(snapshot_dir: str | Path, gtfs_dir: str | Path) -> NetworkSource:
    """Prefer a preprocessed snapshot; fall back to raw tables."""
    snapshot = SnapshotSource(snapshot_dir)
    if snapshot.exists():
        return snapshot
    return GtfsTableSource(gtfs_dir)


async def download_gtfs(url: str, dest: str | Path, timeout: float = 60.0) -> bool:
    """Download a GTFS zip and extract it into ``dest``. Returns False on failure."""
    dest = Path(dest)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await client.get(url)
                resp.raise_for_status()
                break
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "GTFS download attempt %d/%d failed (%s), retrying in %ds",
                        attempt + 1, MAX_RETRIES + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("GTFS download failed after %d attempts: %s", MAX_RETRIES + 1, e)
                    return False
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "GTFS download attempt %d/%d got HTTP %d, retrying in %ds",
                        attempt + 1, MAX_RETRIES + 1, e.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("Failed to download GTFS from %s: %s", url, e)
                    return False

    try:
        dest.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
            zf.extractall(dest)
    except (zipfile.BadZipFile, OSError):
        logger.exception("Failed to extract GTFS archive from %s", url)
        return False
    logger.info("Downloaded and extracted GTFS from %s into %s", url, dest)
    return True


def _shape_point_json(sp: ShapePoint) -> dict:
    return {"latitude": sp.lat, "longitude": sp.lon, "distTraveled": sp.dist_traveled}


def write_snapshot(model: NetworkModel, out_dir: str | Path) -> None:
    """Write the five snapshot documents plus the schedule index."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    docs = {
        "routes.json": [
            {"routeId": r.route_id, "shortName": r.line_number, "routeType": r.route_type}
            for r in model.routes.values()
        ],
        "stops.json": [
            {
                "stopId": s.stop_id,
                "stopName": s.name,
                "latitude": s.lat,
                "longitude": s.lon,
                "stopDesc": s.description,
                "stopArea": s.area,
            }
            for s in model.stops.values()
        ],
        "patterns.json": [
            {
                "routeId": p.route_id,
                "directionId": p.direction_id,
                "orderedStops": [
                    {
                        "stopId": s.stop_id,
                        "stopName": s.name,
                        "latitude": s.lat,
                        "longitude": s.lon,
                        "distAlongRoute": s.dist_along_route,
                    }
                    for s in p.ordered_stops
                ],
                "shapePoints": [_shape_point_json(sp) for sp in p.shape_points],
            }
            for p in model.patterns.values()
        ],
        "shapes.json": {
            shape_id: [_shape_point_json(sp) for sp in pts]
            for shape_id, pts in model.shapes_by_id.items()
        },
        "gpsMap.json": {f"{code}_{line}": route_id for (code, line), route_id in model.code_lookup.items()},
        # One object per (route, stop); both ids may contain underscores
        SCHEDULE_FILE: [
            {
                "routeId": route_id,
                "stopId": stop_id,
                "entries": [
                    {"tripId": e.trip_id, "directionId": e.direction_id, "departureTime": e.departure_time}
                    for e in entries
                ],
            }
            for (route_id, stop_id), entries in model.schedule.items()
        ],
    }
    for name, doc in docs.items():
        (out / name).write_bytes(orjson.dumps(doc))
    logger.info("Wrote network snapshot (%d documents) to %s", len(docs), out.resolve())
